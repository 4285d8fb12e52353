"""
Export module for ClipShot.

Provides:
- ImageArtifact / VideoArtifact: Capture results
- ExportJob: Artifact + annotation snapshot + destination
- ExportCompositor: Renders jobs to PNG or MP4
- render_annotations: Per-kind annotation drawing (shared with live preview)
"""

from .artifact import OUTPUT_FPS, ExportJob, ImageArtifact, VideoArtifact
from .compositor import ExportCompositor, export
from .renderer import render_annotations

__all__ = [
    "OUTPUT_FPS",
    "ExportCompositor",
    "ExportJob",
    "ImageArtifact",
    "VideoArtifact",
    "export",
    "render_annotations",
]
