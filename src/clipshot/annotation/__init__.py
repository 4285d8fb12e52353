"""
Annotation module for ClipShot.

Provides:
- TimedAnnotation, Geometry, Style, AnnotationKind: Annotation values
- AnnotationSpec: JSON description of an annotation
- AnnotationTimeline: Editable collection with undo/redo

The editor state lives in clipshot.annotation.editor.
"""

from .model import (
    AnnotationKind,
    AnnotationSpec,
    Geometry,
    Style,
    TimedAnnotation,
)
from .timeline import AnnotationTimeline, active_at, step_numbers

__all__ = [
    "AnnotationKind",
    "AnnotationSpec",
    "AnnotationTimeline",
    "Geometry",
    "Style",
    "TimedAnnotation",
    "active_at",
    "step_numbers",
]
