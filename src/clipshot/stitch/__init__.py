"""
Stitch module for ClipShot.

Provides:
- stitch_frames: Merge an ordered scroll-capture sequence into one composite
- find_scroll_offset: Overlap detection between two consecutive frames
- StitchResult: Immutable stitching output
"""

from .stitcher import StitchResult, find_scroll_offset, stitch_frames

__all__ = [
    "StitchResult",
    "find_scroll_offset",
    "stitch_frames",
]
