"""
Capture module for ClipShot.

Provides:
- Frame, Rect: Captured pixels and screen regions
- MssFrameSource: mss-backed screen grabber
- RecordingCoordinator: Timer-driven recording into the video encoder
- ScrollCaptureDriver: Scroll-and-capture loop for tall pages

The session state machine lives in clipshot.capture.session.
"""

from .frame import Frame, Rect
from .frame_source import FrameSource, MssFrameSource
from .recording import RecordingCoordinator, RecordingResult, RecordingState
from .scroll_capture import ScrollCaptureDriver, ScrollPhase, StopReason, pynput_scroll

__all__ = [
    "Frame",
    "FrameSource",
    "MssFrameSource",
    "RecordingCoordinator",
    "RecordingResult",
    "RecordingState",
    "Rect",
    "ScrollCaptureDriver",
    "ScrollPhase",
    "StopReason",
    "pynput_scroll",
]
