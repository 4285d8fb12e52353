"""
Error kinds raised across the capture-to-artifact pipeline.
"""


class ClipShotError(Exception):
    """Base class for all ClipShot errors."""


class CaptureError(ClipShotError):
    """Screen capture could not produce a frame."""


class PermissionDeniedError(CaptureError):
    """Screen recording permission is missing or was revoked."""


class DisplayUnavailableError(CaptureError):
    """The display could not be captured (transient)."""


class EncoderError(ClipShotError):
    """Base class for video encoder failures."""


class EncoderInitError(EncoderError):
    """The encoder could not be started."""


class EncoderWriteError(EncoderError):
    """Writing or finalizing encoded output failed."""


class StitchError(ClipShotError):
    """Frames cannot be stitched (e.g. mismatched widths)."""


class EmptySessionError(ClipShotError):
    """A session finished with zero captured frames."""


class InvalidTransitionError(ClipShotError):
    """A command is not valid in the session's current state."""


class AnnotationNotFoundError(ClipShotError, KeyError):
    """No annotation with the given id exists."""


class InvalidAnnotationError(ClipShotError, ValueError):
    """An annotation violates its invariants (time range, geometry)."""
