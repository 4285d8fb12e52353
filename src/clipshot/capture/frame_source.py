"""
Frame Source - OS screen capture boundary.

Wraps the `mss` screen grabber behind a small protocol so the recording and
scroll-capture drivers can be exercised with synthetic sources. `mss`
returns BGRA buffers; frames handed downstream are always RGBA.
"""

import logging
import threading
import time
from typing import Protocol

import numpy as np

from ..errors import DisplayUnavailableError, PermissionDeniedError
from .frame import Frame, Rect

logger = logging.getLogger(__name__)


class FrameSource(Protocol):
    """Anything that can produce a Frame for a screen region."""

    def capture(self, region: Rect | None = None) -> Frame:
        """
        Capture the given region (or the whole display when None).

        Raises:
            PermissionDeniedError: Screen recording is not permitted
            DisplayUnavailableError: The display could not be read
        """
        ...


class MssFrameSource:
    """
    Screen capture backed by `mss`.

    One `mss` instance is kept per thread, since mss handles are not safe to
    share between the recording timer thread and the caller.
    """

    def __init__(self, monitor_index: int = 1):
        """
        Initialize the frame source.

        Args:
            monitor_index: mss monitor index (0 = virtual screen, 1 = primary)
        """
        self.monitor_index = monitor_index
        self._local = threading.local()
        self._frame_counter = 0
        self._lock = threading.Lock()

    def _grabber(self):
        sct = getattr(self._local, "sct", None)
        if sct is None:
            import mss

            sct = mss.mss()
            self._local.sct = sct
        return sct

    def display_region(self) -> Rect:
        """Region covered by the configured monitor, in screen points."""
        sct = self._grabber()
        try:
            mon = sct.monitors[self.monitor_index]
        except IndexError as exc:
            raise DisplayUnavailableError(
                f"Monitor {self.monitor_index} not available ({len(sct.monitors) - 1} found)"
            ) from exc
        return Rect(x=mon["left"], y=mon["top"], width=mon["width"], height=mon["height"])

    def capture(self, region: Rect | None = None) -> Frame:
        import mss.exception

        target = region or self.display_region()
        monitor = {
            "left": target.x,
            "top": target.y,
            "width": target.width,
            "height": target.height,
        }

        try:
            shot = self._grabber().grab(monitor)
        except mss.exception.ScreenShotError as exc:
            message = str(exc)
            # macOS reports missing Screen Recording permission through CoreGraphics
            if "permission" in message.lower() or "not authorized" in message.lower():
                raise PermissionDeniedError(message) from exc
            raise DisplayUnavailableError(message) from exc

        bgra = np.frombuffer(shot.bgra, dtype=np.uint8).reshape(shot.height, shot.width, 4)
        rgba = bgra[:, :, [2, 1, 0, 3]]

        with self._lock:
            self._frame_counter += 1
            index = self._frame_counter

        return Frame(pixels=rgba, region=target, index=index, captured_at=time.monotonic())

    def has_permission(self) -> bool:
        """Probe screen recording permission with a minimal capture."""
        try:
            region = self.display_region()
            self.capture(Rect(x=region.x, y=region.y, width=1, height=1))
            return True
        except PermissionDeniedError:
            return False
        except DisplayUnavailableError as e:
            logger.debug(f"Permission probe could not read display: {e}")
            return False

    def close(self) -> None:
        sct = getattr(self._local, "sct", None)
        if sct is not None:
            sct.close()
            self._local.sct = None
