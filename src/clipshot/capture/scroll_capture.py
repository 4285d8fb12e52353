"""
Scroll Capture Driver

Captures a tall page by alternating two phases, one per tick:

    CAPTURE  grab the region, compare it with the previous frame
    SCROLL   scroll the content under the region by 2/3 of its height

A tick gap of `settle_delay` seconds separates scrolling from the next
capture so the content can finish rendering. Capture stops when the page
no longer moves, when the end of the content is reached (the new frame
overlaps the previous one by more than `end_overlap_fraction`), after
`max_steps` scrolls, or when the caller stops it. The collected frames are
then handed to the stitcher.
"""

import logging
import threading
from enum import Enum, auto
from typing import Callable

from ..config import (
    CaptureConfig,
    ScrollCaptureConfig,
    StitchConfig,
    capture_config,
    scroll_config,
)
from ..errors import CaptureError, PermissionDeniedError
from ..stitch.stitcher import find_scroll_offset
from .frame import Frame, Rect
from .frame_source import FrameSource

logger = logging.getLogger(__name__)

# Positive delta scrolls the content up (reveals what is below)
ScrollFn = Callable[[tuple[int, int], int], None]

PIXELS_PER_SCROLL_STEP = 40


def pynput_scroll(point: tuple[int, int], delta_pixels: int) -> None:
    """Scroll with the system mouse wheel at `point` using pynput."""
    from pynput.mouse import Controller

    mouse = Controller()
    mouse.position = point
    steps = max(1, round(abs(delta_pixels) / PIXELS_PER_SCROLL_STEP))
    mouse.scroll(0, -steps if delta_pixels > 0 else steps)


class ScrollPhase(Enum):
    CAPTURE = auto()
    SCROLL = auto()


class StopReason(Enum):
    NO_MOVEMENT = auto()
    END_OF_CONTENT = auto()
    MAX_STEPS = auto()
    STOPPED = auto()


class ScrollCaptureDriver:
    """Two-phase scroll/capture loop collecting frames for stitching."""

    def __init__(
        self,
        frame_source: FrameSource,
        region: Rect,
        scroll_fn: ScrollFn | None = None,
        config: ScrollCaptureConfig | None = None,
        stitch_cfg: StitchConfig | None = None,
        capture_cfg: CaptureConfig | None = None,
    ):
        """
        Initialize the driver.

        Args:
            frame_source: Screen capture source
            region: Region to capture, in screen points
            scroll_fn: Scrolls content at a point by a pixel delta (pynput by default)
            config: Scroll settings (defaults to global scroll_config)
            stitch_cfg: Overlap matching settings
            capture_cfg: Failure tolerance settings
        """
        self.frame_source = frame_source
        self.region = region
        self.config = config or scroll_config
        self.stitch_cfg = stitch_cfg
        self.capture_cfg = capture_cfg or capture_config
        self._scroll_fn = scroll_fn or pynput_scroll

        self._frames: list[Frame] = []
        self._phase = ScrollPhase.CAPTURE
        self._step_count = 0
        self._consecutive_failures = 0
        self.stop_reason: StopReason | None = None

        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._error: Exception | None = None

    @property
    def phase(self) -> ScrollPhase:
        return self._phase

    @property
    def step_count(self) -> int:
        return self._step_count

    @property
    def frame_count(self) -> int:
        return len(self._frames)

    @property
    def finished(self) -> bool:
        return self.stop_reason is not None

    @property
    def error(self) -> Exception | None:
        return self._error

    def _finish(self, reason: StopReason) -> bool:
        self.stop_reason = reason
        logger.info(
            f"Scroll capture finished ({reason.name}): "
            f"{len(self._frames)} frames, {self._step_count} scrolls"
        )
        return False

    def tick(self) -> bool:
        """
        Run one phase.

        Returns:
            True while capture should continue

        Raises:
            PermissionDeniedError: If screen capture is not permitted
            CaptureError: After too many consecutive failed captures
        """
        if self.finished:
            return False
        if self._phase == ScrollPhase.SCROLL:
            return self._scroll()
        return self._capture()

    def _scroll(self) -> bool:
        if self._step_count >= self.config.max_steps:
            return self._finish(StopReason.MAX_STEPS)

        center = (
            self.region.x + self.region.width // 2,
            self.region.y + self.region.height // 2,
        )
        delta = int(self.region.height * self.config.scroll_fraction)
        self._scroll_fn(center, delta)
        self._step_count += 1
        self._phase = ScrollPhase.CAPTURE
        return True

    def _capture(self) -> bool:
        try:
            frame = self.frame_source.capture(self.region)
        except PermissionDeniedError:
            raise
        except CaptureError as e:
            self._consecutive_failures += 1
            if self._consecutive_failures >= self.capture_cfg.max_consecutive_failures:
                raise
            logger.warning(f"Scroll capture tick failed, scrolling on: {e}")
            self._phase = ScrollPhase.SCROLL
            return True
        self._consecutive_failures = 0

        if not self._frames:
            self._frames.append(frame)
            self._phase = ScrollPhase.SCROLL
            return True

        offset = find_scroll_offset(self._frames[-1].pixels, frame.pixels, self.stitch_cfg)
        if offset == 0:
            return self._finish(StopReason.NO_MOVEMENT)

        self._frames.append(frame)
        if offset is not None:
            overlap = frame.height - offset
            if overlap > frame.height * self.config.end_overlap_fraction:
                return self._finish(StopReason.END_OF_CONTENT)

        self._phase = ScrollPhase.SCROLL
        return True

    # ==================== Background run ====================

    def start(self) -> None:
        """Run the tick loop on a background thread."""
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name="ScrollCaptureThread",
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Scroll capture started: region={self.region.to_dict()}")

    def _run(self) -> None:
        try:
            while not self._stop_event.is_set():
                if not self.tick():
                    break
                if self._stop_event.wait(self.config.settle_delay):
                    break
        except CaptureError as e:
            logger.error(f"Scroll capture failed: {e}")
            self._error = e
        if not self.finished:
            self.stop_reason = StopReason.STOPPED

    def stop(self) -> None:
        """Stop the background loop and wait for the in-flight tick."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if not self.finished:
            self.stop_reason = StopReason.STOPPED

    def run(self) -> list[Frame]:
        """Tick in the calling thread until a stop condition; returns the frames."""
        self._run()
        if self._error is not None:
            raise self._error
        return self.take_frames()

    def take_frames(self) -> list[Frame]:
        """Hand the collected frames over; the driver keeps none."""
        frames, self._frames = self._frames, []
        return frames

    def get_status(self) -> dict:
        return {
            "region": self.region.to_dict(),
            "phase": self._phase.name,
            "steps": self._step_count,
            "frames": len(self._frames),
            "stop_reason": self.stop_reason.name if self.stop_reason else None,
            "error": str(self._error) if self._error else None,
        }
