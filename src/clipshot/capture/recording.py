"""
Recording Coordinator

Drives video recording of a screen region: a timer thread fires at the
target frame rate, each tick grabs the full display, crops it to the region
and hands the frame to the VideoEncoder.

Ticks never overlap. A tick that fires while the previous one is still
capturing is dropped, and ticks the timer could not fire on time are
dropped as well, so recording speed never exceeds capture speed.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Callable

from ..config import CaptureConfig, capture_config
from ..encoding.video_encoder import VideoEncoder
from ..errors import (
    CaptureError,
    DisplayUnavailableError,
    EncoderError,
    InvalidTransitionError,
    PermissionDeniedError,
)
from .frame import Frame, Rect
from .frame_source import FrameSource

logger = logging.getLogger(__name__)

EncoderFactory = Callable[[Path, int, int, int], VideoEncoder]


class RecordingState(Enum):
    IDLE = auto()
    RECORDING = auto()
    STOPPED = auto()
    CANCELLED = auto()
    FAILED = auto()


@dataclass(frozen=True)
class RecordingResult:
    """Finished recording."""

    path: Path
    width: int
    height: int
    fps: int
    frame_count: int
    frames_dropped: int

    @property
    def duration(self) -> float:
        return self.frame_count / self.fps


class RecordingCoordinator:
    """
    Timer-driven capture into a streaming video encoder.

    Usage:
        coordinator = RecordingCoordinator(source, Path("out.mp4"))
        coordinator.start(region)
        ...
        result = coordinator.stop()
    """

    def __init__(
        self,
        frame_source: FrameSource,
        output_path: str | Path,
        fps: int | None = None,
        config: CaptureConfig | None = None,
        encoder_factory: EncoderFactory | None = None,
        use_timer: bool = True,
    ):
        """
        Initialize the coordinator.

        Args:
            frame_source: Screen capture source
            output_path: Final video path
            fps: Target frame rate (defaults to config.fps)
            config: Capture settings (defaults to global capture_config)
            encoder_factory: Builds the encoder for (path, width, height, fps)
            use_timer: Run the tick timer thread; when False the caller
                drives capture_tick() directly
        """
        self.config = config or capture_config
        self.frame_source = frame_source
        self.output_path = Path(output_path)
        self.fps = fps or self.config.fps
        self._encoder_factory = encoder_factory or (
            lambda path, width, height, fps: VideoEncoder(path, width, height, fps)
        )
        self._use_timer = use_timer

        self._state = RecordingState.IDLE
        self._state_lock = threading.Lock()
        # Held for the duration of one tick; a tick that can't take it is dropped
        self._tick_guard = threading.Lock()
        self._stop_event = threading.Event()
        self._timer_thread: threading.Thread | None = None

        self.region: Rect | None = None
        self._encoder: VideoEncoder | None = None
        self._next_index = 0
        self._frames_captured = 0
        self._frames_dropped = 0
        self._consecutive_failures = 0
        self._error: Exception | None = None
        self._failure_callbacks: list[Callable[[Exception], None]] = []

    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def error(self) -> Exception | None:
        return self._error

    @property
    def frames_captured(self) -> int:
        return self._frames_captured

    @property
    def frames_dropped(self) -> int:
        return self._frames_dropped

    def on_failure(self, callback: Callable[[Exception], None]) -> None:
        """Register callback for when recording fails and is torn down."""
        self._failure_callbacks.append(callback)

    def start(self, region: Rect) -> None:
        """
        Capture the first frame, start the encoder and the tick timer.

        Raises:
            InvalidTransitionError: If already started
            PermissionDeniedError / DisplayUnavailableError: If the first capture fails
            EncoderInitError: If the encoder cannot be created
        """
        with self._state_lock:
            if self._state != RecordingState.IDLE:
                raise InvalidTransitionError(f"Recording already started ({self._state.name})")

            self.region = region
            first = self._grab(0)

            encoder = self._encoder_factory(self.output_path, first.width, first.height, self.fps)
            encoder.start()
            try:
                encoder.submit(first.pixels, first.index)
            except (EncoderError, ValueError):
                encoder.abort()
                raise

            self._encoder = encoder
            self._next_index = 1
            self._frames_captured = 1
            self._state = RecordingState.RECORDING

        if self._use_timer:
            self._stop_event.clear()
            self._timer_thread = threading.Thread(
                target=self._timer_loop,
                name="RecordingTimerThread",
                daemon=True,
            )
            self._timer_thread.start()

        logger.info(
            f"Recording started: region={region.to_dict()}, "
            f"{first.width}x{first.height} @ {self.fps}fps -> {self.output_path}"
        )

    def _grab(self, index: int) -> Frame:
        full = self.frame_source.capture(None)
        try:
            return full.crop(self.region, index=index)
        except ValueError as e:
            raise DisplayUnavailableError(f"Recording region left the display: {e}") from e

    def capture_tick(self) -> bool:
        """
        Capture and submit one frame.

        Returns:
            True if a frame was submitted, False if the tick was dropped or
            skipped
        """
        if not self._tick_guard.acquire(blocking=False):
            self._frames_dropped += 1
            logger.debug("Capture tick dropped: previous tick still in flight")
            return False

        failure: Exception | None = None
        try:
            if self._state != RecordingState.RECORDING:
                return False

            try:
                frame = self._grab(self._next_index)
                self._encoder.submit(frame.pixels, frame.index)
            except PermissionDeniedError as e:
                failure = e
                return False
            except (CaptureError, ValueError) as e:
                # ValueError: frame size changed (display scale switched)
                self._consecutive_failures += 1
                if self._consecutive_failures >= self.config.max_consecutive_failures:
                    failure = e
                else:
                    logger.warning(f"Capture failed, skipping tick: {e}")
                return False
            except EncoderError as e:
                failure = e
                return False

            self._consecutive_failures = 0
            self._next_index += 1
            self._frames_captured += 1
            return True
        finally:
            if failure is not None:
                self._teardown_failed(failure)
            self._tick_guard.release()
            if failure is not None:
                self._notify_failure(failure)

    def _timer_loop(self) -> None:
        """Fire capture ticks on a fixed schedule until stopped."""
        logger.info("Recording timer started")
        interval = 1.0 / self.fps
        next_deadline = time.monotonic() + interval

        while not self._stop_event.is_set():
            wait = next_deadline - time.monotonic()
            if wait > 0 and self._stop_event.wait(wait):
                break

            self.capture_tick()

            next_deadline += interval
            behind = time.monotonic() - next_deadline
            if behind > 0:
                # Deadlines missed while the tick ran are dropped, not queued
                missed = int(behind / interval) + 1
                self._frames_dropped += missed
                next_deadline += missed * interval

        logger.info("Recording timer stopped")

    def _join_timer(self) -> None:
        self._stop_event.set()
        thread = self._timer_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()
            self._timer_thread = None

    def _teardown_failed(self, error: Exception) -> None:
        """Abort the encoder after an unrecoverable tick failure (tick guard held)."""
        with self._state_lock:
            if self._state != RecordingState.RECORDING:
                return
            self._state = RecordingState.FAILED
            self._error = error
            self._stop_event.set()
            self._encoder.abort()
        logger.error(f"Recording failed after {self._frames_captured} frames: {error}")

    def _notify_failure(self, error: Exception) -> None:
        for callback in self._failure_callbacks:
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Recording failure callback error: {e}")

    def stop(self) -> RecordingResult:
        """
        Stop capturing, wait for the in-flight tick and finalize the video.

        Raises:
            InvalidTransitionError: If not recording (including after a failure)
            EncoderWriteError: If finalizing the video fails (no file left)
        """
        self._join_timer()
        with self._tick_guard:
            with self._state_lock:
                if self._state != RecordingState.RECORDING:
                    raise InvalidTransitionError(
                        f"Cannot stop recording in state {self._state.name}"
                    )
                try:
                    path = self._encoder.finish()
                except EncoderError:
                    self._state = RecordingState.FAILED
                    raise
                self._state = RecordingState.STOPPED

        result = RecordingResult(
            path=path,
            width=self._encoder.width,
            height=self._encoder.height,
            fps=self.fps,
            frame_count=self._encoder.frame_count,
            frames_dropped=self._frames_dropped,
        )
        logger.info(
            f"Recording stopped: {result.frame_count} frames "
            f"({result.duration:.1f}s), {result.frames_dropped} dropped"
        )
        return result

    def cancel(self) -> None:
        """Stop capturing and discard everything written so far."""
        self._join_timer()
        with self._tick_guard:
            with self._state_lock:
                if self._state in (RecordingState.STOPPED, RecordingState.CANCELLED):
                    return
                if self._encoder is not None:
                    self._encoder.abort()
                if self._state != RecordingState.FAILED:
                    self._state = RecordingState.CANCELLED
        logger.info("Recording cancelled, output discarded")

    def get_status(self) -> dict:
        return {
            "state": self._state.name,
            "region": self.region.to_dict() if self.region else None,
            "fps": self.fps,
            "frames_captured": self._frames_captured,
            "frames_dropped": self._frames_dropped,
            "consecutive_failures": self._consecutive_failures,
            "error": str(self._error) if self._error else None,
            "encoder": self._encoder.get_status() if self._encoder else None,
        }
