"""
Video Encoder

Streams RGBA frames into an H.264 MP4 via an ffmpeg subprocess.

Frames are handed to a background writer thread through a bounded queue:
- submit() blocks when the queue is full (backpressure, never drops)
- frame indices must strictly increase (never reorders)
- output goes to a hidden temp file next to the destination and is only
  renamed into place by finish(); abort() or any failure removes it
"""

import logging
import os
import queue
import shutil
import subprocess
import threading
import time
import uuid
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Protocol

import numpy as np

from ..config import EncoderConfig, encoder_config
from ..errors import EmptySessionError, EncoderInitError, EncoderWriteError

logger = logging.getLogger(__name__)

# Check ffmpeg availability at import time
FFMPEG_AVAILABLE = shutil.which("ffmpeg") is not None

if not FFMPEG_AVAILABLE:
    logger.warning("ffmpeg not found - video encoding unavailable")


class FrameWriter(Protocol):
    """Sink for raw RGBA frame bytes."""

    def write(self, frame_bytes: bytes) -> None: ...

    def close(self) -> None: ...

    def kill(self) -> None: ...


WriterFactory = Callable[[Path, int, int, int], FrameWriter]


class FfmpegVideoWriter:
    """
    Low-level H.264 writer using an ffmpeg subprocess.

    Pipes raw RGBA frames to ffmpeg stdin, producing a constant frame rate
    MP4. Odd frame sizes are padded on the right and bottom to even
    dimensions for yuv420p; VideoDecoder crops the padding off again when
    given the content size.
    """

    STARTUP_GRACE = 0.15  # seconds to detect immediate ffmpeg failure

    def __init__(
        self,
        output_path: Path,
        width: int,
        height: int,
        fps: int,
        config: EncoderConfig | None = None,
    ):
        config = config or encoder_config
        ffmpeg = shutil.which("ffmpeg")
        if not ffmpeg:
            raise RuntimeError("ffmpeg not found on PATH")

        self.output_path = Path(output_path)
        self.width = width
        self.height = height
        self.fps = fps
        self.timeout = config.timeout_seconds

        cmd = [
            ffmpeg,
            "-y",
            "-hide_banner",
            "-loglevel", "error",
            "-f", "rawvideo",
            "-pix_fmt", "rgba",
            "-s", f"{width}x{height}",
            "-r", str(fps),
            "-i", "pipe:0",
            "-an",
            "-vf", "pad=ceil(iw/2)*2:ceil(ih/2)*2",
            "-c:v", config.codec,
            "-preset", config.preset,
            "-crf", str(config.crf),
            "-pix_fmt", "yuv420p",
            "-r", str(fps),
            "-movflags", "+faststart",
            "-f", "mp4",
            str(self.output_path),
        ]

        self.proc = subprocess.Popen(
            cmd,
            stdin=subprocess.PIPE,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
        )
        time.sleep(self.STARTUP_GRACE)
        if self.proc.poll() is not None:
            raise RuntimeError(f"ffmpeg failed to start: {self._stderr_tail()}")

    def _stderr_tail(self) -> str:
        if not self.proc.stderr:
            return ""
        try:
            return self.proc.stderr.read().decode("utf-8", errors="replace")[-500:]
        except (OSError, ValueError):
            return ""

    def write(self, frame_bytes: bytes) -> None:
        if self.proc.poll() is not None:
            raise RuntimeError(f"ffmpeg process died unexpectedly: {self._stderr_tail()}")
        try:
            self.proc.stdin.write(frame_bytes)
        except (BrokenPipeError, OSError) as exc:
            raise RuntimeError(f"ffmpeg pipe broke: {self._stderr_tail()}") from exc

    def close(self) -> None:
        # communicate() flushes and closes stdin itself
        try:
            _, stderr = self.proc.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            self.proc.kill()
            self.proc.wait()
            raise RuntimeError(f"ffmpeg timed out after {self.timeout}s")
        if self.proc.returncode != 0:
            raise RuntimeError(
                f"ffmpeg exited with code {self.proc.returncode}: "
                f"{(stderr or b'').decode('utf-8', errors='replace')[-500:]}"
            )

    def kill(self) -> None:
        if self.proc.poll() is None:
            self.proc.kill()
        self.proc.wait()


def ffmpeg_writer_factory(output_path: Path, width: int, height: int, fps: int) -> FrameWriter:
    return FfmpegVideoWriter(output_path, width, height, fps)


class EncoderState(Enum):
    """Lifecycle of a VideoEncoder."""

    IDLE = auto()
    RUNNING = auto()
    FINISHED = auto()
    ABORTED = auto()
    FAILED = auto()


_STOP = object()


class VideoEncoder:
    """
    Streaming MP4 encoder with a background writer thread.

    Usage:
        encoder = VideoEncoder(path, width, height, fps=30)
        encoder.start()
        for i, pixels in enumerate(frames):
            encoder.submit(pixels, i)
        encoder.finish()
    """

    def __init__(
        self,
        output_path: str | Path,
        width: int,
        height: int,
        fps: int = 30,
        config: EncoderConfig | None = None,
        writer_factory: WriterFactory | None = None,
    ):
        """
        Initialize the encoder.

        Args:
            output_path: Final .mp4 destination
            width: Frame width in pixels
            height: Frame height in pixels
            fps: Fixed output frame rate
            config: Encoder settings (defaults to global encoder_config)
            writer_factory: Builds the frame sink; ffmpeg by default
        """
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid video size {width}x{height}")

        self.output_path = Path(output_path)
        self.width = width
        self.height = height
        self.fps = fps
        self.config = config or encoder_config
        self._writer_factory = writer_factory or ffmpeg_writer_factory

        self._state = EncoderState.IDLE
        self._state_lock = threading.Lock()
        self._temp_path: Path | None = None
        self._writer: FrameWriter | None = None
        self._queue: queue.Queue = queue.Queue(maxsize=self.config.queue_size)
        self._thread: threading.Thread | None = None
        self._error: Exception | None = None
        self._aborting = threading.Event()

        self._last_index: int | None = None
        self._frames_submitted = 0
        self._frames_written = 0

    @property
    def state(self) -> EncoderState:
        return self._state

    @property
    def frame_count(self) -> int:
        """Frames successfully written to the encoder so far."""
        return self._frames_written

    @property
    def frames_submitted(self) -> int:
        return self._frames_submitted

    @property
    def temp_path(self) -> Path | None:
        return self._temp_path

    def start(self) -> None:
        """
        Open the writer and start the background thread.

        Raises:
            EncoderInitError: If the writer cannot be created
        """
        with self._state_lock:
            if self._state != EncoderState.IDLE:
                raise EncoderInitError(f"Encoder already started (state={self._state.name})")

            try:
                self.output_path.parent.mkdir(parents=True, exist_ok=True)
                self._temp_path = self.output_path.with_name(
                    f".{self.output_path.name}.{uuid.uuid4().hex[:8]}.part"
                )
                self._writer = self._writer_factory(
                    self._temp_path, self.width, self.height, self.fps
                )
            except Exception as e:
                self._state = EncoderState.FAILED
                self._remove_temp()
                raise EncoderInitError(f"Failed to start video encoder: {e}") from e

            self._thread = threading.Thread(
                target=self._writer_loop,
                name="VideoEncoderThread",
                daemon=True,
            )
            self._state = EncoderState.RUNNING
            self._thread.start()

        logger.info(
            f"VideoEncoder started: {self.width}x{self.height} @ {self.fps}fps -> {self.output_path}"
        )

    def submit(self, pixels: np.ndarray, index: int | None = None) -> None:
        """
        Queue one frame for encoding, blocking while the queue is full.

        Args:
            pixels: RGBA array of shape (height, width, 4)
            index: Frame index; must be greater than the previous one

        Raises:
            ValueError: On wrong frame shape or non-increasing index
            EncoderWriteError: If the writer has failed or the encoder is not running
        """
        if self._state != EncoderState.RUNNING:
            raise EncoderWriteError(f"Encoder not running (state={self._state.name})")
        if self._error is not None:
            raise EncoderWriteError(f"Encoder write failed: {self._error}") from self._error

        if pixels.shape != (self.height, self.width, 4):
            raise ValueError(
                f"Frame shape {pixels.shape} does not match encoder size "
                f"({self.height}, {self.width}, 4)"
            )

        if index is None:
            index = 0 if self._last_index is None else self._last_index + 1
        if self._last_index is not None and index <= self._last_index:
            raise ValueError(
                f"Frame index {index} is not after previous index {self._last_index}"
            )

        frame_bytes = np.ascontiguousarray(pixels, dtype=np.uint8).tobytes()

        while True:
            if self._error is not None:
                raise EncoderWriteError(f"Encoder write failed: {self._error}") from self._error
            if self._aborting.is_set():
                raise EncoderWriteError("Encoder aborted")
            try:
                self._queue.put(frame_bytes, timeout=0.1)
                break
            except queue.Full:
                continue

        self._last_index = index
        self._frames_submitted += 1

    def _writer_loop(self) -> None:
        """Background thread: drain the queue into the writer in order."""
        while True:
            item = self._queue.get()
            if item is _STOP:
                break
            if self._aborting.is_set() or self._error is not None:
                continue
            try:
                self._writer.write(item)
                self._frames_written += 1
            except Exception as e:
                logger.error(f"Video frame write failed: {e}")
                self._error = e

    def _stop_thread(self) -> None:
        if self._thread is None:
            return
        while True:
            try:
                self._queue.put(_STOP, timeout=0.1)
                break
            except queue.Full:
                if not self._thread.is_alive():
                    break
        self._thread.join()
        self._thread = None

    def finish(self) -> Path:
        """
        Flush pending frames, finalize the file and move it into place.

        Returns:
            Path of the finished video

        Raises:
            EncoderWriteError: If any write or finalization failed (no file left)
            EmptySessionError: If no frames were encoded (no file left)
        """
        with self._state_lock:
            if self._state != EncoderState.RUNNING:
                raise EncoderWriteError(f"Cannot finish encoder in state {self._state.name}")

            self._stop_thread()

            if self._error is not None:
                self._fail()
                raise EncoderWriteError(f"Encoder write failed: {self._error}") from self._error

            if self._frames_written == 0:
                self._fail()
                raise EmptySessionError("No frames were encoded")

            try:
                self._writer.close()
                os.replace(self._temp_path, self.output_path)
            except Exception as e:
                self._fail()
                raise EncoderWriteError(f"Failed to finalize video: {e}") from e

            self._state = EncoderState.FINISHED

        size_mb = self.output_path.stat().st_size / (1024 * 1024)
        logger.info(
            f"Video encoded: {self.output_path} ({self._frames_written} frames, {size_mb:.1f}MB)"
        )
        return self.output_path

    def abort(self) -> None:
        """
        Stop encoding and discard all output.

        Safe to call while a submit or write is in flight: the writer is
        killed first, then the thread is joined before the temp file is removed.
        """
        self._aborting.set()
        with self._state_lock:
            if self._state in (EncoderState.FINISHED, EncoderState.ABORTED):
                return
            if self._writer is not None:
                try:
                    self._writer.kill()
                except Exception as e:
                    logger.debug(f"Writer kill failed during abort: {e}")
            self._drain_queue()
            self._stop_thread()
            self._remove_temp()
            self._state = EncoderState.ABORTED
        logger.info(f"VideoEncoder aborted, discarded output for {self.output_path}")

    def _fail(self) -> None:
        if self._writer is not None:
            try:
                self._writer.kill()
            except Exception as e:
                logger.debug(f"Writer kill failed: {e}")
        self._remove_temp()
        self._state = EncoderState.FAILED

    def _drain_queue(self) -> None:
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return

    def _remove_temp(self) -> None:
        if self._temp_path is not None and self._temp_path.exists():
            try:
                self._temp_path.unlink()
            except OSError as e:
                logger.error(f"Failed to remove partial video {self._temp_path}: {e}")

    def get_status(self) -> dict:
        return {
            "state": self._state.name,
            "output_path": str(self.output_path),
            "size": [self.width, self.height],
            "fps": self.fps,
            "frames_submitted": self._frames_submitted,
            "frames_written": self._frames_written,
            "queue_depth": self._queue.qsize(),
        }
