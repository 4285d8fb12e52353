"""
Video Decoder

Reads frames back out of a recorded MP4 so it can be re-exported with
annotations. Stream properties come from ffprobe; frames are streamed from
an ffmpeg subprocess as raw RGBA, one frame at a time.
"""

import json
import logging
import shutil
import subprocess
from fractions import Fraction
from pathlib import Path
from typing import Iterator

import numpy as np

from ..errors import EncoderInitError

logger = logging.getLogger(__name__)

FFPROBE_AVAILABLE = shutil.which("ffprobe") is not None


def _parse_rate(rate: str | None) -> float:
    if not rate or rate == "0/0":
        return 0.0
    return float(Fraction(rate))


class VideoDecoder:
    """Sequential RGBA frame reader for a video file."""

    PROBE_TIMEOUT = 30  # seconds

    def __init__(self, path: str | Path, size: tuple[int, int] | None = None):
        """
        Probe the video file.

        Args:
            path: Path to an existing video file
            size: Content (width, height) when the stream was padded to even
                dimensions on encode; frames are cropped back to it

        Raises:
            EncoderInitError: If ffprobe is missing, the file has no video
                stream, or `size` is larger than the stream
        """
        self.path = Path(path)
        if not self.path.exists():
            raise EncoderInitError(f"Video file not found: {self.path}")
        if not FFPROBE_AVAILABLE:
            raise EncoderInitError("ffprobe not found on PATH")

        cmd = [
            "ffprobe",
            "-v", "error",
            "-select_streams", "v:0",
            "-count_packets",
            "-show_entries", "stream=width,height,avg_frame_rate,r_frame_rate,nb_read_packets",
            "-of", "json",
            str(self.path),
        ]
        try:
            result = subprocess.run(
                cmd, capture_output=True, check=True, timeout=self.PROBE_TIMEOUT
            )
            streams = json.loads(result.stdout).get("streams", [])
        except (subprocess.SubprocessError, json.JSONDecodeError) as e:
            raise EncoderInitError(f"Failed to probe {self.path}: {e}") from e

        if not streams:
            raise EncoderInitError(f"No video stream in {self.path}")

        stream = streams[0]
        self.stream_width = int(stream["width"])
        self.stream_height = int(stream["height"])
        self.width, self.height = size or (self.stream_width, self.stream_height)
        self.fps = _parse_rate(stream.get("avg_frame_rate")) or _parse_rate(
            stream.get("r_frame_rate")
        )
        self.frame_count = int(stream.get("nb_read_packets") or 0)

        if self.width <= 0 or self.height <= 0 or self.fps <= 0:
            raise EncoderInitError(
                f"Invalid video properties: {self.width}x{self.height} @ {self.fps}fps"
            )
        if self.width > self.stream_width or self.height > self.stream_height:
            raise EncoderInitError(
                f"Content size {self.width}x{self.height} exceeds stream size "
                f"{self.stream_width}x{self.stream_height}"
            )

        logger.debug(
            f"Probed {self.path}: {self.stream_width}x{self.stream_height} @ {self.fps:.2f}fps, "
            f"{self.frame_count} frames"
        )

    @property
    def duration(self) -> float:
        return self.frame_count / self.fps

    def iter_frames(self) -> Iterator[np.ndarray]:
        """Yield frames in presentation order as (height, width, 4) RGBA arrays."""
        cmd = [
            "ffmpeg",
            "-hide_banner",
            "-loglevel", "error",
            "-i", str(self.path),
        ]
        if (self.width, self.height) != (self.stream_width, self.stream_height):
            cmd += ["-vf", f"crop={self.width}:{self.height}:0:0"]
        cmd += [
            "-f", "rawvideo",
            "-pix_fmt", "rgba",
            "pipe:1",
        ]
        frame_size = self.width * self.height * 4
        proc = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.DEVNULL)
        try:
            while True:
                raw = proc.stdout.read(frame_size)
                if len(raw) < frame_size:
                    break
                yield np.frombuffer(raw, dtype=np.uint8).reshape(self.height, self.width, 4)
        finally:
            proc.stdout.close()
            if proc.poll() is None:
                proc.kill()
            proc.wait()
