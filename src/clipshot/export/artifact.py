"""
Capture artifacts and export jobs.

An artifact is the immutable result of a capture session: a still image
(screenshot or stitched scroll capture) or a recorded video. Video frames
are streamed on demand rather than held in memory.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterator, Sequence

import numpy as np

from ..capture.frame import Frame, Rect

if TYPE_CHECKING:
    from ..annotation.model import TimedAnnotation

OUTPUT_FPS = 30


@dataclass(frozen=True)
class ImageArtifact:
    """Still image artifact, RGBA pixels."""

    pixels: np.ndarray
    source_path: Path | None = None

    def __post_init__(self):
        pixels = np.array(self.pixels, dtype=np.uint8)
        if pixels.ndim != 3 or pixels.shape[2] not in (3, 4):
            raise ValueError(f"Expected (H, W, 3|4) image, got shape {pixels.shape}")
        if pixels.shape[2] == 3:
            alpha = np.full(pixels.shape[:2] + (1,), 255, dtype=np.uint8)
            pixels = np.concatenate([pixels, alpha], axis=2)
        pixels.setflags(write=False)
        object.__setattr__(self, "pixels", pixels)

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def duration(self) -> float:
        return 0.0

    @property
    def default_extension(self) -> str:
        return ".png"

    @classmethod
    def from_file(cls, path: str | Path) -> "ImageArtifact":
        from PIL import Image

        with Image.open(path) as img:
            return cls(np.array(img.convert("RGBA")), source_path=Path(path))


class VideoArtifact:
    """
    Recorded video artifact.

    Frames come from a provider callable that returns a fresh iterator on
    every call, so the video can be read more than once.
    """

    def __init__(
        self,
        width: int,
        height: int,
        fps: float,
        frame_count: int,
        frame_provider: Callable[[], Iterator[np.ndarray]],
        source_path: Path | None = None,
    ):
        if width <= 0 or height <= 0:
            raise ValueError(f"Invalid video size {width}x{height}")
        if fps <= 0:
            raise ValueError(f"fps must be > 0, got {fps}")
        self.width = width
        self.height = height
        self.fps = fps
        self.frame_count = frame_count
        self.source_path = Path(source_path) if source_path is not None else None
        self._frame_provider = frame_provider

    @property
    def duration(self) -> float:
        """Duration in seconds (frame_count / fps)."""
        return self.frame_count / self.fps

    @property
    def default_extension(self) -> str:
        return ".mp4"

    def iter_frames(self) -> Iterator[np.ndarray]:
        return self._frame_provider()

    @classmethod
    def from_frames(
        cls, frames: Sequence[np.ndarray | Frame], fps: float = OUTPUT_FPS
    ) -> "VideoArtifact":
        """Build an in-memory video from a list of frames (all the same size)."""
        pixels = [f.pixels if isinstance(f, Frame) else f for f in frames]
        if not pixels:
            raise ValueError("A video needs at least one frame")
        height, width = pixels[0].shape[:2]
        for p in pixels:
            if p.shape[:2] != (height, width):
                raise ValueError(f"Frame size {p.shape[:2]} differs from {(height, width)}")
        return cls(width, height, fps, len(pixels), lambda: iter(pixels))

    @classmethod
    def from_file(
        cls,
        path: str | Path,
        fps: float | None = None,
        frame_count: int | None = None,
        size: tuple[int, int] | None = None,
    ) -> "VideoArtifact":
        """
        Open a video file, probing any properties not supplied.

        Args:
            path: Video file path
            fps, frame_count, size: Known stream properties (skips probing
                when all are given). `size` is the content size; decoded
                frames are cropped to it when the encoder padded the stream
        """
        from ..encoding.video_decoder import VideoDecoder

        path = Path(path)
        if fps is None or frame_count is None or size is None:
            decoder = VideoDecoder(path, size)
            fps = fps or decoder.fps
            frame_count = decoder.frame_count if frame_count is None else frame_count
            size = size or (decoder.width, decoder.height)

        width, height = size
        return cls(
            width,
            height,
            fps,
            frame_count,
            lambda: VideoDecoder(path, size).iter_frames(),
            source_path=path,
        )


Artifact = ImageArtifact | VideoArtifact


@dataclass(frozen=True)
class ExportJob:
    """
    Everything needed to produce one output file.

    Attributes:
        source: Artifact to export
        annotations: Snapshot of the annotation timeline
        output_path: Destination file
        crop: Output region in artifact pixels (None for the full artifact)
        time: Timestamp composited for still images
        step_numbers: Step labels by annotation id (derived from
            `annotations` when None)
    """

    source: Artifact
    output_path: Path
    annotations: tuple["TimedAnnotation", ...] = ()
    crop: Rect | None = None
    time: float = 0.0
    step_numbers: dict[int, int] | None = field(default=None, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "output_path", Path(self.output_path))
        object.__setattr__(self, "annotations", tuple(self.annotations))

    @property
    def is_video(self) -> bool:
        return isinstance(self.source, VideoArtifact)
