"""
Export Compositor

Renders an artifact plus an annotation snapshot into an output file:

- Still images: the annotations active at the export time are drawn once,
  the crop (if any) is applied, and the result is written as PNG.
- Videos: output frame i is presented at t = i / 30 and shows the latest
  source frame at or before t with the annotations active at t drawn on
  top. round(duration * 30) frames are encoded.

Crop is applied after drawing, so annotations near the crop edge are
clipped rather than shifted. Output is all-or-nothing: on any failure the
destination is left untouched.
"""

import logging
import math
import os
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Iterator

import numpy as np

from ..annotation.timeline import active_at, step_numbers
from ..capture.frame import Rect
from ..config import AnnotationConfig, annotation_config
from ..encoding.image_writer import save_png
from ..encoding.video_encoder import VideoEncoder
from ..errors import EmptySessionError, EncoderWriteError, InvalidAnnotationError
from .artifact import OUTPUT_FPS, ExportJob, ImageArtifact, VideoArtifact
from .renderer import render_annotations

logger = logging.getLogger(__name__)

EncoderFactory = Callable[[Path, int, int, int], VideoEncoder]


def clip_crop(crop: Rect | None, width: int, height: int) -> tuple[int, int, int, int] | None:
    """
    Clamp a crop rect to the artifact bounds.

    Returns:
        (x0, y0, x1, y1) pixel bounds, or None for no crop

    Raises:
        InvalidAnnotationError: If the crop lies entirely outside the artifact
    """
    if crop is None:
        return None
    clipped = crop.intersection(Rect(0, 0, width, height))
    if clipped is None:
        raise InvalidAnnotationError(f"Crop {crop} lies outside the {width}x{height} artifact")
    return clipped.x, clipped.y, clipped.right, clipped.bottom


def _apply_crop(pixels: np.ndarray, bounds: tuple[int, int, int, int] | None) -> np.ndarray:
    if bounds is None:
        return pixels
    x0, y0, x1, y1 = bounds
    return np.ascontiguousarray(pixels[y0:y1, x0:x1])


def _fit_frame(pixels: np.ndarray, width: int, height: int) -> np.ndarray:
    """Trim even-size encoder padding so a decoded frame matches the artifact size."""
    h, w = pixels.shape[:2]
    if (h, w) == (height, width):
        return pixels
    if h < height or w < width:
        raise EncoderWriteError(
            f"Decoded frame {w}x{h} is smaller than the {width}x{height} video"
        )
    return pixels[:height, :width]


def source_frame_index(output_index: int, source_fps: float, source_frame_count: int) -> int:
    """Index of the latest source frame presented at or before output frame `output_index`."""
    t = output_index / OUTPUT_FPS
    # Small epsilon keeps exact multiples (e.g. 30fps -> 30fps) from rounding down
    index = int(math.floor(t * source_fps + 1e-6))
    return min(max(index, 0), source_frame_count - 1)


class ExportCompositor:
    """Produces PNG/MP4 files from artifacts and annotation snapshots."""

    def __init__(
        self,
        config: AnnotationConfig | None = None,
        encoder_factory: EncoderFactory | None = None,
    ):
        """
        Initialize the compositor.

        Args:
            config: Rendering settings (defaults to global annotation_config)
            encoder_factory: Builds the video encoder for an output path,
                size and fps; VideoEncoder by default
        """
        self.config = config or annotation_config
        self._encoder_factory = encoder_factory or (
            lambda path, width, height, fps: VideoEncoder(path, width, height, fps)
        )

    def render_frame(
        self,
        pixels: np.ndarray,
        job: ExportJob,
        t: float,
        numbers: dict[int, int] | None = None,
    ) -> np.ndarray:
        """Draw the annotations active at `t` onto one frame."""
        active = active_at(job.annotations, t)
        if numbers is None:
            numbers = job.step_numbers or step_numbers(job.annotations)
        return render_annotations(pixels, active, numbers, self.config)

    def export(self, job: ExportJob) -> Path:
        """
        Write the job's output file.

        Returns:
            The output path

        Raises:
            EmptySessionError: If a video has no frames
            EncoderInitError / EncoderWriteError: If encoding or writing fails
            InvalidAnnotationError: If the crop lies outside the artifact
        """
        if isinstance(job.source, VideoArtifact):
            return self._export_video(job)
        return self._export_image(job)

    def render_image(self, job: ExportJob) -> np.ndarray:
        """Composite a still image job in memory (annotations at job.time, then crop)."""
        source: ImageArtifact = job.source
        bounds = clip_crop(job.crop, source.width, source.height)
        rendered = self.render_frame(source.pixels, job, job.time)
        return np.ascontiguousarray(_apply_crop(rendered, bounds))

    def _export_image(self, job: ExportJob) -> Path:
        return save_png(self.render_image(job), job.output_path)

    def _can_copy_video(self, job: ExportJob) -> bool:
        source: VideoArtifact = job.source
        return (
            source.source_path is not None
            and not job.annotations
            and job.crop is None
            and math.isclose(source.fps, OUTPUT_FPS)
        )

    def _export_video(self, job: ExportJob) -> Path:
        source: VideoArtifact = job.source
        total = round(source.duration * OUTPUT_FPS)
        if total == 0 or source.frame_count == 0:
            raise EmptySessionError("Video artifact has no frames")

        if self._can_copy_video(job):
            return _copy_atomic(source.source_path, job.output_path)

        bounds = clip_crop(job.crop, source.width, source.height)
        if bounds is None:
            out_w, out_h = source.width, source.height
        else:
            out_w, out_h = bounds[2] - bounds[0], bounds[3] - bounds[1]

        numbers = job.step_numbers or step_numbers(job.annotations)
        encoder = self._encoder_factory(job.output_path, out_w, out_h, OUTPUT_FPS)
        encoder.start()

        frames: Iterator[np.ndarray] = source.iter_frames()
        try:
            current: np.ndarray | None = None
            current_index = -1
            for i in range(total):
                wanted = source_frame_index(i, source.fps, source.frame_count)
                while current_index < wanted:
                    try:
                        current = _fit_frame(next(frames), source.width, source.height)
                    except StopIteration:
                        if current is None:
                            raise EncoderWriteError("Source video yielded no frames")
                        # Source ran short of its reported count; hold the last frame
                        break
                    current_index += 1

                rendered = self.render_frame(current, job, i / OUTPUT_FPS, numbers)
                encoder.submit(_apply_crop(rendered, bounds), i)

            path = encoder.finish()
        except BaseException:
            encoder.abort()
            raise
        finally:
            close = getattr(frames, "close", None)
            if close is not None:
                close()

        logger.info(
            f"Exported video {path}: {total} frames @ {OUTPUT_FPS}fps, "
            f"{len(job.annotations)} annotations"
        )
        return path


def _copy_atomic(src: Path, dest: Path) -> Path:
    """Copy a file into place via a temp file in the destination directory."""
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", suffix=".part", dir=dest.parent)
    os.close(fd)
    try:
        shutil.copyfile(src, tmp_name)
        os.replace(tmp_name, dest)
    except OSError as e:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise EncoderWriteError(f"Failed to write {dest}: {e}") from e
    logger.info(f"Copied video {src} -> {dest}")
    return dest


def export(job: ExportJob, config: AnnotationConfig | None = None) -> Path:
    """Export with a default compositor."""
    return ExportCompositor(config).export(job)
