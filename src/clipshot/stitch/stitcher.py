"""
Stitch Engine - Merge scroll-capture frames into one tall image

Frames come from the same fixed screen region while the content behind it
scrolls down. For each consecutive pair the engine finds how many rows the
content moved up (the scroll offset) and appends only the newly revealed
strip of the next frame:

- offset 0          -> no movement, frame is a duplicate and is skipped
- offset found      -> copy next[height - offset:] below the composite
- no offset matches -> discontinuity, stop and keep what was stitched so far

Overlap detection compares a band of rows from the bottom of the previous
frame against the next frame at increasing offsets, then verifies the
candidate over the whole overlapping region.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np

from ..capture.frame import Frame
from ..config import StitchConfig, stitch_config
from ..errors import EmptySessionError, StitchError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StitchResult:
    """Composite produced from one scroll-capture session."""

    composite: np.ndarray  # RGBA (total_height, width, 4)
    source_frame_count: int
    total_height: int
    offsets: tuple[int, ...] = field(default_factory=tuple)
    contributing_frames: int = 1
    discontinuity_at: int | None = None

    @property
    def width(self) -> int:
        return self.composite.shape[1]

    @property
    def truncated(self) -> bool:
        """True when stitching stopped early at a discontinuity."""
        return self.discontinuity_at is not None

    def to_dict(self) -> dict:
        return {
            "source_frame_count": self.source_frame_count,
            "contributing_frames": self.contributing_frames,
            "total_height": self.total_height,
            "width": self.width,
            "offsets": list(self.offsets),
            "discontinuity_at": self.discontinuity_at,
        }


def _column_slice(width: int, config: StitchConfig) -> slice:
    margin = int(width * config.margin_fraction)
    if width - 2 * margin <= 0:
        margin = 0
    return slice(margin, width - margin, config.column_step)


def _mean_abs_diff(a: np.ndarray, b: np.ndarray) -> float:
    if a.size == 0:
        return float("inf")
    return float(np.abs(a - b).mean())


def find_scroll_offset(
    prev: np.ndarray,
    next_: np.ndarray,
    config: StitchConfig | None = None,
) -> int | None:
    """
    Find how many rows the content moved up between two frames.

    Args:
        prev: Previous frame pixels (H, W, C), RGB or RGBA
        next_: Next frame pixels, same shape as prev
        config: Stitch tuning (defaults to global stitch_config)

    Returns:
        Smallest offset whose band and full-overlap scores fall below the
        configured thresholds, 0 for an unmoved frame, or None when no
        offset in the search range matches.
    """
    config = config or stitch_config

    if prev.shape != next_.shape:
        raise StitchError(f"Frame shapes differ: {prev.shape} vs {next_.shape}")

    height, width = prev.shape[:2]
    cols = _column_slice(width, config)

    # Compare colour channels only; alpha is constant for screen captures
    a = prev[:, cols, :3].astype(np.int16)
    b = next_[:, cols, :3].astype(np.int16)

    band = min(config.band_rows, height)
    reference = a[height - band:]
    max_offset = height - band

    for offset in range(max_offset + 1):
        candidate = b[height - band - offset:height - offset]
        if _mean_abs_diff(reference, candidate) >= config.similarity_threshold:
            continue

        # Band matched: confirm over the entire overlapping region
        overlap_score = _mean_abs_diff(a[offset:], b[:height - offset])
        if overlap_score < config.verify_threshold:
            return offset

        logger.debug(
            f"Band matched at offset {offset} but overlap verify failed "
            f"(score={overlap_score:.2f})"
        )

    return None


def stitch_frames(
    frames: Sequence[Frame],
    config: StitchConfig | None = None,
) -> StitchResult:
    """
    Stitch an ordered scroll-capture sequence into one composite.

    Args:
        frames: Frames from one session, in capture order
        config: Stitch tuning (defaults to global stitch_config)

    Returns:
        StitchResult with the composite image

    Raises:
        EmptySessionError: If no frames were given
        StitchError: If frame sizes are not uniform
    """
    if not frames:
        raise EmptySessionError("Cannot stitch an empty frame sequence")

    config = config or stitch_config
    first = frames[0]

    for frame in frames[1:]:
        if frame.width != first.width or frame.height != first.height:
            raise StitchError(
                f"Frame {frame.index} is {frame.width}x{frame.height}, "
                f"expected {first.width}x{first.height} (region must stay fixed)"
            )

    if len(frames) == 1:
        composite = first.pixels.copy()
        composite.setflags(write=False)
        return StitchResult(
            composite=composite,
            source_frame_count=1,
            total_height=first.height,
        )

    start = time.monotonic()
    strips: list[np.ndarray] = [first.pixels]
    offsets: list[int] = []
    discontinuity_at: int | None = None
    prev = first

    for position, frame in enumerate(frames[1:], start=1):
        offset = find_scroll_offset(prev.pixels, frame.pixels, config)

        if offset is None:
            discontinuity_at = position
            logger.warning(
                f"Stitch discontinuity at frame {position} (index={frame.index}): "
                f"no overlap found, keeping {len(strips)} of {len(frames)} frames"
            )
            break

        offsets.append(offset)

        if offset == 0:
            logger.debug(f"Frame {position} shows no scroll movement, skipped")
            continue

        strips.append(frame.pixels[frame.height - offset:])
        prev = frame

    composite = np.concatenate(strips, axis=0)
    composite.setflags(write=False)

    logger.info(
        f"Stitched {len(strips)}/{len(frames)} frames -> "
        f"{composite.shape[1]}x{composite.shape[0]} "
        f"(offsets={offsets}, {time.monotonic() - start:.3f}s)"
    )

    return StitchResult(
        composite=composite,
        source_frame_count=len(frames),
        total_height=composite.shape[0],
        offsets=tuple(offsets),
        contributing_frames=len(strips),
        discontinuity_at=discontinuity_at,
    )
