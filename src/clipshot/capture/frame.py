"""
Frame and region data structures for captured screen content.
"""

import time
from dataclasses import dataclass, field

import numpy as np


@dataclass(frozen=True)
class Rect:
    """Rectangle in global screen coordinates (top-left origin)."""

    x: int
    y: int
    width: int
    height: int

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise ValueError(
                f"Rect requires positive size, got {self.width}x{self.height}"
            )

    @classmethod
    def normalized(cls, x0: float, y0: float, x1: float, y1: float) -> "Rect":
        """
        Build a rect from two corners of a drag, in any order.

        Args:
            x0, y0: First corner
            x1, y1: Opposite corner

        Returns:
            Rect with positive width and height
        """
        left, right = sorted((x0, x1))
        top, bottom = sorted((y0, y1))
        return cls(
            x=int(round(left)),
            y=int(round(top)),
            width=int(round(right - left)),
            height=int(round(bottom - top)),
        )

    @property
    def right(self) -> int:
        """Get right edge X coordinate (exclusive)."""
        return self.x + self.width

    @property
    def bottom(self) -> int:
        """Get bottom edge Y coordinate (exclusive)."""
        return self.y + self.height

    @property
    def area(self) -> int:
        return self.width * self.height

    def contains_point(self, px: float, py: float) -> bool:
        return self.x <= px <= self.right and self.y <= py <= self.bottom

    def intersection(self, other: "Rect") -> "Rect | None":
        """Return the overlapping rect, or None when the rects are disjoint."""
        x1 = max(self.x, other.x)
        y1 = max(self.y, other.y)
        x2 = min(self.right, other.right)
        y2 = min(self.bottom, other.bottom)
        if x2 <= x1 or y2 <= y1:
            return None
        return Rect(x=x1, y=y1, width=x2 - x1, height=y2 - y1)

    def to_dict(self) -> dict:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


def _as_rgba(pixels: np.ndarray) -> np.ndarray:
    if pixels.ndim != 3 or pixels.shape[2] not in (3, 4):
        raise ValueError(f"Expected HxWx3 or HxWx4 pixel array, got shape {pixels.shape}")
    if pixels.shape[2] == 3:
        alpha = np.full(pixels.shape[:2] + (1,), 255, dtype=np.uint8)
        pixels = np.concatenate([pixels.astype(np.uint8), alpha], axis=2)
    return np.ascontiguousarray(pixels, dtype=np.uint8)


@dataclass(frozen=True)
class Frame:
    """
    A single captured frame.

    Pixels are an RGBA uint8 array of shape (height, width, 4). The array is
    marked read-only so a frame stays immutable after capture. `region` is the
    screen area the buffer covers; on HiDPI displays the buffer holds more
    pixels than the region has points (see `scale`).
    """

    pixels: np.ndarray
    region: Rect
    index: int = 0
    captured_at: float = field(default_factory=time.monotonic)

    def __post_init__(self):
        rgba = _as_rgba(self.pixels)
        if rgba is self.pixels:
            rgba = rgba.copy()
        rgba.setflags(write=False)
        object.__setattr__(self, "pixels", rgba)

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]

    @property
    def scale(self) -> float:
        """Buffer pixels per screen point."""
        return self.width / self.region.width

    def crop(self, region: Rect, index: int | None = None) -> "Frame":
        """
        Cut a sub-region out of this frame by direct buffer copy (no scaling).

        Args:
            region: Target area in global screen coordinates
            index: Index for the new frame (defaults to this frame's index)

        Returns:
            New Frame covering `region`

        Raises:
            ValueError: If the region does not overlap this frame
        """
        clipped = self.region.intersection(region)
        if clipped is None:
            raise ValueError(f"Crop region {region} lies outside frame region {self.region}")

        s = self.scale
        x0 = int(round((clipped.x - self.region.x) * s))
        y0 = int(round((clipped.y - self.region.y) * s))
        x1 = min(self.width, int(round((clipped.right - self.region.x) * s)))
        y1 = min(self.height, int(round((clipped.bottom - self.region.y) * s)))
        if x1 <= x0 or y1 <= y0:
            raise ValueError(f"Crop region {region} is smaller than one pixel")

        return Frame(
            pixels=self.pixels[y0:y1, x0:x1].copy(),
            region=clipped,
            index=self.index if index is None else index,
            captured_at=self.captured_at,
        )

    def rgb(self) -> np.ndarray:
        """Return an RGB view (alpha dropped)."""
        return self.pixels[:, :, :3]

    def __repr__(self) -> str:
        return (
            f"Frame(index={self.index}, size={self.width}x{self.height}, "
            f"region={self.region})"
        )
