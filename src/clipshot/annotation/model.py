"""
Annotation data structures.

A TimedAnnotation pairs a drawing (kind + geometry + style) with the time
window in which it is visible. Geometry is stored in artifact pixel
coordinates (top-left origin):

- ARROW                                   points = [start, end]
- RECTANGLE / ELLIPSE / HIGHLIGHT /
  BLUR / CROP                             points = [corner, opposite corner]
- PENCIL                                  points = stroke path
- TEXT / STEP                             points = [anchor]
"""

import math
from dataclasses import dataclass, field, replace
from enum import Enum

from pydantic import BaseModel, Field

from ..errors import InvalidAnnotationError

Point = tuple[float, float]

HIT_TEST_PADDING = 4.0


class AnnotationKind(str, Enum):
    """Closed set of annotation tools."""

    ARROW = "arrow"
    RECTANGLE = "rectangle"
    ELLIPSE = "ellipse"
    PENCIL = "pencil"
    TEXT = "text"
    HIGHLIGHT = "highlight"
    STEP = "step"
    BLUR = "blur"
    CROP = "crop"


BOX_KINDS = frozenset(
    {
        AnnotationKind.RECTANGLE,
        AnnotationKind.ELLIPSE,
        AnnotationKind.HIGHLIGHT,
        AnnotationKind.BLUR,
        AnnotationKind.CROP,
    }
)

_REQUIRED_POINTS = {
    AnnotationKind.ARROW: 2,
    AnnotationKind.PENCIL: 1,
    AnnotationKind.TEXT: 1,
    AnnotationKind.STEP: 1,
    **{kind: 2 for kind in BOX_KINDS},
}


@dataclass(frozen=True)
class Style:
    """Stroke style shared by all annotation kinds."""

    stroke_width: float = 3.0
    color: tuple[int, int, int, int] = (255, 0, 0, 255)  # RGBA

    def __post_init__(self):
        if self.stroke_width <= 0:
            raise InvalidAnnotationError(f"stroke_width must be > 0, got {self.stroke_width}")
        if len(self.color) == 3:
            object.__setattr__(self, "color", tuple(self.color) + (255,))
        if len(self.color) != 4 or any(not 0 <= c <= 255 for c in self.color):
            raise InvalidAnnotationError(f"color must be RGBA 0-255, got {self.color}")


@dataclass(frozen=True)
class Geometry:
    """Kind-specific shape data."""

    points: tuple[Point, ...]
    text: str = ""
    font_size: float = 16.0
    radius: float = 14.0
    block_size: int = 10

    def __post_init__(self):
        object.__setattr__(
            self, "points", tuple((float(x), float(y)) for x, y in self.points)
        )

    @classmethod
    def box(cls, x0: float, y0: float, x1: float, y1: float, **kwargs) -> "Geometry":
        return cls(points=((x0, y0), (x1, y1)), **kwargs)

    @classmethod
    def line(cls, start: Point, end: Point) -> "Geometry":
        return cls(points=(start, end))

    @classmethod
    def path(cls, points: list[Point]) -> "Geometry":
        return cls(points=tuple(points))

    @classmethod
    def anchor(cls, x: float, y: float, **kwargs) -> "Geometry":
        return cls(points=((x, y),), **kwargs)

    def normalized_box(self) -> tuple[float, float, float, float]:
        """(left, top, right, bottom) spanned by the points."""
        xs = [p[0] for p in self.points]
        ys = [p[1] for p in self.points]
        return min(xs), min(ys), max(xs), max(ys)

    def translated(self, dx: float, dy: float) -> "Geometry":
        return replace(self, points=tuple((x + dx, y + dy) for x, y in self.points))


@dataclass(frozen=True)
class TimedAnnotation:
    """An annotation visible during [start_time, end_time] (seconds, inclusive)."""

    id: int
    kind: AnnotationKind
    geometry: Geometry
    style: Style = field(default_factory=Style)
    start_time: float = 0.0
    end_time: float = 1.0

    def __post_init__(self):
        if not isinstance(self.kind, AnnotationKind):
            object.__setattr__(self, "kind", AnnotationKind(self.kind))
        if not (math.isfinite(self.start_time) and math.isfinite(self.end_time)):
            raise InvalidAnnotationError("Annotation times must be finite")
        if self.end_time < self.start_time:
            raise InvalidAnnotationError(
                f"end_time {self.end_time} is before start_time {self.start_time}"
            )
        required = _REQUIRED_POINTS[self.kind]
        if len(self.geometry.points) < required:
            raise InvalidAnnotationError(
                f"{self.kind.value} needs at least {required} point(s), "
                f"got {len(self.geometry.points)}"
            )

    def is_active_at(self, t: float) -> bool:
        return self.start_time <= t <= self.end_time

    def bounding_rect(self) -> tuple[float, float, float, float]:
        """
        Bounding box as (left, top, right, bottom), inflated by the stroke.

        Text size is estimated at 0.6 * font_size per character and
        1.2 * font_size per line.
        """
        g = self.geometry
        if self.kind == AnnotationKind.TEXT:
            x, y = g.points[0]
            lines = g.text.splitlines() or [""]
            width = g.font_size * 0.6 * max(len(line) for line in lines)
            height = g.font_size * 1.2 * len(lines)
            return x, y, x + width, y + height
        if self.kind == AnnotationKind.STEP:
            x, y = g.points[0]
            return x - g.radius, y - g.radius, x + g.radius, y + g.radius

        left, top, right, bottom = g.normalized_box()
        if self.kind in (AnnotationKind.BLUR, AnnotationKind.CROP, AnnotationKind.HIGHLIGHT):
            return left, top, right, bottom
        w = self.style.stroke_width
        return left - w, top - w, right + w, bottom + w

    def hit_test(self, px: float, py: float, padding: float = HIT_TEST_PADDING) -> bool:
        left, top, right, bottom = self.bounding_rect()
        return (left - padding) <= px <= (right + padding) and (top - padding) <= py <= (bottom + padding)

    def moved(self, dx: float, dy: float) -> "TimedAnnotation":
        return replace(self, geometry=self.geometry.translated(dx, dy))

    def resized(self, dw: float, dh: float) -> "TimedAnnotation":
        """
        Return a copy grown by (dw, dh).

        Boxes and arrows move their second point, pencil paths scale about
        their top-left corner, text grows its font and steps their radius.
        """
        g = self.geometry
        if self.kind in BOX_KINDS or self.kind == AnnotationKind.ARROW:
            (x0, y0), (x1, y1) = g.points[0], g.points[1]
            new_geometry = replace(g, points=((x0, y0), (x1 + dw, y1 + dh)) + g.points[2:])
        elif self.kind == AnnotationKind.PENCIL:
            left, top, right, bottom = g.normalized_box()
            sx = (right - left + dw) / (right - left) if right > left else 1.0
            sy = (bottom - top + dh) / (bottom - top) if bottom > top else 1.0
            if sx <= 0 or sy <= 0:
                raise InvalidAnnotationError("Resize would collapse the pencil path")
            new_geometry = replace(
                g,
                points=tuple((left + (x - left) * sx, top + (y - top) * sy) for x, y in g.points),
            )
        elif self.kind == AnnotationKind.TEXT:
            new_geometry = replace(g, font_size=max(1.0, g.font_size + dh))
        else:
            new_geometry = replace(g, radius=max(1.0, g.radius + dh / 2))
        return replace(self, geometry=new_geometry)

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "kind": self.kind.value,
            "points": [list(p) for p in self.geometry.points],
            "text": self.geometry.text,
            "font_size": self.geometry.font_size,
            "radius": self.geometry.radius,
            "block_size": self.geometry.block_size,
            "stroke_width": self.style.stroke_width,
            "color": list(self.style.color),
            "start_time": self.start_time,
            "end_time": self.end_time,
        }


class AnnotationSpec(BaseModel):
    """External (JSON) description of an annotation, before it gets an id."""

    kind: AnnotationKind
    points: list[tuple[float, float]] = Field(min_length=1)
    text: str = ""
    font_size: float = 16.0
    radius: float = 14.0
    block_size: int = Field(default=10, ge=1)
    stroke_width: float = Field(default=3.0, gt=0)
    color: tuple[int, int, int, int] = (255, 0, 0, 255)
    start_time: float = 0.0
    end_time: float | None = None

    def geometry(self) -> Geometry:
        return Geometry(
            points=tuple(self.points),
            text=self.text,
            font_size=self.font_size,
            radius=self.radius,
            block_size=self.block_size,
        )

    def style(self) -> Style:
        return Style(stroke_width=self.stroke_width, color=self.color)
