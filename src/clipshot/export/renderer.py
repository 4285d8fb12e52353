"""
Annotation Renderer

Draws timed annotations onto RGBA frames with PIL. One drawing routine per
annotation kind, looked up in a dispatch table; the live editor preview and
the export compositor both go through render_annotations().

Semi-transparent strokes are drawn on a separate layer and alpha-composited,
so an annotation's color alpha blends with the pixels underneath.
"""

import logging
import math
from functools import lru_cache
from typing import Callable, Sequence

import numpy as np
from PIL import Image, ImageDraw, ImageFont

from ..annotation.model import AnnotationKind, TimedAnnotation
from ..annotation.timeline import step_numbers as number_steps
from ..config import AnnotationConfig, annotation_config

logger = logging.getLogger(__name__)

ARROW_HEAD_LENGTH = 12.0
ARROW_HEAD_ANGLE = 0.4  # radians either side of the shaft
STEP_TEXT_COLOR = (255, 255, 255, 255)


@lru_cache(maxsize=32)
def _get_font(path: str, size: int) -> "ImageFont.FreeTypeFont | ImageFont.ImageFont":
    """Get font for text rendering, with caching and fallback."""
    try:
        return ImageFont.truetype(path, size)
    except (OSError, IOError):
        logger.debug(f"{path} not found, using PIL default font")
        return ImageFont.load_default()


class _Canvas:
    """Per-frame drawing context handed to each kind's routine."""

    def __init__(self, image: Image.Image, config: AnnotationConfig, numbers: dict[int, int]):
        self.image = image
        self.config = config
        self.numbers = numbers

    def overlay(self, draw_fn: Callable[[ImageDraw.ImageDraw], None]) -> None:
        layer = Image.new("RGBA", self.image.size, (0, 0, 0, 0))
        draw_fn(ImageDraw.Draw(layer))
        self.image.alpha_composite(layer)

    def font(self, size: float) -> "ImageFont.FreeTypeFont | ImageFont.ImageFont":
        return _get_font(self.config.font_path, max(1, int(round(size))))


def _box(annotation: TimedAnnotation) -> list[float]:
    left, top, right, bottom = annotation.geometry.normalized_box()
    return [left, top, right, bottom]


def _width(annotation: TimedAnnotation) -> int:
    return max(1, int(round(annotation.style.stroke_width)))


def _draw_arrow(canvas: _Canvas, annotation: TimedAnnotation) -> None:
    (x0, y0), (x1, y1) = annotation.geometry.points[:2]
    color = annotation.style.color
    length = math.hypot(x1 - x0, y1 - y0)
    if length == 0:
        return

    head = min(ARROW_HEAD_LENGTH + annotation.style.stroke_width, length * 0.3)
    angle = math.atan2(y1 - y0, x1 - x0)
    left = (
        x1 - head * math.cos(angle - ARROW_HEAD_ANGLE),
        y1 - head * math.sin(angle - ARROW_HEAD_ANGLE),
    )
    right = (
        x1 - head * math.cos(angle + ARROW_HEAD_ANGLE),
        y1 - head * math.sin(angle + ARROW_HEAD_ANGLE),
    )

    def draw(d: ImageDraw.ImageDraw) -> None:
        d.line([(x0, y0), (x1, y1)], fill=color, width=_width(annotation))
        d.polygon([(x1, y1), left, right], fill=color)

    canvas.overlay(draw)


def _draw_rectangle(canvas: _Canvas, annotation: TimedAnnotation) -> None:
    canvas.overlay(
        lambda d: d.rectangle(
            _box(annotation), outline=annotation.style.color, width=_width(annotation)
        )
    )


def _draw_ellipse(canvas: _Canvas, annotation: TimedAnnotation) -> None:
    canvas.overlay(
        lambda d: d.ellipse(
            _box(annotation), outline=annotation.style.color, width=_width(annotation)
        )
    )


def _draw_pencil(canvas: _Canvas, annotation: TimedAnnotation) -> None:
    points = list(annotation.geometry.points)
    color = annotation.style.color
    width = _width(annotation)

    def draw(d: ImageDraw.ImageDraw) -> None:
        if len(points) == 1:
            x, y = points[0]
            r = width / 2
            d.ellipse([x - r, y - r, x + r, y + r], fill=color)
        else:
            d.line(points, fill=color, width=width, joint="curve")

    canvas.overlay(draw)


def _draw_highlight(canvas: _Canvas, annotation: TimedAnnotation) -> None:
    r, g, b, _ = annotation.style.color
    alpha = int(round(255 * canvas.config.highlight_opacity))
    canvas.overlay(lambda d: d.rectangle(_box(annotation), fill=(r, g, b, alpha)))


def _draw_text(canvas: _Canvas, annotation: TimedAnnotation) -> None:
    g = annotation.geometry
    if not g.text:
        return
    font = canvas.font(g.font_size)
    canvas.overlay(
        lambda d: d.multiline_text(g.points[0], g.text, fill=annotation.style.color, font=font)
    )


def _draw_step(canvas: _Canvas, annotation: TimedAnnotation) -> None:
    g = annotation.geometry
    x, y = g.points[0]
    r = g.radius
    label = str(canvas.numbers.get(annotation.id, "?"))
    font = canvas.font(r * 1.2)

    def draw(d: ImageDraw.ImageDraw) -> None:
        d.ellipse([x - r, y - r, x + r, y + r], fill=annotation.style.color)
        bx0, by0, bx1, by1 = d.textbbox((0, 0), label, font=font)
        d.text((x - (bx0 + bx1) / 2, y - (by0 + by1) / 2), label, fill=STEP_TEXT_COLOR, font=font)

    canvas.overlay(draw)


def _draw_blur(canvas: _Canvas, annotation: TimedAnnotation) -> None:
    """Pixelate the covered region by downscaling then upscaling with nearest."""
    img_w, img_h = canvas.image.size
    left, top, right, bottom = _box(annotation)
    left, top = max(0, int(math.floor(left))), max(0, int(math.floor(top)))
    right, bottom = min(img_w, int(math.ceil(right))), min(img_h, int(math.ceil(bottom)))
    if right <= left or bottom <= top:
        return

    block = max(1, annotation.geometry.block_size or canvas.config.blur_block_size)
    region = canvas.image.crop((left, top, right, bottom))
    w, h = region.size
    small = region.resize((max(1, w // block), max(1, h // block)), Image.BILINEAR)
    canvas.image.paste(small.resize((w, h), Image.NEAREST), (left, top))


def _draw_nothing(canvas: _Canvas, annotation: TimedAnnotation) -> None:
    # Crop regions are applied by the compositor, never drawn
    pass


_DRAWERS: dict[AnnotationKind, Callable[[_Canvas, TimedAnnotation], None]] = {
    AnnotationKind.ARROW: _draw_arrow,
    AnnotationKind.RECTANGLE: _draw_rectangle,
    AnnotationKind.ELLIPSE: _draw_ellipse,
    AnnotationKind.PENCIL: _draw_pencil,
    AnnotationKind.TEXT: _draw_text,
    AnnotationKind.HIGHLIGHT: _draw_highlight,
    AnnotationKind.STEP: _draw_step,
    AnnotationKind.BLUR: _draw_blur,
    AnnotationKind.CROP: _draw_nothing,
}


def render_annotations(
    frame: np.ndarray,
    annotations: Sequence[TimedAnnotation],
    numbers: dict[int, int] | None = None,
    config: AnnotationConfig | None = None,
) -> np.ndarray:
    """
    Draw annotations onto a frame, in order (later ones on top).

    Args:
        frame: RGBA numpy array (H, W, 4); not modified
        annotations: Annotations to draw, already filtered to the frame's time
        numbers: Step numbers by annotation id; computed from `annotations`
            if omitted (pass the full timeline's numbering for stable labels)
        config: Rendering settings (defaults to global annotation_config)

    Returns:
        New RGBA frame with the annotations drawn
    """
    if not annotations:
        return frame.copy()

    image = Image.fromarray(np.ascontiguousarray(frame, dtype=np.uint8)).convert("RGBA")
    canvas = _Canvas(
        image,
        config or annotation_config,
        numbers if numbers is not None else number_steps(annotations),
    )
    for annotation in annotations:
        _DRAWERS[annotation.kind](canvas, annotation)

    return np.array(image)
