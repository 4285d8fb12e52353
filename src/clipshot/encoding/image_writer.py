"""
All-or-nothing PNG output.
"""

import logging
import os
import tempfile
from io import BytesIO
from pathlib import Path

import numpy as np
from PIL import Image

from ..errors import EncoderWriteError

logger = logging.getLogger(__name__)


def encode_png(pixels: np.ndarray) -> bytes:
    """Encode an RGBA or RGB array as PNG bytes."""
    img = Image.fromarray(np.ascontiguousarray(pixels, dtype=np.uint8))
    buf = BytesIO()
    img.save(buf, "PNG")
    return buf.getvalue()


def save_png(pixels: np.ndarray, output_path: str | Path) -> Path:
    """
    Write an image as PNG, atomically.

    The image is written to a temp file in the destination directory and
    renamed over the target only once fully written.

    Args:
        pixels: RGBA (H, W, 4) or RGB (H, W, 3) uint8 array
        output_path: Destination .png path

    Returns:
        The output path

    Raises:
        EncoderWriteError: If encoding or writing fails (no file is left behind)
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        data = encode_png(pixels)
    except (ValueError, TypeError, OSError) as e:
        raise EncoderWriteError(f"Failed to encode PNG: {e}") from e

    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{output_path.name}.", suffix=".part", dir=output_path.parent
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_name, output_path)
    except OSError as e:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise EncoderWriteError(f"Failed to write {output_path}: {e}") from e

    logger.info(f"Image saved: {output_path} ({pixels.shape[1]}x{pixels.shape[0]})")
    return output_path
