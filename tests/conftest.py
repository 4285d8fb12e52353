"""
Pytest configuration and shared fixtures for ClipShot tests.
"""

import sys
import time
from pathlib import Path

import pytest
import numpy as np

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from clipshot.capture.frame import Frame, Rect
from clipshot.config import CaptureConfig, ScrollCaptureConfig, StitchConfig
from clipshot.encoding.video_encoder import VideoEncoder


PAGE_WIDTH = 320


def textured_page(height: int, width: int = PAGE_WIDTH, seed: int = 7) -> np.ndarray:
    """Random-noise RGBA page; every row is distinct so overlaps are unambiguous."""
    rng = np.random.default_rng(seed)
    page = np.empty((height, width, 4), dtype=np.uint8)
    page[:, :, :3] = rng.integers(0, 256, (height, width, 3), dtype=np.uint8)
    page[:, :, 3] = 255
    return page


def solid_frame(width: int, height: int, value: int) -> np.ndarray:
    pixels = np.full((height, width, 4), value, dtype=np.uint8)
    pixels[:, :, 3] = 255
    return pixels


@pytest.fixture
def page():
    """A 2000px tall textured page."""
    return textured_page(2000)


@pytest.fixture
def page_frame(page):
    """Factory: Frame showing `height` rows of the page starting at `top`."""

    def make(top: int, height: int = 800, index: int = 0, source: np.ndarray | None = None) -> Frame:
        src = page if source is None else source
        return Frame(
            pixels=src[top:top + height],
            region=Rect(0, 0, src.shape[1], height),
            index=index,
        )

    return make


@pytest.fixture
def stitch_cfg():
    """Default stitch tuning."""
    return StitchConfig()


@pytest.fixture
def capture_cfg():
    """Capture settings with the default failure tolerance."""
    return CaptureConfig(fps=30, max_consecutive_failures=2)


@pytest.fixture
def scroll_cfg():
    """Scroll capture settings without settle delays."""
    return ScrollCaptureConfig(settle_delay=0.0, max_steps=50)


class FakeFrameSource:
    """
    Synthetic display.

    Each capture fills the frame with the capture number so tests can tell
    frames apart. `errors` scripts per-call failures (None = succeed).
    """

    def __init__(self, width: int = 320, height: int = 240, errors=None, delay: float = 0.0):
        self.display = Rect(0, 0, width, height)
        self.errors = list(errors or [])
        self.delay = delay
        self.calls = 0

    def capture(self, region: Rect | None = None) -> Frame:
        self.calls += 1
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        if self.delay:
            time.sleep(self.delay)
        target = region or self.display
        pixels = solid_frame(target.width, target.height, self.calls % 256)
        return Frame(pixels=pixels, region=target, index=self.calls)


class ScrollingPageSource:
    """A viewport over a tall page; scrolling moves the viewport down."""

    def __init__(self, page: np.ndarray, viewport_height: int = 300, errors=None):
        self.page = page
        self.viewport_height = viewport_height
        self.position = 0
        self.errors = list(errors or [])
        self.scrolls: list[tuple[tuple[int, int], int]] = []

    def capture(self, region: Rect | None = None) -> Frame:
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        h = region.height
        return Frame(
            pixels=self.page[self.position:self.position + h, : region.width],
            region=region,
        )

    def scroll(self, point: tuple[int, int], delta: int) -> None:
        self.scrolls.append((point, delta))
        max_position = self.page.shape[0] - self.viewport_height
        self.position = min(self.position + delta, max_position)


@pytest.fixture
def fake_source():
    """A 320x240 synthetic display."""
    return FakeFrameSource()


class InMemoryWriter:
    """Frame sink standing in for ffmpeg; keeps every frame it receives."""

    def __init__(self, path: Path, width: int, height: int, fps: int, fail_on_write: int | None = None):
        self.path = Path(path)
        self.width = width
        self.height = height
        self.fps = fps
        self.fail_on_write = fail_on_write
        self.frames: list[bytes] = []
        self.closed = False
        self.killed = False
        self._fh = open(self.path, "wb")

    def write(self, frame_bytes: bytes) -> None:
        if self.fail_on_write is not None and len(self.frames) >= self.fail_on_write:
            raise RuntimeError("disk full")
        self.frames.append(frame_bytes)
        self._fh.write(frame_bytes[:4])

    def close(self) -> None:
        self._fh.close()
        self.closed = True

    def kill(self) -> None:
        self._fh.close()
        self.killed = True

    def frame_array(self, i: int) -> np.ndarray:
        return np.frombuffer(self.frames[i], dtype=np.uint8).reshape(self.height, self.width, 4)


class WriterFactory:
    """Builds InMemoryWriters and remembers them."""

    def __init__(self, fail_on_write: int | None = None):
        self.fail_on_write = fail_on_write
        self.writers: list[InMemoryWriter] = []

    def __call__(self, path, width, height, fps) -> InMemoryWriter:
        writer = InMemoryWriter(path, width, height, fps, self.fail_on_write)
        self.writers.append(writer)
        return writer

    @property
    def last(self) -> InMemoryWriter:
        return self.writers[-1]


@pytest.fixture
def writer_factory():
    """In-memory video writer factory."""
    return WriterFactory()


@pytest.fixture
def encoder_factory(writer_factory):
    """VideoEncoder factory wired to the in-memory writer."""

    def make(path, width, height, fps):
        return VideoEncoder(path, width, height, fps, writer_factory=writer_factory)

    return make


class FakeClipboard:
    """Records images copied to the clipboard."""

    def __init__(self):
        self.copies: list[np.ndarray] = []

    def copy_image(self, pixels: np.ndarray) -> None:
        self.copies.append(pixels.copy())


@pytest.fixture
def clipboard():
    """A fake clipboard."""
    return FakeClipboard()


def snapshot_tree(root: Path) -> set[str]:
    """All paths under a directory, relative to it."""
    return {str(p.relative_to(root)) for p in root.rglob("*")}
