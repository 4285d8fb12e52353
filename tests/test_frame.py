"""
Tests for Rect and Frame.
"""

import numpy as np
import pytest

from clipshot.capture.frame import Frame, Rect

from conftest import solid_frame


class TestRect:
    """Tests for Rect geometry."""

    def test_rejects_empty_size(self):
        with pytest.raises(ValueError):
            Rect(0, 0, 0, 10)

    def test_normalized_from_any_drag_direction(self):
        """Corners may come in any order."""
        assert Rect.normalized(50, 40, 10, 20) == Rect(10, 20, 40, 20)

    def test_intersection(self):
        a = Rect(0, 0, 100, 100)
        assert a.intersection(Rect(50, 60, 100, 100)) == Rect(50, 60, 50, 40)
        assert a.intersection(Rect(100, 0, 10, 10)) is None

    def test_edges(self):
        r = Rect(10, 20, 30, 40)
        assert (r.right, r.bottom, r.area) == (40, 60, 1200)
        assert r.contains_point(40, 60)
        assert not r.contains_point(41, 20)


class TestFrame:
    """Tests for Frame construction and cropping."""

    def test_rgb_input_gains_alpha(self):
        """RGB buffers are stored as opaque RGBA."""
        rgb = np.zeros((4, 6, 3), dtype=np.uint8)
        frame = Frame(rgb, Rect(0, 0, 6, 4))

        assert frame.pixels.shape == (4, 6, 4)
        assert (frame.pixels[:, :, 3] == 255).all()

    def test_pixels_are_read_only(self):
        """Frames do not share writable memory with the caller."""
        pixels = solid_frame(4, 4, 9)
        frame = Frame(pixels, Rect(0, 0, 4, 4))

        pixels[0, 0] = 0
        assert frame.pixels[0, 0, 0] == 9
        with pytest.raises(ValueError):
            frame.pixels[0, 0, 0] = 1

    def test_crop_in_global_coordinates(self):
        """Crops are expressed in screen coordinates, offset by the frame region."""
        pixels = np.zeros((100, 200, 4), dtype=np.uint8)
        pixels[30:40, 60:80] = 255
        frame = Frame(pixels, Rect(100, 100, 200, 100), index=3)

        cropped = frame.crop(Rect(160, 130, 20, 10))

        assert (cropped.width, cropped.height) == (20, 10)
        assert (cropped.pixels == 255).all()
        assert cropped.index == 3

    def test_crop_on_hidpi_buffer(self):
        """A 2x buffer yields twice the pixels per point."""
        frame = Frame(solid_frame(400, 200, 1), Rect(0, 0, 200, 100))

        assert frame.scale == 2.0
        cropped = frame.crop(Rect(10, 10, 50, 25), index=7)
        assert (cropped.width, cropped.height) == (100, 50)
        assert cropped.index == 7

    def test_crop_is_clipped_to_frame(self):
        frame = Frame(solid_frame(100, 100, 1), Rect(0, 0, 100, 100))
        assert frame.crop(Rect(90, 90, 50, 50)).region == Rect(90, 90, 10, 10)

    def test_crop_outside_frame_rejected(self):
        frame = Frame(solid_frame(100, 100, 1), Rect(0, 0, 100, 100))
        with pytest.raises(ValueError):
            frame.crop(Rect(200, 200, 10, 10))
