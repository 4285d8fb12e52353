"""
Tests for annotation rendering and export compositing.
"""

import numpy as np
import pytest
from PIL import Image

from clipshot.annotation import AnnotationKind, AnnotationTimeline, Geometry, Style
from clipshot.capture.frame import Rect
from clipshot.errors import EncoderWriteError, InvalidAnnotationError
from clipshot.export import ExportCompositor, ExportJob, ImageArtifact, VideoArtifact, render_annotations
from clipshot.export.compositor import source_frame_index

from conftest import WriterFactory, solid_frame, textured_page

RED = (255, 0, 0, 255)


@pytest.fixture
def compositor(encoder_factory):
    """Compositor encoding through the in-memory writer."""
    return ExportCompositor(encoder_factory=encoder_factory)


@pytest.fixture
def gray_image():
    return ImageArtifact(solid_frame(120, 80, 100))


def numbered_video(count: int, fps: float = 30, width: int = 40, height: int = 20) -> VideoArtifact:
    """Video whose frame i is filled with the value i."""
    return VideoArtifact.from_frames([solid_frame(width, height, i) for i in range(count)], fps=fps)


class TestRenderer:
    """Tests for per-kind drawing."""

    def test_no_annotations_returns_copy(self):
        """An empty annotation list leaves pixels untouched."""
        frame = solid_frame(10, 10, 7)
        out = render_annotations(frame, [])
        np.testing.assert_array_equal(out, frame)
        assert out is not frame

    def test_rectangle_outline(self):
        """Rectangles draw their outline, not their interior."""
        timeline = AnnotationTimeline()
        timeline.add(AnnotationKind.RECTANGLE, Geometry.box(10, 10, 50, 50), Style(2, RED))
        out = render_annotations(solid_frame(60, 60, 0), timeline.active_at(0))

        assert tuple(out[10, 30]) == RED
        assert tuple(out[30, 30]) == (0, 0, 0, 255)

    def test_highlight_is_translucent(self):
        """Highlights blend with the content underneath."""
        timeline = AnnotationTimeline()
        timeline.add(AnnotationKind.HIGHLIGHT, Geometry.box(0, 0, 20, 20), Style(color=(255, 255, 0, 255)))
        out = render_annotations(solid_frame(20, 20, 0), timeline.active_at(0))

        r, g, b, a = out[5, 5]
        assert 60 < r < 120
        assert b == 0
        assert a == 255

    def test_blur_pixelates_region(self):
        """Blur flattens detail inside its box only."""
        frame = textured_page(40, width=40)
        timeline = AnnotationTimeline()
        timeline.add(AnnotationKind.BLUR, Geometry.box(0, 0, 20, 20, block_size=10))
        out = render_annotations(frame, timeline.active_at(0))

        block = out[0:10, 0:10, :3]
        assert (block == block[0, 0]).all()
        np.testing.assert_array_equal(out[30:, 30:], frame[30:, 30:])

    def test_blur_covers_shapes_drawn_before_it(self):
        """A shape underneath a later blur is pixelated with the content."""
        timeline = AnnotationTimeline()
        timeline.add(AnnotationKind.RECTANGLE, Geometry.box(0, 0, 19, 19), Style(2, RED))
        timeline.add(AnnotationKind.BLUR, Geometry.box(0, 0, 20, 20, block_size=10))
        out = render_annotations(textured_page(40, width=40), timeline.active_at(0))

        block = out[0:10, 0:10]
        assert (block == block[0, 0]).all()
        assert tuple(out[0, 5]) != RED

    def test_shapes_after_blur_stay_crisp(self):
        """A shape added after a blur is drawn on top of the pixelated region."""
        timeline = AnnotationTimeline()
        timeline.add(AnnotationKind.BLUR, Geometry.box(0, 0, 20, 20, block_size=10))
        timeline.add(AnnotationKind.RECTANGLE, Geometry.box(0, 0, 19, 19), Style(2, RED))
        out = render_annotations(textured_page(40, width=40), timeline.active_at(0))

        assert tuple(out[0, 5]) == RED
        assert tuple(out[5, 0]) == RED
        assert tuple(out[5, 5]) != RED

    def test_crop_is_never_drawn(self):
        """Crop annotations leave pixels unchanged."""
        frame = solid_frame(30, 30, 50)
        timeline = AnnotationTimeline()
        timeline.add(AnnotationKind.CROP, Geometry.box(5, 5, 20, 20))
        np.testing.assert_array_equal(render_annotations(frame, timeline.active_at(0)), frame)

    def test_every_kind_renders(self):
        """All kinds draw without error."""
        timeline = AnnotationTimeline()
        timeline.add(AnnotationKind.ARROW, Geometry.line((5, 5), (80, 60)))
        timeline.add(AnnotationKind.ELLIPSE, Geometry.box(10, 10, 40, 30))
        timeline.add(AnnotationKind.PENCIL, Geometry.path([(1, 1), (5, 9), (20, 4)]))
        timeline.add(AnnotationKind.TEXT, Geometry.anchor(10, 50, text="Hello", font_size=14))
        timeline.add(AnnotationKind.STEP, Geometry.anchor(60, 20, radius=10))
        out = render_annotations(solid_frame(100, 80, 255), timeline.active_at(0))

        assert out.shape == (80, 100, 4)
        assert not np.array_equal(out, solid_frame(100, 80, 255))


class TestImageExport:
    """Tests for still image export."""

    def test_png_has_annotations_at_export_time(self, compositor, gray_image, tmp_path):
        """Only annotations active at the export time are drawn."""
        timeline = AnnotationTimeline()
        timeline.add(AnnotationKind.RECTANGLE, Geometry.box(0, 0, 119, 79), Style(3, RED), 0.0, 1.0)
        timeline.add(
            AnnotationKind.HIGHLIGHT, Geometry.box(0, 0, 120, 80), Style(color=(0, 0, 255, 255)), 5.0, 6.0
        )
        job = ExportJob(gray_image, tmp_path / "out.png", timeline.snapshot())

        path = compositor.export(job)
        with Image.open(path) as img:
            pixels = np.array(img)

        assert tuple(pixels[0, 50]) == RED
        assert tuple(pixels[40, 60]) == (100, 100, 100, 255)

    def test_crop_applied_after_drawing(self, compositor, gray_image, tmp_path):
        """The crop clips annotations instead of moving them."""
        timeline = AnnotationTimeline()
        timeline.add(AnnotationKind.RECTANGLE, Geometry.box(20, 20, 60, 60), Style(2, RED))
        job = ExportJob(gray_image, tmp_path / "out.png", timeline.snapshot(), crop=Rect(20, 20, 30, 30))

        with Image.open(compositor.export(job)) as img:
            pixels = np.array(img)

        assert pixels.shape == (30, 30, 4)
        assert tuple(pixels[0, 10]) == RED

    def test_crop_outside_artifact_rejected(self, compositor, gray_image, tmp_path):
        """A crop that misses the artifact is an invalid annotation."""
        job = ExportJob(gray_image, tmp_path / "out.png", crop=Rect(500, 500, 10, 10))
        with pytest.raises(InvalidAnnotationError):
            compositor.export(job)
        assert not (tmp_path / "out.png").exists()


class TestVideoExport:
    """Tests for video export resampling and failure handling."""

    def test_frame_count_matches_duration(self, compositor, writer_factory, tmp_path):
        """round(duration * 30) frames are encoded."""
        video = numbered_video(45, fps=30)
        compositor.export(ExportJob(video, tmp_path / "out.mp4"))

        assert len(writer_factory.last.frames) == round(video.duration * 30) == 45

    def test_frame_order_preserved(self, compositor, writer_factory, tmp_path):
        """Output frames follow source order."""
        compositor.export(ExportJob(numbered_video(30), tmp_path / "out.mp4"))
        writer = writer_factory.last
        values = [writer.frame_array(i)[0, 0, 0] for i in range(len(writer.frames))]

        assert values == list(range(30))

    def test_resamples_lower_source_rate(self, compositor, writer_factory, tmp_path):
        """A 10fps source is held for three output frames each."""
        video = numbered_video(10, fps=10)
        compositor.export(ExportJob(video, tmp_path / "out.mp4"))
        writer = writer_factory.last
        values = [writer.frame_array(i)[0, 0, 0] for i in range(len(writer.frames))]

        assert len(values) == 30
        assert values == [i // 3 for i in range(30)]

    def test_annotations_follow_their_window(self, compositor, writer_factory, tmp_path):
        """An annotation appears only in frames inside its window."""
        timeline = AnnotationTimeline()
        timeline.add(AnnotationKind.HIGHLIGHT, Geometry.box(0, 0, 40, 20), Style(color=(255, 0, 0, 255)), 0.5, 0.6)
        compositor.export(ExportJob(numbered_video(30), tmp_path / "out.mp4", timeline.snapshot()))
        writer = writer_factory.last

        highlighted = [i for i in range(30) if writer.frame_array(i)[5, 5, 0] > writer.frame_array(i)[5, 5, 1]]
        assert highlighted == [15, 16, 17, 18]

    def test_video_crop_changes_output_size(self, compositor, writer_factory, tmp_path):
        """Cropped video is encoded at the crop size."""
        compositor.export(ExportJob(numbered_video(5), tmp_path / "out.mp4", crop=Rect(10, 4, 20, 10)))
        writer = writer_factory.last

        assert (writer.width, writer.height) == (20, 10)

    def test_write_failure_leaves_no_file(self, tmp_path):
        """A failing encoder leaves the destination untouched."""
        from clipshot.encoding import VideoEncoder

        factory = WriterFactory(fail_on_write=3)
        compositor = ExportCompositor(
            encoder_factory=lambda p, w, h, fps: VideoEncoder(p, w, h, fps, writer_factory=factory)
        )
        with pytest.raises(EncoderWriteError):
            compositor.export(ExportJob(numbered_video(60), tmp_path / "out.mp4"))

        assert list(tmp_path.iterdir()) == []

    def test_unannotated_recording_is_copied(self, compositor, writer_factory, tmp_path):
        """A recording with no edits is copied instead of re-encoded."""
        source = tmp_path / "recording.mp4"
        source.write_bytes(b"fake mp4")
        video = VideoArtifact(40, 20, 30, 12, lambda: iter([]), source_path=source)

        path = compositor.export(ExportJob(video, tmp_path / "out" / "final.mp4"))

        assert path.read_bytes() == b"fake mp4"
        assert writer_factory.writers == []


def test_source_frame_index_sampling():
    """Output frame i samples floor(i / 30 * fps), clamped to the last frame."""
    assert source_frame_index(0, 30, 10) == 0
    assert source_frame_index(29, 30, 100) == 29
    assert source_frame_index(7, 15, 100) == 3
    assert source_frame_index(500, 30, 10) == 9
