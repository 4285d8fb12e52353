"""
Tests for the annotation model, timeline and editor state.
"""

import numpy as np
import pytest

from clipshot.annotation import (
    AnnotationKind,
    AnnotationSpec,
    AnnotationTimeline,
    Geometry,
    Style,
    TimedAnnotation,
)
from clipshot.annotation.editor import EditorState
from clipshot.capture.frame import Rect
from clipshot.errors import AnnotationNotFoundError, InvalidAnnotationError
from clipshot.export.artifact import ImageArtifact, VideoArtifact

from conftest import solid_frame


@pytest.fixture
def timeline():
    """Empty timeline with a 1 second default window."""
    return AnnotationTimeline(default_duration=1.0)


@pytest.fixture
def box():
    return Geometry.box(10, 10, 60, 40)


class TestTimedAnnotation:
    """Tests for annotation values."""

    def test_end_before_start_rejected(self, box):
        """A window must not end before it starts."""
        with pytest.raises(InvalidAnnotationError):
            TimedAnnotation(1, AnnotationKind.RECTANGLE, box, start_time=2.0, end_time=1.0)

    def test_arrow_needs_two_points(self):
        """An arrow with a single point is malformed."""
        with pytest.raises(InvalidAnnotationError):
            TimedAnnotation(1, AnnotationKind.ARROW, Geometry.anchor(5, 5))

    def test_window_is_inclusive(self, box):
        """Both ends of the window count as active."""
        a = TimedAnnotation(1, AnnotationKind.RECTANGLE, box, start_time=1.0, end_time=2.0)
        assert a.is_active_at(1.0)
        assert a.is_active_at(2.0)
        assert not a.is_active_at(2.0001)

    def test_hit_test_uses_padding(self, box):
        """Points just outside the stroke still select the annotation."""
        a = TimedAnnotation(1, AnnotationKind.HIGHLIGHT, box)
        assert a.hit_test(62, 20)
        assert not a.hit_test(70, 20)

    def test_text_bounding_rect_estimate(self):
        """Text size is estimated from the font size."""
        a = TimedAnnotation(1, AnnotationKind.TEXT, Geometry.anchor(0, 0, text="abcd", font_size=10))
        assert a.bounding_rect() == pytest.approx((0, 0, 24, 12))

    def test_resize_moves_box_corner(self, box):
        """Resizing a box grows it from its second corner."""
        a = TimedAnnotation(1, AnnotationKind.RECTANGLE, box).resized(5, -10)
        assert a.geometry.points == ((10, 10), (65, 30))

    def test_resize_scales_pencil_path(self):
        """Pencil paths scale about their top-left corner."""
        path = Geometry.path([(0, 0), (10, 10), (20, 0)])
        a = TimedAnnotation(1, AnnotationKind.PENCIL, path).resized(20, 10)
        assert a.geometry.points == ((0, 0), (20, 20), (40, 0))

    def test_spec_builds_geometry_and_style(self):
        """The JSON model converts to geometry and style."""
        spec = AnnotationSpec(kind="step", points=[(5, 6)], color=(0, 0, 255, 255), stroke_width=2)
        assert spec.kind == AnnotationKind.STEP
        assert spec.geometry().points == ((5.0, 6.0),)
        assert spec.style() == Style(stroke_width=2, color=(0, 0, 255, 255))


class TestAnnotationTimeline:
    """Tests for timeline mutations, queries and history."""

    def test_default_end_time_is_one_second(self, timeline, box):
        """Annotations without an end time last exactly one second."""
        a = timeline.add(AnnotationKind.RECTANGLE, box, start_time=2.5)
        assert a.end_time == 3.5

    def test_active_at_window(self, timeline, box):
        """An annotation at 2.0s is visible at 2.9s but not at 3.1s."""
        a = timeline.add(AnnotationKind.ARROW, Geometry.line((0, 0), (50, 50)), start_time=2.0)

        assert a in timeline.active_at(2.9)
        assert a not in timeline.active_at(3.1)
        assert a not in timeline.active_at(1.9)

    def test_active_at_keeps_creation_order(self, timeline, box):
        """Overlapping annotations come back in creation order."""
        first = timeline.add(AnnotationKind.RECTANGLE, box, start_time=0.0, end_time=5.0)
        second = timeline.add(AnnotationKind.ELLIPSE, box, start_time=1.0, end_time=2.0)
        third = timeline.add(AnnotationKind.HIGHLIGHT, box, start_time=0.5, end_time=3.0)

        assert timeline.active_at(1.5) == [first, second, third]

    def test_ids_are_never_reused(self, timeline, box):
        """Deleted and undone ids are not handed out again."""
        a = timeline.add(AnnotationKind.RECTANGLE, box)
        b = timeline.add(AnnotationKind.RECTANGLE, box)
        timeline.delete(b.id)
        timeline.undo()
        timeline.undo()
        c = timeline.add(AnnotationKind.RECTANGLE, box)

        assert len({a.id, b.id, c.id}) == 3
        assert c.id > b.id

    def test_move_and_undo_redo(self, timeline, box):
        """Moves are undoable and redoable."""
        a = timeline.add(AnnotationKind.RECTANGLE, box)
        timeline.move(a.id, (5, 5))
        assert timeline.get(a.id).geometry.points[0] == (15, 15)

        assert timeline.undo()
        assert timeline.get(a.id).geometry.points[0] == (10, 10)

        assert timeline.redo()
        assert timeline.get(a.id).geometry.points[0] == (15, 15)

    def test_undo_add_removes_annotation(self, timeline, box):
        """Undoing an add empties the timeline."""
        timeline.add(AnnotationKind.RECTANGLE, box)
        timeline.undo()
        assert len(timeline) == 0
        assert not timeline.undo()

    def test_new_mutation_clears_redo(self, timeline, box):
        """Redo history is dropped after a fresh edit."""
        a = timeline.add(AnnotationKind.RECTANGLE, box)
        timeline.move(a.id, (1, 1))
        timeline.undo()
        timeline.resize(a.id, (10, 10))

        assert not timeline.can_redo
        assert not timeline.redo()

    def test_set_time_range(self, timeline, box):
        """Time ranges can be changed and are validated."""
        a = timeline.add(AnnotationKind.RECTANGLE, box)
        timeline.set_time_range(a.id, 3.0, 4.0)
        assert timeline.get(a.id).start_time == 3.0

        with pytest.raises(InvalidAnnotationError):
            timeline.set_time_range(a.id, 4.0, 3.0)

    def test_unknown_id_raises(self, timeline):
        """Mutating a missing annotation fails."""
        with pytest.raises(AnnotationNotFoundError):
            timeline.delete(42)

    def test_restyle_and_delete(self, timeline, box):
        """Style changes and deletes are tracked like other edits."""
        a = timeline.add(AnnotationKind.RECTANGLE, box)
        timeline.restyle(a.id, Style(stroke_width=8, color=(0, 255, 0, 255)))
        assert timeline.get(a.id).style.stroke_width == 8

        timeline.delete(a.id)
        assert len(timeline) == 0
        timeline.undo()
        assert timeline.get(a.id).style.stroke_width == 8

    def test_step_numbers_count_only_steps(self, timeline, box):
        """Step numbering ignores other kinds and follows creation order."""
        s1 = timeline.add(AnnotationKind.STEP, Geometry.anchor(10, 10))
        timeline.add(AnnotationKind.RECTANGLE, box)
        s2 = timeline.add(AnnotationKind.STEP, Geometry.anchor(50, 50))

        assert timeline.step_numbers() == {s1.id: 1, s2.id: 2}

    def test_hit_test_returns_topmost(self, timeline, box):
        """The most recently created annotation wins overlapping hits."""
        timeline.add(AnnotationKind.RECTANGLE, box)
        top = timeline.add(AnnotationKind.ELLIPSE, box)

        assert timeline.hit_test((30, 20), t=0.5) == top
        assert timeline.hit_test((30, 20), t=5.0) is None

    def test_add_annotation_keeps_unused_id(self, timeline, box):
        """Prebuilt annotations keep fresh ids and get new ones on collision."""
        kept = timeline.add_annotation(TimedAnnotation(10, AnnotationKind.RECTANGLE, box))
        renumbered = timeline.add_annotation(TimedAnnotation(3, AnnotationKind.RECTANGLE, box))

        assert kept.id == 10
        assert renumbered.id == 11

    def test_snapshot_is_immutable(self, timeline, box):
        """Later edits do not affect an earlier snapshot."""
        a = timeline.add(AnnotationKind.RECTANGLE, box)
        snap = timeline.snapshot()
        timeline.move(a.id, (100, 100))

        assert snap[0].geometry.points[0] == (10, 10)


class TestEditorState:
    """Tests for selection, playhead and crop resolution."""

    @pytest.fixture
    def image_editor(self):
        return EditorState(ImageArtifact(solid_frame(200, 100, 40)))

    @pytest.fixture
    def video_editor(self):
        frames = [solid_frame(200, 100, i) for i in range(90)]
        return EditorState(VideoArtifact.from_frames(frames, fps=30))

    def test_new_annotation_starts_at_playhead(self, video_editor, box):
        """Annotations are created at the playhead and selected."""
        video_editor.seek(1.5)
        a = video_editor.add_annotation(AnnotationKind.RECTANGLE, box)

        assert a.start_time == 1.5
        assert a.end_time == 2.5
        assert video_editor.selected_annotation == a.id

    def test_seek_is_clamped(self, video_editor):
        """The playhead stays within the video."""
        assert video_editor.seek(10.0) == pytest.approx(3.0)
        assert video_editor.seek(-1.0) == 0.0

    def test_select_at_and_move(self, image_editor, box):
        """Selecting by point then moving edits the selected annotation."""
        a = image_editor.add_annotation(AnnotationKind.RECTANGLE, box)
        image_editor.select(None)

        assert image_editor.select_at((20, 20)) == a
        moved = image_editor.move_selected((3, 4))
        assert moved.geometry.points[0] == (13, 14)

    def test_edit_without_selection_raises(self, image_editor, box):
        """Selection edits need a selected annotation."""
        image_editor.add_annotation(AnnotationKind.RECTANGLE, box)
        image_editor.select(None)

        with pytest.raises(AnnotationNotFoundError):
            image_editor.move_selected((1, 1))
        with pytest.raises(AnnotationNotFoundError):
            image_editor.delete_selected()

    def test_undo_drops_stale_selection(self, image_editor, box):
        """Undoing the creation of the selected annotation clears the selection."""
        image_editor.add_annotation(AnnotationKind.RECTANGLE, box)
        image_editor.undo()
        assert image_editor.selected_annotation is None

    def test_crop_uses_latest_active_crop(self, video_editor):
        """The newest crop visible at the playhead defines the export crop."""
        video_editor.add_annotation(AnnotationKind.CROP, Geometry.box(0, 0, 100, 50), start_time=0.0, end_time=3.0)
        video_editor.add_annotation(AnnotationKind.CROP, Geometry.box(60, 40, 10, 20), start_time=0.0, end_time=1.0)

        video_editor.seek(0.5)
        assert video_editor.resolve_crop() == Rect(10, 20, 50, 20)

        video_editor.seek(2.0)
        assert video_editor.resolve_crop() == Rect(0, 0, 100, 50)

    def test_no_crop_when_none_active(self, image_editor):
        """Without an active crop the whole artifact is exported."""
        image_editor.add_annotation(AnnotationKind.CROP, Geometry.box(0, 0, 10, 10), start_time=5.0)
        assert image_editor.resolve_crop() is None

    def test_export_job_freezes_annotations(self, image_editor, box, tmp_path):
        """Export jobs hold a snapshot, not the live timeline."""
        a = image_editor.add_annotation(AnnotationKind.RECTANGLE, box)
        job = image_editor.export_job(tmp_path / "out.png")
        image_editor.timeline.delete(a.id)

        assert job.annotations == (a,)
        assert job.time == 0.0

    def test_preview_draws_active_annotations(self, image_editor):
        """The live preview shows what export would draw."""
        image_editor.add_annotation(
            AnnotationKind.HIGHLIGHT, Geometry.box(0, 0, 50, 50), Style(color=(255, 255, 0, 255))
        )
        preview = image_editor.preview()

        assert preview.shape == (100, 200, 4)
        assert not np.array_equal(preview[10, 10], image_editor.artifact.pixels[10, 10])
        np.testing.assert_array_equal(preview[90, 190], image_editor.artifact.pixels[90, 190])
