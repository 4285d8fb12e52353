"""
Editor State

Holds one captured artifact together with its annotation timeline, the
playhead and the current selection. The editor is the single owner of the
timeline; export works from an immutable snapshot taken by export_job().
"""

import logging
from pathlib import Path

import numpy as np

from ..capture.frame import Rect
from ..errors import AnnotationNotFoundError
from ..export.artifact import Artifact, ExportJob, VideoArtifact
from ..export.renderer import render_annotations
from .model import AnnotationKind, Geometry, Style, TimedAnnotation
from .timeline import AnnotationTimeline

logger = logging.getLogger(__name__)


class EditorState:
    """Annotation editing session for a single artifact."""

    def __init__(self, artifact: Artifact, timeline: AnnotationTimeline | None = None):
        self.artifact = artifact
        self.timeline = timeline or AnnotationTimeline()
        self.playhead = 0.0
        self.selected_annotation: int | None = None

    @property
    def duration(self) -> float:
        return self.artifact.duration

    def seek(self, t: float) -> float:
        """Move the playhead, clamped to [0, duration]."""
        self.playhead = min(max(0.0, t), self.duration)
        return self.playhead

    def add_annotation(
        self,
        kind: AnnotationKind,
        geometry: Geometry,
        style: Style | None = None,
        start_time: float | None = None,
        end_time: float | None = None,
    ) -> TimedAnnotation:
        """Add an annotation starting at the playhead (unless given) and select it."""
        start = self.playhead if start_time is None else start_time
        annotation = self.timeline.add(kind, geometry, style, start, end_time)
        self.selected_annotation = annotation.id
        return annotation

    # ==================== Selection ====================

    def select(self, annotation_id: int | None) -> None:
        if annotation_id is not None:
            self.timeline.get(annotation_id)
        self.selected_annotation = annotation_id

    def select_at(self, point: tuple[float, float]) -> TimedAnnotation | None:
        """Select the topmost annotation visible at the playhead under a point."""
        hit = self.timeline.hit_test(point, self.playhead)
        self.selected_annotation = hit.id if hit else None
        return hit

    def _require_selection(self) -> int:
        if self.selected_annotation is None:
            raise AnnotationNotFoundError("No annotation selected")
        return self.selected_annotation

    def move_selected(self, delta: tuple[float, float]) -> TimedAnnotation:
        return self.timeline.move(self._require_selection(), delta)

    def resize_selected(self, delta: tuple[float, float]) -> TimedAnnotation:
        return self.timeline.resize(self._require_selection(), delta)

    def delete_selected(self) -> TimedAnnotation:
        removed = self.timeline.delete(self._require_selection())
        self.selected_annotation = None
        return removed

    # ==================== History ====================

    def _drop_stale_selection(self) -> None:
        if self.selected_annotation is not None and not any(
            a.id == self.selected_annotation for a in self.timeline
        ):
            self.selected_annotation = None

    def undo(self) -> bool:
        changed = self.timeline.undo()
        self._drop_stale_selection()
        return changed

    def redo(self) -> bool:
        changed = self.timeline.redo()
        self._drop_stale_selection()
        return changed

    # ==================== Preview & export ====================

    def active_annotations(self) -> list[TimedAnnotation]:
        return self.timeline.active_at(self.playhead)

    def resolve_crop(self) -> Rect | None:
        """
        Crop region for export.

        The most recently created crop annotation active at the playhead
        wins; crop annotations outside their window are ignored.
        """
        crops = [a for a in self.active_annotations() if a.kind == AnnotationKind.CROP]
        if not crops:
            return None
        left, top, right, bottom = crops[-1].geometry.normalized_box()
        if right - left < 1 or bottom - top < 1:
            return None
        return Rect.normalized(left, top, right, bottom)

    def preview(self, frame: np.ndarray | None = None) -> np.ndarray:
        """
        Render the frame at the playhead with its active annotations.

        Args:
            frame: Pixels to draw on; required for video artifacts, whose
                frames the caller already has on screen
        """
        if frame is None:
            if isinstance(self.artifact, VideoArtifact):
                raise ValueError("Video preview needs the frame at the playhead")
            frame = self.artifact.pixels
        return render_annotations(frame, self.active_annotations(), self.timeline.step_numbers())

    def export_job(self, output_path: str | Path, use_crop: bool = True) -> ExportJob:
        """Freeze the current annotations into an export job."""
        snapshot = self.timeline.snapshot()
        job = ExportJob(
            source=self.artifact,
            output_path=Path(output_path),
            annotations=snapshot,
            crop=self.resolve_crop() if use_crop else None,
            time=self.playhead,
            step_numbers=self.timeline.step_numbers(),
        )
        logger.debug(
            f"Export job: {len(snapshot)} annotations, crop={job.crop}, t={job.time:.2f}s"
        )
        return job

    def finish(self) -> None:
        """Close the editing session; history is discarded."""
        self.timeline.clear_history()
        self.selected_annotation = None
