"""
Annotation Timeline

Ordered collection of timed annotations owned by the editor. Creation order
is z-order: later annotations are drawn above earlier ones and win hit tests.

Every mutation (add, move, resize, set_time_range, restyle, delete) records
a snapshot of the previous collection so it can be undone. Annotations are
immutable values, so a snapshot is just a tuple of references.
"""

import logging
from dataclasses import replace
from typing import Iterable, Iterator, Sequence

from ..config import annotation_config
from ..errors import AnnotationNotFoundError, InvalidAnnotationError
from .model import AnnotationKind, Geometry, Style, TimedAnnotation

logger = logging.getLogger(__name__)

Snapshot = tuple[TimedAnnotation, ...]


def active_at(annotations: Iterable[TimedAnnotation], t: float) -> list[TimedAnnotation]:
    """Annotations visible at time t, in creation order."""
    return [a for a in annotations if a.is_active_at(t)]


def step_numbers(annotations: Iterable[TimedAnnotation]) -> dict[int, int]:
    """Map each STEP annotation id to its 1-based number in creation order."""
    numbers: dict[int, int] = {}
    for a in annotations:
        if a.kind == AnnotationKind.STEP:
            numbers[a.id] = len(numbers) + 1
    return numbers


class AnnotationTimeline:
    """
    Editable annotation collection with undo/redo.

    Ids are assigned from a monotonic counter and never reused, even after
    the annotation holding one is deleted or undone.
    """

    def __init__(
        self,
        default_duration: float | None = None,
        annotations: Sequence[TimedAnnotation] = (),
    ):
        """
        Initialize the timeline.

        Args:
            default_duration: Window length for annotations added without an
                end time (defaults to annotation_config.default_duration)
            annotations: Initial annotations; ids are kept
        """
        self.default_duration = (
            annotation_config.default_duration if default_duration is None else default_duration
        )
        self._annotations: list[TimedAnnotation] = list(annotations)
        self._next_id = max((a.id for a in self._annotations), default=0) + 1
        self._undo_stack: list[Snapshot] = []
        self._redo_stack: list[Snapshot] = []

    def __len__(self) -> int:
        return len(self._annotations)

    def __iter__(self) -> Iterator[TimedAnnotation]:
        return iter(tuple(self._annotations))

    @property
    def annotations(self) -> Snapshot:
        return tuple(self._annotations)

    def snapshot(self) -> Snapshot:
        """Immutable copy of the current annotations, for export."""
        return tuple(self._annotations)

    @property
    def can_undo(self) -> bool:
        return bool(self._undo_stack)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo_stack)

    def get(self, annotation_id: int) -> TimedAnnotation:
        return self._annotations[self._index_of(annotation_id)]

    def _index_of(self, annotation_id: int) -> int:
        for i, a in enumerate(self._annotations):
            if a.id == annotation_id:
                return i
        raise AnnotationNotFoundError(f"No annotation with id {annotation_id}")

    def _record(self) -> None:
        self._undo_stack.append(tuple(self._annotations))
        self._redo_stack.clear()

    def _replace(self, annotation_id: int, updated: TimedAnnotation) -> TimedAnnotation:
        index = self._index_of(annotation_id)
        self._record()
        self._annotations[index] = updated
        return updated

    # ==================== Mutations ====================

    def add(
        self,
        kind: AnnotationKind,
        geometry: Geometry,
        style: Style | None = None,
        start_time: float = 0.0,
        end_time: float | None = None,
    ) -> TimedAnnotation:
        """
        Create an annotation and append it on top.

        Args:
            kind: Annotation tool
            geometry: Shape data in artifact pixel coordinates
            style: Stroke style (default Style())
            start_time: First visible time in seconds
            end_time: Last visible time; defaults to start_time + default_duration

        Returns:
            The stored annotation with its assigned id

        Raises:
            InvalidAnnotationError: If the annotation is malformed
        """
        if end_time is None:
            end_time = start_time + self.default_duration

        annotation = TimedAnnotation(
            id=self._next_id,
            kind=AnnotationKind(kind),
            geometry=geometry,
            style=style or Style(),
            start_time=start_time,
            end_time=end_time,
        )
        self._next_id += 1
        self._record()
        self._annotations.append(annotation)
        logger.debug(
            f"Added {annotation.kind.value} #{annotation.id} "
            f"[{annotation.start_time:.2f}s, {annotation.end_time:.2f}s]"
        )
        return annotation

    def add_annotation(self, annotation: TimedAnnotation) -> TimedAnnotation:
        """
        Append an already-built annotation.

        Its id is kept when it has never been handed out by this timeline;
        otherwise a fresh one is assigned.
        """
        if annotation.id >= self._next_id:
            stored = annotation
        else:
            stored = replace(annotation, id=self._next_id)
        self._next_id = stored.id + 1
        self._record()
        self._annotations.append(stored)
        return stored

    def move(self, annotation_id: int, delta: tuple[float, float]) -> TimedAnnotation:
        return self._replace(annotation_id, self.get(annotation_id).moved(*delta))

    def resize(self, annotation_id: int, delta: tuple[float, float]) -> TimedAnnotation:
        return self._replace(annotation_id, self.get(annotation_id).resized(*delta))

    def set_time_range(
        self, annotation_id: int, start_time: float, end_time: float
    ) -> TimedAnnotation:
        if end_time < start_time:
            raise InvalidAnnotationError(
                f"end_time {end_time} is before start_time {start_time}"
            )
        current = self.get(annotation_id)
        return self._replace(
            annotation_id, replace(current, start_time=start_time, end_time=end_time)
        )

    def restyle(self, annotation_id: int, style: Style) -> TimedAnnotation:
        return self._replace(annotation_id, replace(self.get(annotation_id), style=style))

    def set_text(self, annotation_id: int, text: str) -> TimedAnnotation:
        current = self.get(annotation_id)
        if current.kind != AnnotationKind.TEXT:
            raise InvalidAnnotationError(f"Annotation #{annotation_id} is not a text annotation")
        return self._replace(
            annotation_id, replace(current, geometry=replace(current.geometry, text=text))
        )

    def delete(self, annotation_id: int) -> TimedAnnotation:
        index = self._index_of(annotation_id)
        self._record()
        removed = self._annotations.pop(index)
        logger.debug(f"Deleted {removed.kind.value} #{removed.id}")
        return removed

    # ==================== History ====================

    def undo(self) -> bool:
        """Revert the last mutation. Returns False when there is nothing to undo."""
        if not self._undo_stack:
            return False
        self._redo_stack.append(tuple(self._annotations))
        self._annotations = list(self._undo_stack.pop())
        return True

    def redo(self) -> bool:
        """Re-apply the last undone mutation. Returns False when there is nothing to redo."""
        if not self._redo_stack:
            return False
        self._undo_stack.append(tuple(self._annotations))
        self._annotations = list(self._redo_stack.pop())
        return True

    def clear_history(self) -> None:
        self._undo_stack.clear()
        self._redo_stack.clear()

    # ==================== Queries ====================

    def active_at(self, t: float) -> list[TimedAnnotation]:
        return active_at(self._annotations, t)

    def hit_test(
        self, point: tuple[float, float], t: float | None = None
    ) -> TimedAnnotation | None:
        """
        Topmost annotation under a point.

        Args:
            point: (x, y) in artifact pixel coordinates
            t: Only consider annotations active at this time (all if None)
        """
        candidates = self._annotations if t is None else self.active_at(t)
        for annotation in reversed(candidates):
            if annotation.hit_test(*point):
                return annotation
        return None

    def step_numbers(self) -> dict[int, int]:
        return step_numbers(self._annotations)
