"""
Capture Session State Machine

One capture, from region selection to export:

    IDLE -> SELECTING -> ACTIVE -> STOPPED -> EXPORTED
                 |          |         |
                 +----------+---------+----> CANCELLED

plus FAILED when capture cannot proceed. Screenshots skip ACTIVE: the frame
is taken on ConfirmRegion and the session goes straight to STOPPED.

The UI and hotkey layers drive the session by dispatching command objects;
every command is validated against the current state before anything
happens. Cancel is a side-effect-free rollback: in-flight capture is
stopped, scratch output is deleted, nothing reaches the destination or the
clipboard.
"""

import logging
import shutil
import tempfile
import threading
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Any, Callable, Protocol, Sequence

import numpy as np

from ..annotation.editor import EditorState
from ..annotation.model import TimedAnnotation
from ..config import CaptureConfig, ScrollCaptureConfig, capture_config
from ..errors import (
    CaptureError,
    ClipShotError,
    EncoderError,
    InvalidTransitionError,
    PermissionDeniedError,
)
from ..export.artifact import Artifact, ExportJob, ImageArtifact, VideoArtifact
from ..export.compositor import ExportCompositor
from ..stitch.stitcher import StitchResult, stitch_frames
from .frame import Frame, Rect
from .frame_source import FrameSource
from .recording import EncoderFactory, RecordingCoordinator, RecordingResult
from .scroll_capture import ScrollCaptureDriver, ScrollFn

logger = logging.getLogger(__name__)


class CaptureMode(Enum):
    SCREENSHOT = auto()
    RECORDING = auto()
    SCROLL_CAPTURE = auto()


class SessionState(Enum):
    """States for the capture session state machine."""

    IDLE = auto()  # Created, nothing selected yet
    SELECTING = auto()  # Region selection overlay is up
    ACTIVE = auto()  # Recording or scroll capture running
    STOPPED = auto()  # Artifact ready, pending export
    EXPORTED = auto()  # Written to disk or clipboard (terminal)
    CANCELLED = auto()  # Rolled back (terminal)
    FAILED = auto()  # Capture could not proceed (terminal)


TERMINAL_STATES = frozenset({SessionState.EXPORTED, SessionState.CANCELLED, SessionState.FAILED})


# ==================== Commands ====================


@dataclass(frozen=True)
class BeginSelection:
    mode: CaptureMode


@dataclass(frozen=True)
class ConfirmRegion:
    region: Rect


@dataclass(frozen=True)
class StopCapture:
    pass


@dataclass(frozen=True)
class ExportArtifact:
    output_path: Path
    annotations: Sequence[TimedAnnotation] = ()
    crop: Rect | None = None
    time: float = 0.0


@dataclass(frozen=True)
class CopyToClipboard:
    annotations: Sequence[TimedAnnotation] = ()
    crop: Rect | None = None
    time: float = 0.0


@dataclass(frozen=True)
class CancelSession:
    pass


Command = BeginSelection | ConfirmRegion | StopCapture | ExportArtifact | CopyToClipboard | CancelSession


class Clipboard(Protocol):
    """System clipboard boundary."""

    def copy_image(self, pixels: np.ndarray) -> None: ...


class CaptureSession:
    """
    A single capture session.

    Usage:
        session = CaptureSession(MssFrameSource())
        session.dispatch(BeginSelection(CaptureMode.SCREENSHOT))
        session.dispatch(ConfirmRegion(Rect(0, 0, 800, 600)))
        session.dispatch(ExportArtifact(Path("shot.png")))
    """

    def __init__(
        self,
        frame_source: FrameSource,
        clipboard: Clipboard | None = None,
        scratch_root: str | Path | None = None,
        config: CaptureConfig | None = None,
        encoder_factory: EncoderFactory | None = None,
        scroll_fn: ScrollFn | None = None,
        compositor: ExportCompositor | None = None,
        use_timer: bool = True,
        scroll_cfg: ScrollCaptureConfig | None = None,
    ):
        """
        Initialize the session.

        Args:
            frame_source: Screen capture source
            clipboard: Clipboard sink for CopyToClipboard
            scratch_root: Directory for in-progress recordings (system temp by default)
            config: Capture settings (defaults to global capture_config)
            encoder_factory: Builds video encoders for recording
            scroll_fn: Scroll implementation for scroll capture
            compositor: Export compositor
            use_timer: Drive recording ticks from a timer thread
            scroll_cfg: Scroll capture settings (defaults to global scroll_config)
        """
        self.frame_source = frame_source
        self.clipboard = clipboard
        self.scratch_root = Path(scratch_root) if scratch_root is not None else None
        self.config = config or capture_config
        self._encoder_factory = encoder_factory
        self._scroll_fn = scroll_fn
        self.compositor = compositor or ExportCompositor()
        self._use_timer = use_timer
        self._scroll_cfg = scroll_cfg

        self._state = SessionState.IDLE
        self._lock = threading.RLock()
        self.mode: CaptureMode | None = None
        self.region: Rect | None = None
        self.artifact: Artifact | None = None
        self.stitch_result: StitchResult | None = None
        self.recording_result: RecordingResult | None = None
        self.exported_path: Path | None = None
        self.error: Exception | None = None

        self._recorder: RecordingCoordinator | None = None
        self._scroller: ScrollCaptureDriver | None = None
        self._scratch_dir: Path | None = None
        # Set from the recording timer thread, applied on the next command
        self._capture_failure: Exception | None = None
        self._on_state_change_callbacks: list[Callable[[SessionState], None]] = []

        self._handlers: dict[type, Callable[[Any], Any]] = {
            BeginSelection: self._begin_selection,
            ConfirmRegion: self._confirm_region,
            StopCapture: self._stop_capture,
            ExportArtifact: self._export,
            CopyToClipboard: self._copy_to_clipboard,
            CancelSession: self._cancel,
        }

    # ==================== State ====================

    @property
    def state(self) -> SessionState:
        with self._lock:
            self._sync_capture_failure()
            return self._state

    @property
    def is_live(self) -> bool:
        return self.state not in TERMINAL_STATES

    @property
    def scratch_dir(self) -> Path | None:
        return self._scratch_dir

    @property
    def capture_finished(self) -> bool:
        """True once a scroll capture stopped on its own (or failed)."""
        if self._scroller is not None:
            return self._scroller.finished
        return self._capture_failure is not None

    def on_state_change(self, callback: Callable[[SessionState], None]) -> None:
        """Register callback for state changes."""
        self._on_state_change_callbacks.append(callback)

    def _set_state(self, new_state: SessionState) -> None:
        old_state = self._state
        self._state = new_state
        logger.info(f"Session: {old_state.name} -> {new_state.name}")
        for callback in self._on_state_change_callbacks:
            try:
                callback(new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

    def _require(self, command: Command, *allowed: SessionState) -> None:
        if self._state not in allowed:
            raise InvalidTransitionError(
                f"{type(command).__name__} not allowed in state {self._state.name}"
            )

    def _on_capture_failure(self, error: Exception) -> None:
        self._capture_failure = error

    def _sync_capture_failure(self) -> None:
        """Move to FAILED if background capture failed since the last command."""
        if self._state != SessionState.ACTIVE:
            return
        error = self._capture_failure
        if error is None and self._scroller is not None:
            error = self._scroller.error
        if error is not None:
            self._fail(error)

    def _fail(self, error: Exception) -> None:
        self.error = error
        self._discard_capture()
        self._set_state(SessionState.FAILED)
        logger.error(f"Capture session failed: {error}")

    # ==================== Dispatch ====================

    def dispatch(self, command: Command) -> Any:
        """
        Validate and apply a command.

        Returns:
            Command-specific result (the exported path for ExportArtifact)

        Raises:
            InvalidTransitionError: If the command is not valid in the current state
        """
        handler = self._handlers.get(type(command))
        if handler is None:
            raise TypeError(f"Unknown session command: {command!r}")
        with self._lock:
            self._sync_capture_failure()
            return handler(command)

    def _begin_selection(self, command: BeginSelection) -> None:
        self._require(command, SessionState.IDLE)
        self.mode = command.mode
        self._set_state(SessionState.SELECTING)

    def _confirm_region(self, command: ConfirmRegion) -> None:
        self._require(command, SessionState.SELECTING)
        self.region = command.region
        try:
            if self.mode == CaptureMode.SCREENSHOT:
                frame = self._capture_still(command.region)
                self.artifact = ImageArtifact(frame.pixels)
                self._set_state(SessionState.STOPPED)
            elif self.mode == CaptureMode.RECORDING:
                self._start_recording(command.region)
                self._set_state(SessionState.ACTIVE)
            else:
                self._start_scroll_capture(command.region)
                self._set_state(SessionState.ACTIVE)
        except (CaptureError, EncoderError) as e:
            self._fail(e)
            raise

    def _capture_still(self, region: Rect) -> Frame:
        """Single capture; a transient failure gets one in-place retry per allowed failure."""
        attempts = self.config.max_consecutive_failures
        last_error: CaptureError | None = None
        for attempt in range(1, attempts + 1):
            try:
                return self.frame_source.capture(region)
            except PermissionDeniedError:
                raise
            except CaptureError as e:
                last_error = e
                logger.warning(f"Screenshot capture failed ({attempt}/{attempts}): {e}")
        raise last_error

    def _start_recording(self, region: Rect) -> None:
        root = self.scratch_root
        if root is not None:
            root.mkdir(parents=True, exist_ok=True)
        self._scratch_dir = Path(tempfile.mkdtemp(prefix="clipshot-", dir=root))
        self._recorder = RecordingCoordinator(
            self.frame_source,
            self._scratch_dir / "recording.mp4",
            config=self.config,
            encoder_factory=self._encoder_factory,
            use_timer=self._use_timer,
        )
        self._recorder.on_failure(self._on_capture_failure)
        self._recorder.start(region)

    def _start_scroll_capture(self, region: Rect) -> None:
        self._scroller = ScrollCaptureDriver(
            self.frame_source,
            region,
            scroll_fn=self._scroll_fn,
            config=self._scroll_cfg,
            capture_cfg=self.config,
        )
        # First capture runs here so permission problems surface on confirm
        if self._scroller.tick():
            self._scroller.start()

    def _stop_capture(self, command: StopCapture) -> None:
        self._require(command, SessionState.ACTIVE)
        try:
            if self.mode == CaptureMode.RECORDING:
                self._stop_recording()
            else:
                self._stop_scroll_capture()
        except ClipShotError as e:
            self._fail(e)
            raise
        self._set_state(SessionState.STOPPED)

    def _stop_recording(self) -> None:
        try:
            result = self._recorder.stop()
        except InvalidTransitionError:
            # Failed between the last command and this one
            if self._recorder.error is not None:
                raise self._recorder.error
            raise
        self.recording_result = result
        self.artifact = VideoArtifact.from_file(
            result.path,
            fps=result.fps,
            frame_count=result.frame_count,
            size=(result.width, result.height),
        )

    def _stop_scroll_capture(self) -> None:
        self._scroller.stop()
        if self._scroller.error is not None:
            raise self._scroller.error
        frames = self._scroller.take_frames()
        self.stitch_result = stitch_frames(frames)
        self.artifact = ImageArtifact(self.stitch_result.composite)

    def _export(self, command: ExportArtifact) -> Path:
        self._require(command, SessionState.STOPPED)
        job = ExportJob(
            source=self.artifact,
            output_path=Path(command.output_path),
            annotations=tuple(command.annotations),
            crop=command.crop,
            time=command.time,
        )
        # A failed export leaves the session STOPPED so it can be retried
        self.exported_path = self.compositor.export(job)
        self._remove_scratch()
        self._set_state(SessionState.EXPORTED)
        return self.exported_path

    def _copy_to_clipboard(self, command: CopyToClipboard) -> None:
        self._require(command, SessionState.STOPPED)
        if not isinstance(self.artifact, ImageArtifact):
            raise InvalidTransitionError("Only image captures can be copied to the clipboard")
        if self.clipboard is None:
            raise InvalidTransitionError("No clipboard configured for this session")

        job = ExportJob(
            source=self.artifact,
            output_path=Path(),
            annotations=tuple(command.annotations),
            crop=command.crop,
            time=command.time,
        )
        self.clipboard.copy_image(self.compositor.render_image(job))
        self._set_state(SessionState.EXPORTED)

    def _cancel(self, command: CancelSession) -> None:
        self._require(command, SessionState.SELECTING, SessionState.ACTIVE, SessionState.STOPPED)
        self._discard_capture()
        self._set_state(SessionState.CANCELLED)

    # ==================== Cleanup ====================

    def _discard_capture(self) -> None:
        """Stop in-flight capture and drop every buffered frame and scratch file."""
        if self._recorder is not None:
            self._recorder.cancel()
        if self._scroller is not None:
            self._scroller.stop()
            self._scroller.take_frames()
        self.artifact = None
        self.stitch_result = None
        self._remove_scratch()

    def _remove_scratch(self) -> None:
        if self._scratch_dir is None:
            return
        try:
            shutil.rmtree(self._scratch_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.error(f"Failed to remove scratch directory {self._scratch_dir}: {e}")
        self._scratch_dir = None

    # ==================== Convenience ====================

    def editor(self) -> EditorState:
        """Editor for the stopped session's artifact."""
        with self._lock:
            if self._state != SessionState.STOPPED:
                raise InvalidTransitionError(f"No artifact to edit in state {self._state.name}")
            return EditorState(self.artifact)

    def export_from_editor(self, editor: EditorState, output_path: str | Path) -> Path:
        """Export using the editor's annotations, crop and playhead."""
        job = editor.export_job(output_path)
        return self.dispatch(
            ExportArtifact(job.output_path, job.annotations, job.crop, job.time)
        )

    def close(self, save_to: str | Path | None = None) -> Path | None:
        """
        Window-close path: save when a destination is given, otherwise discard.

        Returns:
            The saved path, or None when the session was discarded
        """
        with self._lock:
            state = self.state
            if state in TERMINAL_STATES or state == SessionState.IDLE:
                return None
            if save_to is not None and state in (SessionState.ACTIVE, SessionState.STOPPED):
                if state == SessionState.ACTIVE:
                    self.dispatch(StopCapture())
                return self.dispatch(ExportArtifact(Path(save_to)))
            self.dispatch(CancelSession())
            return None

    def get_status(self) -> dict:
        return {
            "state": self.state.name,
            "mode": self.mode.name if self.mode else None,
            "region": self.region.to_dict() if self.region else None,
            "recording": self._recorder.get_status() if self._recorder else None,
            "scroll_capture": self._scroller.get_status() if self._scroller else None,
            "stitch": self.stitch_result.to_dict() if self.stitch_result else None,
            "exported_path": str(self.exported_path) if self.exported_path else None,
            "error": str(self.error) if self.error else None,
        }


class HotkeyAction(Enum):
    SCREENSHOT = auto()
    TOGGLE_RECORDING = auto()
    TOGGLE_SCROLL_CAPTURE = auto()
    CANCEL = auto()


_TOGGLE_MODES = {
    HotkeyAction.TOGGLE_RECORDING: CaptureMode.RECORDING,
    HotkeyAction.TOGGLE_SCROLL_CAPTURE: CaptureMode.SCROLL_CAPTURE,
}


class SessionManager:
    """Owns the single live capture session."""

    def __init__(self, session_factory: Callable[[], CaptureSession]):
        self._session_factory = session_factory
        self._current: CaptureSession | None = None
        self._lock = threading.Lock()

    @property
    def current(self) -> CaptureSession | None:
        """The live session, if any."""
        if self._current is not None and self._current.is_live:
            return self._current
        return None

    def new_session(self) -> CaptureSession:
        """
        Create a session.

        Raises:
            InvalidTransitionError: If another session is still live
        """
        with self._lock:
            if self.current is not None:
                raise InvalidTransitionError(
                    f"A capture session is already in progress ({self._current.state.name})"
                )
            self._current = self._session_factory()
            return self._current

    def dispatch(self, command: Command) -> Any:
        session = self.current
        if session is None:
            raise InvalidTransitionError(f"No live session for {type(command).__name__}")
        return session.dispatch(command)

    def handle_hotkey(self, action: HotkeyAction) -> Any:
        """Translate a hotkey press into a session command."""
        logger.debug(f"Hotkey: {action.name}")
        session = self.current

        if action == HotkeyAction.CANCEL:
            if session is None:
                return None
            return session.dispatch(CancelSession())

        if action == HotkeyAction.SCREENSHOT:
            return self.new_session().dispatch(BeginSelection(CaptureMode.SCREENSHOT))

        mode = _TOGGLE_MODES[action]
        if session is not None and session.mode == mode and session.state == SessionState.ACTIVE:
            return session.dispatch(StopCapture())
        return self.new_session().dispatch(BeginSelection(mode))
