"""
ClipShot Command Line

Sub-commands:
    screenshot   Capture a region to PNG
    record       Record a region to MP4 for a fixed duration (or until Ctrl+C)
    scroll       Scroll-capture a region into one tall PNG
    stitch       Stitch existing PNG frames into one image
    export       Composite annotations (JSON) onto a PNG or MP4
"""

import argparse
import logging
import sys
import time
from pathlib import Path

import numpy as np
from pydantic import TypeAdapter, ValidationError

from . import __version__

logger = logging.getLogger(__name__)


def _parse_region(value: str):
    from .capture.frame import Rect

    try:
        x, y, w, h = (int(v) for v in value.split(","))
        return Rect(x, y, w, h)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Region must be X,Y,WIDTH,HEIGHT: {e}") from e


def _default_output(suffix: str) -> Path:
    from .config import capture_config

    stamp = time.strftime("%Y%m%d_%H%M%S")
    return Path(capture_config.output_dir) / f"clipshot_{stamp}{suffix}"


def load_annotations(path: Path):
    """
    Read annotation specs from a JSON list and build a timeline from them.

    Raises:
        ValidationError: If the JSON does not describe valid annotations
    """
    from .annotation.model import AnnotationSpec
    from .annotation.timeline import AnnotationTimeline

    specs = TypeAdapter(list[AnnotationSpec]).validate_json(path.read_bytes())
    timeline = AnnotationTimeline()
    for spec in specs:
        timeline.add(spec.kind, spec.geometry(), spec.style(), spec.start_time, spec.end_time)
    return timeline


def _new_session():
    from .capture.frame_source import MssFrameSource
    from .capture.session import CaptureSession
    from .config import capture_config

    source = MssFrameSource(capture_config.monitor_index)
    return source, CaptureSession(source)


def _run_capture(args, mode, suffix: str) -> Path:
    from .capture.session import (
        BeginSelection,
        CaptureMode,
        ConfirmRegion,
        ExportArtifact,
        SessionState,
        StopCapture,
    )

    source, session = _new_session()
    region = args.region or source.display_region()
    output = args.output or _default_output(suffix)

    session.dispatch(BeginSelection(mode))
    session.dispatch(ConfirmRegion(region))
    try:
        if mode == CaptureMode.RECORDING:
            deadline = time.monotonic() + args.duration if args.duration else None
            while not session.capture_finished:
                if deadline is not None and time.monotonic() >= deadline:
                    break
                time.sleep(0.05)
        elif mode == CaptureMode.SCROLL_CAPTURE:
            while not session.capture_finished:
                time.sleep(0.1)
    except KeyboardInterrupt:
        print("\nStopping capture")

    if session.state == SessionState.FAILED:
        raise session.error
    if session.state == SessionState.ACTIVE:
        session.dispatch(StopCapture())
    return session.dispatch(ExportArtifact(output))


def cmd_screenshot(args) -> Path:
    from .capture.session import CaptureMode

    return _run_capture(args, CaptureMode.SCREENSHOT, ".png")


def cmd_record(args) -> Path:
    from .capture.session import CaptureMode

    return _run_capture(args, CaptureMode.RECORDING, ".mp4")


def cmd_scroll(args) -> Path:
    from .capture.session import CaptureMode

    return _run_capture(args, CaptureMode.SCROLL_CAPTURE, ".png")


def cmd_stitch(args) -> Path:
    from PIL import Image

    from .capture.frame import Frame, Rect
    from .encoding.image_writer import save_png
    from .stitch.stitcher import stitch_frames

    frames = []
    for i, path in enumerate(args.frames):
        with Image.open(path) as img:
            pixels = np.array(img.convert("RGBA"))
        frames.append(Frame(pixels, Rect(0, 0, pixels.shape[1], pixels.shape[0]), index=i))

    result = stitch_frames(frames)
    if result.truncated:
        print(
            f"Warning: no overlap found after frame {result.discontinuity_at - 1}; "
            f"stitched {result.contributing_frames} of {result.source_frame_count} frames"
        )
    return save_png(result.composite, args.output)


def cmd_export(args) -> Path:
    from .annotation.editor import EditorState
    from .export.artifact import ImageArtifact, VideoArtifact
    from .export.compositor import ExportCompositor

    if args.source.suffix.lower() == ".mp4":
        artifact = VideoArtifact.from_file(args.source)
    else:
        artifact = ImageArtifact.from_file(args.source)

    timeline = load_annotations(args.annotations) if args.annotations else None
    editor = EditorState(artifact, timeline)
    editor.seek(args.time)
    job = editor.export_job(args.output or _default_output(artifact.default_extension))
    return ExportCompositor().export(job)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="clipshot", description="Screen capture, recording and annotation"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command", required=True)

    region_help = "Region X,Y,WIDTH,HEIGHT in screen points (default: whole monitor)"

    p = sub.add_parser("screenshot", help="Capture a region to PNG")
    p.add_argument("--region", type=_parse_region, help=region_help)
    p.add_argument("-o", "--output", type=Path, help="Output .png path")
    p.set_defaults(func=cmd_screenshot)

    p = sub.add_parser("record", help="Record a region to MP4")
    p.add_argument("--region", type=_parse_region, help=region_help)
    p.add_argument("--duration", type=float, help="Seconds to record (default: until Ctrl+C)")
    p.add_argument("-o", "--output", type=Path, help="Output .mp4 path")
    p.set_defaults(func=cmd_record)

    p = sub.add_parser("scroll", help="Scroll-capture a region into one tall PNG")
    p.add_argument("--region", type=_parse_region, help=region_help)
    p.add_argument("-o", "--output", type=Path, help="Output .png path")
    p.set_defaults(func=cmd_scroll)

    p = sub.add_parser("stitch", help="Stitch PNG frames (top to bottom) into one image")
    p.add_argument("frames", nargs="+", type=Path, help="Frames in scroll order")
    p.add_argument("-o", "--output", type=Path, required=True, help="Output .png path")
    p.set_defaults(func=cmd_stitch)

    p = sub.add_parser("export", help="Composite annotations onto a PNG or MP4")
    p.add_argument("source", type=Path, help="Source .png or .mp4")
    p.add_argument("--annotations", type=Path, help="JSON list of annotations")
    p.add_argument("--time", type=float, default=0.0, help="Playhead (crop and still-image time)")
    p.add_argument("-o", "--output", type=Path, help="Output path")
    p.set_defaults(func=cmd_export)

    return parser


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    from .config import ensure_runtime_dirs, setup_logging
    from .errors import ClipShotError

    args = build_parser().parse_args(argv)
    setup_logging()
    ensure_runtime_dirs()

    try:
        output = args.func(args)
    except KeyboardInterrupt:
        print("\nCancelled by user")
        sys.exit(130)
    except ValidationError as e:
        print(f"Invalid annotations: {e}", file=sys.stderr)
        sys.exit(2)
    except ClipShotError as e:
        logger.error(f"{type(e).__name__}: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)

    print(output)


if __name__ == "__main__":
    main()
