"""
Configuration management for ClipShot using Pydantic settings.

Loads configuration from:
1. .env file (if present)
2. config/config.json (defaults)
3. Environment variables (override with CLIPSHOT_ prefix)
"""

import json
import logging
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)

# Project paths
PROJECT_ROOT = Path(__file__).parent.parent.parent
CONFIG_DIR = PROJECT_ROOT / "config"
RUNTIME_DIR = PROJECT_ROOT / "runtime"

# Load .env file from project root (if exists)
_env_file = PROJECT_ROOT / ".env"
if _env_file.exists():
    load_dotenv(_env_file)
    logger.debug(f"Loaded environment from {_env_file}")


def load_json_config() -> dict[str, Any]:
    """Load configuration from config.json file."""
    config_file = CONFIG_DIR / "config.json"
    if config_file.exists():
        with open(config_file) as f:
            return json.load(f)
    return {}


_json_config = load_json_config()


class CaptureConfig(BaseSettings):
    """Screen capture and recording configuration."""

    model_config = {"env_prefix": "CLIPSHOT_CAPTURE_"}

    fps: int = Field(
        default=_json_config.get("capture", {}).get("fps", 30),
        description="Recording tick rate and encoder output frame rate",
    )
    max_consecutive_failures: int = Field(
        default=_json_config.get("capture", {}).get("max_consecutive_failures", 2),
        description="Consecutive failed capture ticks before the session fails",
    )
    monitor_index: int = Field(
        default=_json_config.get("capture", {}).get("monitor_index", 1),
        description="mss monitor index (0 = all monitors, 1 = primary)",
    )
    output_dir: str = Field(
        default=_json_config.get("capture", {}).get(
            "output_dir", str(RUNTIME_DIR / "captures")
        ),
        description="Default directory for exported captures",
    )

    @field_validator("fps")
    @classmethod
    def validate_fps(cls, v):
        if v < 1 or v > 120:
            raise ValueError(f"fps must be between 1 and 120, got {v}")
        return v

    @field_validator("max_consecutive_failures")
    @classmethod
    def validate_max_failures(cls, v):
        if v < 1:
            raise ValueError(f"max_consecutive_failures must be >= 1, got {v}")
        return v


class StitchConfig(BaseSettings):
    """Overlap detection tuning for scroll-capture stitching."""

    model_config = {"env_prefix": "CLIPSHOT_STITCH_"}

    band_rows: int = Field(
        default=_json_config.get("stitch", {}).get("band_rows", 24),
        description="Height of the reference band taken from the bottom of the previous frame",
    )
    similarity_threshold: float = Field(
        default=_json_config.get("stitch", {}).get("similarity_threshold", 8.0),
        description="Max mean per-channel difference for a band to match",
    )
    verify_threshold: float = Field(
        default=_json_config.get("stitch", {}).get("verify_threshold", 12.0),
        description="Max mean per-channel difference over the full overlap region",
    )
    margin_fraction: float = Field(
        default=_json_config.get("stitch", {}).get("margin_fraction", 0.05),
        description="Fraction of columns ignored on each side (scrollbars, overlays)",
    )
    column_step: int = Field(
        default=_json_config.get("stitch", {}).get("column_step", 2),
        description="Column subsampling step for band comparison",
    )

    @field_validator("band_rows", "column_step")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError(f"value must be >= 1, got {v}")
        return v

    @field_validator("similarity_threshold", "verify_threshold")
    @classmethod
    def validate_threshold(cls, v):
        if not 0.0 <= v <= 255.0:
            raise ValueError(f"threshold must be 0-255, got {v}")
        return v

    @field_validator("margin_fraction")
    @classmethod
    def validate_margin(cls, v):
        if not 0.0 <= v < 0.5:
            raise ValueError(f"margin_fraction must be 0.0-0.5, got {v}")
        return v


class ScrollCaptureConfig(BaseSettings):
    """Scroll-capture driver configuration."""

    model_config = {"env_prefix": "CLIPSHOT_SCROLL_"}

    max_steps: int = Field(
        default=_json_config.get("scroll", {}).get("max_steps", 50),
        description="Maximum scroll steps before auto-stop",
    )
    settle_delay: float = Field(
        default=_json_config.get("scroll", {}).get("settle_delay", 0.5),
        description="Seconds between ticks so scrolled content can render",
    )
    scroll_fraction: float = Field(
        default=_json_config.get("scroll", {}).get("scroll_fraction", 2 / 3),
        description="Scroll distance as a fraction of the region height",
    )
    end_overlap_fraction: float = Field(
        default=_json_config.get("scroll", {}).get("end_overlap_fraction", 0.8),
        description="Overlap above this fraction means the end of content was reached",
    )

    @field_validator("scroll_fraction", "end_overlap_fraction")
    @classmethod
    def validate_fraction(cls, v):
        if not 0.0 < v <= 1.0:
            raise ValueError(f"fraction must be in (0, 1], got {v}")
        return v


class EncoderConfig(BaseSettings):
    """ffmpeg H.264 encoder configuration."""

    model_config = {"env_prefix": "CLIPSHOT_ENCODER_"}

    codec: str = Field(
        default=_json_config.get("encoder", {}).get("codec", "libx264"),
        description="ffmpeg video codec",
    )
    preset: str = Field(
        default=_json_config.get("encoder", {}).get("preset", "fast"),
        description="x264 preset",
    )
    crf: int = Field(
        default=_json_config.get("encoder", {}).get("crf", 18),
        description="x264 constant rate factor",
    )
    queue_size: int = Field(
        default=_json_config.get("encoder", {}).get("queue_size", 8),
        description="Frames buffered ahead of the writer thread before submit blocks",
    )
    timeout_seconds: float = Field(
        default=_json_config.get("encoder", {}).get("timeout_seconds", 120.0),
        description="Time allowed for ffmpeg to finalize the file",
    )

    @field_validator("crf")
    @classmethod
    def validate_crf(cls, v):
        if v < 0 or v > 51:
            raise ValueError(f"crf must be 0-51, got {v}")
        return v

    @field_validator("queue_size")
    @classmethod
    def validate_queue_size(cls, v):
        if v < 1:
            raise ValueError(f"queue_size must be >= 1, got {v}")
        return v


class AnnotationConfig(BaseSettings):
    """Annotation defaults and rendering configuration."""

    model_config = {"env_prefix": "CLIPSHOT_ANNOTATION_"}

    default_duration: float = Field(
        default=_json_config.get("annotation", {}).get("default_duration", 1.0),
        description="Validity window (seconds) for annotations created without an end time",
    )
    highlight_opacity: float = Field(
        default=_json_config.get("annotation", {}).get("highlight_opacity", 0.35),
        description="Fill opacity of highlight annotations",
    )
    blur_block_size: int = Field(
        default=_json_config.get("annotation", {}).get("blur_block_size", 10),
        description="Pixel block size used by the blur annotation",
    )
    step_radius: float = Field(
        default=_json_config.get("annotation", {}).get("step_radius", 14.0),
        description="Radius of step badges",
    )
    font_path: str = Field(
        default=_json_config.get("annotation", {}).get(
            "font_path", "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf"
        ),
        description="TrueType font for text and step annotations",
    )

    @field_validator("default_duration")
    @classmethod
    def validate_duration(cls, v):
        if v < 0:
            raise ValueError(f"default_duration must be >= 0, got {v}")
        return v

    @field_validator("highlight_opacity")
    @classmethod
    def validate_opacity(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"highlight_opacity must be 0.0-1.0, got {v}")
        return v


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = {"env_prefix": "CLIPSHOT_LOGGING_"}

    level: str = Field(
        default=_json_config.get("logging", {}).get("level", "INFO"),
        description="Log level",
    )
    file: str = Field(
        default=_json_config.get("logging", {}).get(
            "file", str(RUNTIME_DIR / "logs" / "clipshot.log")
        ),
        description="Log file path",
    )


# Global configuration instances
capture_config = CaptureConfig()
stitch_config = StitchConfig()
scroll_config = ScrollCaptureConfig()
encoder_config = EncoderConfig()
annotation_config = AnnotationConfig()
logging_config = LoggingConfig()


def setup_logging() -> None:
    """Configure logging for the application with log rotation."""
    from logging.handlers import RotatingFileHandler

    log_dir = Path(logging_config.file).parent
    log_dir.mkdir(parents=True, exist_ok=True)

    # 10MB max, keep 5 backups
    file_handler = RotatingFileHandler(
        logging_config.file,
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, logging_config.level.upper()))
    root_logger.addHandler(file_handler)
    root_logger.addHandler(logging.StreamHandler())

    logger.info(
        f"Logging configured: level={logging_config.level}, "
        f"file={logging_config.file} (rotating, 10MB max, 5 backups)"
    )


def ensure_runtime_dirs() -> None:
    """Create runtime directories if they don't exist."""
    dirs = [
        Path(capture_config.output_dir),
        Path(logging_config.file).parent,
    ]
    for d in dirs:
        d.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Ensured directory exists: {d}")
