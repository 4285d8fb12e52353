"""
Encoding module for ClipShot.

Provides:
- VideoEncoder: Streaming H.264 MP4 encoder with a background writer thread
- FfmpegVideoWriter: ffmpeg subprocess frame sink
- VideoDecoder: Sequential frame reader for recorded videos
- save_png / encode_png: All-or-nothing image output
"""

from .image_writer import encode_png, save_png
from .video_decoder import VideoDecoder
from .video_encoder import (
    FFMPEG_AVAILABLE,
    EncoderState,
    FfmpegVideoWriter,
    VideoEncoder,
)

__all__ = [
    "FFMPEG_AVAILABLE",
    "EncoderState",
    "FfmpegVideoWriter",
    "VideoDecoder",
    "VideoEncoder",
    "encode_png",
    "save_png",
]
