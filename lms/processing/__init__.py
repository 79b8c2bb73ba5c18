"""Background units for the video pipeline."""

from .assembly import AssemblyUnit, ChunkAssembler
from .thumbnails import ThumbnailUnit, thumbnail_offset
from .transcoding import TranscodeUnit, finalize_video, resolve_video_status

__all__ = [
    "AssemblyUnit",
    "ChunkAssembler",
    "ThumbnailUnit",
    "TranscodeUnit",
    "finalize_video",
    "resolve_video_status",
    "thumbnail_offset",
]
