"""Utility helpers for consistent media naming and storage layout."""

from __future__ import annotations

import re
import uuid
from pathlib import PurePosixPath
from typing import Optional

__all__ = [
    "DEFAULT_VIDEO_EXTENSION",
    "build_chunk_key",
    "build_display_name",
    "build_original_key",
    "build_quality_key",
    "build_session_directory",
    "build_thumbnail_key",
    "build_video_directory",
    "extract_extension",
    "slugify",
]

DEFAULT_VIDEO_EXTENSION = "mp4"

_UPLOAD_PREFIX = PurePosixPath("temp") / "uploads"
_VIDEO_PREFIX = PurePosixPath("videos")


def slugify(value: str) -> str:
    """Return a filesystem-friendly representation of *value*."""

    value = value.strip().lower()
    value = re.sub(r"[^a-z0-9]+", "-", value)
    value = re.sub(r"-+", "-", value).strip("-")
    return value or "item"


def extract_extension(filename: str, default: str = DEFAULT_VIDEO_EXTENSION) -> str:
    """Return the lower-cased extension of *filename* without the dot."""

    suffix = PurePosixPath(filename or "").suffix.lstrip(".").lower()
    if not suffix or not re.fullmatch(r"[a-z0-9]{1,10}", suffix):
        return default
    return suffix


def build_display_name(filename: str) -> str:
    stem = PurePosixPath(filename or "").stem.strip()
    return stem or "Untitled video"


def build_session_directory(session_id: str) -> str:
    return str(_UPLOAD_PREFIX / session_id)


def build_chunk_key(session_id: str, chunk_number: int) -> str:
    """Return the storage key of one chunk: ``temp/uploads/{session}/chunk_{n}``."""

    return str(_UPLOAD_PREFIX / session_id / f"chunk_{int(chunk_number)}")


def build_video_directory(token: Optional[str] = None) -> str:
    """Return ``videos/{uuid}``; a fresh uuid is generated when *token* is omitted."""

    return str(_VIDEO_PREFIX / (token or uuid.uuid4().hex))


def build_original_key(video_directory: str, extension: str = DEFAULT_VIDEO_EXTENSION) -> str:
    return str(PurePosixPath(video_directory) / f"original.{extension or DEFAULT_VIDEO_EXTENSION}")


def build_quality_key(video_directory: str, quality: str) -> str:
    return str(PurePosixPath(video_directory) / f"{slugify(quality)}.mp4")


def build_thumbnail_key(video_directory: str) -> str:
    return str(PurePosixPath(video_directory) / "thumbnail.jpg")
