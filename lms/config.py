"""Configuration loading utilities for the LMS assessment and media services."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple


LOGGER = logging.getLogger(__name__)


_PERMISSION_SENTINEL = ".lms_write_check"

DEFAULT_QUALITY_TIERS: Tuple[str, ...] = ("360p", "480p", "720p", "1080p")

_DEFAULT_MAX_CHUNK_BYTES = 64 * 1024 * 1024


def _ensure_writable_directory(path: Path) -> bool:
    """Return ``True`` if *path* can be created and written to."""

    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError:
        return False

    test_file = path / _PERMISSION_SENTINEL
    try:
        with test_file.open("w", encoding="utf-8") as handle:
            handle.write("ok")
    except OSError:
        return False
    finally:
        with contextlib.suppress(OSError):
            test_file.unlink()

    return True


def _select_writable_directory(
    preferred: Path,
    *,
    label: str,
    fallbacks: Iterable[Path] = (),
) -> Tuple[Path, bool]:
    """Return a usable directory based on ``preferred`` and ``fallbacks``.

    The helper attempts to create ``preferred`` and returns it when writable. If
    the preferred location is unavailable, each candidate in ``fallbacks`` is
    tried in order. The first writable fallback is returned along with a flag
    indicating that a fallback was used. When no candidate can be prepared the
    original ``preferred`` path is returned.
    """

    preferred = preferred.resolve()
    if _ensure_writable_directory(preferred):
        return preferred, False

    for fallback in fallbacks:
        candidate = fallback.resolve()
        if candidate == preferred:
            continue
        if _ensure_writable_directory(candidate):
            LOGGER.warning(
                "Preferred %s directory '%s' is not writable; using fallback '%s'.",
                label,
                preferred,
                candidate,
            )
            return candidate, True

    LOGGER.warning(
        "%s directory '%s' is not writable and no fallback is available.",
        label.capitalize(),
        preferred,
    )
    return preferred, False


def get_max_chunk_bytes() -> int:
    """Return the maximum accepted size of a single upload chunk in bytes."""

    raw = (os.environ.get("LMS_MAX_CHUNK_BYTES") or "").strip()
    if not raw:
        return _DEFAULT_MAX_CHUNK_BYTES
    try:
        return int(raw)
    except ValueError:
        LOGGER.warning("Ignoring invalid LMS_MAX_CHUNK_BYTES value %r", raw)
        return _DEFAULT_MAX_CHUNK_BYTES


@dataclass(frozen=True)
class AppConfig:
    """Container describing runtime paths and pipeline settings."""

    storage_root: Path
    database_file: Path
    scratch_root: Path
    upload_session_ttl_hours: float = 24.0
    quality_tiers: Tuple[str, ...] = DEFAULT_QUALITY_TIERS
    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"
    transcode_tries: int = 3
    transcode_timeout_seconds: int = 3600
    worker_count: int = 2
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def upload_root(self) -> Path:
        """Directory holding chunk data for in-flight upload sessions."""

        return (self.storage_root / "temp" / "uploads").resolve()

    @property
    def assembly_root(self) -> Path:
        """Scratch location used while chunks are concatenated."""

        return (self.scratch_root / "assembly").resolve()

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any], *, base_path: Path) -> "AppConfig":
        preferred_storage = (base_path / mapping["storage_root"]).resolve()
        storage_fallback = Path.home() / ".lms" / "storage"
        storage_root, storage_fallback_used = _select_writable_directory(
            preferred_storage,
            label="storage",
            fallbacks=(storage_fallback,),
        )

        database_file = (base_path / mapping["database_file"]).resolve()

        preferred_scratch = (base_path / mapping.get("scratch_root", "scratch")).resolve()
        scratch_root, _ = _select_writable_directory(
            preferred_scratch,
            label="scratch",
            fallbacks=(storage_root / "_scratch",),
        )

        if storage_fallback_used:
            try:
                relative_database = database_file.relative_to(preferred_storage)
            except ValueError:
                relative_database = None
            if relative_database is not None:
                fallback_database = (storage_root / relative_database).resolve()
                if _ensure_writable_directory(fallback_database.parent):
                    LOGGER.warning(
                        "Preferred database location '%s' is not writable; using fallback '%s'.",
                        database_file,
                        fallback_database,
                    )
                    database_file = fallback_database

        if not _ensure_writable_directory(database_file.parent):
            fallback_database = (storage_root / database_file.name).resolve()
            if fallback_database != database_file and _ensure_writable_directory(
                fallback_database.parent
            ):
                LOGGER.warning(
                    "Preferred database location '%s' is not writable; using fallback '%s'.",
                    database_file,
                    fallback_database,
                )
                database_file = fallback_database
            else:
                LOGGER.warning(
                    "Database location '%s' is not writable and no fallback is available.",
                    database_file,
                )

        tiers = mapping.get("quality_tiers") or DEFAULT_QUALITY_TIERS
        known_keys = {
            "storage_root",
            "database_file",
            "scratch_root",
            "upload_session_ttl_hours",
            "quality_tiers",
            "ffmpeg_binary",
            "ffprobe_binary",
            "transcode_tries",
            "transcode_timeout_seconds",
            "worker_count",
        }

        return cls(
            storage_root=storage_root,
            database_file=database_file,
            scratch_root=scratch_root,
            upload_session_ttl_hours=float(mapping.get("upload_session_ttl_hours", 24.0)),
            quality_tiers=tuple(str(tier) for tier in tiers),
            ffmpeg_binary=str(mapping.get("ffmpeg_binary", "ffmpeg")),
            ffprobe_binary=str(mapping.get("ffprobe_binary", "ffprobe")),
            transcode_tries=max(1, int(mapping.get("transcode_tries", 3))),
            transcode_timeout_seconds=int(mapping.get("transcode_timeout_seconds", 3600)),
            worker_count=max(1, int(mapping.get("worker_count", 2))),
            extra={key: value for key, value in mapping.items() if key not in known_keys},
        )


def load_config(config_path: Path | None = None) -> AppConfig:
    """Load the application configuration from ``config/default.json`` by default."""

    base_path = Path(__file__).resolve().parent.parent
    if config_path is None:
        config_path = base_path / "config" / "default.json"

    with config_path.open("r", encoding="utf-8") as config_file:
        raw_config = json.load(config_file)

    return AppConfig.from_mapping(raw_config, base_path=base_path)


__all__ = ["AppConfig", "DEFAULT_QUALITY_TIERS", "get_max_chunk_bytes", "load_config"]
