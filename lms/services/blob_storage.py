"""Local filesystem blob storage rooted at the configured storage directory."""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path, PurePosixPath
from typing import List, Protocol

from .events import emit_file_event


LOGGER = logging.getLogger(__name__)


class BlobStorage(Protocol):
    def path(self, key: str) -> Path: ...

    def put(self, key: str, data: bytes) -> Path: ...

    def get(self, key: str) -> bytes: ...

    def exists(self, key: str) -> bool: ...

    def delete(self, key: str) -> bool: ...

    def delete_directory(self, key: str) -> bool: ...

    def move_in(self, source: Path, key: str) -> Path: ...


class LocalBlobStorage:
    """Store blobs as files below *root*, addressed by POSIX-style keys."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def path(self, key: str) -> Path:
        relative = PurePosixPath(str(key).replace("\\", "/"))
        if relative.is_absolute() or ".." in relative.parts or not relative.parts:
            raise ValueError(f"Invalid storage key: {key!r}")
        return self._root.joinpath(*relative.parts)

    def put(self, key: str, data: bytes) -> Path:
        """Write *data* at *key*, replacing any existing blob atomically."""

        target = self.path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        partial = target.with_name(target.name + ".part")
        with partial.open("wb") as handle:
            handle.write(data)
        os.replace(partial, target)
        emit_file_event("put", payload={"key": key, "bytes": len(data)}, level=logging.DEBUG)
        return target

    def get(self, key: str) -> bytes:
        return self.path(key).read_bytes()

    def exists(self, key: str) -> bool:
        return self.path(key).exists()

    def size(self, key: str) -> int:
        return self.path(key).stat().st_size

    def list(self, prefix: str) -> List[str]:
        base = self.path(prefix)
        if not base.is_dir():
            return []
        return sorted(
            str(PurePosixPath(prefix) / child.name) for child in base.iterdir() if child.is_file()
        )

    def delete(self, key: str) -> bool:
        target = self.path(key)
        try:
            target.unlink()
        except FileNotFoundError:
            return False
        emit_file_event("delete", payload={"key": key}, level=logging.DEBUG)
        return True

    def delete_directory(self, key: str) -> bool:
        target = self.path(key)
        if not target.exists():
            return False
        shutil.rmtree(target)
        emit_file_event("delete_directory", payload={"key": key})
        return True

    def move_in(self, source: Path, key: str) -> Path:
        """Move an external file (for example an assembly scratch file) to *key*."""

        target = self.path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(source), str(target))
        emit_file_event("move_in", payload={"source": source, "key": key})
        LOGGER.debug("Moved %s into storage at %s", source, target)
        return target


__all__ = ["BlobStorage", "LocalBlobStorage"]
