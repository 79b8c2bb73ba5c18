"""Chunked upload session tracking."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from ..config import get_max_chunk_bytes
from ..errors import (
    ExpiredSessionError,
    InvalidChunkError,
    InvalidSessionError,
    InvalidUploadError,
)
from .blob_storage import BlobStorage
from .events import emit_transition_event
from .media_repository import MediaRepository, UploadSessionRecord
from .naming import build_chunk_key, build_session_directory
from .storage import ensure_utc, utcnow


LOGGER = logging.getLogger(__name__)

SESSION_IN_PROGRESS = "in_progress"
SESSION_COMPLETED = "completed"
SESSION_FAILED = "failed"


def missing_chunks(session: UploadSessionRecord) -> List[int]:
    return [number for number in range(session.total_chunks) if number not in session.received_chunks]


def is_complete(session: UploadSessionRecord) -> bool:
    """Return ``True`` when every chunk ``0..total_chunks-1`` has been received."""

    return set(range(session.total_chunks)).issubset(session.received_chunks)


def is_session_expired(session: UploadSessionRecord, now: datetime, ttl: timedelta) -> bool:
    return ensure_utc(now) > session.created_at + ttl


@dataclass(frozen=True)
class UploadProgress:
    session_id: str
    status: str
    received: int
    total: int
    percentage: float
    missing: List[int]

    @classmethod
    def from_session(cls, session: UploadSessionRecord) -> "UploadProgress":
        received = len(session.received_chunks & set(range(session.total_chunks)))
        total = session.total_chunks
        return cls(
            session_id=session.session_id,
            status=session.status,
            received=received,
            total=total,
            percentage=round(received / total * 100, 2) if total > 0 else 0.0,
            missing=missing_chunks(session),
        )


class UploadTracker:
    """Accept chunks for upload sessions and report their progress."""

    def __init__(
        self,
        repository: MediaRepository,
        storage: BlobStorage,
        *,
        ttl_hours: float = 24.0,
        max_chunk_bytes: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._storage = storage
        self._ttl = timedelta(hours=ttl_hours)
        self._max_chunk_bytes = max_chunk_bytes if max_chunk_bytes is not None else get_max_chunk_bytes()
        self._clock = clock

    def initialize(self, filename: str, file_size: int, total_chunks: int) -> UploadSessionRecord:
        filename = (filename or "").strip()
        if not filename:
            raise InvalidUploadError("filename is required")
        if int(total_chunks) < 1:
            raise InvalidUploadError("total_chunks must be at least 1")
        if int(file_size) < 0:
            raise InvalidUploadError("file_size must not be negative")

        session_id = str(uuid.uuid4())
        self._repository.add_upload_session(
            session_id,
            filename=filename,
            file_size=int(file_size),
            total_chunks=int(total_chunks),
            status=SESSION_IN_PROGRESS,
            created_at=ensure_utc(self._clock()),
        )
        emit_transition_event(
            "upload_session",
            session_id,
            None,
            SESSION_IN_PROGRESS,
            payload={"filename": filename, "total_chunks": total_chunks},
        )
        LOGGER.info("Initialized upload session %s for '%s' (%s chunks)", session_id, filename, total_chunks)
        return self.get_session(session_id)

    def get_session(self, session_id: str) -> UploadSessionRecord:
        session = self._repository.get_upload_session(session_id)
        if session is None:
            raise InvalidSessionError(session_id)
        return session

    def receive_chunk(self, session_id: str, chunk_number: int, data: bytes) -> UploadProgress:
        """Store one chunk; re-sending a chunk number overwrites the earlier bytes."""

        session = self.get_session(session_id)
        if session.status != SESSION_IN_PROGRESS:
            raise InvalidSessionError(
                session_id,
                f"Upload session '{session_id}' is {session.status} and no longer accepts chunks",
            )
        if is_session_expired(session, self._clock(), self._ttl):
            raise ExpiredSessionError(session_id)
        if not 0 <= int(chunk_number) < session.total_chunks:
            raise InvalidChunkError(int(chunk_number), session.total_chunks)
        if len(data) > self._max_chunk_bytes:
            raise InvalidChunkError(
                int(chunk_number),
                session.total_chunks,
                f"Chunk {chunk_number} exceeds the maximum size of {self._max_chunk_bytes} bytes",
            )

        self._storage.put(build_chunk_key(session_id, chunk_number), data)
        with self._repository.transaction() as connection:
            current = self._repository.get_upload_session(session_id, connection=connection)
            if current is None or current.status != SESSION_IN_PROGRESS:
                raise InvalidSessionError(session_id)
            self._repository.add_received_chunk(
                session_id,
                int(chunk_number),
                updated_at=ensure_utc(self._clock()),
                connection=connection,
            )
            updated = self._repository.get_upload_session(session_id, connection=connection)

        LOGGER.debug(
            "Stored chunk %s/%s for session %s (%s bytes)",
            chunk_number,
            session.total_chunks,
            session_id,
            len(data),
        )
        return UploadProgress.from_session(updated)

    def progress(self, session_id: str) -> UploadProgress:
        return UploadProgress.from_session(self.get_session(session_id))

    def cancel(self, session_id: str) -> None:
        """Delete the session's chunk data and the session itself."""

        session = self.get_session(session_id)
        if session.status == SESSION_COMPLETED:
            raise InvalidSessionError(
                session_id, f"Upload session '{session_id}' has already been assembled"
            )
        self._storage.delete_directory(build_session_directory(session_id))
        self._repository.remove_upload_session(session_id)
        LOGGER.info("Cancelled upload session %s", session_id)


__all__ = [
    "SESSION_COMPLETED",
    "SESSION_FAILED",
    "SESSION_IN_PROGRESS",
    "UploadProgress",
    "UploadTracker",
    "is_complete",
    "is_session_expired",
    "missing_chunks",
]
