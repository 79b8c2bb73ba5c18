"""Assemble uploaded chunks into an original video and fan out processing."""

from __future__ import annotations

import logging
import shutil
import sqlite3
import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional, Protocol

from ..errors import (
    AssemblyTimeoutError,
    IncompleteUploadError,
    InvalidSessionError,
    MediaToolError,
    VideoNotFoundError,
)
from ..services.blob_storage import BlobStorage
from ..services.events import emit_transition_event
from ..services.media_repository import MediaRepository, UploadSessionRecord, VideoRecord
from ..services.media_tools import MediaTool
from ..services.naming import (
    build_chunk_key,
    build_display_name,
    build_original_key,
    build_session_directory,
    build_video_directory,
    extract_extension,
)
from ..services.storage import ensure_utc, utcnow
from ..services.tasks import UnitOfWork
from ..services.uploads import SESSION_COMPLETED, SESSION_FAILED, missing_chunks
from .thumbnails import ThumbnailUnit
from .transcoding import FAILED, PENDING, PROCESSING, TERMINAL_STATUSES, TranscodeUnit, finalize_video


LOGGER = logging.getLogger(__name__)

_COPY_BUFFER_BYTES = 1024 * 1024
_SCHEDULED_HISTORY = 1024


class WorkSink(Protocol):
    def enqueue(self, unit: UnitOfWork) -> object: ...


class ChunkAssembler:
    """Turn a complete upload session into a ``Video`` and schedule its renditions."""

    def __init__(
        self,
        repository: MediaRepository,
        storage: BlobStorage,
        media_tool: MediaTool,
        queue: WorkSink,
        *,
        scratch_root: Path,
        quality_tiers: Iterable[str],
        transcode_tries: int = 3,
        transcode_timeout: float = 3600.0,
        thumbnail_timeout: float = 300.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._storage = storage
        self._media_tool = media_tool
        self._queue = queue
        self._scratch_root = Path(scratch_root)
        self._quality_tiers = tuple(quality_tiers)
        self._transcode_tries = transcode_tries
        self._transcode_timeout = transcode_timeout
        self._thumbnail_timeout = thumbnail_timeout
        self._clock = clock
        self._scheduled: "OrderedDict[str, None]" = OrderedDict()
        self._scheduled_lock = threading.Lock()

    def check_ready(self, session_id: str) -> UploadSessionRecord:
        """Return the session if it can be assembled, raising otherwise."""

        session = self._repository.get_upload_session(session_id)
        if session is None:
            raise InvalidSessionError(session_id)
        if self._repository.get_video_for_session(session_id) is not None:
            return session
        # A failed assembly keeps its chunks, so it may be attempted again.
        if session.status == SESSION_COMPLETED:
            raise InvalidSessionError(
                session_id, f"Upload session '{session_id}' is {session.status} and cannot be assembled"
            )
        missing = missing_chunks(session)
        if missing:
            raise IncompleteUploadError(missing)
        return session

    def assemble(
        self,
        session_id: str,
        uploaded_by: Optional[int] = None,
        *,
        timeout: Optional[float] = None,
    ) -> VideoRecord:
        """Build the original video for *session_id* and schedule its renditions.

        Calling this again for an assembled session returns the existing video
        and resumes processing that never got scheduled. ``timeout`` bounds the
        chunk concatenation; running past it fails the session before anything
        is committed.
        """

        session = self.check_ready(session_id)
        existing = self._repository.get_video_for_session(session_id)
        if existing is not None:
            LOGGER.info("Session %s was already assembled into video %s", session_id, existing.id)
            self._storage.delete_directory(build_session_directory(session_id))
            return self._resume(session_id, existing)

        deadline = time.monotonic() + timeout if timeout is not None else None
        video_directory = build_video_directory()
        original_key = build_original_key(video_directory, extract_extension(session.filename))
        scratch = self._scratch_root / f"{session_id}-{uuid.uuid4().hex}.part"

        moved = False
        try:
            file_size = self._concatenate(session, scratch, deadline, timeout)
            with self._repository.transaction() as connection:
                self._storage.move_in(scratch, original_key)
                moved = True
                video_id = self._repository.add_video(
                    upload_session_id=session_id,
                    original_filename=session.filename,
                    display_name=build_display_name(session.filename),
                    file_size=file_size,
                    original_path=original_key,
                    status=PENDING,
                    uploaded_by=uploaded_by,
                    created_at=ensure_utc(self._clock()),
                    connection=connection,
                )
                self._repository.set_upload_session_status(
                    session_id,
                    SESSION_COMPLETED,
                    updated_at=ensure_utc(self._clock()),
                    connection=connection,
                )
        except Exception as error:
            scratch.unlink(missing_ok=True)
            if moved:
                self._storage.delete(original_key)
            if isinstance(error, sqlite3.IntegrityError):
                winner = self._repository.get_video_for_session(session_id)
                if winner is not None:
                    LOGGER.info("Session %s was assembled concurrently into video %s", session_id, winner.id)
                    return winner
            self._repository.set_upload_session_status(
                session_id, SESSION_FAILED, updated_at=ensure_utc(self._clock())
            )
            emit_transition_event(
                "upload_session",
                session_id,
                session.status,
                SESSION_FAILED,
                payload={"error": str(error)},
                level=logging.ERROR,
            )
            LOGGER.error("Assembly of upload session %s failed: %s", session_id, error)
            raise

        emit_transition_event("upload_session", session_id, session.status, SESSION_COMPLETED)
        emit_transition_event("video", video_id, None, PENDING, payload={"session_id": session_id})
        self._storage.delete_directory(build_session_directory(session_id))
        LOGGER.info("Assembled session %s into video %s (%s bytes)", session_id, video_id, file_size)

        self._start_processing(session_id, video_id, original_key, extract=True)
        return self._reload(video_id)

    def _resume(self, session_id: str, video: VideoRecord) -> VideoRecord:
        if video.status in TERMINAL_STATUSES:
            return video
        if not self._start_processing(session_id, video.id, video.original_path, extract=video.status == PENDING):
            return video
        LOGGER.warning("Resumed processing of video %s from session %s", video.id, session_id)
        return self._reload(video.id)

    def _start_processing(self, session_id: str, video_id: int, original_key: str, *, extract: bool) -> bool:
        """Run metadata extraction and fan-out once per session in this process."""

        with self._scheduled_lock:
            if session_id in self._scheduled:
                return False
            self._scheduled[session_id] = None
            while len(self._scheduled) > _SCHEDULED_HISTORY:
                self._scheduled.popitem(last=False)
        try:
            if extract:
                self._extract_metadata(video_id, original_key)
            self._schedule_processing(video_id)
        except Exception:
            with self._scheduled_lock:
                self._scheduled.pop(session_id, None)
            raise
        return True

    def _reload(self, video_id: int) -> VideoRecord:
        video = self._repository.get_video(video_id)
        if video is None:
            raise VideoNotFoundError(video_id)
        return video

    def _concatenate(
        self,
        session: UploadSessionRecord,
        target: Path,
        deadline: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> int:
        target.parent.mkdir(parents=True, exist_ok=True)
        with target.open("wb") as output:
            for number in sorted(session.received_chunks):
                if number >= session.total_chunks:
                    continue
                if deadline is not None and time.monotonic() >= deadline:
                    raise AssemblyTimeoutError(session.session_id, float(timeout or 0))
                with self._storage.path(build_chunk_key(session.session_id, number)).open("rb") as chunk:
                    shutil.copyfileobj(chunk, output, _COPY_BUFFER_BYTES)
        return target.stat().st_size

    def _extract_metadata(self, video_id: int, original_key: str) -> None:
        try:
            metadata = self._media_tool.extract_metadata(self._storage.path(original_key))
        except MediaToolError as error:
            message = f"Failed to extract metadata: {error.message}"
            self._repository.update_video(video_id, status=FAILED, error_message=message)
            emit_transition_event(
                "video", video_id, PENDING, FAILED, payload={"error": message}, level=logging.ERROR
            )
            raise
        self._repository.update_video(
            video_id,
            duration=metadata.duration,
            resolution=metadata.resolution,
            codec=metadata.codec,
            format=metadata.format,
            status=PROCESSING,
        )
        emit_transition_event("video", video_id, PENDING, PROCESSING, payload={"duration": metadata.duration})

    def _schedule_processing(self, video_id: int) -> None:
        with self._repository.transaction() as connection:
            for quality in self._quality_tiers:
                self._repository.add_quality(video_id, quality, status=PENDING, connection=connection)
            qualities = self._repository.list_qualities(video_id, connection=connection)
        outstanding = [quality.quality for quality in qualities if quality.status not in TERMINAL_STATUSES]
        for quality in outstanding:
            self._queue.enqueue(
                TranscodeUnit(
                    repository=self._repository,
                    storage=self._storage,
                    media_tool=self._media_tool,
                    video_id=video_id,
                    quality=quality,
                    tries=self._transcode_tries,
                    timeout=self._transcode_timeout,
                )
            )
        if not outstanding:
            # every rendition finished before the video was finalized
            finalize_video(self._repository, video_id)
        video = self._reload(video_id)
        if video.thumbnail_path is None:
            self._queue.enqueue(
                ThumbnailUnit(
                    repository=self._repository,
                    storage=self._storage,
                    media_tool=self._media_tool,
                    video_id=video_id,
                    timeout=self._thumbnail_timeout,
                )
            )
        LOGGER.info("Scheduled %s transcode unit(s) for video %s", len(outstanding), video_id)


@dataclass
class AssemblyUnit:
    """Run :meth:`ChunkAssembler.assemble` in the background; never retried."""

    assembler: ChunkAssembler
    session_id: str
    uploaded_by: Optional[int] = None
    tries: int = 1
    timeout: float = 600.0

    @property
    def name(self) -> str:
        return f"assemble:{self.session_id}"

    def run(self, attempt: int) -> None:
        self.assembler.assemble(self.session_id, self.uploaded_by, timeout=self.timeout)


__all__ = ["AssemblyUnit", "ChunkAssembler", "WorkSink"]
