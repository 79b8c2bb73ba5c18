"""SQLite persistence for upload sessions, videos and their quality renditions."""

from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, FrozenSet, List, Optional

from .storage import SQLiteRepository, format_timestamp, parse_timestamp, utcnow


LOGGER = logging.getLogger(__name__)


@dataclass
class UploadSessionRecord:
    session_id: str
    filename: str
    file_size: int
    total_chunks: int
    received_chunks: FrozenSet[int]
    status: str
    created_at: datetime
    updated_at: datetime


@dataclass
class VideoQualityRecord:
    id: int
    video_id: int
    quality: str
    file_path: str
    file_size: int
    status: str
    processing_progress: int
    error_message: Optional[str] = None


@dataclass
class VideoRecord:
    id: int
    upload_session_id: Optional[str]
    original_filename: str
    display_name: str
    file_size: int
    original_path: str
    status: str
    processing_progress: int
    duration: Optional[float]
    resolution: Optional[str]
    codec: Optional[str]
    format: Optional[str]
    thumbnail_path: Optional[str]
    error_message: Optional[str]
    uploaded_by: Optional[int]
    created_at: datetime
    updated_at: datetime
    qualities: List[VideoQualityRecord] = field(default_factory=list)


_VIDEO_COLUMNS = frozenset(
    {
        "status",
        "processing_progress",
        "duration",
        "resolution",
        "codec",
        "format",
        "thumbnail_path",
        "error_message",
        "original_path",
    }
)

_QUALITY_COLUMNS = frozenset(
    {"file_path", "file_size", "status", "processing_progress", "error_message"}
)

_TERMINAL_VIDEO_STATUSES = ("completed", "failed")


class MediaRepository(SQLiteRepository):
    """CRUD helpers for the upload and transcode pipeline."""

    @staticmethod
    def _session_from_row(row: sqlite3.Row) -> UploadSessionRecord:
        return UploadSessionRecord(
            session_id=row["session_id"],
            filename=row["filename"],
            file_size=int(row["file_size"]),
            total_chunks=int(row["total_chunks"]),
            received_chunks=frozenset(int(item) for item in json.loads(row["received_chunks"] or "[]")),
            status=row["status"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    @staticmethod
    def _quality_from_row(row: sqlite3.Row) -> VideoQualityRecord:
        return VideoQualityRecord(
            id=int(row["id"]),
            video_id=int(row["video_id"]),
            quality=row["quality"],
            file_path=row["file_path"] or "",
            file_size=int(row["file_size"] or 0),
            status=row["status"],
            processing_progress=int(row["processing_progress"] or 0),
            error_message=row["error_message"],
        )

    @staticmethod
    def _video_from_row(row: sqlite3.Row) -> VideoRecord:
        return VideoRecord(
            id=int(row["id"]),
            upload_session_id=row["upload_session_id"],
            original_filename=row["original_filename"],
            display_name=row["display_name"],
            file_size=int(row["file_size"] or 0),
            original_path=row["original_path"],
            status=row["status"],
            processing_progress=int(row["processing_progress"] or 0),
            duration=float(row["duration"]) if row["duration"] is not None else None,
            resolution=row["resolution"],
            codec=row["codec"],
            format=row["format"],
            thumbnail_path=row["thumbnail_path"],
            error_message=row["error_message"],
            uploaded_by=int(row["uploaded_by"]) if row["uploaded_by"] is not None else None,
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
        )

    # ------------------------------------------------------------------
    # Upload sessions
    # ------------------------------------------------------------------
    def add_upload_session(
        self,
        session_id: str,
        *,
        filename: str,
        file_size: int,
        total_chunks: int,
        status: str,
        created_at: datetime,
    ) -> None:
        LOGGER.debug(
            "Adding upload session %s for '%s' (%s chunks)", session_id, filename, total_chunks
        )
        stamp = format_timestamp(created_at)
        with self._track_db_event(
            "add_upload_session",
            table="upload_sessions",
            session_id=session_id,
            total_chunks=total_chunks,
        ):
            with self._session(None, write=True) as conn:
                self._execute(
                    conn,
                    """
                    INSERT INTO upload_sessions(
                        session_id, filename, file_size, total_chunks, received_chunks,
                        status, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, '[]', ?, ?, ?)
                    """,
                    (session_id, filename, int(file_size), int(total_chunks), status, stamp, stamp),
                    action="upload_sessions.insert",
                    table="upload_sessions",
                )

    def get_upload_session(
        self,
        session_id: str,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> Optional[UploadSessionRecord]:
        with self._session(connection) as conn:
            row = self._execute(
                conn,
                "SELECT * FROM upload_sessions WHERE session_id = ?",
                (session_id,),
                action="upload_sessions.get",
                table="upload_sessions",
            ).fetchone()
        return self._session_from_row(row) if row else None

    def add_received_chunk(
        self,
        session_id: str,
        chunk_number: int,
        *,
        updated_at: datetime,
        connection: sqlite3.Connection,
    ) -> FrozenSet[int]:
        """Add *chunk_number* to the session's received set; call inside a write transaction."""

        row = self._execute(
            connection,
            "SELECT received_chunks FROM upload_sessions WHERE session_id = ?",
            (session_id,),
            action="upload_sessions.received",
            table="upload_sessions",
        ).fetchone()
        received = {int(item) for item in json.loads(row["received_chunks"] or "[]")} if row else set()
        received.add(int(chunk_number))
        self._execute(
            connection,
            "UPDATE upload_sessions SET received_chunks = ?, updated_at = ? WHERE session_id = ?",
            (json.dumps(sorted(received)), format_timestamp(updated_at), session_id),
            action="upload_sessions.add_chunk",
            table="upload_sessions",
        )
        return frozenset(received)

    def set_upload_session_status(
        self,
        session_id: str,
        status: str,
        *,
        updated_at: Optional[datetime] = None,
        connection: Optional[sqlite3.Connection] = None,
    ) -> None:
        with self._track_db_event(
            "set_upload_session_status",
            table="upload_sessions",
            session_id=session_id,
            status=status,
        ):
            with self._session(connection, write=True) as conn:
                self._execute(
                    conn,
                    "UPDATE upload_sessions SET status = ?, updated_at = ? WHERE session_id = ?",
                    (status, format_timestamp(updated_at or utcnow()), session_id),
                    action="upload_sessions.set_status",
                    table="upload_sessions",
                )

    def remove_upload_session(self, session_id: str) -> bool:
        with self._session(None, write=True) as conn:
            cursor = self._execute(
                conn,
                "DELETE FROM upload_sessions WHERE session_id = ?",
                (session_id,),
                action="upload_sessions.delete",
                table="upload_sessions",
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Videos
    # ------------------------------------------------------------------
    def add_video(
        self,
        *,
        upload_session_id: Optional[str],
        original_filename: str,
        display_name: str,
        file_size: int,
        original_path: str,
        status: str,
        uploaded_by: Optional[int],
        created_at: datetime,
        connection: Optional[sqlite3.Connection] = None,
    ) -> int:
        stamp = format_timestamp(created_at)
        with self._track_db_event(
            "add_video",
            table="videos",
            upload_session_id=upload_session_id,
            file_size=file_size,
        ) as event:
            with self._session(connection, write=True) as conn:
                cursor = self._execute(
                    conn,
                    """
                    INSERT INTO videos(
                        upload_session_id, original_filename, display_name, file_size,
                        original_path, status, processing_progress, uploaded_by,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
                    """,
                    (
                        upload_session_id,
                        original_filename,
                        display_name,
                        int(file_size),
                        original_path,
                        status,
                        uploaded_by,
                        stamp,
                        stamp,
                    ),
                    action="videos.insert",
                    table="videos",
                )
                video_id = int(cursor.lastrowid)
                event["video_id"] = video_id
                return video_id

    def get_video(
        self,
        video_id: int,
        *,
        with_qualities: bool = True,
        connection: Optional[sqlite3.Connection] = None,
    ) -> Optional[VideoRecord]:
        with self._session(connection) as conn:
            row = self._execute(
                conn,
                "SELECT * FROM videos WHERE id = ?",
                (video_id,),
                action="videos.get",
                table="videos",
            ).fetchone()
            if row is None:
                return None
            video = self._video_from_row(row)
            if with_qualities:
                video.qualities = self.list_qualities(video.id, connection=conn)
        return video

    def get_video_for_session(
        self,
        session_id: str,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> Optional[VideoRecord]:
        with self._session(connection) as conn:
            row = self._execute(
                conn,
                "SELECT id FROM videos WHERE upload_session_id = ?",
                (session_id,),
                action="videos.lookup_by_session",
                table="videos",
            ).fetchone()
            if row is None:
                return None
            return self.get_video(int(row["id"]), connection=conn)

    def update_video(
        self,
        video_id: int,
        *,
        connection: Optional[sqlite3.Connection] = None,
        **fields: Any,
    ) -> None:
        unknown = set(fields) - _VIDEO_COLUMNS
        if unknown:
            raise KeyError(", ".join(sorted(unknown)))
        if not fields:
            return
        assignments = [f"{name} = ?" for name in fields] + ["updated_at = ?"]
        params = [*fields.values(), format_timestamp(utcnow()), video_id]
        with self._track_db_event(
            "update_video",
            table="videos",
            video_id=video_id,
            fields=sorted(fields),
        ):
            with self._session(connection, write=True) as conn:
                self._execute(
                    conn,
                    f"UPDATE videos SET {', '.join(assignments)} WHERE id = ?",
                    params,
                    action="videos.update",
                    table="videos",
                )

    def finalize_video(
        self,
        video_id: int,
        *,
        status: str,
        processing_progress: Optional[int],
        error_message: Optional[str],
        connection: sqlite3.Connection,
    ) -> bool:
        """Move a non-terminal video to a terminal *status*; ``False`` if already terminal."""

        cursor = self._execute(
            connection,
            """
            UPDATE videos
            SET status = ?,
                processing_progress = COALESCE(?, processing_progress),
                error_message = ?,
                updated_at = ?
            WHERE id = ? AND status NOT IN (?, ?)
            """,
            (
                status,
                processing_progress,
                error_message,
                format_timestamp(utcnow()),
                video_id,
                *_TERMINAL_VIDEO_STATUSES,
            ),
            action="videos.finalize",
            table="videos",
        )
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Quality renditions
    # ------------------------------------------------------------------
    def add_quality(
        self,
        video_id: int,
        quality: str,
        *,
        status: str,
        connection: Optional[sqlite3.Connection] = None,
    ) -> None:
        with self._session(connection, write=True) as conn:
            self._execute(
                conn,
                """
                INSERT OR IGNORE INTO video_qualities(video_id, quality, status, processing_progress)
                VALUES (?, ?, ?, 0)
                """,
                (video_id, quality, status),
                action="video_qualities.insert",
                table="video_qualities",
            )

    def list_qualities(
        self,
        video_id: int,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> List[VideoQualityRecord]:
        with self._session(connection) as conn:
            rows = self._execute(
                conn,
                "SELECT * FROM video_qualities WHERE video_id = ? ORDER BY id",
                (video_id,),
                action="video_qualities.list",
                table="video_qualities",
            ).fetchall()
        return [self._quality_from_row(row) for row in rows]

    def get_quality(self, video_id: int, quality: str) -> Optional[VideoQualityRecord]:
        with self._session(None) as conn:
            row = self._execute(
                conn,
                "SELECT * FROM video_qualities WHERE video_id = ? AND quality = ?",
                (video_id, quality),
                action="video_qualities.get",
                table="video_qualities",
            ).fetchone()
        return self._quality_from_row(row) if row else None

    def update_quality(
        self,
        video_id: int,
        quality: str,
        *,
        connection: Optional[sqlite3.Connection] = None,
        **fields: Any,
    ) -> None:
        unknown = set(fields) - _QUALITY_COLUMNS
        if unknown:
            raise KeyError(", ".join(sorted(unknown)))
        if not fields:
            return
        assignments = ", ".join(f"{name} = ?" for name in fields)
        with self._track_db_event(
            "update_quality",
            table="video_qualities",
            video_id=video_id,
            quality=quality,
            status=fields.get("status"),
        ):
            with self._session(connection, write=True) as conn:
                self._execute(
                    conn,
                    f"UPDATE video_qualities SET {assignments} WHERE video_id = ? AND quality = ?",
                    [*fields.values(), video_id, quality],
                    action="video_qualities.update",
                    table="video_qualities",
                )

    def raise_quality_progress(self, video_id: int, quality: str, progress: int) -> bool:
        """Store *progress* only if it is higher than the recorded value."""

        with self._session(None, write=True) as conn:
            cursor = self._execute(
                conn,
                """
                UPDATE video_qualities SET processing_progress = ?
                WHERE video_id = ? AND quality = ? AND processing_progress < ?
                """,
                (int(progress), video_id, quality, int(progress)),
                action="video_qualities.progress",
                table="video_qualities",
            )
            return cursor.rowcount > 0


__all__ = [
    "MediaRepository",
    "UploadSessionRecord",
    "VideoQualityRecord",
    "VideoRecord",
]
