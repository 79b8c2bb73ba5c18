"""Per-quality transcode units and the video completion aggregator."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Dict, Iterable, Optional

from ..errors import MediaToolError
from ..services.blob_storage import BlobStorage
from ..services.events import emit_transition_event
from ..services.media_repository import MediaRepository
from ..services.media_tools import MediaTool
from ..services.naming import build_quality_key
from ..services.videos import overall_progress


LOGGER = logging.getLogger(__name__)

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

TERMINAL_STATUSES = frozenset({COMPLETED, FAILED})

ALL_QUALITIES_FAILED = "All quality levels failed to transcode"

_VIDEO_LOCKS: Dict[int, threading.Lock] = {}
_VIDEO_LOCKS_GUARD = threading.Lock()


def resolve_video_status(statuses: Iterable[str]) -> Optional[str]:
    """Return the terminal status a video should take, or ``None`` while work remains.

    A video with no quality rows never resolves.
    """

    values = list(statuses)
    if not values or any(status not in TERMINAL_STATUSES for status in values):
        return None
    return COMPLETED if COMPLETED in values else FAILED


def _video_lock(video_id: int) -> threading.Lock:
    with _VIDEO_LOCKS_GUARD:
        lock = _VIDEO_LOCKS.get(video_id)
        if lock is None:
            lock = _VIDEO_LOCKS[video_id] = threading.Lock()
        return lock


def _release_video_lock(video_id: int) -> None:
    with _VIDEO_LOCKS_GUARD:
        _VIDEO_LOCKS.pop(video_id, None)


def finalize_video(repository: MediaRepository, video_id: int) -> Optional[str]:
    """Move the video to its terminal status once every rendition has finished.

    Returns the new status when this call performed the transition, ``None``
    otherwise. Concurrent callers are serialized per video and the update only
    applies to a non-terminal row, so exactly one finisher wins.
    """

    with _video_lock(video_id):
        with repository.transaction() as connection:
            qualities = repository.list_qualities(video_id, connection=connection)
            target = resolve_video_status(quality.status for quality in qualities)
            if target is None:
                repository.update_video(
                    video_id,
                    processing_progress=overall_progress(qualities),
                    connection=connection,
                )
                return None
            changed = repository.finalize_video(
                video_id,
                status=target,
                processing_progress=100 if target == COMPLETED else None,
                error_message=None if target == COMPLETED else ALL_QUALITIES_FAILED,
                connection=connection,
            )

    _release_video_lock(video_id)
    if not changed:
        return None
    emit_transition_event(
        "video",
        video_id,
        PROCESSING,
        target,
        payload={"qualities": {quality.quality: quality.status for quality in qualities}},
        level=logging.INFO if target == COMPLETED else logging.ERROR,
    )
    LOGGER.info("Video %s finished processing with status %s", video_id, target)
    return target


@dataclass
class TranscodeUnit:
    """Transcode one video into one quality tier."""

    repository: MediaRepository
    storage: BlobStorage
    media_tool: MediaTool
    video_id: int
    quality: str
    tries: int = 3
    timeout: float = 3600.0

    @property
    def name(self) -> str:
        return f"transcode:{self.video_id}:{self.quality}"

    def _report_progress(self, percent: int) -> None:
        self.repository.raise_quality_progress(self.video_id, self.quality, percent)

    def run(self, attempt: int) -> None:
        try:
            finished = self._transcode(attempt)
        except Exception as error:
            diagnostic = error.diagnostic_output if isinstance(error, MediaToolError) else ""
            message = getattr(error, "message", None) or str(error) or error.__class__.__name__
            LOGGER.warning(
                "Transcode of video %s to %s failed on attempt %s/%s: %s%s",
                self.video_id,
                self.quality,
                attempt,
                self.tries,
                message,
                f"\n{diagnostic}" if diagnostic else "",
            )
            if attempt < self.tries:
                raise
            self._mark_failed(message)
            return
        if finished:
            finalize_video(self.repository, self.video_id)

    def on_exhausted(self, message: str) -> None:
        """Settle the rendition when the queue gives up on this unit."""

        quality = self.repository.get_quality(self.video_id, self.quality)
        if quality is None:
            return
        if quality.status in TERMINAL_STATUSES:
            finalize_video(self.repository, self.video_id)
            return
        self._mark_failed(message)

    def _transcode(self, attempt: int) -> bool:
        video = self.repository.get_video(self.video_id, with_qualities=False)
        if video is None:
            LOGGER.warning("Skipping %s: video no longer exists", self.name)
            return False

        fields = {"status": PROCESSING, "error_message": None}
        if attempt == 1:
            fields["processing_progress"] = 0
        self.repository.update_quality(self.video_id, self.quality, **fields)
        if video.status == PENDING:
            self.repository.update_video(self.video_id, status=PROCESSING)
        emit_transition_event(
            "video_quality",
            f"{self.video_id}:{self.quality}",
            PENDING if attempt == 1 else PROCESSING,
            PROCESSING,
            payload={"attempt": attempt, "tries": self.tries},
        )

        output_key = build_quality_key(str(PurePosixPath(video.original_path).parent), self.quality)
        output_path = self.storage.path(output_key)
        self.media_tool.transcode(
            self.storage.path(video.original_path),
            output_path,
            self.quality,
            self._report_progress,
            duration=video.duration,
            timeout=self.timeout,
        )
        if not output_path.is_file():
            raise MediaToolError(f"Transcoding to {self.quality} produced no output file")

        self.repository.update_quality(
            self.video_id,
            self.quality,
            file_path=output_key,
            file_size=output_path.stat().st_size,
            status=COMPLETED,
            processing_progress=100,
            error_message=None,
        )
        emit_transition_event("video_quality", f"{self.video_id}:{self.quality}", PROCESSING, COMPLETED)
        return True

    def _mark_failed(self, message: str) -> None:
        self.repository.update_quality(
            self.video_id,
            self.quality,
            status=FAILED,
            error_message=message,
        )
        emit_transition_event(
            "video_quality",
            f"{self.video_id}:{self.quality}",
            PROCESSING,
            FAILED,
            payload={"error": message},
            level=logging.ERROR,
        )
        LOGGER.error(
            "Giving up on %s after %s tries: %s", self.name, self.tries, message
        )
        finalize_video(self.repository, self.video_id)


__all__ = [
    "ALL_QUALITIES_FAILED",
    "COMPLETED",
    "FAILED",
    "PENDING",
    "PROCESSING",
    "TERMINAL_STATUSES",
    "TranscodeUnit",
    "finalize_video",
    "resolve_video_status",
]
