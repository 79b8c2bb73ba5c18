"""Read side of the video pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List

from ..errors import VideoNotFoundError
from .media_repository import MediaRepository, VideoQualityRecord, VideoRecord


_FINISHED = ("completed", "failed")


def overall_progress(qualities: Iterable[VideoQualityRecord]) -> int:
    """Average per-rendition progress, counting finished renditions as 100."""

    rows = list(qualities)
    if not rows:
        return 0
    total = sum(100 if row.status in _FINISHED else row.processing_progress for row in rows)
    return int(total / len(rows))


@dataclass(frozen=True)
class ProcessingSummary:
    video_id: int
    status: str
    progress: int
    completed_qualities: List[str]
    qualities: Dict[str, str]

    def to_dict(self) -> Dict[str, object]:
        return {
            "video_id": self.video_id,
            "status": self.status,
            "progress": self.progress,
            "completed_qualities": list(self.completed_qualities),
            "qualities": dict(self.qualities),
        }


class VideoCatalog:
    def __init__(self, repository: MediaRepository) -> None:
        self._repository = repository

    def get_video(self, video_id: int) -> VideoRecord:
        video = self._repository.get_video(video_id)
        if video is None:
            raise VideoNotFoundError(video_id)
        return video

    def processing_progress(self, video_id: int) -> ProcessingSummary:
        video = self.get_video(video_id)
        if video.status == "completed":
            progress = 100
        else:
            progress = overall_progress(video.qualities)
        return ProcessingSummary(
            video_id=video.id,
            status=video.status,
            progress=progress,
            completed_qualities=[q.quality for q in video.qualities if q.status == "completed"],
            qualities={q.quality: q.status for q in video.qualities},
        )


__all__ = ["ProcessingSummary", "VideoCatalog", "overall_progress"]
