"""Best-effort thumbnail capture for assembled videos."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Optional

from ..services.blob_storage import BlobStorage
from ..services.media_repository import MediaRepository
from ..services.media_tools import MediaTool
from ..services.naming import build_thumbnail_key


LOGGER = logging.getLogger(__name__)

DEFAULT_OFFSET_SECONDS = 5.0
SHORT_VIDEO_OFFSET_SECONDS = 1.0


def thumbnail_offset(duration: Optional[float]) -> float:
    """Capture at 5s, or at 1s for videos shorter than that (0s below one second)."""

    length = float(duration or 0.0)
    if length >= DEFAULT_OFFSET_SECONDS:
        return DEFAULT_OFFSET_SECONDS
    if length >= SHORT_VIDEO_OFFSET_SECONDS or length <= 0:
        return SHORT_VIDEO_OFFSET_SECONDS
    return 0.0


@dataclass
class ThumbnailUnit:
    repository: MediaRepository
    storage: BlobStorage
    media_tool: MediaTool
    video_id: int
    tries: int = 1
    timeout: float = 300.0

    @property
    def name(self) -> str:
        return f"thumbnail:{self.video_id}"

    def run(self, attempt: int) -> None:
        # A missing thumbnail never affects the video's status.
        try:
            video = self.repository.get_video(self.video_id, with_qualities=False)
            if video is None:
                LOGGER.warning("Skipping thumbnail: video %s no longer exists", self.video_id)
                return
            key = build_thumbnail_key(str(PurePosixPath(video.original_path).parent))
            self.media_tool.generate_thumbnail(
                self.storage.path(video.original_path),
                self.storage.path(key),
                thumbnail_offset(video.duration),
                timeout=self.timeout,
            )
            self.repository.update_video(self.video_id, thumbnail_path=key)
            LOGGER.info("Generated thumbnail for video %s at %s", self.video_id, key)
        except Exception:
            LOGGER.exception("Thumbnail generation failed for video %s", self.video_id)


__all__ = ["ThumbnailUnit", "thumbnail_offset"]
