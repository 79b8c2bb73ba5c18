from __future__ import annotations

from datetime import datetime, timezone

import pytest

from lms.errors import VideoNotFoundError
from lms.services.videos import VideoCatalog


def _video(media_repository, qualities, status="processing"):
    video_id = media_repository.add_video(
        upload_session_id=None,
        original_filename="clip.mp4",
        display_name="clip",
        file_size=3,
        original_path="videos/catalog/original.mp4",
        status=status,
        uploaded_by=None,
        created_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
    )
    for quality, (quality_status, progress) in qualities.items():
        media_repository.add_quality(video_id, quality, status=quality_status)
        if progress:
            media_repository.raise_quality_progress(video_id, quality, progress)
    return video_id


def test_progress_averages_renditions(media_repository) -> None:
    video_id = _video(
        media_repository,
        {
            "360p": ("completed", 100),
            "480p": ("failed", 20),
            "720p": ("processing", 50),
            "1080p": ("pending", 0),
        },
    )

    summary = VideoCatalog(media_repository).processing_progress(video_id)

    assert summary.status == "processing"
    assert summary.progress == 62
    assert summary.completed_qualities == ["360p"]
    assert summary.qualities == {"360p": "completed", "480p": "failed", "720p": "processing", "1080p": "pending"}
    assert summary.to_dict()["video_id"] == video_id


def test_completed_video_reports_full_progress(media_repository) -> None:
    video_id = _video(media_repository, {"360p": ("completed", 100), "720p": ("failed", 0)}, status="completed")

    assert VideoCatalog(media_repository).processing_progress(video_id).progress == 100


def test_unknown_video(media_repository) -> None:
    with pytest.raises(VideoNotFoundError) as excinfo:
        VideoCatalog(media_repository).get_video(404)

    assert excinfo.value.status_code == 404
