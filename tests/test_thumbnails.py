from __future__ import annotations

from datetime import datetime, timezone

import pytest

from lms.errors import MediaToolError
from lms.processing.thumbnails import ThumbnailUnit, thumbnail_offset


@pytest.mark.parametrize(
    "duration, expected",
    [(120.0, 5.0), (5.0, 5.0), (3.2, 1.0), (1.0, 1.0), (0.4, 0.0), (None, 1.0), (0.0, 1.0)],
)
def test_thumbnail_offset(duration, expected) -> None:
    assert thumbnail_offset(duration) == expected


def _video(media_repository, blob_storage, duration):
    video_id = media_repository.add_video(
        upload_session_id=None,
        original_filename="clip.mp4",
        display_name="clip",
        file_size=3,
        original_path="videos/thumbs/original.mp4",
        status="processing",
        uploaded_by=None,
        created_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
    )
    media_repository.update_video(video_id, duration=duration)
    blob_storage.put("videos/thumbs/original.mp4", b"raw")
    return video_id


def test_thumbnail_is_stored_next_to_original(media_repository, blob_storage, media_tool) -> None:
    video_id = _video(media_repository, blob_storage, 2.5)

    ThumbnailUnit(media_repository, blob_storage, media_tool, video_id).run(1)

    video = media_repository.get_video(video_id)
    assert video.thumbnail_path == "videos/thumbs/thumbnail.jpg"
    assert blob_storage.get(video.thumbnail_path) == b"jpeg"
    assert media_tool.thumbnail_offsets == [1.0]


def test_thumbnail_failure_leaves_video_untouched(media_repository, blob_storage, media_tool, caplog) -> None:
    video_id = _video(media_repository, blob_storage, 30.0)
    media_tool.thumbnail_error = MediaToolError("Failed to generate thumbnail", "seek past end")
    unit = ThumbnailUnit(media_repository, blob_storage, media_tool, video_id)

    unit.run(1)

    video = media_repository.get_video(video_id)
    assert video.thumbnail_path is None
    assert video.status == "processing"
    assert unit.tries == 1
    assert "Thumbnail generation failed" in caplog.text


def test_thumbnail_for_missing_video_is_skipped(media_repository, blob_storage, media_tool) -> None:
    ThumbnailUnit(media_repository, blob_storage, media_tool, 9999).run(1)

    assert media_tool.thumbnail_offsets == []
