from __future__ import annotations

import threading
from datetime import datetime, timezone

import pytest

from lms.errors import MediaToolError
from lms.processing.assembly import ChunkAssembler
from lms.processing import transcoding
from lms.processing.transcoding import (
    ALL_QUALITIES_FAILED,
    TranscodeUnit,
    finalize_video,
    resolve_video_status,
)
from lms.services.tasks import WorkQueue
from lms.services.uploads import UploadTracker


@pytest.fixture()
def queue():
    work_queue = WorkQueue(max_workers=3)
    yield work_queue
    work_queue.shutdown()


@pytest.fixture()
def assembler(media_repository, blob_storage, media_tool, queue, temp_config, clock) -> ChunkAssembler:
    return ChunkAssembler(
        media_repository,
        blob_storage,
        media_tool,
        queue,
        scratch_root=temp_config.assembly_root,
        quality_tiers=temp_config.quality_tiers,
        clock=clock,
    )


def _assembled_video(media_repository, blob_storage, assembler, clock):
    tracker = UploadTracker(media_repository, blob_storage, clock=clock)
    session = tracker.initialize("lecture.mp4", 6, 2)
    tracker.receive_chunk(session.session_id, 0, b"abc")
    tracker.receive_chunk(session.session_id, 1, b"def")
    return assembler.assemble(session.session_id)


def _add_video(media_repository, statuses):
    video_id = media_repository.add_video(
        upload_session_id=None,
        original_filename="clip.mp4",
        display_name="clip",
        file_size=3,
        original_path="videos/manual/original.mp4",
        status="processing",
        uploaded_by=None,
        created_at=datetime(2025, 3, 1, tzinfo=timezone.utc),
    )
    for quality, status in statuses.items():
        media_repository.add_quality(video_id, quality, status=status)
    return video_id


@pytest.mark.parametrize(
    "statuses, expected",
    [
        ([], None),
        (["completed", "processing"], None),
        (["pending"], None),
        (["failed", "completed", "failed"], "completed"),
        (["failed", "failed"], "failed"),
        (["completed"], "completed"),
    ],
)
def test_resolve_video_status(statuses, expected) -> None:
    assert resolve_video_status(statuses) == expected


def test_all_renditions_complete(media_repository, blob_storage, assembler, queue, clock) -> None:
    video = _assembled_video(media_repository, blob_storage, assembler, clock)

    assert queue.join(timeout=30)

    final = media_repository.get_video(video.id)
    assert final.status == "completed"
    assert final.processing_progress == 100
    assert final.error_message is None
    for quality in final.qualities:
        assert quality.status == "completed"
        assert quality.processing_progress == 100
        assert blob_storage.get(quality.file_path) == f"{quality.quality}:".encode() + b"abcdef"
        assert quality.file_size == len(quality.quality) + 7
    assert final.thumbnail_path is not None
    assert blob_storage.get(final.thumbnail_path) == b"jpeg"


def test_one_exhausted_rendition_does_not_fail_video(
    media_repository, blob_storage, assembler, queue, media_tool, clock
) -> None:
    media_tool.transcode_failures = {"1080p": 3}
    video = _assembled_video(media_repository, blob_storage, assembler, clock)

    assert queue.join(timeout=30)

    final = media_repository.get_video(video.id)
    assert final.status == "completed"
    assert final.processing_progress == 100
    by_quality = {quality.quality: quality for quality in final.qualities}
    assert by_quality["1080p"].status == "failed"
    assert by_quality["1080p"].error_message == "Failed to transcode video to 1080p"
    assert [by_quality[name].status for name in ("360p", "480p", "720p")] == ["completed"] * 3
    assert media_tool.transcode_calls.count("1080p") == 3


def test_retry_recovers_before_tries_run_out(media_repository, blob_storage, assembler, queue, media_tool, clock) -> None:
    media_tool.transcode_failures = {"720p": 2}
    video = _assembled_video(media_repository, blob_storage, assembler, clock)

    assert queue.join(timeout=30)

    quality = media_repository.get_quality(video.id, "720p")
    assert quality.status == "completed"
    assert quality.error_message is None
    assert media_tool.transcode_calls.count("720p") == 3


def test_every_rendition_failing_fails_video(
    media_repository, blob_storage, assembler, queue, media_tool, clock
) -> None:
    media_tool.transcode_failures = {tier: 3 for tier in ("360p", "480p", "720p", "1080p")}
    video = _assembled_video(media_repository, blob_storage, assembler, clock)

    assert queue.join(timeout=30)

    final = media_repository.get_video(video.id)
    assert final.status == "failed"
    assert final.error_message == ALL_QUALITIES_FAILED
    assert all(quality.status == "failed" for quality in final.qualities)


def test_progress_never_decreases(media_repository) -> None:
    video_id = _add_video(media_repository, {"480p": "processing"})

    assert media_repository.raise_quality_progress(video_id, "480p", 50)
    assert not media_repository.raise_quality_progress(video_id, "480p", 30)
    assert media_repository.get_quality(video_id, "480p").processing_progress == 50


def test_unfinished_renditions_roll_up_progress(media_repository) -> None:
    video_id = _add_video(media_repository, {"360p": "completed", "720p": "processing"})
    media_repository.raise_quality_progress(video_id, "720p", 40)

    assert finalize_video(media_repository, video_id) is None

    video = media_repository.get_video(video_id)
    assert video.status == "processing"
    assert video.processing_progress == 70


def test_concurrent_finalizers_transition_once(media_repository) -> None:
    video_id = _add_video(media_repository, {"360p": "completed", "720p": "failed"})
    barrier = threading.Barrier(4)
    results = []

    def finish() -> None:
        barrier.wait()
        results.append(finalize_video(media_repository, video_id))

    threads = [threading.Thread(target=finish) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert results.count("completed") == 1
    assert results.count(None) == 3
    assert media_repository.get_video(video_id).status == "completed"


def test_transcode_unit_surfaces_early_failures(media_repository, blob_storage, media_tool) -> None:
    video_id = _add_video(media_repository, {"360p": "pending"})
    blob_storage.put("videos/manual/original.mp4", b"raw")
    media_tool.transcode_failures = {"360p": 1}
    unit = TranscodeUnit(media_repository, blob_storage, media_tool, video_id, "360p", tries=2)

    assert unit.name == f"transcode:{video_id}:360p"
    with pytest.raises(MediaToolError):
        unit.run(1)
    assert media_repository.get_quality(video_id, "360p").status == "processing"

    unit.run(2)
    quality = media_repository.get_quality(video_id, "360p")
    assert quality.status == "completed"
    assert quality.file_path == "videos/manual/360p.mp4"


def test_missing_output_on_last_try_fails_rendition(media_repository, blob_storage, media_tool, queue, monkeypatch) -> None:
    video_id = _add_video(media_repository, {"360p": "pending"})
    blob_storage.put("videos/manual/original.mp4", b"raw")
    calls = []
    monkeypatch.setattr(media_tool, "transcode", lambda *args, **kwargs: calls.append(args[2]))

    task = queue.enqueue(TranscodeUnit(media_repository, blob_storage, media_tool, video_id, "360p"))
    assert queue.join(timeout=30)

    assert calls == ["360p", "360p", "360p"]
    assert task.status == "succeeded"
    quality = media_repository.get_quality(video_id, "360p")
    assert quality.status == "failed"
    assert quality.error_message == "Transcoding to 360p produced no output file"
    video = media_repository.get_video(video_id)
    assert video.status == "failed"
    assert video.error_message == ALL_QUALITIES_FAILED


def test_exhausted_unit_settles_its_rendition(media_repository, blob_storage, media_tool) -> None:
    video_id = _add_video(media_repository, {"360p": "processing", "720p": "completed"})
    unit = TranscodeUnit(media_repository, blob_storage, media_tool, video_id, "360p")

    unit.on_exhausted("queue shut down before retry")

    quality = media_repository.get_quality(video_id, "360p")
    assert quality.status == "failed"
    assert quality.error_message == "queue shut down before retry"
    assert media_repository.get_video(video_id).status == "completed"


def test_exhausted_unit_keeps_completed_rendition(media_repository, blob_storage, media_tool) -> None:
    video_id = _add_video(media_repository, {"360p": "completed"})
    unit = TranscodeUnit(media_repository, blob_storage, media_tool, video_id, "360p")

    unit.on_exhausted("database is locked")

    assert media_repository.get_quality(video_id, "360p").status == "completed"
    assert media_repository.get_video(video_id).status == "completed"


def test_finalized_video_releases_its_lock(media_repository) -> None:
    video_id = _add_video(media_repository, {"360p": "processing"})

    assert finalize_video(media_repository, video_id) is None
    assert video_id in transcoding._VIDEO_LOCKS

    media_repository.update_quality(video_id, "360p", status="completed", processing_progress=100)
    assert finalize_video(media_repository, video_id) == "completed"
    assert video_id not in transcoding._VIDEO_LOCKS
