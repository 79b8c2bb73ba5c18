from __future__ import annotations

import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from lms.bootstrap import Bootstrapper
from lms.config import AppConfig
from lms.errors import MediaToolError
from lms.services.attempts import AttemptService
from lms.services.authoring import AssessmentOverview, AuthoringService
from lms.services.blob_storage import LocalBlobStorage
from lms.services.grading_queue import GradingQueue
from lms.services.media_repository import MediaRepository
from lms.services.media_tools import MediaMetadata
from lms.services.storage import AssessmentRepository, SQLiteCourseDirectory


START = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeMediaTool:
    """Records calls and writes small placeholder files instead of running ffmpeg."""

    def __init__(self, *, duration: float = 12.0) -> None:
        self.duration = duration
        self.metadata_error: Optional[MediaToolError] = None
        self.thumbnail_error: Optional[Exception] = None
        # quality -> number of leading attempts that fail
        self.transcode_failures: Dict[str, int] = {}
        self.transcode_calls: List[str] = []
        self.thumbnail_offsets: List[float] = []
        self.progress_steps = (10, 50, 90)
        self.on_transcode: Optional[Callable[[str], None]] = None
        self._lock = threading.Lock()

    def extract_metadata(self, path: Path) -> MediaMetadata:
        if self.metadata_error is not None:
            raise self.metadata_error
        assert Path(path).exists()
        return MediaMetadata(duration=self.duration, resolution="1920x1080", codec="h264", format="mp4")

    def transcode(self, input_path, output_path, quality, on_progress=None, *, duration=None, timeout=None):
        with self._lock:
            self.transcode_calls.append(quality)
            remaining = self.transcode_failures.get(quality, 0)
            if remaining:
                self.transcode_failures[quality] = remaining - 1
        if self.on_transcode is not None:
            self.on_transcode(quality)
        if remaining:
            raise MediaToolError(f"Failed to transcode video to {quality}", "encoder exploded")
        if on_progress is not None:
            for step in self.progress_steps:
                on_progress(step)
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        Path(output_path).write_bytes(f"{quality}:".encode("utf-8") + Path(input_path).read_bytes())

    def generate_thumbnail(self, input_path, output_path, at_seconds, *, timeout=None):
        self.thumbnail_offsets.append(at_seconds)
        if self.thumbnail_error is not None:
            raise self.thumbnail_error
        Path(output_path).parent.mkdir(parents=True, exist_ok=True)
        Path(output_path).write_bytes(b"jpeg")


@pytest.fixture()
def temp_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> AppConfig:
    monkeypatch.chdir(tmp_path)

    config = AppConfig.from_mapping(
        {
            "storage_root": "storage",
            "database_file": "storage/lms.db",
            "scratch_root": "scratch",
            "quality_tiers": ["360p", "480p", "720p", "1080p"],
        },
        base_path=tmp_path,
    )

    Bootstrapper(config).initialize()
    return config


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def repository(temp_config: AppConfig) -> AssessmentRepository:
    return AssessmentRepository(temp_config)


@pytest.fixture()
def directory(temp_config: AppConfig) -> SQLiteCourseDirectory:
    return SQLiteCourseDirectory(temp_config)


@pytest.fixture()
def media_repository(temp_config: AppConfig) -> MediaRepository:
    return MediaRepository(temp_config)


@pytest.fixture()
def blob_storage(temp_config: AppConfig) -> LocalBlobStorage:
    return LocalBlobStorage(temp_config.storage_root)


@pytest.fixture()
def media_tool() -> FakeMediaTool:
    return FakeMediaTool()


COURSE_ID = 7
STUDENT_ID = 101

MIXED_QUESTIONS = [
    {
        "question_type": "multiple_choice",
        "question_text": "2 + 2 = ?",
        "points": 5,
        "options": [{"id": "a", "text": "3"}, {"id": "b", "text": "4"}],
        "correct_answer": {"correct_option_id": "b"},
    },
    {
        "question_type": "multiple_choice",
        "question_text": "Largest planet?",
        "points": 5,
        "options": [
            {"id": "j", "text": "Jupiter", "is_correct": True},
            {"id": "m", "text": "Mars"},
        ],
    },
    {
        "question_type": "essay",
        "question_text": "Explain orbital resonance.",
        "points": 10,
        "grading_rubric": "Mentions integer period ratios",
    },
]


@pytest.fixture()
def authoring(repository: AssessmentRepository, clock: FakeClock) -> AuthoringService:
    return AuthoringService(repository, clock=clock)


@pytest.fixture()
def attempt_service(
    repository: AssessmentRepository, directory: SQLiteCourseDirectory, clock: FakeClock
) -> AttemptService:
    return AttemptService(repository, directory, clock=clock)


@pytest.fixture()
def grading_queue(repository: AssessmentRepository, clock: FakeClock) -> GradingQueue:
    return GradingQueue(repository, clock=clock)


@pytest.fixture()
def mixed_assessment(authoring: AuthoringService, directory: SQLiteCourseDirectory) -> AssessmentOverview:
    """Two multiple-choice questions worth 5 points and an essay worth 10, student enrolled."""

    directory.enroll(STUDENT_ID, COURSE_ID, 100)
    return authoring.create_assessment(
        course_id=COURSE_ID,
        title="Astronomy midterm",
        time_limit=30,
        passing_score=70,
        questions=MIXED_QUESTIONS,
    )
