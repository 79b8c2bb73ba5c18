"""Bootstrap logic that prepares runtime directories and the SQLite database."""

from __future__ import annotations

import logging
import shutil
import sqlite3
from pathlib import Path

from . import config as config_module
from .config import AppConfig, load_config

LOGGER = logging.getLogger(__name__)


class BootstrapError(RuntimeError):
    """Raised when initialization cannot be completed."""


SCHEMA = """
PRAGMA foreign_keys = ON;

CREATE TABLE IF NOT EXISTS assessments (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    course_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    description TEXT DEFAULT '',
    time_limit INTEGER NOT NULL,
    passing_score REAL NOT NULL,
    max_attempts INTEGER,
    start_date TEXT,
    end_date TEXT,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS assessment_questions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    assessment_id INTEGER NOT NULL,
    question_type TEXT NOT NULL,
    question_text TEXT NOT NULL DEFAULT '',
    points REAL NOT NULL,
    display_order INTEGER NOT NULL,
    options TEXT,
    correct_answer TEXT,
    grading_rubric TEXT,
    UNIQUE(assessment_id, display_order),
    FOREIGN KEY(assessment_id) REFERENCES assessments(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS assessment_prerequisites (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    assessment_id INTEGER NOT NULL,
    prerequisite_type TEXT NOT NULL,
    prerequisite_data TEXT NOT NULL DEFAULT '{}',
    FOREIGN KEY(assessment_id) REFERENCES assessments(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS assessment_attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    assessment_id INTEGER NOT NULL,
    student_id INTEGER NOT NULL,
    attempt_number INTEGER NOT NULL,
    status TEXT NOT NULL,
    start_time TEXT NOT NULL,
    completion_time TEXT,
    time_taken INTEGER,
    score REAL,
    max_score REAL,
    percentage REAL,
    passed INTEGER,
    UNIQUE(assessment_id, student_id, attempt_number),
    FOREIGN KEY(assessment_id) REFERENCES assessments(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_attempts_status ON assessment_attempts(status, completion_time);

CREATE TABLE IF NOT EXISTS assessment_answers (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    attempt_id INTEGER NOT NULL,
    question_id INTEGER NOT NULL,
    answer TEXT NOT NULL,
    is_correct INTEGER,
    points_earned REAL,
    grading_status TEXT NOT NULL,
    grader_feedback TEXT,
    graded_by INTEGER,
    graded_at TEXT,
    UNIQUE(attempt_id, question_id),
    FOREIGN KEY(attempt_id) REFERENCES assessment_attempts(id) ON DELETE CASCADE,
    FOREIGN KEY(question_id) REFERENCES assessment_questions(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS enrollments (
    student_id INTEGER NOT NULL,
    course_id INTEGER NOT NULL,
    progress_percentage REAL NOT NULL DEFAULT 0,
    PRIMARY KEY(student_id, course_id)
);

CREATE TABLE IF NOT EXISTS course_quizzes (
    course_id INTEGER NOT NULL,
    quiz_id INTEGER NOT NULL,
    lesson_id INTEGER,
    PRIMARY KEY(course_id, quiz_id)
);

CREATE TABLE IF NOT EXISTS quiz_results (
    student_id INTEGER NOT NULL,
    quiz_id INTEGER NOT NULL,
    passed INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS lesson_completions (
    student_id INTEGER NOT NULL,
    lesson_id INTEGER NOT NULL,
    PRIMARY KEY(student_id, lesson_id)
);

CREATE TABLE IF NOT EXISTS upload_sessions (
    session_id TEXT PRIMARY KEY,
    filename TEXT NOT NULL,
    file_size INTEGER NOT NULL DEFAULT 0,
    total_chunks INTEGER NOT NULL,
    received_chunks TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS videos (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    upload_session_id TEXT UNIQUE,
    original_filename TEXT NOT NULL,
    display_name TEXT NOT NULL,
    file_size INTEGER NOT NULL DEFAULT 0,
    original_path TEXT NOT NULL,
    status TEXT NOT NULL,
    processing_progress INTEGER NOT NULL DEFAULT 0,
    duration REAL,
    resolution TEXT,
    codec TEXT,
    format TEXT,
    thumbnail_path TEXT,
    error_message TEXT,
    uploaded_by INTEGER,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS video_qualities (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    video_id INTEGER NOT NULL,
    quality TEXT NOT NULL,
    file_path TEXT NOT NULL DEFAULT '',
    file_size INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    processing_progress INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    UNIQUE(video_id, quality),
    FOREIGN KEY(video_id) REFERENCES videos(id) ON DELETE CASCADE
);
"""


class Bootstrapper:
    """High level object orchestrating initialization steps."""

    def __init__(self, config: AppConfig) -> None:
        self._config = config

    @property
    def config(self) -> AppConfig:
        return self._config

    def initialize(self) -> None:
        """Run all bootstrap tasks."""

        LOGGER.debug("Starting bootstrap sequence")
        self._ensure_directories()
        self._ensure_database()
        LOGGER.info("Bootstrap completed successfully")

    def _ensure_directories(self) -> None:
        directories = (
            ("storage", self._config.storage_root),
            ("scratch", self._config.scratch_root),
            ("upload", self._config.upload_root),
            ("assembly", self._config.assembly_root),
        )
        for label, path in directories:
            if not config_module._ensure_writable_directory(path):
                raise BootstrapError(
                    f"Unable to prepare {label} directory '{path}'. It is not writable. "
                    "Update config/default.json or adjust permissions."
                )
            LOGGER.debug("Ensured %s directory exists: %s", label, path)

        # Scratch files left by an interrupted assembly are never resumed; the
        # chunk data they were built from is still under the upload root.
        for child in self._config.assembly_root.iterdir():
            try:
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            except OSError as error:  # pragma: no cover - best effort cleanup
                LOGGER.warning("Could not remove assembly scratch %s: %s", child, error)
        LOGGER.debug("Cleared assembly scratch directory: %s", self._config.assembly_root)

    def _ensure_database(self) -> None:
        LOGGER.debug("Ensuring database schema at %s", self._config.database_file)
        connection = sqlite3.connect(self._config.database_file)
        try:
            connection.executescript(SCHEMA)
            connection.commit()
            cursor = connection.execute("PRAGMA journal_mode = WAL")
            mode = cursor.fetchone()
            LOGGER.debug("SQLite journal mode: %s", mode[0] if mode else "unknown")
        finally:
            connection.close()


def initialize_app(config_path: Path | None = None) -> AppConfig:
    """Convenience helper that loads configuration and runs initialization."""

    config = load_config(config_path=config_path)
    bootstrapper = Bootstrapper(config)
    bootstrapper.initialize()
    return config


__all__ = ["BootstrapError", "Bootstrapper", "SCHEMA", "initialize_app"]
