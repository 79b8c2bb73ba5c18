"""Persistence helpers backed by SQLite."""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from ..config import AppConfig
from .questions import QuestionPayload, decode_question_payload, encode_question_payload


LOGGER = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime; naive values are taken as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return ensure_utc(value).isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None or value == "":
        return None
    return ensure_utc(datetime.fromisoformat(str(value)))


def _optional_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    return bool(value)


def _optional_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def _bool_column(value: Optional[bool]) -> Optional[int]:
    if value is None:
        return None
    return 1 if value else 0


@dataclass
class AssessmentRecord:
    id: int
    course_id: int
    title: str
    description: str
    time_limit: int
    passing_score: float
    max_attempts: Optional[int]
    start_date: Optional[datetime]
    end_date: Optional[datetime]
    is_active: bool
    created_at: datetime


@dataclass
class QuestionRecord:
    id: int
    assessment_id: int
    question_type: str
    question_text: str
    points: float
    order: int
    payload: QuestionPayload


@dataclass
class PrerequisiteRecord:
    id: int
    assessment_id: int
    prerequisite_type: str
    prerequisite_data: Dict[str, Any]


@dataclass
class AttemptRecord:
    id: int
    assessment_id: int
    student_id: int
    attempt_number: int
    status: str
    start_time: datetime
    completion_time: Optional[datetime] = None
    time_taken: Optional[int] = None
    score: Optional[float] = None
    max_score: Optional[float] = None
    percentage: Optional[float] = None
    passed: Optional[bool] = None


@dataclass
class AnswerRecord:
    id: int
    attempt_id: int
    question_id: int
    answer: Dict[str, Any]
    is_correct: Optional[bool]
    points_earned: Optional[float]
    grading_status: str
    grader_feedback: Optional[str] = None
    graded_by: Optional[int] = None
    graded_at: Optional[datetime] = None


_MISSING = object()


class SQLiteRepository:
    """Connection, transaction and instrumentation plumbing shared by repositories."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path = config.database_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting debug events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any):
        """Emit a structured debug event capturing execution time for a DB action."""

        if self._event_emitter is None:
            yield payload
            return

        start = time.perf_counter()
        event_payload: Dict[str, Any] = dict(payload)
        failed = False
        try:
            yield event_payload
        except Exception as exc:
            failed = True
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            if not failed:
                event_payload.setdefault("status", "ok")
            filtered = {key: value for key, value in event_payload.items() if value is not None}
            self._event_emitter("DB_QUERY", action, payload=filtered, duration_ms=duration_ms)

    @staticmethod
    def _summarize_sql(statement: str) -> str:
        collapsed = " ".join(statement.strip().split())
        return collapsed[:180] + ("…" if len(collapsed) > 180 else "")

    def _execute(
        self,
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] | None = None,
        *,
        action: str,
        table: Optional[str] = None,
    ) -> sqlite3.Cursor:
        params: Tuple[Any, ...] = tuple(parameters) if parameters is not None else ()
        with self._track_db_event(
            action,
            table=table,
            sql=self._summarize_sql(statement),
            parameter_count=len(params),
        ) as event:
            cursor = connection.execute(statement, params)
            if cursor.rowcount >= 0:
                event.setdefault("rowcount", int(cursor.rowcount))
            return cursor

    def _connect(self) -> sqlite3.Connection:
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        with self._track_db_event("connect", database=str(self._db_path)) as event:
            # isolation_level=None: transactions are opened explicitly below.
            connection = sqlite3.connect(
                self._db_path,
                timeout=30.0,
                isolation_level=None,
                check_same_thread=False,
            )
            event.setdefault("sqlite_version", sqlite3.sqlite_version)
        connection.row_factory = sqlite3.Row
        self._execute(connection, "PRAGMA foreign_keys = ON", action="pragma_foreign_keys")
        return connection

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection inside a ``BEGIN IMMEDIATE`` write transaction.

        The transaction commits when the block exits normally and rolls back
        when it raises. Repository methods accept the yielded connection through
        their ``connection`` keyword so several of them share one transaction.
        """

        connection = self._connect()
        try:
            self._execute(connection, "BEGIN IMMEDIATE", action="begin_immediate")
            try:
                yield connection
            except BaseException:
                connection.rollback()
                LOGGER.debug("Transaction rolled back")
                raise
            connection.commit()
        finally:
            connection.close()

    @contextlib.contextmanager
    def _session(
        self,
        connection: Optional[sqlite3.Connection],
        *,
        write: bool = False,
    ) -> Iterator[sqlite3.Connection]:
        if connection is not None:
            yield connection
            return
        if write:
            with self.transaction() as owned:
                yield owned
            return
        owned = self._connect()
        try:
            yield owned
        finally:
            owned.close()


class AssessmentRepository(SQLiteRepository):
    """Assessments, questions, prerequisites, attempts and answers."""

    # ------------------------------------------------------------------
    # Row conversion
    # ------------------------------------------------------------------
    @staticmethod
    def _assessment_from_row(row: sqlite3.Row) -> AssessmentRecord:
        return AssessmentRecord(
            id=int(row["id"]),
            course_id=int(row["course_id"]),
            title=row["title"],
            description=row["description"] or "",
            time_limit=int(row["time_limit"]),
            passing_score=float(row["passing_score"]),
            max_attempts=int(row["max_attempts"]) if row["max_attempts"] is not None else None,
            start_date=parse_timestamp(row["start_date"]),
            end_date=parse_timestamp(row["end_date"]),
            is_active=bool(row["is_active"]),
            created_at=parse_timestamp(row["created_at"]),
        )

    @staticmethod
    def _question_from_row(row: sqlite3.Row) -> QuestionRecord:
        payload = decode_question_payload(
            row["question_type"],
            options=row["options"],
            correct_answer=row["correct_answer"],
            grading_rubric=row["grading_rubric"],
        )
        return QuestionRecord(
            id=int(row["id"]),
            assessment_id=int(row["assessment_id"]),
            question_type=row["question_type"],
            question_text=row["question_text"],
            points=float(row["points"]),
            order=int(row["display_order"]),
            payload=payload,
        )

    @staticmethod
    def _attempt_from_row(row: sqlite3.Row) -> AttemptRecord:
        return AttemptRecord(
            id=int(row["id"]),
            assessment_id=int(row["assessment_id"]),
            student_id=int(row["student_id"]),
            attempt_number=int(row["attempt_number"]),
            status=row["status"],
            start_time=parse_timestamp(row["start_time"]),
            completion_time=parse_timestamp(row["completion_time"]),
            time_taken=int(row["time_taken"]) if row["time_taken"] is not None else None,
            score=_optional_float(row["score"]),
            max_score=_optional_float(row["max_score"]),
            percentage=_optional_float(row["percentage"]),
            passed=_optional_bool(row["passed"]),
        )

    @staticmethod
    def _answer_from_row(row: sqlite3.Row) -> AnswerRecord:
        return AnswerRecord(
            id=int(row["id"]),
            attempt_id=int(row["attempt_id"]),
            question_id=int(row["question_id"]),
            answer=json.loads(row["answer"]) if row["answer"] else {},
            is_correct=_optional_bool(row["is_correct"]),
            points_earned=_optional_float(row["points_earned"]),
            grading_status=row["grading_status"],
            grader_feedback=row["grader_feedback"],
            graded_by=int(row["graded_by"]) if row["graded_by"] is not None else None,
            graded_at=parse_timestamp(row["graded_at"]),
        )

    # ------------------------------------------------------------------
    # Assessments
    # ------------------------------------------------------------------
    def add_assessment(
        self,
        *,
        course_id: int,
        title: str,
        time_limit: int,
        passing_score: float,
        description: str = "",
        max_attempts: Optional[int] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        is_active: bool = True,
        created_at: Optional[datetime] = None,
        connection: Optional[sqlite3.Connection] = None,
    ) -> int:
        LOGGER.debug("Adding assessment '%s' for course_id=%s", title, course_id)
        with self._track_db_event("add_assessment", table="assessments", course_id=course_id) as event:
            with self._session(connection, write=True) as conn:
                cursor = self._execute(
                    conn,
                    """
                    INSERT INTO assessments(
                        course_id, title, description, time_limit, passing_score,
                        max_attempts, start_date, end_date, is_active, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        course_id,
                        title,
                        description or "",
                        int(time_limit),
                        float(passing_score),
                        max_attempts,
                        format_timestamp(start_date),
                        format_timestamp(end_date),
                        1 if is_active else 0,
                        format_timestamp(created_at or utcnow()),
                    ),
                    action="assessments.insert",
                    table="assessments",
                )
                assessment_id = int(cursor.lastrowid)
                event["assessment_id"] = assessment_id
                return assessment_id

    def get_assessment(
        self,
        assessment_id: int,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> Optional[AssessmentRecord]:
        with self._session(connection) as conn:
            row = self._execute(
                conn,
                "SELECT * FROM assessments WHERE id = ?",
                (assessment_id,),
                action="assessments.get",
                table="assessments",
            ).fetchone()
        return self._assessment_from_row(row) if row else None

    def list_assessments(self, course_id: Optional[int] = None) -> List[AssessmentRecord]:
        query = "SELECT * FROM assessments"
        params: List[Any] = []
        if course_id is not None:
            query += " WHERE course_id = ?"
            params.append(course_id)
        query += " ORDER BY id"
        with self._session(None) as conn:
            rows = self._execute(conn, query, params, action="assessments.list", table="assessments").fetchall()
        return [self._assessment_from_row(row) for row in rows]

    def update_assessment(self, assessment_id: int, **fields: Any) -> None:
        columns = {
            "title": lambda value: value,
            "description": lambda value: value or "",
            "time_limit": int,
            "passing_score": float,
            "max_attempts": lambda value: value,
            "start_date": format_timestamp,
            "end_date": format_timestamp,
            "is_active": lambda value: 1 if value else 0,
        }
        assignments: List[str] = []
        params: List[Any] = []
        for name, value in fields.items():
            if name not in columns:
                raise KeyError(name)
            assignments.append(f"{name} = ?")
            params.append(columns[name](value))
        if not assignments:
            return
        params.append(assessment_id)
        with self._track_db_event("update_assessment", table="assessments", assessment_id=assessment_id):
            with self._session(None, write=True) as conn:
                self._execute(
                    conn,
                    f"UPDATE assessments SET {', '.join(assignments)} WHERE id = ?",
                    params,
                    action="assessments.update",
                    table="assessments",
                )

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------
    def next_question_order(self, assessment_id: int, *, connection: Optional[sqlite3.Connection] = None) -> int:
        with self._session(connection) as conn:
            row = self._execute(
                conn,
                "SELECT COALESCE(MAX(display_order), 0) + 1 FROM assessment_questions WHERE assessment_id = ?",
                (assessment_id,),
                action="assessment_questions.next_order",
                table="assessment_questions",
            ).fetchone()
        next_value = int(row[0]) if row and row[0] is not None else 1
        LOGGER.debug("Computed next question order for assessment_id=%s -> %s", assessment_id, next_value)
        return next_value

    def add_question(
        self,
        assessment_id: int,
        *,
        question_type: str,
        question_text: str,
        points: float,
        order: int,
        payload: QuestionPayload,
        connection: Optional[sqlite3.Connection] = None,
    ) -> int:
        options, correct_answer, rubric = encode_question_payload(payload)
        with self._track_db_event(
            "add_question",
            table="assessment_questions",
            assessment_id=assessment_id,
            question_type=question_type,
            order=order,
        ) as event:
            with self._session(connection, write=True) as conn:
                cursor = self._execute(
                    conn,
                    """
                    INSERT INTO assessment_questions(
                        assessment_id, question_type, question_text, points,
                        display_order, options, correct_answer, grading_rubric
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (assessment_id, question_type, question_text, float(points), int(order), options, correct_answer, rubric),
                    action="assessment_questions.insert",
                    table="assessment_questions",
                )
                question_id = int(cursor.lastrowid)
                event["question_id"] = question_id
                return question_id

    def get_question(
        self,
        question_id: int,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> Optional[QuestionRecord]:
        with self._session(connection) as conn:
            row = self._execute(
                conn,
                "SELECT * FROM assessment_questions WHERE id = ?",
                (question_id,),
                action="assessment_questions.get",
                table="assessment_questions",
            ).fetchone()
        return self._question_from_row(row) if row else None

    def list_questions(
        self,
        assessment_id: int,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> List[QuestionRecord]:
        with self._session(connection) as conn:
            rows = self._execute(
                conn,
                "SELECT * FROM assessment_questions WHERE assessment_id = ? ORDER BY display_order, id",
                (assessment_id,),
                action="assessment_questions.list",
                table="assessment_questions",
            ).fetchall()
        return [self._question_from_row(row) for row in rows]

    def question_order_taken(
        self,
        assessment_id: int,
        order: int,
        *,
        exclude_question_id: Optional[int] = None,
        connection: Optional[sqlite3.Connection] = None,
    ) -> bool:
        query = "SELECT 1 FROM assessment_questions WHERE assessment_id = ? AND display_order = ?"
        params: List[Any] = [assessment_id, order]
        if exclude_question_id is not None:
            query += " AND id != ?"
            params.append(exclude_question_id)
        with self._session(connection) as conn:
            row = self._execute(
                conn, query, params, action="assessment_questions.order_taken", table="assessment_questions"
            ).fetchone()
        return row is not None

    def update_question(
        self,
        question_id: int,
        *,
        question_text: Optional[str] | object = _MISSING,
        points: Optional[float] | object = _MISSING,
        order: Optional[int] | object = _MISSING,
        payload: Optional[QuestionPayload] | object = _MISSING,
        connection: Optional[sqlite3.Connection] = None,
    ) -> None:
        assignments: List[str] = []
        params: List[Any] = []
        if question_text is not _MISSING:
            assignments.append("question_text = ?")
            params.append(question_text)
        if points is not _MISSING:
            assignments.append("points = ?")
            params.append(float(points))  # type: ignore[arg-type]
        if order is not _MISSING:
            assignments.append("display_order = ?")
            params.append(int(order))  # type: ignore[arg-type]
        if payload is not _MISSING:
            options, correct_answer, rubric = encode_question_payload(payload)  # type: ignore[arg-type]
            assignments.extend(["options = ?", "correct_answer = ?", "grading_rubric = ?"])
            params.extend([options, correct_answer, rubric])
        if not assignments:
            LOGGER.debug("No question fields supplied for question_id=%s", question_id)
            return
        params.append(question_id)
        with self._track_db_event(
            "update_question",
            table="assessment_questions",
            question_id=question_id,
            field_count=len(assignments),
        ):
            with self._session(connection, write=True) as conn:
                self._execute(
                    conn,
                    f"UPDATE assessment_questions SET {', '.join(assignments)} WHERE id = ?",
                    params,
                    action="assessment_questions.update",
                    table="assessment_questions",
                )

    def remove_question(self, question_id: int, *, connection: Optional[sqlite3.Connection] = None) -> bool:
        with self._track_db_event("remove_question", table="assessment_questions", question_id=question_id):
            with self._session(connection, write=True) as conn:
                cursor = self._execute(
                    conn,
                    "DELETE FROM assessment_questions WHERE id = ?",
                    (question_id,),
                    action="assessment_questions.delete",
                    table="assessment_questions",
                )
                return cursor.rowcount > 0

    def reorder_questions(self, assessment_id: int, question_ids: Sequence[int]) -> None:
        """Assign orders 1..n to *question_ids* in the given sequence."""

        with self._track_db_event(
            "reorder_questions",
            table="assessment_questions",
            assessment_id=assessment_id,
            question_count=len(question_ids),
        ):
            with self.transaction() as conn:
                # Park every row on a negative order first so the
                # (assessment_id, display_order) unique index never collides.
                for index, question_id in enumerate(question_ids, start=1):
                    self._execute(
                        conn,
                        "UPDATE assessment_questions SET display_order = ? WHERE id = ? AND assessment_id = ?",
                        (-index, question_id, assessment_id),
                        action="assessment_questions.park_order",
                        table="assessment_questions",
                    )
                for index, question_id in enumerate(question_ids, start=1):
                    self._execute(
                        conn,
                        "UPDATE assessment_questions SET display_order = ? WHERE id = ? AND assessment_id = ?",
                        (index, question_id, assessment_id),
                        action="assessment_questions.set_order",
                        table="assessment_questions",
                    )

    # ------------------------------------------------------------------
    # Prerequisites
    # ------------------------------------------------------------------
    def add_prerequisite(self, assessment_id: int, prerequisite_type: str, data: Dict[str, Any]) -> int:
        with self._track_db_event(
            "add_prerequisite",
            table="assessment_prerequisites",
            assessment_id=assessment_id,
            prerequisite_type=prerequisite_type,
        ) as event:
            with self._session(None, write=True) as conn:
                cursor = self._execute(
                    conn,
                    "INSERT INTO assessment_prerequisites(assessment_id, prerequisite_type, prerequisite_data) VALUES (?, ?, ?)",
                    (assessment_id, prerequisite_type, json.dumps(data or {})),
                    action="assessment_prerequisites.insert",
                    table="assessment_prerequisites",
                )
                prerequisite_id = int(cursor.lastrowid)
                event["prerequisite_id"] = prerequisite_id
                return prerequisite_id

    def list_prerequisites(
        self,
        assessment_id: int,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> List[PrerequisiteRecord]:
        with self._session(connection) as conn:
            rows = self._execute(
                conn,
                "SELECT * FROM assessment_prerequisites WHERE assessment_id = ? ORDER BY id",
                (assessment_id,),
                action="assessment_prerequisites.list",
                table="assessment_prerequisites",
            ).fetchall()
        return [
            PrerequisiteRecord(
                id=int(row["id"]),
                assessment_id=int(row["assessment_id"]),
                prerequisite_type=row["prerequisite_type"],
                prerequisite_data=json.loads(row["prerequisite_data"] or "{}"),
            )
            for row in rows
        ]

    def remove_prerequisite(self, assessment_id: int, prerequisite_id: int) -> bool:
        with self._track_db_event(
            "remove_prerequisite",
            table="assessment_prerequisites",
            prerequisite_id=prerequisite_id,
        ):
            with self._session(None, write=True) as conn:
                cursor = self._execute(
                    conn,
                    "DELETE FROM assessment_prerequisites WHERE id = ? AND assessment_id = ?",
                    (prerequisite_id, assessment_id),
                    action="assessment_prerequisites.delete",
                    table="assessment_prerequisites",
                )
                return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------
    def count_attempts(
        self,
        assessment_id: int,
        student_id: int,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> int:
        with self._session(connection) as conn:
            row = self._execute(
                conn,
                "SELECT COUNT(*) FROM assessment_attempts WHERE assessment_id = ? AND student_id = ?",
                (assessment_id, student_id),
                action="assessment_attempts.count",
                table="assessment_attempts",
            ).fetchone()
        return int(row[0]) if row else 0

    def add_attempt(
        self,
        *,
        assessment_id: int,
        student_id: int,
        attempt_number: int,
        status: str,
        start_time: datetime,
        max_score: Optional[float],
        connection: Optional[sqlite3.Connection] = None,
    ) -> int:
        with self._track_db_event(
            "add_attempt",
            table="assessment_attempts",
            assessment_id=assessment_id,
            student_id=student_id,
            attempt_number=attempt_number,
        ) as event:
            with self._session(connection, write=True) as conn:
                cursor = self._execute(
                    conn,
                    """
                    INSERT INTO assessment_attempts(
                        assessment_id, student_id, attempt_number, status, start_time, max_score
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (assessment_id, student_id, attempt_number, status, format_timestamp(start_time), max_score),
                    action="assessment_attempts.insert",
                    table="assessment_attempts",
                )
                attempt_id = int(cursor.lastrowid)
                event["attempt_id"] = attempt_id
                return attempt_id

    def get_attempt(
        self,
        attempt_id: int,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> Optional[AttemptRecord]:
        with self._session(connection) as conn:
            row = self._execute(
                conn,
                "SELECT * FROM assessment_attempts WHERE id = ?",
                (attempt_id,),
                action="assessment_attempts.get",
                table="assessment_attempts",
            ).fetchone()
        return self._attempt_from_row(row) if row else None

    def list_attempts(
        self,
        *,
        assessment_id: Optional[int] = None,
        student_id: Optional[int] = None,
        statuses: Optional[Iterable[str]] = None,
        order_by: str = "attempt_number",
        connection: Optional[sqlite3.Connection] = None,
    ) -> List[AttemptRecord]:
        orderings = {
            "attempt_number": "attempt_number, id",
            "completion_time": "completion_time, id",
            "id": "id",
        }
        clauses: List[str] = []
        params: List[Any] = []
        if assessment_id is not None:
            clauses.append("assessment_id = ?")
            params.append(assessment_id)
        if student_id is not None:
            clauses.append("student_id = ?")
            params.append(student_id)
        status_list = list(statuses) if statuses is not None else None
        if status_list is not None:
            if not status_list:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in status_list)})")
            params.extend(status_list)
        query = "SELECT * FROM assessment_attempts"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += f" ORDER BY {orderings[order_by]}"
        with self._session(connection) as conn:
            rows = self._execute(
                conn, query, params, action="assessment_attempts.list", table="assessment_attempts"
            ).fetchall()
        return [self._attempt_from_row(row) for row in rows]

    def update_attempt(
        self,
        attempt_id: int,
        *,
        expected_status: str,
        status: str,
        completion_time: Optional[datetime] | object = _MISSING,
        time_taken: Optional[int] | object = _MISSING,
        score: Optional[float] | object = _MISSING,
        max_score: Optional[float] | object = _MISSING,
        percentage: Optional[float] | object = _MISSING,
        passed: Optional[bool] | object = _MISSING,
        connection: Optional[sqlite3.Connection] = None,
    ) -> bool:
        """Update an attempt only while it still has *expected_status*.

        Returns ``False`` when another writer changed the status first.
        """

        assignments = ["status = ?"]
        params: List[Any] = [status]
        if completion_time is not _MISSING:
            assignments.append("completion_time = ?")
            params.append(format_timestamp(completion_time))  # type: ignore[arg-type]
        if time_taken is not _MISSING:
            assignments.append("time_taken = ?")
            params.append(time_taken)
        if score is not _MISSING:
            assignments.append("score = ?")
            params.append(score)
        if max_score is not _MISSING:
            assignments.append("max_score = ?")
            params.append(max_score)
        if percentage is not _MISSING:
            assignments.append("percentage = ?")
            params.append(percentage)
        if passed is not _MISSING:
            assignments.append("passed = ?")
            params.append(_bool_column(passed))  # type: ignore[arg-type]
        params.extend([attempt_id, expected_status])
        with self._track_db_event(
            "update_attempt",
            table="assessment_attempts",
            attempt_id=attempt_id,
            expected_status=expected_status,
            status=status,
        ) as event:
            with self._session(connection, write=True) as conn:
                cursor = self._execute(
                    conn,
                    f"UPDATE assessment_attempts SET {', '.join(assignments)} WHERE id = ? AND status = ?",
                    params,
                    action="assessment_attempts.update",
                    table="assessment_attempts",
                )
                updated = cursor.rowcount > 0
                event["updated"] = updated
                return updated

    # ------------------------------------------------------------------
    # Answers
    # ------------------------------------------------------------------
    def add_answer(
        self,
        *,
        attempt_id: int,
        question_id: int,
        answer: Dict[str, Any],
        is_correct: Optional[bool],
        points_earned: Optional[float],
        grading_status: str,
        connection: Optional[sqlite3.Connection] = None,
    ) -> int:
        with self._session(connection, write=True) as conn:
            cursor = self._execute(
                conn,
                """
                INSERT INTO assessment_answers(
                    attempt_id, question_id, answer, is_correct, points_earned, grading_status
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (attempt_id, question_id, json.dumps(answer), _bool_column(is_correct), points_earned, grading_status),
                action="assessment_answers.insert",
                table="assessment_answers",
            )
            return int(cursor.lastrowid)

    def get_answer(
        self,
        answer_id: int,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> Optional[AnswerRecord]:
        with self._session(connection) as conn:
            row = self._execute(
                conn,
                "SELECT * FROM assessment_answers WHERE id = ?",
                (answer_id,),
                action="assessment_answers.get",
                table="assessment_answers",
            ).fetchone()
        return self._answer_from_row(row) if row else None

    def list_answers(
        self,
        attempt_id: int,
        *,
        connection: Optional[sqlite3.Connection] = None,
    ) -> List[AnswerRecord]:
        with self._session(connection) as conn:
            rows = self._execute(
                conn,
                "SELECT * FROM assessment_answers WHERE attempt_id = ? ORDER BY id",
                (attempt_id,),
                action="assessment_answers.list",
                table="assessment_answers",
            ).fetchall()
        return [self._answer_from_row(row) for row in rows]

    def list_answers_for_assessment(self, assessment_id: int) -> List[AnswerRecord]:
        with self._session(None) as conn:
            rows = self._execute(
                conn,
                """
                SELECT ans.* FROM assessment_answers AS ans
                JOIN assessment_attempts AS att ON att.id = ans.attempt_id
                WHERE att.assessment_id = ?
                ORDER BY ans.id
                """,
                (assessment_id,),
                action="assessment_answers.list_for_assessment",
                table="assessment_answers",
            ).fetchall()
        return [self._answer_from_row(row) for row in rows]

    def record_manual_grade(
        self,
        answer_id: int,
        *,
        points_earned: float,
        is_correct: bool,
        grader_id: int,
        feedback: Optional[str],
        graded_at: datetime,
        grading_status: str,
        expected_status: str,
        connection: Optional[sqlite3.Connection] = None,
    ) -> bool:
        with self._track_db_event(
            "record_manual_grade",
            table="assessment_answers",
            answer_id=answer_id,
            grader_id=grader_id,
        ) as event:
            with self._session(connection, write=True) as conn:
                cursor = self._execute(
                    conn,
                    """
                    UPDATE assessment_answers
                    SET points_earned = ?, is_correct = ?, grading_status = ?,
                        grader_feedback = ?, graded_by = ?, graded_at = ?
                    WHERE id = ? AND grading_status = ?
                    """,
                    (
                        float(points_earned),
                        _bool_column(is_correct),
                        grading_status,
                        feedback,
                        grader_id,
                        format_timestamp(graded_at),
                        answer_id,
                        expected_status,
                    ),
                    action="assessment_answers.grade",
                    table="assessment_answers",
                )
                updated = cursor.rowcount > 0
                event["updated"] = updated
                return updated


class SQLiteCourseDirectory(SQLiteRepository):
    """Enrollment, quiz and lesson lookups backed by the local database."""

    def is_enrolled(self, student_id: int, course_id: int) -> bool:
        with self._session(None) as conn:
            row = self._execute(
                conn,
                "SELECT 1 FROM enrollments WHERE student_id = ? AND course_id = ?",
                (student_id, course_id),
                action="enrollments.lookup",
                table="enrollments",
            ).fetchone()
        return row is not None

    def get_progress_percentage(self, student_id: int, course_id: int) -> float:
        with self._session(None) as conn:
            row = self._execute(
                conn,
                "SELECT progress_percentage FROM enrollments WHERE student_id = ? AND course_id = ?",
                (student_id, course_id),
                action="enrollments.progress",
                table="enrollments",
            ).fetchone()
        return float(row["progress_percentage"]) if row else 0.0

    def has_passed_all_quizzes(self, student_id: int, course_id: int) -> bool:
        with self._session(None) as conn:
            row = self._execute(
                conn,
                """
                SELECT COUNT(*) FROM course_quizzes AS cq
                WHERE cq.course_id = ?
                AND NOT EXISTS (
                    SELECT 1 FROM quiz_results AS qr
                    WHERE qr.quiz_id = cq.quiz_id AND qr.student_id = ? AND qr.passed = 1
                )
                """,
                (course_id, student_id),
                action="course_quizzes.unpassed",
                table="course_quizzes",
            ).fetchone()
        return int(row[0]) == 0

    def has_completed_lessons(self, student_id: int, lesson_ids: Sequence[int]) -> bool:
        wanted = {int(lesson_id) for lesson_id in lesson_ids}
        if not wanted:
            return True
        placeholders = ", ".join("?" for _ in wanted)
        with self._session(None) as conn:
            rows = self._execute(
                conn,
                f"SELECT lesson_id FROM lesson_completions WHERE student_id = ? AND lesson_id IN ({placeholders})",
                [student_id, *sorted(wanted)],
                action="lesson_completions.lookup",
                table="lesson_completions",
            ).fetchall()
        return {int(row["lesson_id"]) for row in rows} == wanted

    # ------------------------------------------------------------------
    # Seeding helpers used by fixtures and the management CLI
    # ------------------------------------------------------------------
    def enroll(self, student_id: int, course_id: int, progress_percentage: float = 0.0) -> None:
        with self._session(None, write=True) as conn:
            self._execute(
                conn,
                """
                INSERT INTO enrollments(student_id, course_id, progress_percentage) VALUES (?, ?, ?)
                ON CONFLICT(student_id, course_id) DO UPDATE SET progress_percentage = excluded.progress_percentage
                """,
                (student_id, course_id, float(progress_percentage)),
                action="enrollments.upsert",
                table="enrollments",
            )

    def add_course_quiz(self, course_id: int, quiz_id: int, lesson_id: Optional[int] = None) -> None:
        with self._session(None, write=True) as conn:
            self._execute(
                conn,
                "INSERT OR IGNORE INTO course_quizzes(course_id, quiz_id, lesson_id) VALUES (?, ?, ?)",
                (course_id, quiz_id, lesson_id),
                action="course_quizzes.insert",
                table="course_quizzes",
            )

    def record_quiz_result(self, student_id: int, quiz_id: int, passed: bool) -> None:
        with self._session(None, write=True) as conn:
            self._execute(
                conn,
                "INSERT INTO quiz_results(student_id, quiz_id, passed) VALUES (?, ?, ?)",
                (student_id, quiz_id, 1 if passed else 0),
                action="quiz_results.insert",
                table="quiz_results",
            )

    def record_lesson_completion(self, student_id: int, lesson_id: int) -> None:
        with self._session(None, write=True) as conn:
            self._execute(
                conn,
                "INSERT OR IGNORE INTO lesson_completions(student_id, lesson_id) VALUES (?, ?)",
                (student_id, lesson_id),
                action="lesson_completions.insert",
                table="lesson_completions",
            )


__all__ = [
    "AnswerRecord",
    "AssessmentRecord",
    "AssessmentRepository",
    "AttemptRecord",
    "PrerequisiteRecord",
    "QuestionRecord",
    "SQLiteCourseDirectory",
    "SQLiteRepository",
    "ensure_utc",
    "format_timestamp",
    "parse_timestamp",
    "utcnow",
]
