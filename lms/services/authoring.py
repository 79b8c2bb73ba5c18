"""Assessment authoring: assessments, questions and prerequisites."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from ..errors import (
    AssessmentNotFoundError,
    DuplicateQuestionOrderError,
    InvalidAssessmentError,
    InvalidQuestionError,
    PrerequisiteNotFoundError,
    QuestionNotFoundError,
)
from .prerequisites import validate_prerequisite_data
from .questions import (
    QUESTION_TYPES,
    decode_question_payload,
    payload_to_dict,
    validate_points,
)
from .storage import (
    AssessmentRecord,
    AssessmentRepository,
    PrerequisiteRecord,
    QuestionRecord,
    ensure_utc,
    utcnow,
)


LOGGER = logging.getLogger(__name__)

_ASSESSMENT_FIELDS = (
    "title",
    "description",
    "time_limit",
    "passing_score",
    "max_attempts",
    "start_date",
    "end_date",
    "is_active",
)


@dataclass
class AssessmentOverview:
    assessment: AssessmentRecord
    questions: List[QuestionRecord] = field(default_factory=list)
    prerequisites: List[PrerequisiteRecord] = field(default_factory=list)


def validate_assessment_fields(values: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate and normalise assessment settings; raise on the first problem."""

    cleaned = dict(values)
    title = str(cleaned.get("title") or "").strip()
    if not title:
        raise InvalidAssessmentError("Title is required")
    cleaned["title"] = title

    try:
        time_limit = int(cleaned.get("time_limit"))
    except (TypeError, ValueError) as error:
        raise InvalidAssessmentError("time_limit must be a whole number of minutes") from error
    if time_limit <= 0:
        raise InvalidAssessmentError("time_limit must be positive")
    cleaned["time_limit"] = time_limit

    try:
        passing_score = float(cleaned.get("passing_score"))
    except (TypeError, ValueError) as error:
        raise InvalidAssessmentError("passing_score must be a number") from error
    if not 0 <= passing_score <= 100:
        raise InvalidAssessmentError("passing_score must be between 0 and 100")
    cleaned["passing_score"] = passing_score

    max_attempts = cleaned.get("max_attempts")
    if max_attempts is not None:
        if isinstance(max_attempts, bool) or int(max_attempts) < 1:
            raise InvalidAssessmentError("max_attempts must be at least 1 when set")
        cleaned["max_attempts"] = int(max_attempts)

    start_date = cleaned.get("start_date")
    end_date = cleaned.get("end_date")
    start_date = ensure_utc(start_date) if start_date is not None else None
    end_date = ensure_utc(end_date) if end_date is not None else None
    if start_date is not None:
        if end_date is None:
            raise InvalidAssessmentError("end_date is required when start_date is set")
        if end_date <= start_date:
            raise InvalidAssessmentError("end_date must be after start_date")
    cleaned["start_date"] = start_date
    cleaned["end_date"] = end_date
    cleaned["description"] = str(cleaned.get("description") or "")
    cleaned["is_active"] = bool(cleaned.get("is_active", True))
    return cleaned


class AuthoringService:
    def __init__(
        self,
        repository: AssessmentRepository,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._clock = clock

    def _require_assessment(self, assessment_id: int, connection=None) -> AssessmentRecord:
        assessment = self._repository.get_assessment(assessment_id, connection=connection)
        if assessment is None:
            raise AssessmentNotFoundError(details={"assessment_id": assessment_id})
        return assessment

    def _require_question(self, question_id: int, connection=None) -> QuestionRecord:
        question = self._repository.get_question(question_id, connection=connection)
        if question is None:
            raise QuestionNotFoundError(details={"question_id": question_id})
        return question

    # ------------------------------------------------------------------
    # Assessments
    # ------------------------------------------------------------------
    def create_assessment(
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
        questions: Optional[Sequence[Mapping[str, Any]]] = None,
    ) -> AssessmentOverview:
        """Create an assessment and, optionally, its questions in one transaction."""

        values = validate_assessment_fields(
            {
                "title": title,
                "description": description,
                "time_limit": time_limit,
                "passing_score": passing_score,
                "max_attempts": max_attempts,
                "start_date": start_date,
                "end_date": end_date,
                "is_active": is_active,
            }
        )
        with self._repository.transaction() as connection:
            assessment_id = self._repository.add_assessment(
                course_id=course_id,
                created_at=ensure_utc(self._clock()),
                connection=connection,
                **values,
            )
            for index, question in enumerate(questions or (), start=1):
                fields = dict(question)
                fields.setdefault("order", index)
                self._insert_question(assessment_id, fields, connection)

        LOGGER.info("Created assessment %s '%s' for course %s", assessment_id, values["title"], course_id)
        return self.overview(assessment_id)

    def update_assessment(self, assessment_id: int, **changes: Any) -> AssessmentRecord:
        current = self._require_assessment(assessment_id)
        unknown = set(changes) - set(_ASSESSMENT_FIELDS)
        if unknown:
            raise InvalidAssessmentError(f"Unknown assessment fields: {', '.join(sorted(unknown))}")
        merged = {name: getattr(current, name) for name in _ASSESSMENT_FIELDS}
        merged.update(changes)
        values = validate_assessment_fields(merged)
        self._repository.update_assessment(
            assessment_id, **{name: values[name] for name in changes}
        )
        return self._require_assessment(assessment_id)

    def overview(self, assessment_id: int) -> AssessmentOverview:
        assessment = self._require_assessment(assessment_id)
        return AssessmentOverview(
            assessment=assessment,
            questions=self._repository.list_questions(assessment_id),
            prerequisites=self._repository.list_prerequisites(assessment_id),
        )

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------
    def _insert_question(
        self,
        assessment_id: int,
        fields: Mapping[str, Any],
        connection: sqlite3.Connection,
    ) -> int:
        question_type = str(fields.get("question_type") or "")
        if question_type not in QUESTION_TYPES:
            raise InvalidQuestionError(
                f"Invalid question type '{question_type}'",
                details={"allowed": list(QUESTION_TYPES)},
            )
        text = str(fields.get("question_text") or "").strip()
        if not text:
            raise InvalidQuestionError("question_text is required")
        points = validate_points(fields.get("points"))
        payload = decode_question_payload(
            question_type,
            options=fields.get("options"),
            correct_answer=fields.get("correct_answer"),
            grading_rubric=fields.get("grading_rubric"),
        )
        order = fields.get("order")
        if order is None:
            order = self._repository.next_question_order(assessment_id, connection=connection)
        order = int(order)
        if order < 1:
            raise InvalidQuestionError("Question order must be at least 1")
        if self._repository.question_order_taken(assessment_id, order, connection=connection):
            raise DuplicateQuestionOrderError(details={"order": order})
        return self._repository.add_question(
            assessment_id,
            question_type=question_type,
            question_text=text,
            points=points,
            order=order,
            payload=payload,
            connection=connection,
        )

    def add_question(self, assessment_id: int, **fields: Any) -> QuestionRecord:
        with self._repository.transaction() as connection:
            self._require_assessment(assessment_id, connection)
            question_id = self._insert_question(assessment_id, fields, connection)
            question = self._require_question(question_id, connection)
        LOGGER.info(
            "Added %s question %s to assessment %s at order %s",
            question.question_type,
            question.id,
            assessment_id,
            question.order,
        )
        return question

    def update_question(self, question_id: int, **changes: Any) -> QuestionRecord:
        """Update text, points, order or the type-specific payload of a question."""

        with self._repository.transaction() as connection:
            question = self._require_question(question_id, connection)
            updates: Dict[str, Any] = {}
            if "question_text" in changes:
                text = str(changes["question_text"] or "").strip()
                if not text:
                    raise InvalidQuestionError("question_text is required")
                updates["question_text"] = text
            if "points" in changes:
                updates["points"] = validate_points(changes["points"])
            if "order" in changes:
                order = int(changes["order"])
                if order < 1:
                    raise InvalidQuestionError("Question order must be at least 1")
                if self._repository.question_order_taken(
                    question.assessment_id,
                    order,
                    exclude_question_id=question.id,
                    connection=connection,
                ):
                    raise DuplicateQuestionOrderError(details={"order": order})
                updates["order"] = order
            if {"options", "correct_answer", "grading_rubric"} & set(changes):
                current = payload_to_dict(question.payload)
                options = changes.get("options", current.get("options"))
                if "correct_answer" in changes:
                    answer_key = changes["correct_answer"]
                    if "options" not in changes and options is not None:
                        # A new key replaces the stored per-option flags.
                        options = [{"id": item["id"], "text": item["text"]} for item in options]
                elif "options" in changes:
                    answer_key = None
                elif "correct_option_id" in current:
                    answer_key = {"correct_option_id": current["correct_option_id"]}
                else:
                    answer_key = current.get("correct_answer")
                updates["payload"] = decode_question_payload(
                    question.question_type,
                    options=options,
                    correct_answer=answer_key,
                    grading_rubric=changes.get("grading_rubric", current.get("grading_rubric")),
                )
            self._repository.update_question(question.id, connection=connection, **updates)
            return self._require_question(question.id, connection)

    def delete_question(self, question_id: int) -> None:
        self._require_question(question_id)
        self._repository.remove_question(question_id)
        LOGGER.info("Deleted question %s", question_id)

    def reorder_questions(self, assessment_id: int, question_ids: Iterable[int]) -> List[QuestionRecord]:
        """Renumber questions 1..n following *question_ids*, which must list every question once."""

        self._require_assessment(assessment_id)
        ordered = [int(question_id) for question_id in question_ids]
        existing = {question.id for question in self._repository.list_questions(assessment_id)}
        if len(ordered) != len(set(ordered)) or set(ordered) != existing:
            raise InvalidQuestionError(
                "Reorder must list every question of the assessment exactly once",
                details={"expected": sorted(existing), "received": ordered},
            )
        self._repository.reorder_questions(assessment_id, ordered)
        return self._repository.list_questions(assessment_id)

    # ------------------------------------------------------------------
    # Prerequisites
    # ------------------------------------------------------------------
    def add_prerequisite(
        self,
        assessment_id: int,
        prerequisite_type: str,
        prerequisite_data: Optional[Mapping[str, Any]] = None,
    ) -> PrerequisiteRecord:
        self._require_assessment(assessment_id)
        data = validate_prerequisite_data(prerequisite_type, prerequisite_data)
        prerequisite_id = self._repository.add_prerequisite(assessment_id, prerequisite_type, data)
        LOGGER.info(
            "Added %s prerequisite %s to assessment %s", prerequisite_type, prerequisite_id, assessment_id
        )
        return next(
            item
            for item in self._repository.list_prerequisites(assessment_id)
            if item.id == prerequisite_id
        )

    def remove_prerequisite(self, assessment_id: int, prerequisite_id: int) -> None:
        if not self._repository.remove_prerequisite(assessment_id, prerequisite_id):
            raise PrerequisiteNotFoundError(details={"prerequisite_id": prerequisite_id})


__all__ = ["AssessmentOverview", "AuthoringService", "validate_assessment_fields"]
