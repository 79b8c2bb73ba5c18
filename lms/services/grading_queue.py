"""Manual grading of short-answer and essay responses."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from ..errors import (
    AnswerAlreadyGradedError,
    AnswerNotFoundError,
    AttemptNotFoundError,
    InvalidGradingDataError,
    QuestionNotFoundError,
)
from .attempts import (
    COMPLETED,
    GRADING_PENDING,
    MANUALLY_GRADED,
    PENDING_REVIEW,
    ensure_transition,
)
from .events import emit_transition_event
from .grading import compute_score
from .storage import (
    AnswerRecord,
    AssessmentRepository,
    AttemptRecord,
    QuestionRecord,
    ensure_utc,
    utcnow,
)


LOGGER = logging.getLogger(__name__)


@dataclass
class PendingAttempt:
    attempt: AttemptRecord
    questions: List[QuestionRecord] = field(default_factory=list)
    answers: List[AnswerRecord] = field(default_factory=list)

    @property
    def pending_answers(self) -> List[AnswerRecord]:
        return [answer for answer in self.answers if answer.grading_status == PENDING_REVIEW]


@dataclass
class GradingOutcome:
    answer: AnswerRecord
    attempt: AttemptRecord

    @property
    def attempt_completed(self) -> bool:
        return self.attempt.status == COMPLETED


class GradingQueue:
    def __init__(
        self,
        repository: AssessmentRepository,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._clock = clock

    def list_pending(self, assessment_id: Optional[int] = None) -> List[PendingAttempt]:
        """Return attempts awaiting manual grading, oldest submission first."""

        attempts = self._repository.list_attempts(
            assessment_id=assessment_id,
            statuses=[GRADING_PENDING],
            order_by="completion_time",
        )
        pending: List[PendingAttempt] = []
        questions_by_assessment: dict[int, List[QuestionRecord]] = {}
        for attempt in attempts:
            if attempt.assessment_id not in questions_by_assessment:
                questions_by_assessment[attempt.assessment_id] = self._repository.list_questions(
                    attempt.assessment_id
                )
            pending.append(
                PendingAttempt(
                    attempt=attempt,
                    questions=questions_by_assessment[attempt.assessment_id],
                    answers=self._repository.list_answers(attempt.id),
                )
            )
        LOGGER.debug("Grading queue holds %s attempt(s)", len(pending))
        return pending

    def attempt_for_grading(self, attempt_id: int) -> PendingAttempt:
        attempt = self._repository.get_attempt(attempt_id)
        if attempt is None:
            raise AttemptNotFoundError(details={"attempt_id": attempt_id})
        return PendingAttempt(
            attempt=attempt,
            questions=self._repository.list_questions(attempt.assessment_id),
            answers=self._repository.list_answers(attempt.id),
        )

    def grade_answer(
        self,
        answer_id: int,
        points_earned: float,
        grader_id: int,
        feedback: Optional[str] = None,
    ) -> GradingOutcome:
        """Record a manual grade and recompute the owning attempt in one transaction."""

        now = ensure_utc(self._clock())
        with self._repository.transaction() as connection:
            answer = self._repository.get_answer(answer_id, connection=connection)
            if answer is None:
                raise AnswerNotFoundError(details={"answer_id": answer_id})
            question = self._repository.get_question(answer.question_id, connection=connection)
            if question is None:
                raise QuestionNotFoundError(details={"question_id": answer.question_id})

            try:
                points = float(points_earned)
            except (TypeError, ValueError) as error:
                raise InvalidGradingDataError("points_earned must be a number") from error
            if points < 0 or points > question.points:
                raise InvalidGradingDataError(
                    f"Points must be between 0 and {question.points:g}",
                    details={"points_earned": points, "max_points": question.points},
                )
            if answer.grading_status != PENDING_REVIEW:
                raise AnswerAlreadyGradedError(details={"grading_status": answer.grading_status})

            recorded = self._repository.record_manual_grade(
                answer.id,
                points_earned=points,
                is_correct=points >= question.points,
                grader_id=grader_id,
                feedback=feedback,
                graded_at=now,
                grading_status=MANUALLY_GRADED,
                expected_status=PENDING_REVIEW,
                connection=connection,
            )
            if not recorded:
                raise AnswerAlreadyGradedError()

            attempt = self._repository.get_attempt(answer.attempt_id, connection=connection)
            if attempt is None:
                raise AttemptNotFoundError(details={"attempt_id": answer.attempt_id})
            assessment = self._repository.get_assessment(attempt.assessment_id, connection=connection)
            questions = self._repository.list_questions(attempt.assessment_id, connection=connection)
            answers = self._repository.list_answers(attempt.id, connection=connection)
            summary = compute_score(questions, answers, assessment.passing_score)

            previous_status = attempt.status
            if summary.is_final and attempt.status == GRADING_PENDING:
                self._repository.update_attempt(
                    attempt.id,
                    expected_status=GRADING_PENDING,
                    status=ensure_transition(attempt.status, COMPLETED),
                    score=summary.score,
                    max_score=summary.max_score,
                    percentage=summary.percentage,
                    passed=summary.passed,
                    connection=connection,
                )
            graded = self._repository.get_answer(answer.id, connection=connection)
            refreshed = self._repository.get_attempt(attempt.id, connection=connection)

        emit_transition_event(
            "answer",
            answer.id,
            PENDING_REVIEW,
            MANUALLY_GRADED,
            payload={"grader_id": grader_id, "points": points},
        )
        if refreshed.status != previous_status:
            emit_transition_event("attempt", refreshed.id, previous_status, refreshed.status)
        LOGGER.info(
            "Grader %s awarded %s/%s on answer %s (attempt %s now %s)",
            grader_id,
            points,
            question.points,
            answer.id,
            refreshed.id,
            refreshed.status,
        )
        return GradingOutcome(answer=graded, attempt=refreshed)


__all__ = ["GradingOutcome", "GradingQueue", "PendingAttempt"]
