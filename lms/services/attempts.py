"""Assessment attempt lifecycle: start, submit, expiry and read models."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from ..errors import (
    AssessmentAlreadySubmittedError,
    AssessmentNotAvailableError,
    AssessmentNotFoundError,
    AttemptNotFoundError,
    InvalidAnswerError,
    InvalidTransitionError,
    MaxAttemptsExceededError,
    NotEnrolledError,
    PrerequisitesNotMetError,
    QuestionNotFoundError,
    TimeLimitExceededError,
    UnauthorizedAttemptAccessError,
)
from .events import emit_transition_event
from .grading import compute_score, grade, max_score_for
from .prerequisites import CourseDirectory, PrerequisiteChecker
from .questions import SubmittedAnswer, decode_answer, is_auto_graded
from .storage import (
    AnswerRecord,
    AssessmentRecord,
    AssessmentRepository,
    AttemptRecord,
    QuestionRecord,
    ensure_utc,
    utcnow,
)


LOGGER = logging.getLogger(__name__)

IN_PROGRESS = "in_progress"
COMPLETED = "completed"
TIMED_OUT = "timed_out"
GRADING_PENDING = "grading_pending"

ATTEMPT_STATUSES = (IN_PROGRESS, COMPLETED, TIMED_OUT, GRADING_PENDING)

AUTO_GRADED = "auto_graded"
MANUALLY_GRADED = "manually_graded"
PENDING_REVIEW = "pending_review"

# The only legal attempt status changes. Every status write goes through
# ``ensure_transition`` first.
ATTEMPT_TRANSITIONS: Mapping[str, frozenset] = {
    IN_PROGRESS: frozenset({COMPLETED, GRADING_PENDING, TIMED_OUT}),
    GRADING_PENDING: frozenset({COMPLETED}),
    COMPLETED: frozenset(),
    TIMED_OUT: frozenset(),
}


def ensure_transition(current: str, target: str) -> str:
    """Return *target* when ``current -> target`` is legal, else raise a conflict."""

    if target not in ATTEMPT_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError("attempt", current, target)
    return target


def deadline_for(attempt: AttemptRecord, time_limit_minutes: int) -> datetime:
    return ensure_utc(attempt.start_time) + timedelta(minutes=int(time_limit_minutes))


def is_expired(attempt: AttemptRecord, now: datetime, *, time_limit_minutes: int) -> bool:
    """Return ``True`` when an in-progress *attempt* is past its deadline at *now*."""

    if attempt.status != IN_PROGRESS:
        return False
    return ensure_utc(now) > deadline_for(attempt, time_limit_minutes)


def availability_problem(assessment: AssessmentRecord, now: datetime) -> Optional[str]:
    """Return why *assessment* cannot be taken at *now*, or ``None``."""

    if not assessment.is_active:
        return "Assessment is not active"
    now = ensure_utc(now)
    if assessment.start_date is not None and now < assessment.start_date:
        return "Assessment not yet available"
    if assessment.end_date is not None and now > assessment.end_date:
        return "Assessment is no longer available"
    return None


@dataclass
class AttemptDetails:
    attempt: AttemptRecord
    assessment: AssessmentRecord
    questions: List[QuestionRecord] = field(default_factory=list)
    answers: List[AnswerRecord] = field(default_factory=list)


class AttemptService:
    """Drive attempts through their lifecycle, one write transaction per transition."""

    def __init__(
        self,
        repository: AssessmentRepository,
        directory: CourseDirectory,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._repository = repository
        self._directory = directory
        self._prerequisites = PrerequisiteChecker(directory)
        self._clock = clock

    def _now(self) -> datetime:
        return ensure_utc(self._clock())

    def _require_assessment(self, assessment_id: int, connection=None) -> AssessmentRecord:
        assessment = self._repository.get_assessment(assessment_id, connection=connection)
        if assessment is None:
            raise AssessmentNotFoundError(details={"assessment_id": assessment_id})
        return assessment

    def _require_attempt(self, attempt_id: int, connection=None) -> AttemptRecord:
        attempt = self._repository.get_attempt(attempt_id, connection=connection)
        if attempt is None:
            raise AttemptNotFoundError(details={"attempt_id": attempt_id})
        return attempt

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------
    def start(self, assessment_id: int, student_id: int) -> AttemptRecord:
        now = self._now()
        assessment = self._require_assessment(assessment_id)

        if not self._directory.is_enrolled(student_id, assessment.course_id):
            raise NotEnrolledError(details={"course_id": assessment.course_id})

        problem = availability_problem(assessment, now)
        if problem is not None:
            raise AssessmentNotAvailableError(problem)

        with self._repository.transaction() as connection:
            prior = self._repository.count_attempts(assessment_id, student_id, connection=connection)
            if assessment.max_attempts is not None and prior >= assessment.max_attempts:
                raise MaxAttemptsExceededError(
                    details={"max_attempts": assessment.max_attempts, "attempts_used": prior}
                )

            prerequisites = self._repository.list_prerequisites(assessment_id, connection=connection)
            unmet = self._prerequisites.unmet(assessment, prerequisites, student_id)
            if unmet:
                raise PrerequisitesNotMetError(unmet)

            questions = self._repository.list_questions(assessment_id, connection=connection)
            attempt_id = self._repository.add_attempt(
                assessment_id=assessment_id,
                student_id=student_id,
                attempt_number=prior + 1,
                status=IN_PROGRESS,
                start_time=now,
                max_score=max_score_for(questions),
                connection=connection,
            )
            attempt = self._require_attempt(attempt_id, connection)

        emit_transition_event(
            "attempt",
            attempt.id,
            None,
            IN_PROGRESS,
            payload={"student_id": student_id, "attempt_number": attempt.attempt_number},
        )
        LOGGER.info(
            "Student %s started attempt %s (#%s) of assessment %s",
            student_id,
            attempt.id,
            attempt.attempt_number,
            assessment_id,
        )
        return attempt

    # ------------------------------------------------------------------
    # Submit
    # ------------------------------------------------------------------
    def _decode_submission(
        self,
        answers: Sequence[Mapping[str, Any]],
        questions: Mapping[int, QuestionRecord],
    ) -> List[Tuple[QuestionRecord, SubmittedAnswer]]:
        decoded: List[Tuple[QuestionRecord, SubmittedAnswer]] = []
        seen: set[int] = set()
        for entry in answers:
            if not isinstance(entry, Mapping) or "question_id" not in entry:
                raise InvalidAnswerError("Each answer needs a 'question_id' and an 'answer'")
            try:
                question_id = int(entry["question_id"])
            except (TypeError, ValueError) as error:
                raise InvalidAnswerError("question_id must be an integer") from error
            if question_id in seen:
                raise InvalidAnswerError(
                    f"Question {question_id} was answered more than once",
                    details={"question_id": question_id},
                )
            seen.add(question_id)
            question = questions.get(question_id)
            if question is None:
                raise QuestionNotFoundError(
                    f"Question {question_id} is not part of this assessment",
                    details={"question_id": question_id},
                )
            decoded.append((question, decode_answer(question.question_type, entry.get("answer"))))
        return decoded

    def submit(
        self,
        attempt_id: int,
        student_id: int,
        answers: Sequence[Mapping[str, Any]],
    ) -> AttemptRecord:
        """Grade and persist *answers* for an in-progress attempt.

        Questions left unanswered count as zero. A submission after the
        deadline raises :class:`TimeLimitExceededError` and leaves the attempt
        untouched; moving it to ``timed_out`` is the sweep's job.
        """

        now = self._now()
        with self._repository.transaction() as connection:
            attempt = self._require_attempt(attempt_id, connection)
            if attempt.student_id != student_id:
                raise UnauthorizedAttemptAccessError(details={"attempt_id": attempt_id})
            if attempt.status != IN_PROGRESS:
                raise AssessmentAlreadySubmittedError(details={"status": attempt.status})

            assessment = self._require_assessment(attempt.assessment_id, connection)
            if is_expired(attempt, now, time_limit_minutes=assessment.time_limit):
                raise TimeLimitExceededError(
                    details={"deadline": deadline_for(attempt, assessment.time_limit).isoformat()}
                )

            questions = self._repository.list_questions(attempt.assessment_id, connection=connection)
            by_id = {question.id: question for question in questions}
            for question, submitted in self._decode_submission(answers, by_id):
                if is_auto_graded(question.question_type):
                    result = grade(question, submitted)
                    self._repository.add_answer(
                        attempt_id=attempt.id,
                        question_id=question.id,
                        answer=submitted.to_dict(),
                        is_correct=result.is_correct,
                        points_earned=result.points_earned,
                        grading_status=AUTO_GRADED,
                        connection=connection,
                    )
                else:
                    self._repository.add_answer(
                        attempt_id=attempt.id,
                        question_id=question.id,
                        answer=submitted.to_dict(),
                        is_correct=None,
                        points_earned=None,
                        grading_status=PENDING_REVIEW,
                        connection=connection,
                    )

            stored = self._repository.list_answers(attempt.id, connection=connection)
            summary = compute_score(questions, stored, assessment.passing_score)
            target = ensure_transition(attempt.status, COMPLETED if summary.is_final else GRADING_PENDING)
            updated = self._repository.update_attempt(
                attempt.id,
                expected_status=IN_PROGRESS,
                status=target,
                completion_time=now,
                time_taken=max(0, int((now - attempt.start_time).total_seconds())),
                score=summary.score,
                max_score=summary.max_score,
                percentage=summary.percentage,
                passed=summary.passed,
                connection=connection,
            )
            if not updated:
                raise AssessmentAlreadySubmittedError()
            result_attempt = self._require_attempt(attempt.id, connection)

        emit_transition_event(
            "attempt",
            attempt.id,
            IN_PROGRESS,
            target,
            payload={"answers": len(stored), "score": summary.score},
        )
        LOGGER.info("Attempt %s submitted with %s answers -> %s", attempt.id, len(stored), target)
        return result_attempt

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------
    def expire(self, attempt_id: int) -> Optional[AttemptRecord]:
        """Time out *attempt_id* if it is still in progress past its deadline.

        Returns the updated attempt, or ``None`` when nothing changed.
        """

        now = self._now()
        with self._repository.transaction() as connection:
            attempt = self._require_attempt(attempt_id, connection)
            assessment = self._require_assessment(attempt.assessment_id, connection)
            if not is_expired(attempt, now, time_limit_minutes=assessment.time_limit):
                LOGGER.debug("Attempt %s is not expired (status=%s)", attempt_id, attempt.status)
                return None
            ensure_transition(attempt.status, TIMED_OUT)
            updated = self._repository.update_attempt(
                attempt.id,
                expected_status=IN_PROGRESS,
                status=TIMED_OUT,
                completion_time=now,
                time_taken=max(0, int((now - attempt.start_time).total_seconds())),
                connection=connection,
            )
            if not updated:
                return None
            expired = self._require_attempt(attempt.id, connection)

        emit_transition_event("attempt", attempt.id, IN_PROGRESS, TIMED_OUT)
        LOGGER.info("Attempt %s timed out", attempt.id)
        return expired

    def sweep_expired(self) -> List[int]:
        """Time out every overdue in-progress attempt; return the affected ids."""

        now = self._now()
        limits: Dict[int, int] = {}
        expired_ids: List[int] = []
        for attempt in self._repository.list_attempts(statuses=[IN_PROGRESS], order_by="id"):
            if attempt.assessment_id not in limits:
                limits[attempt.assessment_id] = self._require_assessment(attempt.assessment_id).time_limit
            if not is_expired(attempt, now, time_limit_minutes=limits[attempt.assessment_id]):
                continue
            if self.expire(attempt.id) is not None:
                expired_ids.append(attempt.id)
        LOGGER.info("Attempt sweep timed out %s attempt(s)", len(expired_ids))
        return expired_ids

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------
    def remaining_seconds(self, attempt_id: int, student_id: Optional[int] = None) -> int:
        attempt = self._require_attempt(attempt_id)
        if student_id is not None and attempt.student_id != student_id:
            raise UnauthorizedAttemptAccessError(details={"attempt_id": attempt_id})
        if attempt.status != IN_PROGRESS:
            return 0
        assessment = self._require_assessment(attempt.assessment_id)
        remaining = (deadline_for(attempt, assessment.time_limit) - self._now()).total_seconds()
        return max(0, int(remaining))

    def history(self, assessment_id: int, student_id: int) -> List[AttemptRecord]:
        self._require_assessment(assessment_id)
        attempts = self._repository.list_attempts(assessment_id=assessment_id, student_id=student_id)
        return list(reversed(attempts))

    def details(self, attempt_id: int, student_id: int) -> AttemptDetails:
        attempt = self._require_attempt(attempt_id)
        if attempt.student_id != student_id:
            raise UnauthorizedAttemptAccessError(details={"attempt_id": attempt_id})
        assessment = self._require_assessment(attempt.assessment_id)
        return AttemptDetails(
            attempt=attempt,
            assessment=assessment,
            questions=self._repository.list_questions(assessment.id),
            answers=self._repository.list_answers(attempt.id),
        )


__all__ = [
    "ATTEMPT_STATUSES",
    "ATTEMPT_TRANSITIONS",
    "AUTO_GRADED",
    "AttemptDetails",
    "AttemptService",
    "COMPLETED",
    "GRADING_PENDING",
    "IN_PROGRESS",
    "MANUALLY_GRADED",
    "PENDING_REVIEW",
    "TIMED_OUT",
    "availability_problem",
    "deadline_for",
    "ensure_transition",
    "is_expired",
]
