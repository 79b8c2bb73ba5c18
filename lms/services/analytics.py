"""Read-side rollup of attempt and per-question statistics."""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..errors import AssessmentNotFoundError
from .attempts import COMPLETED, GRADING_PENDING, TIMED_OUT
from .questions import MULTIPLE_CHOICE
from .storage import AssessmentRepository, ensure_utc


LOGGER = logging.getLogger(__name__)

_SUBMITTED_STATUSES = (COMPLETED, TIMED_OUT, GRADING_PENDING)
_TOP_INCORRECT = 3


@dataclass
class QuestionStatistics:
    question_id: int
    question_text: str
    max_points: float
    average_points: float
    total_answers: int
    most_common_incorrect_answers: Dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "question_id": self.question_id,
            "question_text": self.question_text,
            "max_points": self.max_points,
            "average_points": self.average_points,
            "total_answers": self.total_answers,
            "most_common_incorrect_answers": dict(self.most_common_incorrect_answers),
        }


@dataclass
class AssessmentAnalytics:
    assessment_id: int
    total_attempts: int
    graded_attempts: int
    average_percentage: float
    pass_rate: float
    questions: List[QuestionStatistics] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "assessment_id": self.assessment_id,
            "total_attempts": self.total_attempts,
            "graded_attempts": self.graded_attempts,
            "average_percentage": self.average_percentage,
            "pass_rate": self.pass_rate,
            "question_statistics": [item.to_dict() for item in self.questions],
        }


def build_analytics(
    repository: AssessmentRepository,
    assessment_id: int,
    *,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> AssessmentAnalytics:
    """Summarise submitted attempts of *assessment_id*, optionally within a completion window."""

    if repository.get_assessment(assessment_id) is None:
        raise AssessmentNotFoundError(details={"assessment_id": assessment_id})

    attempts = repository.list_attempts(assessment_id=assessment_id, statuses=_SUBMITTED_STATUSES)
    if since is not None:
        lower = ensure_utc(since)
        attempts = [a for a in attempts if a.completion_time is not None and a.completion_time >= lower]
    if until is not None:
        upper = ensure_utc(until)
        attempts = [a for a in attempts if a.completion_time is not None and a.completion_time <= upper]

    graded = [attempt for attempt in attempts if attempt.passed is not None]
    average_percentage = (
        round(sum(attempt.percentage or 0.0 for attempt in graded) / len(graded), 2) if graded else 0.0
    )
    pass_rate = (
        round(sum(1 for attempt in graded if attempt.passed) / len(graded) * 100, 2) if graded else 0.0
    )

    attempt_ids = {attempt.id for attempt in attempts}
    answers_by_question: Dict[int, list] = {}
    for answer in repository.list_answers_for_assessment(assessment_id):
        if answer.attempt_id in attempt_ids:
            answers_by_question.setdefault(answer.question_id, []).append(answer)

    statistics: List[QuestionStatistics] = []
    for question in repository.list_questions(assessment_id):
        answers = answers_by_question.get(question.id, [])
        scored = [answer.points_earned for answer in answers if answer.points_earned is not None]
        incorrect: Dict[str, int] = {}
        if question.question_type == MULTIPLE_CHOICE:
            counter = Counter(
                json.dumps(answer.answer, sort_keys=True)
                if "selected_option_id" not in answer.answer
                else str(answer.answer["selected_option_id"])
                for answer in answers
                if answer.is_correct is False
            )
            incorrect = dict(counter.most_common(_TOP_INCORRECT))
        statistics.append(
            QuestionStatistics(
                question_id=question.id,
                question_text=question.question_text,
                max_points=question.points,
                average_points=round(sum(scored) / len(scored), 2) if scored else 0.0,
                total_answers=len(answers),
                most_common_incorrect_answers=incorrect,
            )
        )

    LOGGER.debug(
        "Analytics for assessment %s: %s attempts, %s graded", assessment_id, len(attempts), len(graded)
    )
    return AssessmentAnalytics(
        assessment_id=assessment_id,
        total_attempts=len(attempts),
        graded_attempts=len(graded),
        average_percentage=average_percentage,
        pass_rate=pass_rate,
        questions=statistics,
    )


__all__ = ["AssessmentAnalytics", "QuestionStatistics", "build_analytics"]
