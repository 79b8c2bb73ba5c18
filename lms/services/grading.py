"""Auto-grading and score aggregation.

Both functions are pure: they read question and answer values and return new
values without touching storage, so the attempt and grading-queue services can
call them inside their own transactions.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from .questions import (
    BooleanAnswer,
    ChoiceAnswer,
    MultipleChoicePayload,
    SubmittedAnswer,
    TrueFalsePayload,
)
from .storage import AnswerRecord, QuestionRecord


@dataclass(frozen=True)
class GradeResult:
    is_correct: bool
    points_earned: float


@dataclass(frozen=True)
class ScoreSummary:
    score: Optional[float]
    max_score: float
    percentage: Optional[float]
    passed: Optional[bool]

    @property
    def is_final(self) -> bool:
        return self.score is not None


def grade(question: QuestionRecord, answer: SubmittedAnswer) -> GradeResult:
    """Grade *answer* against an auto-gradable *question*.

    Scoring is binary: full points for a correct answer, zero otherwise.
    Short-answer and essay questions raise :class:`ValueError`; they go through
    the manual grading queue instead.
    """

    payload = question.payload
    if isinstance(payload, MultipleChoicePayload):
        correct = isinstance(answer, ChoiceAnswer) and answer.selected_option_id == payload.correct_option_id
    elif isinstance(payload, TrueFalsePayload):
        correct = isinstance(answer, BooleanAnswer) and answer.value is payload.correct_answer
    else:
        raise ValueError(f"Question type '{question.question_type}' is not auto-gradable")
    return GradeResult(is_correct=correct, points_earned=float(question.points) if correct else 0.0)


def max_score_for(questions: Iterable[QuestionRecord]) -> float:
    return round(sum(float(question.points) for question in questions), 2)


def compute_score(
    questions: Sequence[QuestionRecord],
    answers: Sequence[AnswerRecord],
    passing_score: float,
) -> ScoreSummary:
    """Aggregate answer points into an attempt score.

    ``max_score`` always covers every question of the assessment. While any
    answer still lacks ``points_earned`` the score, percentage and pass flag
    stay ``None``.
    """

    max_score = max_score_for(questions)
    if any(answer.points_earned is None for answer in answers):
        return ScoreSummary(score=None, max_score=max_score, percentage=None, passed=None)

    score = round(sum(float(answer.points_earned or 0.0) for answer in answers), 2)
    percentage = round(score / max_score * 100, 2) if max_score > 0 else 0.0
    return ScoreSummary(
        score=score,
        max_score=max_score,
        percentage=percentage,
        passed=percentage >= float(passing_score),
    )


__all__ = ["GradeResult", "ScoreSummary", "compute_score", "grade", "max_score_for"]
