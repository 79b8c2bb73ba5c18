from __future__ import annotations

import pytest

from lms.errors import AnswerAlreadyGradedError, AnswerNotFoundError, InvalidGradingDataError

STUDENT_ID = 101
GRADER_ID = 5


def _submit_mixed(overview, attempt_service, *, choice="b"):
    first, second, essay = overview.questions
    attempt = attempt_service.start(overview.assessment.id, STUDENT_ID)
    attempt_service.submit(
        attempt.id,
        STUDENT_ID,
        [
            {"question_id": first.id, "answer": {"selected_option_id": choice}},
            {"question_id": second.id, "answer": {"selected_option_id": "j"}},
            {"question_id": essay.id, "answer": {"text": "Resonance means integer ratios."}},
        ],
    )
    return attempt


def _essay_answer(grading_queue, attempt_id):
    pending = grading_queue.attempt_for_grading(attempt_id).pending_answers
    assert len(pending) == 1
    return pending[0]


def test_grading_last_answer_completes_attempt(mixed_assessment, attempt_service, grading_queue, clock) -> None:
    attempt = _submit_mixed(mixed_assessment, attempt_service)
    queued = grading_queue.list_pending()
    assert [item.attempt.id for item in queued] == [attempt.id]

    essay = _essay_answer(grading_queue, attempt.id)
    clock.advance(hours=2)
    outcome = grading_queue.grade_answer(essay.id, 8, GRADER_ID, feedback="Good use of examples")

    assert outcome.attempt_completed
    assert outcome.attempt.score == 18.0
    assert outcome.attempt.max_score == 20.0
    assert outcome.attempt.percentage == 90.0
    assert outcome.attempt.passed is True
    assert outcome.answer.grading_status == "manually_graded"
    assert outcome.answer.graded_by == GRADER_ID
    assert outcome.answer.grader_feedback == "Good use of examples"
    assert outcome.answer.graded_at == clock.now
    assert outcome.answer.is_correct is False
    assert grading_queue.list_pending() == []


def test_regrading_is_rejected(mixed_assessment, attempt_service, grading_queue, repository) -> None:
    attempt = _submit_mixed(mixed_assessment, attempt_service)
    essay = _essay_answer(grading_queue, attempt.id)
    grading_queue.grade_answer(essay.id, 10, GRADER_ID)

    with pytest.raises(AnswerAlreadyGradedError):
        grading_queue.grade_answer(essay.id, 2, GRADER_ID)

    stored = repository.get_answer(essay.id)
    assert stored.points_earned == 10.0
    assert stored.is_correct is True
    assert repository.get_attempt(attempt.id).score == 20.0


def test_auto_graded_answers_cannot_be_graded_manually(mixed_assessment, attempt_service, grading_queue) -> None:
    attempt = _submit_mixed(mixed_assessment, attempt_service)
    auto = next(
        answer
        for answer in grading_queue.attempt_for_grading(attempt.id).answers
        if answer.grading_status == "auto_graded"
    )

    with pytest.raises(AnswerAlreadyGradedError):
        grading_queue.grade_answer(auto.id, 1, GRADER_ID)


@pytest.mark.parametrize("points", [-1, 10.5, "lots"])
def test_points_outside_question_range_are_rejected(
    mixed_assessment, attempt_service, grading_queue, repository, points
) -> None:
    attempt = _submit_mixed(mixed_assessment, attempt_service)
    essay = _essay_answer(grading_queue, attempt.id)

    with pytest.raises(InvalidGradingDataError):
        grading_queue.grade_answer(essay.id, points, GRADER_ID)

    assert repository.get_answer(essay.id).grading_status == "pending_review"
    assert repository.get_attempt(attempt.id).status == "grading_pending"


def test_failing_total_after_manual_grade(mixed_assessment, attempt_service, grading_queue) -> None:
    attempt = _submit_mixed(mixed_assessment, attempt_service, choice="a")
    essay = _essay_answer(grading_queue, attempt.id)

    outcome = grading_queue.grade_answer(essay.id, 6, GRADER_ID)

    assert outcome.attempt.score == 11.0
    assert outcome.attempt.percentage == 55.0
    assert outcome.attempt.passed is False


def test_unknown_answer(grading_queue) -> None:
    with pytest.raises(AnswerNotFoundError):
        grading_queue.grade_answer(999, 1, GRADER_ID)
