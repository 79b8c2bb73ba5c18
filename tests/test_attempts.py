from __future__ import annotations

from datetime import timedelta

import pytest

from lms.errors import (
    AssessmentAlreadySubmittedError,
    AssessmentNotAvailableError,
    InvalidTransitionError,
    MaxAttemptsExceededError,
    NotEnrolledError,
    PrerequisitesNotMetError,
    QuestionNotFoundError,
    TimeLimitExceededError,
    UnauthorizedAttemptAccessError,
)
from lms.services.attempts import ensure_transition

COURSE_ID = 7
STUDENT_ID = 101


def _answers_for(overview, *, essay_text="Periods lock into integer ratios."):
    first, second, essay = overview.questions
    return [
        {"question_id": first.id, "answer": {"selected_option_id": "b"}},
        {"question_id": second.id, "answer": {"selected_option_id": "j"}},
        {"question_id": essay.id, "answer": {"text": essay_text}},
    ]


def test_transition_table_rejects_illegal_moves() -> None:
    assert ensure_transition("in_progress", "timed_out") == "timed_out"
    assert ensure_transition("grading_pending", "completed") == "completed"
    for current, target in [
        ("completed", "in_progress"),
        ("timed_out", "completed"),
        ("grading_pending", "timed_out"),
        ("in_progress", "in_progress"),
    ]:
        with pytest.raises(InvalidTransitionError):
            ensure_transition(current, target)


def test_submission_with_essay_waits_for_manual_grading(
    mixed_assessment, attempt_service, repository, clock
) -> None:
    attempt = attempt_service.start(mixed_assessment.assessment.id, STUDENT_ID)
    assert attempt.status == "in_progress"
    assert attempt.attempt_number == 1
    assert attempt.max_score == 20.0

    clock.advance(minutes=12)
    submitted = attempt_service.submit(attempt.id, STUDENT_ID, _answers_for(mixed_assessment))

    assert submitted.status == "grading_pending"
    assert submitted.score is None
    assert submitted.passed is None
    assert submitted.time_taken == 12 * 60
    answers = repository.list_answers(attempt.id)
    auto = [answer for answer in answers if answer.grading_status == "auto_graded"]
    assert [answer.points_earned for answer in auto] == [5.0, 5.0]
    pending = [answer for answer in answers if answer.grading_status == "pending_review"]
    assert len(pending) == 1
    assert pending[0].points_earned is None


def test_auto_graded_submission_completes_immediately(
    authoring, directory, attempt_service
) -> None:
    directory.enroll(STUDENT_ID, COURSE_ID)
    overview = authoring.create_assessment(
        course_id=COURSE_ID,
        title="Quick check",
        time_limit=10,
        passing_score=60,
        questions=[
            {"question_type": "true_false", "question_text": "The sun is a star.", "points": 2, "correct_answer": True},
            {"question_type": "true_false", "question_text": "Pluto is a planet.", "points": 2, "correct_answer": False},
        ],
    )
    first, second = overview.questions
    attempt = attempt_service.start(overview.assessment.id, STUDENT_ID)

    result = attempt_service.submit(
        attempt.id,
        STUDENT_ID,
        [
            {"question_id": first.id, "answer": {"value": True}},
            {"question_id": second.id, "answer": {"value": True}},
        ],
    )

    assert result.status == "completed"
    assert result.score == 2.0
    assert result.percentage == 50.0
    assert result.passed is False


def test_max_attempts_limit(authoring, directory, attempt_service) -> None:
    directory.enroll(STUDENT_ID, COURSE_ID)
    overview = authoring.create_assessment(
        course_id=COURSE_ID, title="Final", time_limit=30, passing_score=50, max_attempts=1
    )
    attempt = attempt_service.start(overview.assessment.id, STUDENT_ID)
    attempt_service.submit(attempt.id, STUDENT_ID, [])

    with pytest.raises(MaxAttemptsExceededError) as excinfo:
        attempt_service.start(overview.assessment.id, STUDENT_ID)

    assert excinfo.value.status_code == 429


def test_start_requires_enrollment_and_availability(authoring, directory, attempt_service, clock) -> None:
    overview = authoring.create_assessment(
        course_id=COURSE_ID,
        title="Scheduled",
        time_limit=30,
        passing_score=50,
        start_date=clock.now + timedelta(days=1),
        end_date=clock.now + timedelta(days=2),
    )
    with pytest.raises(NotEnrolledError):
        attempt_service.start(overview.assessment.id, STUDENT_ID)

    directory.enroll(STUDENT_ID, COURSE_ID)
    with pytest.raises(AssessmentNotAvailableError) as excinfo:
        attempt_service.start(overview.assessment.id, STUDENT_ID)
    assert excinfo.value.message == "Assessment not yet available"

    clock.advance(days=3)
    with pytest.raises(AssessmentNotAvailableError) as excinfo:
        attempt_service.start(overview.assessment.id, STUDENT_ID)
    assert excinfo.value.message == "Assessment is no longer available"

    authoring.update_assessment(overview.assessment.id, end_date=clock.now + timedelta(days=1), is_active=False)
    with pytest.raises(AssessmentNotAvailableError):
        attempt_service.start(overview.assessment.id, STUDENT_ID)


def test_unmet_prerequisites_are_all_reported(authoring, directory, attempt_service) -> None:
    directory.enroll(STUDENT_ID, COURSE_ID, 20)
    directory.add_course_quiz(COURSE_ID, 900)
    overview = authoring.create_assessment(course_id=COURSE_ID, title="Gate", time_limit=30, passing_score=50)
    assessment_id = overview.assessment.id
    authoring.add_prerequisite(assessment_id, "quiz_completion")
    authoring.add_prerequisite(assessment_id, "minimum_progress", {"minimum_percentage": 50})
    authoring.add_prerequisite(assessment_id, "lesson_completion", {"lesson_ids": [3, 4]})

    with pytest.raises(PrerequisitesNotMetError) as excinfo:
        attempt_service.start(assessment_id, STUDENT_ID)

    unmet = excinfo.value.unmet
    assert [item["type"] for item in unmet] == ["quiz_completion", "minimum_progress", "lesson_completion"]
    assert unmet[1]["message"] == "Course progress must be at least 50%"
    assert unmet[2]["lesson_ids"] == [3, 4]

    directory.record_quiz_result(STUDENT_ID, 900, passed=True)
    directory.enroll(STUDENT_ID, COURSE_ID, 75)
    directory.record_lesson_completion(STUDENT_ID, 3)
    directory.record_lesson_completion(STUDENT_ID, 4)
    assert attempt_service.start(assessment_id, STUDENT_ID).status == "in_progress"


def test_late_submission_is_rejected_without_changes(
    mixed_assessment, attempt_service, repository, clock
) -> None:
    attempt = attempt_service.start(mixed_assessment.assessment.id, STUDENT_ID)
    clock.advance(minutes=31)

    with pytest.raises(TimeLimitExceededError):
        attempt_service.submit(attempt.id, STUDENT_ID, _answers_for(mixed_assessment))

    unchanged = repository.get_attempt(attempt.id)
    assert unchanged.status == "in_progress"
    assert unchanged.completion_time is None
    assert repository.list_answers(attempt.id) == []

    expired = attempt_service.expire(attempt.id)
    assert expired.status == "timed_out"
    assert expired.time_taken == 31 * 60
    assert attempt_service.expire(attempt.id) is None


def test_sweep_times_out_only_overdue_attempts(
    mixed_assessment, attempt_service, directory, clock
) -> None:
    directory.enroll(202, COURSE_ID)
    early = attempt_service.start(mixed_assessment.assessment.id, STUDENT_ID)
    clock.advance(minutes=20)
    late = attempt_service.start(mixed_assessment.assessment.id, 202)
    clock.advance(minutes=15)

    assert attempt_service.sweep_expired() == [early.id]
    assert attempt_service.remaining_seconds(early.id) == 0
    assert attempt_service.remaining_seconds(late.id) == 15 * 60


def test_submit_guards(mixed_assessment, attempt_service) -> None:
    attempt = attempt_service.start(mixed_assessment.assessment.id, STUDENT_ID)

    with pytest.raises(UnauthorizedAttemptAccessError):
        attempt_service.submit(attempt.id, 999, [])
    with pytest.raises(QuestionNotFoundError):
        attempt_service.submit(attempt.id, STUDENT_ID, [{"question_id": 424242, "answer": {"text": "?"}}])

    attempt_service.submit(attempt.id, STUDENT_ID, _answers_for(mixed_assessment))
    with pytest.raises(AssessmentAlreadySubmittedError):
        attempt_service.submit(attempt.id, STUDENT_ID, _answers_for(mixed_assessment))


def test_history_and_details(mixed_assessment, attempt_service, clock) -> None:
    first = attempt_service.start(mixed_assessment.assessment.id, STUDENT_ID)
    attempt_service.submit(first.id, STUDENT_ID, _answers_for(mixed_assessment))
    clock.advance(minutes=5)
    second = attempt_service.start(mixed_assessment.assessment.id, STUDENT_ID)

    history = attempt_service.history(mixed_assessment.assessment.id, STUDENT_ID)
    assert [attempt.id for attempt in history] == [second.id, first.id]
    assert second.attempt_number == 2

    details = attempt_service.details(first.id, STUDENT_ID)
    assert details.assessment.id == mixed_assessment.assessment.id
    assert len(details.answers) == 3
    assert len(details.questions) == 3
    with pytest.raises(UnauthorizedAttemptAccessError):
        attempt_service.details(first.id, 999)
