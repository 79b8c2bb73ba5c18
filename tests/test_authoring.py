from __future__ import annotations

from datetime import timedelta

import pytest

from lms.errors import (
    AssessmentNotFoundError,
    DuplicateQuestionOrderError,
    InvalidAssessmentError,
    InvalidPrerequisiteError,
    InvalidQuestionError,
    PrerequisiteNotFoundError,
)
from lms.services.questions import MultipleChoicePayload

COURSE_ID = 7


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"title": "  "}, "Title is required"),
        ({"time_limit": 0}, "time_limit must be positive"),
        ({"passing_score": 101}, "between 0 and 100"),
        ({"max_attempts": 0}, "max_attempts"),
    ],
)
def test_assessment_validation(authoring, overrides, message) -> None:
    values = {"course_id": COURSE_ID, "title": "Quiz", "time_limit": 20, "passing_score": 60}
    values.update(overrides)

    with pytest.raises(InvalidAssessmentError) as excinfo:
        authoring.create_assessment(**values)

    assert message in excinfo.value.message


def test_schedule_needs_end_after_start(authoring, clock) -> None:
    with pytest.raises(InvalidAssessmentError):
        authoring.create_assessment(
            course_id=COURSE_ID, title="Quiz", time_limit=20, passing_score=60, start_date=clock.now
        )
    with pytest.raises(InvalidAssessmentError):
        authoring.create_assessment(
            course_id=COURSE_ID,
            title="Quiz",
            time_limit=20,
            passing_score=60,
            start_date=clock.now,
            end_date=clock.now - timedelta(hours=1),
        )


def test_create_with_questions_is_all_or_nothing(authoring, repository) -> None:
    with pytest.raises(InvalidQuestionError):
        authoring.create_assessment(
            course_id=COURSE_ID,
            title="Broken",
            time_limit=20,
            passing_score=60,
            questions=[
                {"question_type": "essay", "question_text": "Fine", "points": 3},
                {"question_type": "multiple_choice", "question_text": "Bad", "points": 3, "options": []},
            ],
        )

    assert repository.list_assessments(COURSE_ID) == []


def test_questions_get_sequential_order_and_unique_positions(mixed_assessment, authoring) -> None:
    assessment_id = mixed_assessment.assessment.id
    assert [question.order for question in mixed_assessment.questions] == [1, 2, 3]

    added = authoring.add_question(
        assessment_id, question_type="short_answer", question_text="Name a moon.", points=2
    )
    assert added.order == 4

    with pytest.raises(DuplicateQuestionOrderError):
        authoring.add_question(
            assessment_id, question_type="essay", question_text="Dup", points=1, order=2
        )
    with pytest.raises(DuplicateQuestionOrderError):
        authoring.update_question(added.id, order=1)


def test_update_question_replaces_answer_key(mixed_assessment, authoring) -> None:
    choice = mixed_assessment.questions[0]

    updated = authoring.update_question(choice.id, correct_answer={"correct_option_id": "a"}, points=4)

    assert isinstance(updated.payload, MultipleChoicePayload)
    assert updated.payload.correct_option_id == "a"
    assert [option.is_correct for option in updated.payload.options] == [True, False]
    assert updated.points == 4.0

    renamed = authoring.update_question(choice.id, question_text="2 + 2 equals?")
    assert renamed.payload.correct_option_id == "a"


def test_reorder_and_delete_questions(mixed_assessment, authoring) -> None:
    assessment_id = mixed_assessment.assessment.id
    first, second, third = (question.id for question in mixed_assessment.questions)

    reordered = authoring.reorder_questions(assessment_id, [third, first, second])
    assert [(question.id, question.order) for question in reordered] == [(third, 1), (first, 2), (second, 3)]

    with pytest.raises(InvalidQuestionError):
        authoring.reorder_questions(assessment_id, [third, first])

    authoring.delete_question(second)
    assert [question.id for question in authoring.overview(assessment_id).questions] == [third, first]


def test_prerequisite_management(mixed_assessment, authoring) -> None:
    assessment_id = mixed_assessment.assessment.id

    prerequisite = authoring.add_prerequisite(assessment_id, "minimum_progress", {"minimum_percentage": 40})
    assert prerequisite.prerequisite_data == {"minimum_percentage": 40.0}

    with pytest.raises(InvalidPrerequisiteError):
        authoring.add_prerequisite(assessment_id, "minimum_progress", {"minimum_percentage": 140})
    with pytest.raises(InvalidPrerequisiteError):
        authoring.add_prerequisite(assessment_id, "lesson_completion", {"lesson_ids": []})
    with pytest.raises(InvalidPrerequisiteError):
        authoring.add_prerequisite(assessment_id, "attendance", {})

    authoring.remove_prerequisite(assessment_id, prerequisite.id)
    assert authoring.overview(assessment_id).prerequisites == []
    with pytest.raises(PrerequisiteNotFoundError):
        authoring.remove_prerequisite(assessment_id, prerequisite.id)


def test_update_assessment(mixed_assessment, authoring) -> None:
    updated = authoring.update_assessment(mixed_assessment.assessment.id, title="Midterm (v2)", max_attempts=3)

    assert updated.title == "Midterm (v2)"
    assert updated.max_attempts == 3
    assert updated.time_limit == 30

    with pytest.raises(InvalidAssessmentError):
        authoring.update_assessment(mixed_assessment.assessment.id, colour="blue")
    with pytest.raises(AssessmentNotFoundError):
        authoring.update_assessment(9999, title="Missing")
