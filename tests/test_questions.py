from __future__ import annotations

import json

import pytest

from lms.errors import InvalidAnswerError, InvalidQuestionError
from lms.services.questions import (
    BooleanAnswer,
    ChoiceAnswer,
    EssayPayload,
    MultipleChoicePayload,
    TextAnswer,
    TrueFalsePayload,
    decode_answer,
    decode_question_payload,
    encode_question_payload,
    payload_to_dict,
    validate_points,
)


def test_flagged_options_and_answer_key_reconcile_to_same_payload() -> None:
    flagged = decode_question_payload(
        "multiple_choice",
        options=[
            {"id": "a", "text": "Mercury"},
            {"id": "b", "text": "Venus", "is_correct": True},
        ],
    )
    keyed = decode_question_payload(
        "multiple_choice",
        options=[{"id": "a", "text": "Mercury"}, {"id": "b", "text": "Venus"}],
        correct_answer={"correct_option_id": "b"},
    )

    assert isinstance(flagged, MultipleChoicePayload)
    assert flagged == keyed
    assert flagged.correct_option_id == "b"
    assert [option.is_correct for option in flagged.options] == [False, True]


def test_multiple_choice_decodes_stored_json_columns() -> None:
    options, answer_key, rubric = encode_question_payload(
        decode_question_payload(
            "multiple_choice",
            options=[{"id": "x", "text": "1"}, {"id": "y", "text": "2"}],
            correct_answer={"correct_option_id": "x"},
        )
    )

    assert rubric is None
    assert json.loads(answer_key) == {"correct_option_id": "x"}
    restored = decode_question_payload("multiple_choice", options=options, correct_answer=answer_key)
    assert restored.correct_option_id == "x"


@pytest.mark.parametrize(
    "options, correct_answer, message",
    [
        ([{"id": "a", "text": "only"}], None, "at least 2 options"),
        ([{"id": "a", "text": "1"}, {"id": "b", "text": "2"}], None, "Exactly one option"),
        (
            [{"id": "a", "text": "1", "is_correct": True}, {"id": "b", "text": "2", "is_correct": True}],
            None,
            "Exactly one option",
        ),
        ([{"id": "a", "text": "1"}, {"id": "b", "text": "2"}], {"correct_option_id": "z"}, "not one of"),
        (
            [{"id": "a", "text": "1", "is_correct": True}, {"id": "b", "text": "2"}],
            {"correct_option_id": "b"},
            "disagree",
        ),
        ([{"id": "a", "text": "1"}, {"id": "a", "text": "2"}], {"correct_option_id": "a"}, "Duplicate"),
    ],
)
def test_invalid_multiple_choice_payloads(options, correct_answer, message) -> None:
    with pytest.raises(InvalidQuestionError) as excinfo:
        decode_question_payload("multiple_choice", options=options, correct_answer=correct_answer)

    assert message in excinfo.value.message


def test_true_false_and_written_payloads() -> None:
    assert decode_question_payload("true_false", correct_answer=False) == TrueFalsePayload(False)
    assert decode_question_payload("true_false", correct_answer='{"correct_value": true}') == TrueFalsePayload(True)
    with pytest.raises(InvalidQuestionError):
        decode_question_payload("true_false", correct_answer="yes")

    essay = decode_question_payload("essay", grading_rubric="  Cite two sources ")
    assert essay == EssayPayload(grading_rubric="Cite two sources")
    assert decode_question_payload("short_answer", grading_rubric="   ").grading_rubric is None

    with pytest.raises(InvalidQuestionError):
        decode_question_payload("matching")


def test_payload_to_dict_hides_answer_key_for_students() -> None:
    payload = decode_question_payload(
        "multiple_choice",
        options=[{"id": "a", "text": "1", "is_correct": True}, {"id": "b", "text": "2"}],
    )

    hidden = payload_to_dict(payload, include_key=False)
    assert hidden == {"options": [{"id": "a", "text": "1"}, {"id": "b", "text": "2"}]}
    assert payload_to_dict(TrueFalsePayload(True), include_key=False) == {}
    assert payload_to_dict(payload)["correct_option_id"] == "a"


def test_decode_answer_shapes() -> None:
    assert decode_answer("multiple_choice", {"selected_option_id": "b"}) == ChoiceAnswer("b")
    assert decode_answer("true_false", {"value": True}) == BooleanAnswer(True)
    assert decode_answer("essay", {"text": "Because gravity"}) == TextAnswer("Because gravity")

    with pytest.raises(InvalidAnswerError):
        decode_answer("true_false", {"value": "true"})
    with pytest.raises(InvalidAnswerError):
        decode_answer("multiple_choice", {})
    with pytest.raises(InvalidAnswerError):
        decode_answer("short_answer", {"text": 12})


def test_validate_points() -> None:
    assert validate_points("2.5") == 2.5
    with pytest.raises(InvalidQuestionError):
        validate_points(0)
    with pytest.raises(InvalidQuestionError):
        validate_points("many")
