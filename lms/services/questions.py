"""Typed question payloads and submitted-answer shapes.

Questions are stored with loosely structured JSON columns (``options``,
``correct_answer``, ``grading_rubric``). This module decodes those columns into
one of four payload variants as soon as a row is read or a request arrives, so
the grading code only ever deals with typed values.

Multiple-choice questions accept either an ``is_correct`` flag per option or a
``{"correct_option_id": ...}`` answer key. Both are reconciled into a single
canonical form: options carry ``is_correct`` and exactly one of them is the
``correct_option_id``.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..errors import InvalidAnswerError, InvalidQuestionError


MULTIPLE_CHOICE = "multiple_choice"
TRUE_FALSE = "true_false"
SHORT_ANSWER = "short_answer"
ESSAY = "essay"

QUESTION_TYPES: Tuple[str, ...] = (MULTIPLE_CHOICE, TRUE_FALSE, SHORT_ANSWER, ESSAY)
AUTO_GRADED_TYPES = frozenset({MULTIPLE_CHOICE, TRUE_FALSE})
MANUALLY_GRADED_TYPES = frozenset({SHORT_ANSWER, ESSAY})


@dataclass(frozen=True)
class ChoiceOption:
    id: str
    text: str
    is_correct: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "text": self.text, "is_correct": self.is_correct}


@dataclass(frozen=True)
class MultipleChoicePayload:
    options: Tuple[ChoiceOption, ...]
    correct_option_id: str

    question_type = MULTIPLE_CHOICE


@dataclass(frozen=True)
class TrueFalsePayload:
    correct_answer: bool

    question_type = TRUE_FALSE


@dataclass(frozen=True)
class ShortAnswerPayload:
    grading_rubric: Optional[str] = None

    question_type = SHORT_ANSWER


@dataclass(frozen=True)
class EssayPayload:
    grading_rubric: Optional[str] = None

    question_type = ESSAY


QuestionPayload = Union[MultipleChoicePayload, TrueFalsePayload, ShortAnswerPayload, EssayPayload]


@dataclass(frozen=True)
class ChoiceAnswer:
    selected_option_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {"selected_option_id": self.selected_option_id}


@dataclass(frozen=True)
class BooleanAnswer:
    value: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"value": self.value}


@dataclass(frozen=True)
class TextAnswer:
    text: str

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text}


SubmittedAnswer = Union[ChoiceAnswer, BooleanAnswer, TextAnswer]


def is_auto_graded(question_type: str) -> bool:
    return question_type in AUTO_GRADED_TYPES


def _load_json(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        try:
            return json.loads(stripped)
        except json.JSONDecodeError:
            return value
    return value


def _option_id(raw: Any) -> str:
    if raw is None or isinstance(raw, bool):
        raise InvalidQuestionError("Every option needs an 'id'")
    text = str(raw).strip()
    if not text:
        raise InvalidQuestionError("Every option needs an 'id'")
    return text


def _decode_options(raw_options: Any, correct_answer: Any) -> MultipleChoicePayload:
    options_data = _load_json(raw_options)
    if not isinstance(options_data, list) or len(options_data) < 2:
        raise InvalidQuestionError("Multiple choice questions must have at least 2 options")

    keyed_correct: Optional[str] = None
    answer_key = _load_json(correct_answer)
    if isinstance(answer_key, Mapping) and answer_key.get("correct_option_id") is not None:
        keyed_correct = _option_id(answer_key["correct_option_id"])
    elif answer_key is not None and not isinstance(answer_key, (Mapping, bool)):
        keyed_correct = _option_id(answer_key)

    options: List[ChoiceOption] = []
    seen: set[str] = set()
    for index, entry in enumerate(options_data, start=1):
        if isinstance(entry, Mapping):
            option_id = _option_id(entry.get("id", index))
            text = str(entry.get("text", "") or "")
            flagged = bool(entry.get("is_correct", False))
        else:
            option_id = str(index)
            text = str(entry)
            flagged = False
        if option_id in seen:
            raise InvalidQuestionError(f"Duplicate option id '{option_id}'")
        seen.add(option_id)
        options.append(ChoiceOption(id=option_id, text=text, is_correct=flagged))

    flagged_ids = [option.id for option in options if option.is_correct]
    if keyed_correct is not None:
        if keyed_correct not in seen:
            raise InvalidQuestionError(
                f"Correct option '{keyed_correct}' is not one of the question's options"
            )
        if flagged_ids and flagged_ids != [keyed_correct]:
            raise InvalidQuestionError("Option flags disagree with the correct_option_id answer key")
        correct_id = keyed_correct
    else:
        if len(flagged_ids) != 1:
            raise InvalidQuestionError("Exactly one option must be marked as correct")
        correct_id = flagged_ids[0]

    canonical = tuple(
        ChoiceOption(id=option.id, text=option.text, is_correct=option.id == correct_id)
        for option in options
    )
    return MultipleChoicePayload(options=canonical, correct_option_id=correct_id)


def _decode_boolean_key(correct_answer: Any) -> bool:
    value = _load_json(correct_answer)
    if isinstance(value, Mapping):
        value = value.get("correct_value", value.get("value"))
    if not isinstance(value, bool):
        raise InvalidQuestionError("True/false questions must have a boolean correct answer")
    return value


def decode_question_payload(
    question_type: str,
    *,
    options: Any = None,
    correct_answer: Any = None,
    grading_rubric: Optional[str] = None,
) -> QuestionPayload:
    """Return the typed payload for a question of *question_type*."""

    if question_type == MULTIPLE_CHOICE:
        return _decode_options(options, correct_answer)
    if question_type == TRUE_FALSE:
        return TrueFalsePayload(correct_answer=_decode_boolean_key(correct_answer))
    rubric = grading_rubric.strip() if isinstance(grading_rubric, str) and grading_rubric.strip() else None
    if question_type == SHORT_ANSWER:
        return ShortAnswerPayload(grading_rubric=rubric)
    if question_type == ESSAY:
        return EssayPayload(grading_rubric=rubric)
    raise InvalidQuestionError(
        f"Invalid question type '{question_type}'",
        details={"allowed": list(QUESTION_TYPES)},
    )


def encode_question_payload(payload: QuestionPayload) -> Tuple[Optional[str], Optional[str], Optional[str]]:
    """Return ``(options, correct_answer, grading_rubric)`` column values for *payload*."""

    if isinstance(payload, MultipleChoicePayload):
        return (
            json.dumps([option.to_dict() for option in payload.options]),
            json.dumps({"correct_option_id": payload.correct_option_id}),
            None,
        )
    if isinstance(payload, TrueFalsePayload):
        return None, json.dumps({"correct_value": payload.correct_answer}), None
    return None, None, payload.grading_rubric


def payload_to_dict(payload: QuestionPayload, *, include_key: bool = True) -> Dict[str, Any]:
    """Serialize *payload*; ``include_key=False`` hides the answer key for students."""

    if isinstance(payload, MultipleChoicePayload):
        data: Dict[str, Any] = {
            "options": [
                option.to_dict() if include_key else {"id": option.id, "text": option.text}
                for option in payload.options
            ]
        }
        if include_key:
            data["correct_option_id"] = payload.correct_option_id
        return data
    if isinstance(payload, TrueFalsePayload):
        return {"correct_answer": payload.correct_answer} if include_key else {}
    return {"grading_rubric": payload.grading_rubric} if include_key else {}


def decode_answer(question_type: str, raw: Any) -> SubmittedAnswer:
    """Decode a submitted answer payload for a question of *question_type*."""

    value = _load_json(raw) if isinstance(raw, (str, bytes)) and question_type in AUTO_GRADED_TYPES else raw
    if question_type == MULTIPLE_CHOICE:
        if isinstance(value, Mapping):
            value = value.get("selected_option_id")
        if value is None or isinstance(value, (bool, Mapping, list)):
            raise InvalidAnswerError("Multiple choice answers need a 'selected_option_id'")
        return ChoiceAnswer(selected_option_id=str(value).strip())
    if question_type == TRUE_FALSE:
        if isinstance(value, Mapping):
            value = value.get("value")
        if not isinstance(value, bool):
            raise InvalidAnswerError("True/false answers need a boolean 'value'")
        return BooleanAnswer(value=value)
    if question_type in MANUALLY_GRADED_TYPES:
        if isinstance(value, Mapping):
            value = value.get("text")
        if not isinstance(value, str):
            raise InvalidAnswerError("Written answers need a 'text' value")
        return TextAnswer(text=value)
    raise InvalidAnswerError(f"Unsupported question type '{question_type}'")


def validate_points(points: Any) -> float:
    try:
        value = float(points)
    except (TypeError, ValueError) as error:
        raise InvalidQuestionError("Question points must be a number") from error
    if value <= 0:
        raise InvalidQuestionError("Question points must be positive")
    return value


def total_points(points: Sequence[float]) -> float:
    return round(sum(float(value) for value in points), 2)


__all__ = [
    "AUTO_GRADED_TYPES",
    "BooleanAnswer",
    "ChoiceAnswer",
    "ChoiceOption",
    "ESSAY",
    "EssayPayload",
    "MANUALLY_GRADED_TYPES",
    "MULTIPLE_CHOICE",
    "MultipleChoicePayload",
    "QUESTION_TYPES",
    "QuestionPayload",
    "SHORT_ANSWER",
    "ShortAnswerPayload",
    "SubmittedAnswer",
    "TRUE_FALSE",
    "TextAnswer",
    "TrueFalsePayload",
    "decode_answer",
    "decode_question_payload",
    "encode_question_payload",
    "is_auto_graded",
    "payload_to_dict",
    "total_points",
    "validate_points",
]
