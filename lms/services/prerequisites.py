"""Prerequisite evaluation for starting an assessment attempt."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Protocol, Sequence

from ..errors import InvalidPrerequisiteError
from .storage import AssessmentRecord, PrerequisiteRecord


LOGGER = logging.getLogger(__name__)

QUIZ_COMPLETION = "quiz_completion"
MINIMUM_PROGRESS = "minimum_progress"
LESSON_COMPLETION = "lesson_completion"

PREREQUISITE_TYPES = (QUIZ_COMPLETION, MINIMUM_PROGRESS, LESSON_COMPLETION)


class CourseDirectory(Protocol):
    """Lookups into the course catalog owned by another part of the platform."""

    def is_enrolled(self, student_id: int, course_id: int) -> bool: ...

    def get_progress_percentage(self, student_id: int, course_id: int) -> float: ...

    def has_passed_all_quizzes(self, student_id: int, course_id: int) -> bool: ...

    def has_completed_lessons(self, student_id: int, lesson_ids: Sequence[int]) -> bool: ...


def validate_prerequisite_data(prerequisite_type: str, data: Mapping[str, Any] | None) -> Dict[str, Any]:
    """Return the normalised ``prerequisite_data`` for *prerequisite_type*."""

    data = dict(data or {})
    if prerequisite_type == QUIZ_COMPLETION:
        return {}
    if prerequisite_type == MINIMUM_PROGRESS:
        raw = data.get("minimum_percentage")
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise InvalidPrerequisiteError("minimum_percentage is required and must be a number")
        if not 0 <= float(raw) <= 100:
            raise InvalidPrerequisiteError("minimum_percentage must be between 0 and 100")
        return {"minimum_percentage": float(raw)}
    if prerequisite_type == LESSON_COMPLETION:
        lesson_ids = data.get("lesson_ids")
        if not isinstance(lesson_ids, list) or not lesson_ids:
            raise InvalidPrerequisiteError("lesson_ids must be a non-empty list")
        try:
            return {"lesson_ids": [int(lesson_id) for lesson_id in lesson_ids]}
        except (TypeError, ValueError) as error:
            raise InvalidPrerequisiteError("lesson_ids must contain integer ids") from error
    raise InvalidPrerequisiteError(
        f"Invalid prerequisite type '{prerequisite_type}'",
        details={"allowed": list(PREREQUISITE_TYPES)},
    )


class PrerequisiteChecker:
    def __init__(self, directory: CourseDirectory) -> None:
        self._directory = directory

    def unmet(
        self,
        assessment: AssessmentRecord,
        prerequisites: Sequence[PrerequisiteRecord],
        student_id: int,
    ) -> List[Dict[str, Any]]:
        """Return one entry per unmet prerequisite; an empty list means eligible."""

        unmet: List[Dict[str, Any]] = []
        for prerequisite in prerequisites:
            kind = prerequisite.prerequisite_type
            data = prerequisite.prerequisite_data or {}
            if kind == QUIZ_COMPLETION:
                if not self._directory.has_passed_all_quizzes(student_id, assessment.course_id):
                    unmet.append(
                        {
                            "type": QUIZ_COMPLETION,
                            "message": "All course quizzes must be completed and passed",
                        }
                    )
            elif kind == MINIMUM_PROGRESS:
                required = float(data.get("minimum_percentage", 0))
                progress = self._directory.get_progress_percentage(student_id, assessment.course_id)
                if progress < required:
                    unmet.append(
                        {
                            "type": MINIMUM_PROGRESS,
                            "message": f"Course progress must be at least {required:g}%",
                            "required_percentage": required,
                        }
                    )
            elif kind == LESSON_COMPLETION:
                lesson_ids = [int(lesson_id) for lesson_id in data.get("lesson_ids", [])]
                if not self._directory.has_completed_lessons(student_id, lesson_ids):
                    unmet.append(
                        {
                            "type": LESSON_COMPLETION,
                            "message": "Required lessons must be completed",
                            "lesson_ids": lesson_ids,
                        }
                    )
            else:
                LOGGER.warning(
                    "Ignoring prerequisite %s with unknown type '%s'", prerequisite.id, kind
                )
        LOGGER.debug(
            "Prerequisite check for assessment_id=%s student_id=%s -> %s unmet",
            assessment.id,
            student_id,
            len(unmet),
        )
        return unmet


__all__ = [
    "CourseDirectory",
    "LESSON_COMPLETION",
    "MINIMUM_PROGRESS",
    "PREREQUISITE_TYPES",
    "PrerequisiteChecker",
    "QUIZ_COMPLETION",
    "validate_prerequisite_data",
]
