"""Error taxonomy shared by the assessment and media pipelines.

Every failure raised by a service derives from :class:`LMSError` and carries a
``kind`` (one of :data:`ERROR_KINDS`), a stable machine readable ``code`` and
optional structured ``details``. The web layer maps ``kind`` to an HTTP status
via :func:`status_for_kind`.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Optional


NOT_FOUND = "not_found"
CONFLICT = "conflict"
FORBIDDEN = "forbidden"
INVALID_INPUT = "invalid_input"
EXPIRED = "expired"
TOOL_FAILURE = "tool_failure"
EXHAUSTED = "exhausted"

ERROR_KINDS = (NOT_FOUND, CONFLICT, FORBIDDEN, INVALID_INPUT, EXPIRED, TOOL_FAILURE, EXHAUSTED)

_STATUS_BY_KIND: Mapping[str, int] = {
    NOT_FOUND: 404,
    CONFLICT: 409,
    FORBIDDEN: 403,
    INVALID_INPUT: 422,
    EXPIRED: 410,
    TOOL_FAILURE: 502,
    EXHAUSTED: 429,
}


def status_for_kind(kind: str) -> int:
    """Return the HTTP-like status associated with an error *kind*."""

    return _STATUS_BY_KIND.get(kind, 500)


class LMSError(Exception):
    """Base class for every typed failure surfaced by the services."""

    kind: str = INVALID_INPUT
    code: str = "LMS_ERROR"
    default_message: str = "Request could not be completed"

    def __init__(self, message: Optional[str] = None, *, details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message or self.default_message
        self.details: Dict[str, Any] = dict(details or {})
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        return status_for_kind(self.kind)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "kind": self.kind,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------
class AssessmentNotFoundError(LMSError):
    kind = NOT_FOUND
    code = "ASSESSMENT_NOT_FOUND"
    default_message = "Assessment not found"


class QuestionNotFoundError(LMSError):
    kind = NOT_FOUND
    code = "QUESTION_NOT_FOUND"
    default_message = "Question not found"


class AttemptNotFoundError(LMSError):
    kind = NOT_FOUND
    code = "ATTEMPT_NOT_FOUND"
    default_message = "Assessment attempt not found"


class AnswerNotFoundError(LMSError):
    kind = NOT_FOUND
    code = "ANSWER_NOT_FOUND"
    default_message = "Answer not found"


class PrerequisiteNotFoundError(LMSError):
    kind = NOT_FOUND
    code = "PREREQUISITE_NOT_FOUND"
    default_message = "Prerequisite not found"


class InvalidSessionError(LMSError):
    kind = NOT_FOUND
    code = "INVALID_SESSION"
    default_message = "Upload session is unknown or no longer accepting data"

    def __init__(self, session_id: str, message: Optional[str] = None) -> None:
        self.session_id = session_id
        super().__init__(
            message or f"Upload session '{session_id}' is unknown or no longer accepting data",
            details={"session_id": session_id},
        )


class VideoNotFoundError(LMSError):
    kind = NOT_FOUND
    code = "VIDEO_NOT_FOUND"
    default_message = "Video not found"

    def __init__(self, video_id: int) -> None:
        self.video_id = video_id
        super().__init__(f"Video {video_id} not found", details={"video_id": video_id})


# ---------------------------------------------------------------------------
# Conflict
# ---------------------------------------------------------------------------
class AssessmentAlreadySubmittedError(LMSError):
    kind = CONFLICT
    code = "ALREADY_SUBMITTED"
    default_message = "Assessment already submitted"


class AnswerAlreadyGradedError(LMSError):
    kind = CONFLICT
    code = "ALREADY_GRADED"
    default_message = "Answer has already been graded"


class InvalidTransitionError(LMSError):
    kind = CONFLICT
    code = "INVALID_TRANSITION"
    default_message = "Status transition is not allowed"

    def __init__(self, entity: str, current: str, target: str) -> None:
        super().__init__(
            f"Cannot move {entity} from '{current}' to '{target}'",
            details={"entity": entity, "from": current, "to": target},
        )


class DuplicateQuestionOrderError(LMSError):
    kind = CONFLICT
    code = "DUPLICATE_ORDER"
    default_message = "Question order must be unique within an assessment"


# ---------------------------------------------------------------------------
# Forbidden
# ---------------------------------------------------------------------------
class NotEnrolledError(LMSError):
    kind = FORBIDDEN
    code = "NOT_ENROLLED"
    default_message = "Not enrolled in course"


class AssessmentNotAvailableError(LMSError):
    kind = FORBIDDEN
    code = "ASSESSMENT_NOT_AVAILABLE"
    default_message = "Assessment is not available"


class PrerequisitesNotMetError(LMSError):
    kind = FORBIDDEN
    code = "PREREQUISITES_NOT_MET"
    default_message = "Prerequisites not met"

    def __init__(self, unmet: Iterable[Mapping[str, Any]]) -> None:
        self.unmet: List[Dict[str, Any]] = [dict(item) for item in unmet]
        super().__init__(details={"unmet": self.unmet})


class UnauthorizedAttemptAccessError(LMSError):
    kind = FORBIDDEN
    code = "UNAUTHORIZED_ATTEMPT_ACCESS"
    default_message = "Attempt belongs to another student"


# ---------------------------------------------------------------------------
# Invalid input
# ---------------------------------------------------------------------------
class InvalidQuestionError(LMSError):
    kind = INVALID_INPUT
    code = "INVALID_QUESTION"
    default_message = "Question payload is invalid"


class InvalidAssessmentError(LMSError):
    kind = INVALID_INPUT
    code = "INVALID_ASSESSMENT"
    default_message = "Assessment data is invalid"


class InvalidPrerequisiteError(LMSError):
    kind = INVALID_INPUT
    code = "INVALID_PREREQUISITE"
    default_message = "Prerequisite data is invalid"


class InvalidAnswerError(LMSError):
    kind = INVALID_INPUT
    code = "INVALID_ANSWER"
    default_message = "Submitted answer is invalid"


class InvalidGradingDataError(LMSError):
    kind = INVALID_INPUT
    code = "INVALID_GRADING_DATA"
    default_message = "Grading data is invalid"


class InvalidUploadError(LMSError):
    kind = INVALID_INPUT
    code = "INVALID_UPLOAD"
    default_message = "Upload parameters are invalid"


class InvalidChunkError(LMSError):
    kind = INVALID_INPUT
    code = "INVALID_CHUNK"
    default_message = "Chunk number is out of range"

    def __init__(self, chunk_number: int, total_chunks: int, message: Optional[str] = None) -> None:
        self.chunk_number = chunk_number
        self.total_chunks = total_chunks
        super().__init__(
            message
            or f"Chunk {chunk_number} is outside the valid range 0..{max(total_chunks - 1, 0)}",
            details={"chunk_number": chunk_number, "total_chunks": total_chunks},
        )


class IncompleteUploadError(LMSError):
    kind = INVALID_INPUT
    code = "INCOMPLETE_UPLOAD"
    default_message = "Upload is missing chunks"

    def __init__(self, missing_chunks: Iterable[int]) -> None:
        self.missing_chunks: List[int] = sorted(int(item) for item in missing_chunks)
        super().__init__(
            f"Upload is missing chunks: {self.missing_chunks}",
            details={"missing_chunks": self.missing_chunks},
        )


# ---------------------------------------------------------------------------
# Expired
# ---------------------------------------------------------------------------
class TimeLimitExceededError(LMSError):
    kind = EXPIRED
    code = "TIME_LIMIT_EXCEEDED"
    default_message = "Assessment time limit exceeded"


class ExpiredSessionError(LMSError):
    kind = EXPIRED
    code = "EXPIRED_SESSION"
    default_message = "Upload session has expired"

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        super().__init__(
            f"Upload session '{session_id}' has expired",
            details={"session_id": session_id},
        )


# ---------------------------------------------------------------------------
# Tool failure / exhausted
# ---------------------------------------------------------------------------
class MediaToolError(LMSError):
    """Raised when ffmpeg/ffprobe fail; ``diagnostic_output`` keeps the tool's stderr."""

    kind = TOOL_FAILURE
    code = "MEDIA_TOOL_FAILURE"
    default_message = "Media tool failed"

    def __init__(self, message: str, diagnostic_output: Optional[str] = None) -> None:
        self.diagnostic_output = diagnostic_output or ""
        details = {"diagnostic_output": self.diagnostic_output} if self.diagnostic_output else None
        super().__init__(message, details=details)


class AssemblyTimeoutError(LMSError):
    kind = TOOL_FAILURE
    code = "ASSEMBLY_TIMEOUT"
    default_message = "Chunk assembly timed out"

    def __init__(self, session_id: str, timeout: float) -> None:
        self.session_id = session_id
        super().__init__(
            f"Assembly of upload session '{session_id}' exceeded {timeout:g}s",
            details={"session_id": session_id, "timeout": timeout},
        )


class MaxAttemptsExceededError(LMSError):
    kind = EXHAUSTED
    code = "MAX_ATTEMPTS_EXCEEDED"
    default_message = "Maximum attempts exceeded"


class RetriesExhaustedError(LMSError):
    kind = EXHAUSTED
    code = "RETRIES_EXHAUSTED"
    default_message = "Retries exhausted"


__all__ = [
    "CONFLICT",
    "ERROR_KINDS",
    "EXHAUSTED",
    "EXPIRED",
    "FORBIDDEN",
    "INVALID_INPUT",
    "NOT_FOUND",
    "TOOL_FAILURE",
    "AnswerAlreadyGradedError",
    "AnswerNotFoundError",
    "AssemblyTimeoutError",
    "AssessmentAlreadySubmittedError",
    "AssessmentNotAvailableError",
    "AssessmentNotFoundError",
    "AttemptNotFoundError",
    "DuplicateQuestionOrderError",
    "ExpiredSessionError",
    "IncompleteUploadError",
    "InvalidAnswerError",
    "InvalidAssessmentError",
    "InvalidChunkError",
    "InvalidGradingDataError",
    "InvalidPrerequisiteError",
    "InvalidQuestionError",
    "InvalidSessionError",
    "InvalidTransitionError",
    "InvalidUploadError",
    "LMSError",
    "MaxAttemptsExceededError",
    "MediaToolError",
    "NotEnrolledError",
    "PrerequisiteNotFoundError",
    "PrerequisitesNotMetError",
    "QuestionNotFoundError",
    "RetriesExhaustedError",
    "TimeLimitExceededError",
    "UnauthorizedAttemptAccessError",
    "VideoNotFoundError",
    "status_for_kind",
]
