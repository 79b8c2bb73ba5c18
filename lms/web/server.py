"""FastAPI application exposing the assessment and video pipeline services."""

from __future__ import annotations

import contextlib
import contextvars
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from starlette.types import ASGIApp, Receive, Scope, Send

from ..config import AppConfig
from ..errors import LMSError
from ..processing.assembly import AssemblyUnit, ChunkAssembler
from ..services.analytics import build_analytics
from ..services.attempts import AttemptService
from ..services.authoring import AuthoringService
from ..services.blob_storage import LocalBlobStorage
from ..services.events import emit_db_event, emit_file_event, emit_structured_event
from ..services.grading_queue import GradingQueue, PendingAttempt
from ..services.media_repository import MediaRepository, VideoQualityRecord, VideoRecord
from ..services.media_tools import FFmpegMediaTool, MediaTool
from ..services.prerequisites import CourseDirectory
from ..services.questions import payload_to_dict
from ..services.storage import (
    AnswerRecord,
    AssessmentRecord,
    AssessmentRepository,
    AttemptRecord,
    PrerequisiteRecord,
    QuestionRecord,
    SQLiteCourseDirectory,
    format_timestamp,
    utcnow,
)
from ..services.tasks import WorkQueue
from ..services.uploads import UploadProgress, UploadTracker
from ..services.videos import VideoCatalog


_REQUEST_ID_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "lms_request_id",
    default=None,
)
_ACTOR_VAR: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    "lms_actor",
    default=None,
)


def _new_correlation_id() -> str:
    return uuid.uuid4().hex


def _format_actor_label(role: str, detail: Optional[str] = None) -> str:
    base = role.strip() if role else "actor"
    if detail is None:
        return base
    suffix = str(detail).strip()
    return f"{base}:{suffix}" if suffix else base


def _collect_correlation_context() -> Dict[str, str]:
    context: Dict[str, str] = {}
    request_id = _REQUEST_ID_VAR.get()
    if request_id:
        context["request_id"] = str(request_id)
    actor = _ACTOR_VAR.get()
    if actor:
        context["actor"] = str(actor)
    return context


class RequestContextMiddleware:
    """Assign a correlation identifier to each request and expose it via contextvars."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = _new_correlation_id()
        scope_state = scope.get("state")
        if scope_state is None:
            scope_state = {}
            scope["state"] = scope_state
        if isinstance(scope_state, dict):
            scope_state["request_id"] = request_id
        else:
            setattr(scope_state, "request_id", request_id)

        method = scope.get("method")
        actor_hint = _format_actor_label("request", method.upper() if isinstance(method, str) else None)
        request_token = _REQUEST_ID_VAR.set(request_id)
        actor_token = _ACTOR_VAR.set(actor_hint)
        try:
            await self.app(scope, receive, send)
        finally:
            _ACTOR_VAR.reset(actor_token)
            _REQUEST_ID_VAR.reset(request_token)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects correlation context into records."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra: Dict[str, Any] = dict(self.extra)
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        correlation = _collect_correlation_context()
        for key, value in correlation.items():
            extra.setdefault(key, value)
        kwargs["extra"] = extra
        return msg, kwargs


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})
EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("lms.web.events"), {})


def _emit_debug_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
) -> None:
    emit_structured_event(
        event_type,
        message,
        payload=payload,
        context=context,
        correlation=_collect_correlation_context(),
        duration_ms=duration_ms,
        level=level,
        logger=EVENT_LOGGER,
    )


def _repository_event_emitter(event_type: str, message: str, **kwargs: Any) -> None:
    kwargs.setdefault("correlation", _collect_correlation_context())
    kwargs.setdefault("logger", EVENT_LOGGER)
    kwargs.setdefault("level", logging.DEBUG)
    if event_type == "DB_QUERY":
        emit_db_event(message, **kwargs)
    elif event_type == "FILE_OP":
        emit_file_event(message, **kwargs)
    else:
        emit_structured_event(event_type, message, **kwargs)


def _log_event(message: str, **context: Any) -> None:
    _emit_debug_event("APP_EVENT", message, context=context)


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------
class QuestionPayload(BaseModel):
    question_type: str = Field(..., min_length=1)
    question_text: str = Field(..., min_length=1)
    points: float
    order: Optional[int] = None
    options: Optional[List[Dict[str, Any]]] = None
    correct_answer: Any = None
    grading_rubric: Optional[str] = None


class QuestionUpdatePayload(BaseModel):
    question_text: Optional[str] = None
    points: Optional[float] = None
    order: Optional[int] = None
    options: Optional[List[Dict[str, Any]]] = None
    correct_answer: Any = None
    grading_rubric: Optional[str] = None


class AssessmentCreatePayload(BaseModel):
    course_id: int
    title: str = Field(..., min_length=1)
    description: str = ""
    time_limit: int
    passing_score: float
    max_attempts: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: bool = True
    questions: List[QuestionPayload] = Field(default_factory=list)


class AssessmentUpdatePayload(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    time_limit: Optional[int] = None
    passing_score: Optional[float] = None
    max_attempts: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    is_active: Optional[bool] = None


class QuestionReorderPayload(BaseModel):
    question_ids: List[int] = Field(default_factory=list)


class PrerequisitePayload(BaseModel):
    prerequisite_type: str = Field(..., min_length=1)
    prerequisite_data: Dict[str, Any] = Field(default_factory=dict)


class AttemptStartPayload(BaseModel):
    student_id: int


class AnswerEntry(BaseModel):
    question_id: int
    answer: Any = None


class SubmissionPayload(BaseModel):
    student_id: int
    answers: List[AnswerEntry] = Field(default_factory=list)


class GradePayload(BaseModel):
    points_earned: float
    grader_id: int
    feedback: Optional[str] = None


class UploadInitPayload(BaseModel):
    filename: str = Field(..., min_length=1)
    file_size: int = Field(..., ge=0)
    total_chunks: int = Field(..., ge=1)


class UploadCompletePayload(BaseModel):
    uploaded_by: Optional[int] = None


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------
def _serialize_assessment(record: AssessmentRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "course_id": record.course_id,
        "title": record.title,
        "description": record.description,
        "time_limit": record.time_limit,
        "passing_score": record.passing_score,
        "max_attempts": record.max_attempts,
        "start_date": format_timestamp(record.start_date),
        "end_date": format_timestamp(record.end_date),
        "is_active": record.is_active,
        "created_at": format_timestamp(record.created_at),
    }


def _serialize_question(record: QuestionRecord, *, include_key: bool = True) -> Dict[str, Any]:
    return {
        "id": record.id,
        "assessment_id": record.assessment_id,
        "question_type": record.question_type,
        "question_text": record.question_text,
        "points": record.points,
        "order": record.order,
        **payload_to_dict(record.payload, include_key=include_key),
    }


def _serialize_prerequisite(record: PrerequisiteRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "assessment_id": record.assessment_id,
        "prerequisite_type": record.prerequisite_type,
        "prerequisite_data": dict(record.prerequisite_data),
    }


def _serialize_attempt(record: AttemptRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "assessment_id": record.assessment_id,
        "student_id": record.student_id,
        "attempt_number": record.attempt_number,
        "status": record.status,
        "start_time": format_timestamp(record.start_time),
        "completion_time": format_timestamp(record.completion_time),
        "time_taken": record.time_taken,
        "score": record.score,
        "max_score": record.max_score,
        "percentage": record.percentage,
        "passed": record.passed,
    }


def _serialize_answer(record: AnswerRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "attempt_id": record.attempt_id,
        "question_id": record.question_id,
        "answer": dict(record.answer),
        "is_correct": record.is_correct,
        "points_earned": record.points_earned,
        "grading_status": record.grading_status,
        "grader_feedback": record.grader_feedback,
        "graded_by": record.graded_by,
        "graded_at": format_timestamp(record.graded_at),
    }


def _serialize_pending(entry: PendingAttempt) -> Dict[str, Any]:
    return {
        "attempt": _serialize_attempt(entry.attempt),
        "questions": [_serialize_question(question) for question in entry.questions],
        "answers": [_serialize_answer(answer) for answer in entry.answers],
        "pending_answer_ids": [answer.id for answer in entry.pending_answers],
    }


def _serialize_quality(record: VideoQualityRecord) -> Dict[str, Any]:
    return {
        "quality": record.quality,
        "status": record.status,
        "processing_progress": record.processing_progress,
        "file_path": record.file_path or None,
        "file_size": record.file_size,
        "error_message": record.error_message,
    }


def _serialize_video(record: VideoRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "upload_session_id": record.upload_session_id,
        "original_filename": record.original_filename,
        "display_name": record.display_name,
        "file_size": record.file_size,
        "original_path": record.original_path,
        "status": record.status,
        "processing_progress": record.processing_progress,
        "duration": record.duration,
        "resolution": record.resolution,
        "codec": record.codec,
        "format": record.format,
        "thumbnail_path": record.thumbnail_path,
        "error_message": record.error_message,
        "uploaded_by": record.uploaded_by,
        "created_at": format_timestamp(record.created_at),
        "qualities": [_serialize_quality(quality) for quality in record.qualities],
    }


def _serialize_progress(progress: UploadProgress) -> Dict[str, Any]:
    return {
        "session_id": progress.session_id,
        "status": progress.status,
        "received_chunks": progress.received,
        "total_chunks": progress.total,
        "percentage": progress.percentage,
        "missing_chunks": list(progress.missing),
    }


def create_app(
    config: AppConfig,
    *,
    media_tool: Optional[MediaTool] = None,
    work_queue: Optional[WorkQueue] = None,
    course_directory: Optional[CourseDirectory] = None,
    clock: Callable[[], datetime] = utcnow,
) -> FastAPI:
    """Return a configured FastAPI application."""

    owns_queue = work_queue is None
    queue = work_queue or WorkQueue(max_workers=config.worker_count)

    @contextlib.asynccontextmanager
    async def lifespan(_app: FastAPI):
        try:
            yield
        finally:
            if owns_queue:
                queue.shutdown(wait=False)

    app = FastAPI(
        title="LMS Assessments & Media",
        description="Assessment attempts, grading and the video upload pipeline",
        lifespan=lifespan,
    )

    assessments = AssessmentRepository(config, event_emitter=_repository_event_emitter)
    media = MediaRepository(config, event_emitter=_repository_event_emitter)
    directory = course_directory or SQLiteCourseDirectory(config)
    storage = LocalBlobStorage(config.storage_root)
    tool = media_tool or FFmpegMediaTool(
        ffmpeg_binary=config.ffmpeg_binary,
        ffprobe_binary=config.ffprobe_binary,
        transcode_timeout=float(config.transcode_timeout_seconds),
    )

    authoring = AuthoringService(assessments, clock=clock)
    attempts = AttemptService(assessments, directory, clock=clock)
    grading = GradingQueue(assessments, clock=clock)
    uploads = UploadTracker(
        media,
        storage,
        ttl_hours=config.upload_session_ttl_hours,
        clock=clock,
    )
    assembler = ChunkAssembler(
        media,
        storage,
        tool,
        queue,
        scratch_root=config.assembly_root,
        quality_tiers=config.quality_tiers,
        transcode_tries=config.transcode_tries,
        transcode_timeout=float(config.transcode_timeout_seconds),
        clock=clock,
    )
    videos = VideoCatalog(media)

    app.state.config = config
    app.state.work_queue = queue
    app.state.storage = storage
    app.state.attempt_service = attempts

    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(LMSError)
    async def handle_lms_error(_request: Request, error: LMSError) -> JSONResponse:
        level = logging.ERROR if error.status_code >= 500 else logging.INFO
        LOGGER.log(level, "Request failed with %s: %s", error.code, error.message)
        return JSONResponse(status_code=error.status_code, content={"error": error.to_dict()})

    # ------------------------------------------------------------------
    # Assessments
    # ------------------------------------------------------------------
    def _overview_response(assessment_id: int) -> Dict[str, Any]:
        overview = authoring.overview(assessment_id)
        return {
            "assessment": _serialize_assessment(overview.assessment),
            "questions": [_serialize_question(question) for question in overview.questions],
            "prerequisites": [_serialize_prerequisite(item) for item in overview.prerequisites],
        }

    @app.get("/api/assessments")
    async def list_assessments(course_id: Optional[int] = None) -> Dict[str, Any]:
        records = assessments.list_assessments(course_id)
        return {"assessments": [_serialize_assessment(record) for record in records]}

    @app.post("/api/assessments", status_code=status.HTTP_201_CREATED)
    async def create_assessment(payload: AssessmentCreatePayload) -> Dict[str, Any]:
        _log_event("Creating assessment", course_id=payload.course_id, title=payload.title)
        values = payload.model_dump(exclude={"questions"})
        questions = [question.model_dump(exclude_none=True) for question in payload.questions]
        overview = authoring.create_assessment(**values, questions=questions)
        return _overview_response(overview.assessment.id)

    @app.get("/api/assessments/{assessment_id}")
    async def get_assessment(assessment_id: int) -> Dict[str, Any]:
        return _overview_response(assessment_id)

    @app.put("/api/assessments/{assessment_id}")
    async def update_assessment(assessment_id: int, payload: AssessmentUpdatePayload) -> Dict[str, Any]:
        changes = payload.model_dump(exclude_unset=True)
        _log_event("Updating assessment", assessment_id=assessment_id, fields=sorted(changes))
        record = authoring.update_assessment(assessment_id, **changes)
        return {"assessment": _serialize_assessment(record)}

    @app.post("/api/assessments/{assessment_id}/questions", status_code=status.HTTP_201_CREATED)
    async def add_question(assessment_id: int, payload: QuestionPayload) -> Dict[str, Any]:
        question = authoring.add_question(assessment_id, **payload.model_dump(exclude_none=True))
        return {"question": _serialize_question(question)}

    @app.put("/api/questions/{question_id}")
    async def update_question(question_id: int, payload: QuestionUpdatePayload) -> Dict[str, Any]:
        question = authoring.update_question(question_id, **payload.model_dump(exclude_unset=True))
        return {"question": _serialize_question(question)}

    @app.delete(
        "/api/questions/{question_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def delete_question(question_id: int) -> Response:
        authoring.delete_question(question_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/api/assessments/{assessment_id}/questions/reorder")
    async def reorder_questions(assessment_id: int, payload: QuestionReorderPayload) -> Dict[str, Any]:
        questions = authoring.reorder_questions(assessment_id, payload.question_ids)
        return {"questions": [_serialize_question(question) for question in questions]}

    @app.post("/api/assessments/{assessment_id}/prerequisites", status_code=status.HTTP_201_CREATED)
    async def add_prerequisite(assessment_id: int, payload: PrerequisitePayload) -> Dict[str, Any]:
        record = authoring.add_prerequisite(
            assessment_id, payload.prerequisite_type, payload.prerequisite_data
        )
        return {"prerequisite": _serialize_prerequisite(record)}

    @app.delete(
        "/api/assessments/{assessment_id}/prerequisites/{prerequisite_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def remove_prerequisite(assessment_id: int, prerequisite_id: int) -> Response:
        authoring.remove_prerequisite(assessment_id, prerequisite_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/api/assessments/{assessment_id}/analytics")
    async def assessment_analytics(
        assessment_id: int,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        return {"analytics": build_analytics(assessments, assessment_id, since=since, until=until).to_dict()}

    # ------------------------------------------------------------------
    # Attempts
    # ------------------------------------------------------------------
    @app.post("/api/assessments/{assessment_id}/attempts", status_code=status.HTTP_201_CREATED)
    async def start_attempt(assessment_id: int, payload: AttemptStartPayload) -> Dict[str, Any]:
        _log_event("Starting attempt", assessment_id=assessment_id, student_id=payload.student_id)
        attempt = attempts.start(assessment_id, payload.student_id)
        questions = assessments.list_questions(assessment_id)
        return {
            "attempt": _serialize_attempt(attempt),
            "questions": [_serialize_question(question, include_key=False) for question in questions],
        }

    @app.get("/api/assessments/{assessment_id}/attempts")
    async def attempt_history(assessment_id: int, student_id: int) -> Dict[str, Any]:
        return {"attempts": [_serialize_attempt(item) for item in attempts.history(assessment_id, student_id)]}

    @app.post("/api/attempts/{attempt_id}/submit")
    async def submit_attempt(attempt_id: int, payload: SubmissionPayload) -> Dict[str, Any]:
        _log_event("Submitting attempt", attempt_id=attempt_id, answer_count=len(payload.answers))
        answers = [entry.model_dump() for entry in payload.answers]
        attempt = attempts.submit(attempt_id, payload.student_id, answers)
        return {"attempt": _serialize_attempt(attempt)}

    @app.get("/api/attempts/{attempt_id}")
    async def attempt_details(attempt_id: int, student_id: int) -> Dict[str, Any]:
        details = attempts.details(attempt_id, student_id)
        reveal = details.attempt.status != "in_progress"
        return {
            "attempt": _serialize_attempt(details.attempt),
            "assessment": _serialize_assessment(details.assessment),
            "questions": [_serialize_question(item, include_key=reveal) for item in details.questions],
            "answers": [_serialize_answer(item) for item in details.answers],
        }

    @app.get("/api/attempts/{attempt_id}/remaining-time")
    async def remaining_time(attempt_id: int, student_id: Optional[int] = None) -> Dict[str, Any]:
        return {"attempt_id": attempt_id, "remaining_seconds": attempts.remaining_seconds(attempt_id, student_id)}

    @app.post("/api/attempts/sweep")
    async def sweep_attempts() -> Dict[str, Any]:
        expired = attempts.sweep_expired()
        return {"timed_out": expired, "count": len(expired)}

    # ------------------------------------------------------------------
    # Manual grading
    # ------------------------------------------------------------------
    @app.get("/api/grading/pending")
    async def pending_grading(assessment_id: Optional[int] = None) -> Dict[str, Any]:
        return {"attempts": [_serialize_pending(entry) for entry in grading.list_pending(assessment_id)]}

    @app.get("/api/grading/attempts/{attempt_id}")
    async def attempt_for_grading(attempt_id: int) -> Dict[str, Any]:
        return _serialize_pending(grading.attempt_for_grading(attempt_id))

    @app.post("/api/grading/answers/{answer_id}")
    async def grade_answer(answer_id: int, payload: GradePayload) -> Dict[str, Any]:
        _log_event("Grading answer", answer_id=answer_id, grader_id=payload.grader_id)
        outcome = grading.grade_answer(
            answer_id,
            payload.points_earned,
            payload.grader_id,
            payload.feedback,
        )
        return {
            "answer": _serialize_answer(outcome.answer),
            "attempt": _serialize_attempt(outcome.attempt),
            "attempt_completed": outcome.attempt_completed,
        }

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------
    def _upload_response(session_id: str) -> Dict[str, Any]:
        body = _serialize_progress(uploads.progress(session_id))
        video = media.get_video_for_session(session_id)
        body["video_id"] = video.id if video is not None else None
        return body

    @app.post("/api/uploads", status_code=status.HTTP_201_CREATED)
    async def initialize_upload(payload: UploadInitPayload) -> Dict[str, Any]:
        session = uploads.initialize(payload.filename, payload.file_size, payload.total_chunks)
        return _upload_response(session.session_id)

    @app.put("/api/uploads/{session_id}/chunks/{chunk_number}")
    async def upload_chunk(session_id: str, chunk_number: int, request: Request) -> Dict[str, Any]:
        data = await request.body()
        return _serialize_progress(uploads.receive_chunk(session_id, chunk_number, data))

    @app.get("/api/uploads/{session_id}")
    async def upload_progress(session_id: str) -> Dict[str, Any]:
        return _upload_response(session_id)

    @app.post("/api/uploads/{session_id}/complete", status_code=status.HTTP_202_ACCEPTED)
    async def complete_upload(session_id: str, payload: Optional[UploadCompletePayload] = None) -> Dict[str, Any]:
        assembler.check_ready(session_id)
        uploaded_by = payload.uploaded_by if payload is not None else None
        task = queue.enqueue(AssemblyUnit(assembler, session_id, uploaded_by))
        _log_event("Queued upload assembly", session_id=session_id, task_id=task.id)
        return {"session_id": session_id, "task_id": task.id, "status": "queued"}

    @app.delete(
        "/api/uploads/{session_id}",
        status_code=status.HTTP_204_NO_CONTENT,
        response_class=Response,
    )
    async def cancel_upload(session_id: str) -> Response:
        uploads.cancel(session_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    # ------------------------------------------------------------------
    # Videos
    # ------------------------------------------------------------------
    @app.get("/api/videos/{video_id}")
    async def get_video(video_id: int) -> Dict[str, Any]:
        return {"video": _serialize_video(videos.get_video(video_id))}

    @app.get("/api/videos/{video_id}/progress")
    async def video_progress(video_id: int) -> Dict[str, Any]:
        return videos.processing_progress(video_id).to_dict()

    @app.get("/api/tasks/{task_id}")
    async def task_status(task_id: str) -> Dict[str, Any]:
        task = queue.get(task_id)
        if task is None:
            return JSONResponse(
                status_code=status.HTTP_404_NOT_FOUND,
                content={"error": {"code": "TASK_NOT_FOUND", "kind": "not_found", "message": "Task not found"}},
            )
        return {
            "id": task.id,
            "name": task.name,
            "status": task.status,
            "attempts": task.attempts,
            "tries": task.tries,
            "error": task.error,
        }

    return app


__all__ = ["ContextualLoggerAdapter", "RequestContextMiddleware", "create_app"]
