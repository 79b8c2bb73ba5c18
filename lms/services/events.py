"""Structured event helpers shared by the grading and media pipelines."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


DEFAULT_EVENT_LOGGER = logging.getLogger("lms.events")

DB_QUERY = "DB_QUERY"
FILE_OP = "FILE_OP"
TASK_STATE = "TASK_STATE"
STATE_TRANSITION = "STATE_TRANSITION"

_MAX_VALUE_LENGTH = 200


def sanitize_context_value(value: Any) -> Any:
    """Return a JSON-serialisable representation for *value*."""

    if value is None:
        return None
    if isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, dict):
        sanitized: Dict[str, Any] = {}
        for key, item in value.items():
            if key is None:
                continue
            cleaned = sanitize_context_value(item)
            if cleaned is None or cleaned == "":
                continue
            sanitized[str(key)] = cleaned
        return sanitized
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value) if isinstance(value, (set, frozenset)) else value
        joined = ", ".join(str(item) for item in items)
    else:
        joined = str(value)
    trimmed = joined.strip()
    if not trimmed:
        return None
    if len(trimmed) > _MAX_VALUE_LENGTH:
        return trimmed[:_MAX_VALUE_LENGTH] + "…"
    return trimmed


def normalize_context(values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Normalise structured metadata for event emission."""

    if not values:
        return {}
    normalised: Dict[str, Any] = {}
    for key, raw_value in values.items():
        if not key:
            continue
        value = sanitize_context_value(raw_value)
        if value is None or value == "":
            continue
        normalised[str(key)] = value
    return normalised


def emit_structured_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    correlation: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: logging.Logger | logging.LoggerAdapter = DEFAULT_EVENT_LOGGER,
) -> None:
    """Emit a structured event with consistent logging metadata."""

    base_message = str(message).strip()
    normalised_context = normalize_context(context)
    normalised_payload = normalize_context(payload)
    normalised_correlation = normalize_context(correlation)
    combined_details = {
        **normalised_correlation,
        **normalised_context,
        **normalised_payload,
    }
    details_text = ", ".join(f"{key}={value}" for key, value in combined_details.items())
    display_message = f"[{event_type}] {base_message}" if event_type else base_message
    log_message = f"{display_message} ({details_text})" if details_text else display_message
    extra: Dict[str, Any] = {
        "event": base_message,
        "event_type": event_type or "",
    }
    if normalised_context:
        extra["event_context"] = normalised_context
    if normalised_payload:
        extra["event_payload"] = normalised_payload
    if normalised_correlation:
        extra["event_correlation"] = normalised_correlation
    if duration_ms is not None:
        extra["event_duration_ms"] = float(duration_ms)
    logger.log(level, log_message, extra=extra)


def emit_db_event(action: str, **kwargs: Any) -> None:
    """Emit a structured database event."""

    emit_structured_event(DB_QUERY, action, **kwargs)


def emit_file_event(operation: str, **kwargs: Any) -> None:
    """Emit a structured file-system event."""

    emit_structured_event(FILE_OP, operation, **kwargs)


def emit_task_event(phase: str, message: str = "", **kwargs: Any) -> None:
    """Emit a structured background task lifecycle event."""

    emit_structured_event(TASK_STATE, message or phase, **kwargs)


def emit_transition_event(
    entity: str,
    entity_id: Any,
    previous: Optional[str],
    current: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    **kwargs: Any,
) -> None:
    """Emit an event describing a status change of an attempt, answer, video or session."""

    details: Dict[str, Any] = {"entity": entity, "id": entity_id, "from": previous, "to": current}
    if payload:
        details.update(payload)
    emit_structured_event(
        STATE_TRANSITION,
        f"{entity} {previous or '<new>'} -> {current}",
        payload=details,
        **kwargs,
    )


__all__ = [
    "DB_QUERY",
    "DEFAULT_EVENT_LOGGER",
    "FILE_OP",
    "STATE_TRANSITION",
    "TASK_STATE",
    "emit_db_event",
    "emit_file_event",
    "emit_structured_event",
    "emit_task_event",
    "emit_transition_event",
    "normalize_context",
    "sanitize_context_value",
]
