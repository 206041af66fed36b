"""Structured event helpers shared across the backend.

Every event is an ordinary log record carrying ``debug_*`` extras. The debug
log handler in :mod:`tutor.web.server` folds those extras into the entries
served by ``/api/debug/logs``; plain log handlers just see a readable line
such as ``[MIX_STAGE] Tracks downloaded (session_id=..., stage=staged)``.
"""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional


DEFAULT_EVENT_LOGGER = logging.getLogger("sprach_tutor.events")

DB_QUERY = "DB_QUERY"
FILE_OP = "FILE_OP"
MIX_STAGE = "MIX_STAGE"

_MAX_VALUE_LENGTH = 200

LoggerLike = logging.Logger | logging.LoggerAdapter


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or value == {}


def sanitize_context_value(value: Any) -> Any:
    """Return a JSON-friendly, length-limited version of *value*.

    Numbers and booleans pass through, dates and paths become strings,
    mappings are cleaned recursively and sequences are joined with commas.
    Blank results come back as ``None``.
    """

    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, dict):
        return normalize_context(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)

    if isinstance(value, (list, tuple, set)):
        text = ", ".join(str(item) for item in value).strip()
    else:
        text = str(value).strip()
    if not text:
        return None
    if len(text) > _MAX_VALUE_LENGTH:
        return text[:_MAX_VALUE_LENGTH] + "…"
    return text


def normalize_context(values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Drop empty keys and blank values and sanitize the rest."""

    cleaned: Dict[str, Any] = {}
    for key, raw in (values or {}).items():
        if key is None or key == "":
            continue
        value = sanitize_context_value(raw)
        if not _is_blank(value):
            cleaned[str(key)] = value
    return cleaned


def emit_structured_event(
    event_type: str,
    message: str,
    *,
    payload: Optional[Dict[str, Any]] = None,
    context: Optional[Dict[str, Any]] = None,
    correlation: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: LoggerLike = DEFAULT_EVENT_LOGGER,
) -> None:
    """Log *message* as an event of *event_type* with structured extras."""

    summary = str(message).strip()
    sections = {
        "debug_correlation": normalize_context(correlation),
        "debug_context": normalize_context(context),
        "debug_payload": normalize_context(payload),
    }

    details = {}
    for values in sections.values():
        details.update(values)
    line = f"[{event_type}] {summary}" if event_type else summary
    if details:
        line += " (" + ", ".join(f"{key}={value}" for key, value in details.items()) + ")"

    extra: Dict[str, Any] = {"debug_event": summary, "debug_event_type": event_type or ""}
    extra.update({name: values for name, values in sections.items() if values})
    if duration_ms is not None:
        extra["debug_duration_ms"] = float(duration_ms)
    logger.log(level, line, extra=extra)


def _typed_emitter(event_type: str, doc: str) -> Callable[..., None]:
    def emit(
        message: str,
        *,
        payload: Optional[Dict[str, Any]] = None,
        context: Optional[Dict[str, Any]] = None,
        correlation: Optional[Dict[str, Any]] = None,
        duration_ms: Optional[float] = None,
        level: int = logging.DEBUG,
        logger: LoggerLike = DEFAULT_EVENT_LOGGER,
    ) -> None:
        emit_structured_event(
            event_type,
            message,
            payload=payload,
            context=context,
            correlation=correlation,
            duration_ms=duration_ms,
            level=level,
            logger=logger,
        )

    emit.__doc__ = doc
    return emit


emit_db_event = _typed_emitter(DB_QUERY, "Emit a structured session store event.")
emit_file_event = _typed_emitter(FILE_OP, "Emit a structured blob storage event.")


def emit_mix_event(
    stage: str,
    message: Optional[str] = None,
    *,
    session_id: str,
    payload: Optional[Dict[str, Any]] = None,
    duration_ms: Optional[float] = None,
    level: int = logging.INFO,
    logger: LoggerLike = DEFAULT_EVENT_LOGGER,
) -> None:
    """Emit a structured event for one stage of a session mix."""

    emit_structured_event(
        MIX_STAGE,
        message or stage,
        payload={"stage": stage, **(payload or {})},
        context={"session_id": session_id},
        duration_ms=duration_ms,
        level=level,
        logger=logger,
    )


__all__ = [
    "DB_QUERY",
    "FILE_OP",
    "MIX_STAGE",
    "emit_db_event",
    "emit_file_event",
    "emit_mix_event",
    "emit_structured_event",
    "normalize_context",
    "sanitize_context_value",
]
