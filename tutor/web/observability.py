"""Request correlation and the in-memory log feed behind ``/api/debug/logs``."""

from __future__ import annotations

import contextvars
import logging
import threading
import uuid
from collections import OrderedDict
from collections.abc import Mapping, Sequence, Set as AbstractSet
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from starlette.types import ASGIApp, Receive, Scope, Send

from ..logging_utils import DEFAULT_LOG_FORMAT
from ..services.events import (
    DB_QUERY,
    FILE_OP,
    MIX_STAGE,
    emit_db_event,
    emit_file_event,
    emit_structured_event,
    normalize_context,
    sanitize_context_value,
)


_CORRELATION_FIELDS: Tuple[str, ...] = ("request_id", "job_id", "actor")
_CORRELATION_VARS: Dict[str, contextvars.ContextVar[Optional[str]]] = {
    name: contextvars.ContextVar(f"sprach_tutor_{name}", default=None)
    for name in _CORRELATION_FIELDS
}

_SERVER_LOGGER_PREFIXES: Tuple[str, ...] = ("uvicorn", "gunicorn", "hypercorn")
_SLOW_THRESHOLDS_MS: Dict[str, float] = {DB_QUERY: 450.0, FILE_OP: 300.0}
_SEVERITY_RANK: Dict[str, int] = {"info": 1, "warning": 2, "error": 3}

# LogRecord attributes that never end up in an entry payload.
_RECORD_ATTRIBUTES = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", None, None).__dict__
) | {"message", "asctime", "taskName"}
_EVENT_ATTRIBUTES = frozenset(
    {
        "debug_context",
        "debug_correlation",
        "debug_duration_ms",
        "debug_event",
        "debug_event_type",
        *_CORRELATION_FIELDS,
    }
)


def new_correlation_id() -> str:
    return uuid.uuid4().hex


def actor_label(role: str, detail: Optional[str] = None) -> str:
    """Return ``role`` or ``role:detail`` for the actor correlation field."""

    role = (role or "").strip() or "actor"
    detail = str(detail).strip() if detail is not None else ""
    return f"{role}:{detail}" if detail else role


def bind_actor(role: str, detail: Optional[str] = None) -> None:
    _CORRELATION_VARS["actor"].set(actor_label(role, detail))


def correlation_context() -> Dict[str, str]:
    """Return the correlation identifiers bound to the current context."""

    values = {name: var.get() for name, var in _CORRELATION_VARS.items()}
    return {name: str(value) for name, value in values.items() if value}


def job_context(job_id: str) -> contextvars.Context:
    """Return a copy of the current context with *job_id* bound."""

    token = _CORRELATION_VARS["job_id"].set(job_id)
    try:
        return contextvars.copy_context()
    finally:
        _CORRELATION_VARS["job_id"].reset(token)


class RequestContextMiddleware:
    """Give every HTTP request its own ``request_id`` and a fresh actor."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        request_id = new_correlation_id()
        state = scope.setdefault("state", {})
        if isinstance(state, dict):
            state["request_id"] = request_id
        else:
            state.request_id = request_id

        method = scope.get("method")
        bound = {
            "request_id": request_id,
            "actor": actor_label("request", method.upper() if isinstance(method, str) else None),
            "job_id": None,
        }
        tokens = [(_CORRELATION_VARS[name], _CORRELATION_VARS[name].set(value)) for name, value in bound.items()]
        try:
            await self.app(scope, receive, send)
        finally:
            for var, token in reversed(tokens):
                var.reset(token)


class ContextualLoggerAdapter(logging.LoggerAdapter):
    """Adds the bound correlation identifiers to every record."""

    def process(self, msg: Any, kwargs: Dict[str, Any]) -> tuple[Any, Dict[str, Any]]:  # type: ignore[override]
        extra = {**correlation_context(), **dict(self.extra or {})}
        provided = kwargs.get("extra")
        if isinstance(provided, dict):
            extra.update(provided)
        kwargs["extra"] = extra
        return msg, kwargs


EVENT_LOGGER = ContextualLoggerAdapter(logging.getLogger("sprach_tutor.web.events"), {})

_TYPED_EMITTERS = {DB_QUERY: emit_db_event, FILE_OP: emit_file_event}


def emit_event(event_type: str, message: str, **kwargs: Any) -> None:
    """Event sink handed to the session store and the blob store.

    Store events are logged at DEBUG unless the caller says otherwise; any
    other event type goes out at INFO.
    """

    emitter = _TYPED_EMITTERS.get(event_type)
    kwargs["correlation"] = correlation_context()
    kwargs["logger"] = EVENT_LOGGER
    if emitter is None:
        emit_structured_event(event_type, message, **kwargs)
    else:
        emitter(message, **kwargs)


def log_app_event(message: str, **context: Any) -> None:
    emit_event("APP_EVENT", message, context=context)


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        items = sorted(value.items(), key=lambda pair: str(pair[0]))
        return tuple((str(key), _freeze(item)) for key, item in items)
    if isinstance(value, AbstractSet):
        return tuple(sorted(str(_freeze(item)) for item in value))
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return tuple(_freeze(item) for item in value)
    if isinstance(value, (datetime, Path)):
        return str(value)
    try:
        hash(value)
    except TypeError:
        return str(value)
    return value


def _record_duration(record: logging.LogRecord) -> Optional[float]:
    try:
        return float(record.debug_duration_ms)  # type: ignore[attr-defined]
    except (AttributeError, TypeError, ValueError):
        return None


def _record_payload(record: logging.LogRecord) -> Dict[str, Any]:
    """Merge ``debug_payload`` with any ad-hoc ``extra`` fields on *record*."""

    raw = getattr(record, "debug_payload", None)
    payload = normalize_context(raw) if isinstance(raw, dict) else {}
    for key, value in vars(record).items():
        if key in _RECORD_ATTRIBUTES or key in _EVENT_ATTRIBUTES or key == "debug_payload":
            continue
        if key.startswith("_"):
            continue
        cleaned = sanitize_context_value(value)
        if cleaned is not None:
            payload[key] = cleaned
    return payload


def _record_correlation(record: logging.LogRecord) -> Dict[str, str]:
    raw = getattr(record, "debug_correlation", None)
    correlation = {key: str(value) for key, value in normalize_context(raw).items()} if isinstance(raw, dict) else {}
    for name in _CORRELATION_FIELDS:
        value = getattr(record, name, None)
        if value is not None:
            correlation.setdefault(name, str(value))
    return correlation


def _record_category(record: logging.LogRecord, event_type: str) -> str:
    if record.name.startswith(_SERVER_LOGGER_PREFIXES):
        return "server"
    return "mix" if event_type == MIX_STAGE else "application"


def _record_severity(
    record: logging.LogRecord,
    event_type: str,
    payload: Dict[str, Any],
    duration_ms: Optional[float],
) -> Optional[str]:
    if record.levelno >= logging.ERROR or payload.get("error") or payload.get("status") == "error":
        return "error"
    threshold = _SLOW_THRESHOLDS_MS.get(event_type)
    if threshold is not None and duration_ms is not None and duration_ms >= threshold:
        return "warning"
    if record.levelno >= logging.WARNING:
        return "warning"
    return None


class DebugLogHandler(logging.Handler):
    """Bounded, folding log buffer polled by ``/api/debug/logs``.

    Records sharing event type, message, context, payload and correlation
    fold into one entry: ``count`` grows and ``id`` moves to the newest
    occurrence, so a poller passing ``after`` sees the entry again. When the
    buffer is full the least recently touched entry is dropped.
    """

    def __init__(self, capacity: int = 500) -> None:
        super().__init__(level=logging.DEBUG)
        self.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        self._capacity = max(1, capacity)
        self._entries: "OrderedDict[Tuple[Any, ...], Dict[str, Any]]" = OrderedDict()
        self._lock = threading.Lock()
        self._last_id = 0
        self._started_at = datetime.now(timezone.utc)

    @property
    def started_at(self) -> datetime:
        return self._started_at

    @property
    def last_id(self) -> int:
        with self._lock:
            return self._last_id

    def _build_key(
        self,
        event_type: str,
        message: str,
        context: Dict[str, Any],
        payload: Dict[str, Any],
        correlation: Dict[str, Any],
    ) -> Tuple[Any, ...]:
        return (event_type, message, _freeze(context), _freeze(payload), _freeze(correlation))

    def _render(self, record: logging.LogRecord) -> str:
        rendered = record.getMessage()
        if record.exc_info:
            formatter = self.formatter or logging.Formatter()
            rendered = f"{rendered}\n{formatter.formatException(record.exc_info)}"
        return rendered

    def emit(self, record: logging.LogRecord) -> None:
        rendered = self._render(record)
        event = getattr(record, "debug_event", None)
        message = rendered if event is None else str(event)
        event_type = str(getattr(record, "debug_event_type", "") or record.name)

        raw_context = getattr(record, "debug_context", None)
        context = normalize_context(raw_context) if isinstance(raw_context, dict) else {}
        payload = _record_payload(record)
        correlation = _record_correlation(record)
        duration_ms = _record_duration(record)
        severity = _record_severity(record, event_type, payload, duration_ms)
        timestamp = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        key = self._build_key(event_type, message, context, payload, correlation)

        with self._lock:
            self._last_id += 1
            entry = self._entries.get(key)
            if entry is None:
                entry = {
                    "message": message,
                    "event_type": event_type,
                    "category": _record_category(record, event_type),
                    "count": 0,
                    "first_seen": timestamp,
                    **({"context": context} if context else {}),
                    **({"payload": payload} if payload else {}),
                    **correlation,
                }
                self._entries[key] = entry
            else:
                self._entries.move_to_end(key)

            entry["count"] += 1
            entry.update(
                id=self._last_id,
                last_seen=timestamp,
                level=record.levelname,
                logger=record.name,
            )
            if rendered != message:
                entry["rendered"] = rendered
            if duration_ms is not None:
                total = entry.get("total_duration_ms", 0.0) + duration_ms
                entry.update(
                    total_duration_ms=total,
                    last_duration_ms=duration_ms,
                    average_duration_ms=total / entry["count"],
                )
            if severity and _SEVERITY_RANK[severity] >= _SEVERITY_RANK.get(entry.get("severity", ""), 0):
                entry["severity"] = severity

            while len(self._entries) > self._capacity:
                self._entries.popitem(last=False)

    def collect(self, after: Optional[int] = None, limit: int = 200) -> List[Dict[str, Any]]:
        """Return copies of entries newer than *after*, oldest first."""

        with self._lock:
            entries = [dict(entry) for entry in self._entries.values() if not after or entry["id"] > after]
        return entries[-limit:] if limit > 0 else []


def install_debug_handler() -> DebugLogHandler:
    """Attach a single :class:`DebugLogHandler` to the root logger."""

    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, DebugLogHandler):
            return handler
    handler = DebugLogHandler()
    root_logger.addHandler(handler)
    return handler


__all__ = [
    "ContextualLoggerAdapter",
    "DebugLogHandler",
    "EVENT_LOGGER",
    "RequestContextMiddleware",
    "actor_label",
    "bind_actor",
    "correlation_context",
    "emit_event",
    "install_debug_handler",
    "job_context",
    "log_app_event",
    "new_correlation_id",
]
