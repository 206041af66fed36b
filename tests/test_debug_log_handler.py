from __future__ import annotations

import logging
from collections import UserDict, deque
from types import MappingProxyType

import pytest

from tutor.services.events import emit_mix_event
from tutor.web.observability import (
    DebugLogHandler,
    bind_actor,
    correlation_context,
    emit_event,
    job_context,
    log_app_event,
)


@pytest.fixture
def handler() -> DebugLogHandler:
    return DebugLogHandler(capacity=3)


@pytest.fixture
def logger(handler: DebugLogHandler):
    instance = logging.getLogger("sprach_tutor.tests.debug")
    instance.setLevel(logging.DEBUG)
    instance.propagate = False
    instance.addHandler(handler)
    yield instance
    instance.removeHandler(handler)


def test_build_key_handles_nested_unhashable_structures(handler: DebugLogHandler) -> None:
    context = {
        "attrs": MappingProxyType({
            "numbers": [1, 2, 3],
            "details": {"enabled": True, "thresholds": {"low", "high"}},
        }),
        "extra": UserDict({"history": deque(({"event": "start"}, {"event": "stop"}))}),
    }
    payload = {"meta": {"ids": [1, {"sub": ("a", "b")}]}}

    key = handler._build_key("TEST", "message", context, payload, {"request_id": "abc123"})

    hash(key)


def test_build_key_is_order_insensitive(handler: DebugLogHandler) -> None:
    key_a = handler._build_key("TEST", "message", {"values": {"b": 2, "a": 1}}, {}, {})
    key_b = handler._build_key("TEST", "message", {"values": {"a": 1, "b": 2}}, {}, {})

    assert key_a == key_b


def test_repeated_records_are_folded(handler: DebugLogHandler, logger) -> None:
    logger.info("Polling tracks")
    logger.info("Polling tracks")

    entries = handler.collect()
    assert len(entries) == 1
    assert entries[0]["count"] == 2
    assert entries[0]["id"] == handler.last_id == 2
    assert handler.collect(after=2) == []


def test_capacity_drops_oldest_entries(handler: DebugLogHandler, logger) -> None:
    for index in range(5):
        logger.info("message %s", index)

    assert [entry["message"] for entry in handler.collect()] == [
        "message 2",
        "message 3",
        "message 4",
    ]


def test_mix_events_are_categorised(handler: DebugLogHandler, logger) -> None:
    emit_mix_event(
        "mixed", "Tracks mixed", session_id="sess_1", duration_ms=12.5, logger=logger
    )
    logger.error("Mix job failed")

    mix_entry, error_entry = handler.collect()
    assert mix_entry["event_type"] == "MIX_STAGE"
    assert mix_entry["category"] == "mix"
    assert mix_entry["context"] == {"session_id": "sess_1"}
    assert mix_entry["payload"]["stage"] == "mixed"
    assert mix_entry["last_duration_ms"] == 12.5
    assert error_entry["severity"] == "error"


def test_events_carry_job_correlation(handler: DebugLogHandler) -> None:
    events_logger = logging.getLogger("sprach_tutor.web.events")
    previous_level = events_logger.level
    events_logger.setLevel(logging.DEBUG)
    events_logger.addHandler(handler)

    def _work() -> None:
        bind_actor("job", "mix")
        log_app_event("Mix job finished", session_id="sess_9")
        emit_event("DB_QUERY", "session.get", payload={"status": "ok"}, duration_ms=600.0)

    try:
        job_context("job-42").run(_work)
    finally:
        events_logger.removeHandler(handler)
        events_logger.setLevel(previous_level)

    app_entry, db_entry = handler.collect()
    assert app_entry["job_id"] == "job-42"
    assert app_entry["actor"] == "job:mix"
    assert app_entry["context"] == {"session_id": "sess_9"}
    assert app_entry["level"] == "INFO"
    assert db_entry["level"] == "DEBUG"
    assert db_entry["severity"] == "warning"
    assert correlation_context() == {}
