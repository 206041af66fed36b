from __future__ import annotations

import json

import httpx
import pytest

from tutor.services.triggers import CallbackMixTrigger, HttpMixTrigger


def test_http_trigger_posts_session_and_function_key() -> None:
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(202, json={"accepted": True})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    trigger = HttpMixTrigger("http://mixer.local/api/mix-session", functions_key="fn", client=client)

    trigger.fire("sess_1", "learner")

    assert len(seen) == 1
    assert seen[0].headers["x-functions-key"] == "fn"
    assert json.loads(seen[0].read()) == {"sessionId": "sess_1", "userId": "learner"}


def test_http_trigger_raises_on_error_status() -> None:
    client = httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500)))
    trigger = HttpMixTrigger("http://mixer.local/api/mix-session", client=client)

    with pytest.raises(httpx.HTTPStatusError):
        trigger.fire("sess_1", "learner")


def test_callback_trigger_forwards_arguments() -> None:
    calls = []
    CallbackMixTrigger(lambda session_id, user_id: calls.append((session_id, user_id))).fire(
        "sess_1", "learner"
    )

    assert calls == [("sess_1", "learner")]
