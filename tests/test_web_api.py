from __future__ import annotations

import asyncio
import base64
import dataclasses
import io
import logging
import time
import wave

import numpy as np
import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient

from tutor.services.auth import TokenVerifier
from tutor.services.blobs import LocalBlobStore
from tutor.services.storage import SessionRepository
from tutor.web import create_app


def _wav_base64(value: float, frames: int = 800) -> str:
    pcm = np.full(frames, int(value * 32_767), dtype=np.int16)
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as handle:
        handle.setnchannels(1)
        handle.setsampwidth(2)
        handle.setframerate(8000)
        handle.writeframes(pcm.tobytes())
    return base64.b64encode(buffer.getvalue()).decode("ascii")


@pytest.fixture()
def app(temp_config):
    repository = SessionRepository(temp_config)
    return create_app(
        repository,
        config=temp_config,
        blob_store=LocalBlobStore(temp_config.blob_root),
    )


@pytest.fixture()
def headers(temp_config) -> dict:
    token = TokenVerifier(temp_config.jwt_secret).issue("learner", cefr="A2")
    return {"Authorization": f"Bearer {token}"}


def _start(client: TestClient, headers: dict, **body) -> str:
    response = client.post("/api/sessions/start", json=body, headers=headers)
    assert response.status_code == 200, response.text
    return response.json()["sessionId"]


def test_requests_without_valid_token_are_rejected(app) -> None:
    client = TestClient(app)

    assert client.post("/api/sessions/start", json={}).status_code == 401
    response = client.get(
        "/api/sessions/list", headers={"Authorization": "Bearer not-a-token"}
    )
    assert response.status_code == 401
    assert response.json()["detail"] == "Invalid token"


def test_start_uses_token_level_and_user_agent(app, headers) -> None:
    client = TestClient(app)
    safari = "Mozilla/5.0 (Macintosh) AppleWebKit/605.1.15 Version/17.0 Safari/605.1.15"

    response = client.post(
        "/api/sessions/start", json={}, headers={**headers, "User-Agent": safari}
    )

    payload = response.json()
    assert payload["success"] is True
    assert payload["audioFormat"] == "mp4"
    assert payload["userLevel"] == "A2"
    session_id = payload["sessionId"]
    assert payload["uploadUrls"]["userAudio"] == f"learner/{session_id}/session_user.mp4"


def test_error_mapping_for_missing_and_ended_sessions(app, headers) -> None:
    client = TestClient(app)

    missing = client.post(
        "/api/sessions/append", json={"sessionId": "sess_missing", "text": "Hallo"}, headers=headers
    )
    assert missing.status_code == 404

    session_id = _start(client, headers)
    assert client.post("/api/sessions/end", json={"sessionId": session_id}, headers=headers).status_code == 200

    late = client.post(
        "/api/sessions/append", json={"sessionId": session_id, "text": "Hallo"}, headers=headers
    )
    assert late.status_code == 409
    again = client.post("/api/sessions/end", json={"sessionId": session_id}, headers=headers)
    assert again.status_code == 409


def test_invalid_audio_payload_is_rejected(app, headers) -> None:
    client = TestClient(app)
    session_id = _start(client, headers)

    response = client.post(
        "/api/sessions/append-user-audio",
        json={"sessionId": session_id, "audio": "%%% not base64 %%%"},
        headers=headers,
    )

    assert response.status_code == 400


def test_recording_flow_produces_downloadable_mix(app, headers) -> None:
    with TestClient(app) as client:
        session_id = _start(client, headers, level="B2", audioFormat="webm")

        turn = client.post(
            "/api/sessions/append", json={"sessionId": session_id, "text": "Hallo"}, headers=headers
        )
        assert turn.json()["totalMessages"] == 1
        client.post(
            "/api/sessions/append",
            json={"sessionId": session_id, "speaker": "bot", "text": "Guten Tag!", "voiceUsed": "Katja"},
            headers=headers,
        )
        user_audio = client.post(
            "/api/sessions/append-user-audio",
            json={"sessionId": session_id, "audio": _wav_base64(0.4)},
            headers=headers,
        )
        assert user_audio.json()["bytesAppended"] > 0
        bot_audio = client.post(
            "/api/sessions/append-bot-audio",
            json={"sessionId": session_id, "audio": _wav_base64(-0.2)},
            headers=headers,
        )
        assert bot_audio.status_code == 200

        ended = client.post("/api/sessions/end", json={"sessionId": session_id}, headers=headers)
        assert ended.json()["totalMessages"] == 2

        deadline = time.monotonic() + 10
        download = {}
        while time.monotonic() < deadline:
            download = client.get(
                "/api/sessions/download", params={"sessionId": session_id}, headers=headers
            ).json()
            if download["status"] == "completed":
                break
            time.sleep(0.05)

        assert download["status"] == "completed"
        assert set(download["downloadUrls"]) == {"mixedAudio", "botAudio", "userAudio"}

        audio = client.get(f"/api/sessions/{session_id}/audio/mixed", headers=headers)
        assert audio.status_code == 200
        assert audio.headers["content-type"].startswith("audio/wav")
        assert audio.content[:4] == b"RIFF"

        listing = client.get("/api/sessions/list", headers=headers).json()
        assert listing["total"] == 1
        assert listing["sessions"][0]["voicesUsed"] == ["Katja"]

        jobs = []
        while time.monotonic() < deadline:
            jobs = client.get("/api/mix-jobs").json()["jobs"]
            if jobs and jobs[0]["status"] == "succeeded":
                break
            time.sleep(0.05)
        assert jobs[0]["sessionId"] == session_id
        assert jobs[0]["status"] == "succeeded"


def test_download_hides_mix_until_completed(app, headers) -> None:
    client = TestClient(app)
    session_id = _start(client, headers)

    response = client.get("/api/sessions/download", params={"sessionId": session_id}, headers=headers)

    assert response.json()["status"] == "recording"
    assert response.json()["downloadUrls"] == {}
    assert client.get("/api/sessions/download", headers=headers).status_code == 400


def test_mix_endpoint_requires_function_key(temp_config, headers) -> None:
    config = dataclasses.replace(temp_config, functions_key="secret-key")
    app = create_app(SessionRepository(config), config=config)
    client = TestClient(app)

    response = client.post(
        "/api/mix-session", json={"sessionId": "sess_1", "userId": "learner"}
    )

    assert response.status_code == 401


def test_mix_endpoint_reports_missing_tracks(app, headers) -> None:
    client = TestClient(app)
    session_id = _start(client, headers)
    client.post("/api/sessions/end", json={"sessionId": session_id}, headers=headers)

    response = client.post(
        "/api/mix-session",
        params={"wait": "true"},
        json={"sessionId": session_id, "userId": "learner"},
    )

    assert response.status_code == 503
    assert response.json()["missing"] == ["user", "bot"]


def test_debug_logs_and_health(app, headers, caplog) -> None:
    caplog.set_level(logging.INFO)
    client = TestClient(app)
    _start(client, headers)

    logs = client.get("/api/debug/logs").json()
    assert logs["next"] >= 1
    assert any(entry["message"] == "Session started" for entry in logs["logs"])
    later = client.get("/api/debug/logs", params={"after": logs["next"]}).json()["logs"]
    assert all(entry["id"] > logs["next"] for entry in later)
    assert client.get("/api/health").json()["status"] == "ok"


class LoopProbingTrigger:
    """Records whether ``fire`` ran on the event loop thread."""

    def __init__(self) -> None:
        self.fired = []

    def fire(self, session_id: str, user_id: str) -> None:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            on_loop = False
        else:
            on_loop = True
        self.fired.append((session_id, user_id, on_loop))


def test_end_fires_mix_trigger_off_the_event_loop(app, headers) -> None:
    trigger = LoopProbingTrigger()
    app.state.recorder.configure_trigger(trigger)
    client = TestClient(app)
    session_id = _start(client, headers)

    response = client.post("/api/sessions/end", json={"sessionId": session_id}, headers=headers)

    assert response.status_code == 200
    assert trigger.fired == [(session_id, "learner", False)]


def test_mix_endpoint_queues_by_default(app, headers) -> None:
    with TestClient(app) as client:
        app.state.recorder.configure_trigger(LoopProbingTrigger())
        session_id = _start(client, headers)
        for route, value in (("append-user-audio", 0.4), ("append-bot-audio", -0.2)):
            client.post(
                f"/api/sessions/{route}",
                json={"sessionId": session_id, "audio": _wav_base64(value)},
                headers=headers,
            )
        client.post("/api/sessions/end", json={"sessionId": session_id}, headers=headers)

        response = client.post(
            "/api/mix-session", json={"sessionId": session_id, "userId": "learner"}
        )

        assert response.status_code == 202
        queued = response.json()
        assert queued["sessionId"] == session_id
        assert queued["status"] in {"pending", "running"}

        deadline = time.monotonic() + 10
        job = {}
        while time.monotonic() < deadline:
            jobs = client.get("/api/mix-jobs").json()["jobs"]
            job = next((item for item in jobs if item["id"] == queued["jobId"]), {})
            if job.get("status") == "succeeded":
                break
            time.sleep(0.05)

        assert job["status"] == "succeeded"
        status = client.get(
            "/api/sessions/download", params={"sessionId": session_id}, headers=headers
        ).json()["status"]
        assert status == "completed"
