"""Tests for the run.py entrypoint helpers."""

from __future__ import annotations

from types import SimpleNamespace

from typer.testing import CliRunner

import run
from tutor.services.auth import TokenVerifier
from tutor.services.blobs import LocalBlobStore
from tutor.services.sessions import SessionRecorder
from tutor.services.storage import SessionRepository


runner = CliRunner()


def test_serve_builds_uvicorn_server(monkeypatch, tmp_path):
    captured = {}

    monkeypatch.setattr(run, "initialize_app", lambda: SimpleNamespace(storage_root=tmp_path))
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)
    monkeypatch.setattr(run, "SessionRepository", lambda config: object())

    dummy_app = SimpleNamespace(state=SimpleNamespace())
    monkeypatch.setattr(run, "create_app", lambda repository, config, root_path: dummy_app)

    class DummyConfig:
        def __init__(self, app, **kwargs):
            captured["app"] = app
            captured["config_kwargs"] = kwargs

    class DummyServer:
        def __init__(self, config):
            captured["server_instance"] = self

        def run(self):
            captured["server_run"] = True

    monkeypatch.setattr(run.uvicorn, "Config", DummyConfig)
    monkeypatch.setattr(run.uvicorn, "Server", DummyServer)

    run.serve(host="0.0.0.0", port=9000, root_path="api/")

    assert captured["app"] is dummy_app
    assert captured["config_kwargs"]["root_path"] == "/api"
    assert captured["config_kwargs"]["port"] == 9000
    assert captured["server_run"] is True
    assert dummy_app.state.server is captured["server_instance"]


def _patch_bootstrap(monkeypatch, config) -> None:
    monkeypatch.setattr(run, "initialize_app", lambda: config)
    monkeypatch.setattr(run, "_prepare_logging", lambda storage_root: None)


def test_issue_token_prints_verifiable_token(monkeypatch, temp_config):
    _patch_bootstrap(monkeypatch, temp_config)

    result = runner.invoke(run.cli, ["issue-token", "learner", "--cefr", "c1"])

    assert result.exit_code == 0, result.output
    identity = TokenVerifier(temp_config.jwt_secret).verify(result.output.strip())
    assert identity.user_id == "learner"
    assert identity.cefr == "C1"


def test_mix_command_reports_missing_tracks_and_marks_failed(monkeypatch, temp_config):
    _patch_bootstrap(monkeypatch, temp_config)
    repository = SessionRepository(temp_config)
    recorder = SessionRecorder(repository, blob_store=LocalBlobStore(temp_config.blob_root))
    session_id = recorder.start("learner", "B1")
    recorder.end(session_id, "learner")

    result = runner.invoke(run.cli, ["mix", session_id, "learner", "--mark-failed"])

    assert result.exit_code == 1
    assert "not ready" in result.output
    assert repository.get_session(session_id, "learner").status == "failed"


def test_sessions_command_lists_sessions(monkeypatch, temp_config):
    _patch_bootstrap(monkeypatch, temp_config)
    recorder = SessionRecorder(SessionRepository(temp_config))
    session_id = recorder.start("learner", "B1")

    result = runner.invoke(run.cli, ["sessions", "learner"], env={"COLUMNS": "200"})

    assert result.exit_code == 0, result.output
    assert "recording" in result.output
    assert session_id in result.output
    assert "Sessions for learner" in result.output
