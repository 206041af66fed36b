"""FastAPI application exposing session recording and mixing."""

from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from fastapi import FastAPI, Header, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool

from ..config import AppConfig
from ..errors import (
    ArtifactNotReady,
    AuthenticationError,
    InvalidRequest,
    NotFound,
    TutorError,
)
from ..processing.mixing import AudioMixer, build_mixer
from ..services.auth import Identity, TokenVerifier
from ..services.blobs import BlobStore, LocalBlobStore
from ..services.naming import (
    BOT_AUDIO_ARTIFACT,
    build_blob_name,
    user_audio_artifact,
)
from ..services.sessions import SessionRecorder
from ..services.storage import STATUS_COMPLETED, SessionRecord, SessionRepository
from ..services.triggers import CallbackMixTrigger, HttpMixTrigger
from .observability import (
    ContextualLoggerAdapter,
    DebugLogHandler,
    RequestContextMiddleware,
    bind_actor,
    emit_event,
    install_debug_handler,
    job_context,
    log_app_event,
    new_correlation_id,
)
from .tasks import MixJob, MixQueue


LOGGER = ContextualLoggerAdapter(logging.getLogger(__name__), {})


_AUDIO_TRACKS: Tuple[str, ...] = ("user", "bot", "mixed")
_DOWNLOAD_KEYS: Dict[str, str] = {
    "mixed": "mixedAudio",
    "bot": "botAudio",
    "user": "userAudio",
}


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StartPayload(_CamelModel):
    level: Optional[str] = None
    audio_format: Optional[str] = Field(default=None, alias="audioFormat")


class TurnPayload(_CamelModel):
    session_id: str = Field(..., alias="sessionId", min_length=1)
    speaker: Optional[str] = None
    text: Optional[str] = None
    timestamp: Optional[str] = None
    offset_ms: Optional[int] = Field(default=None, alias="offsetMs")
    duration_ms: Optional[int] = Field(default=None, alias="durationMs")
    voice_used: Optional[str] = Field(default=None, alias="voiceUsed")


class AudioChunkPayload(_CamelModel):
    session_id: str = Field(..., alias="sessionId", min_length=1)
    audio: Optional[str] = None
    audio_ref: Optional[str] = Field(default=None, alias="audioRef")


class EndPayload(_CamelModel):
    session_id: str = Field(..., alias="sessionId", min_length=1)


class MixPayload(_CamelModel):
    session_id: str = Field(..., alias="sessionId", min_length=1)
    user_id: str = Field(..., alias="userId", min_length=1)


def _decode_audio(value: Optional[str]) -> bytes:
    if not value:
        raise InvalidRequest("Missing required field: audio")
    if "," in value and value.startswith("data:"):
        value = value.split(",", 1)[1]
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as error:
        raise InvalidRequest("Field 'audio' is not valid base64") from error


def _serialize_session_summary(session: SessionRecord) -> Dict[str, Any]:
    return {
        "sessionId": session.session_id,
        "date": session.started_at,
        "duration": session.duration_seconds,
        "status": session.status,
        "totalMessages": session.total_messages,
        "voicesUsed": list(session.voices_used),
        "userLevel": session.user_level,
    }


def create_app(
    repository: SessionRepository,
    *,
    config: AppConfig,
    blob_store: Optional[BlobStore] = None,
    mixer: Optional[AudioMixer] = None,
    verifier: Optional[TokenVerifier] = None,
    root_path: str | None = None,
) -> FastAPI:
    """Return a configured FastAPI application."""

    repository.configure_event_emitter(emit_event)
    if blob_store is None:
        blob_store = LocalBlobStore(config.blob_root)
    configure_blob_emitter = getattr(blob_store, "configure_event_emitter", None)
    if callable(configure_blob_emitter):
        configure_blob_emitter(emit_event)
    if mixer is None:
        mixer = build_mixer(config, repository, blob_store)
    if verifier is None:
        verifier = TokenVerifier(config.jwt_secret)

    recorder = SessionRecorder(repository, blob_store=blob_store)
    background_executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="session-mix")

    async def _run_in_background(operation, *, context_label: str, job_id: str):
        """Run ``operation`` on the mix worker thread with the job's correlation id."""

        def _invoke():
            bind_actor("job", context_label)
            return operation()

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(background_executor, job_context(job_id).run, _invoke)

    async def _process_mix_job(job: MixJob) -> None:
        result = await _run_in_background(
            lambda: mixer.run(job.session_id, job.user_id),
            context_label="mix",
            job_id=job.id,
        )
        log_app_event(
            "Mix job finished",
            session_id=job.session_id,
            skipped=result.skipped,
            attempts=job.attempts,
        )

    async def _give_up_mix_job(job: MixJob, error: BaseException) -> None:
        await _run_in_background(
            lambda: mixer.mark_failed(job.session_id, job.user_id, str(error)),
            context_label="mark-failed",
            job_id=job.id,
        )

    mix_queue = MixQueue(
        _process_mix_job,
        max_attempts=config.mix_max_attempts,
        on_give_up=_give_up_mix_job,
    )
    if config.mix_trigger_url:
        recorder.configure_trigger(
            HttpMixTrigger(config.mix_trigger_url, functions_key=config.functions_key)
        )
    else:
        recorder.configure_trigger(CallbackMixTrigger(mix_queue.submit))

    @contextlib.asynccontextmanager
    async def _lifespan(_app: FastAPI):
        await mix_queue.start()
        try:
            yield
        finally:
            await mix_queue.stop()
            background_executor.shutdown(wait=True, cancel_futures=True)

    app = FastAPI(
        title="Sprach Tutor",
        description="Record tutoring sessions and mix their audio",
        root_path=root_path or "",
        lifespan=_lifespan,
    )
    app.state.server = None
    app.state.recorder = recorder
    app.state.mixer = mixer
    app.state.mix_queue = mix_queue
    app.state.debug_log_handler = install_debug_handler()
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(TutorError)
    async def _handle_tutor_error(_request: Request, error: TutorError) -> JSONResponse:
        status_code = int(getattr(error, "status_code", 500))
        if status_code >= 500:
            LOGGER.error("Request failed: %s", error, exc_info=error)
        else:
            LOGGER.info("Request rejected (%s): %s", status_code, error)
        body: Dict[str, Any] = {"success": False, "detail": str(error)}
        if isinstance(error, ArtifactNotReady):
            body["missing"] = list(error.missing)
        return JSONResponse(status_code=status_code, content=body)

    def _require_identity(request: Request) -> Identity:
        identity = verifier.verify_header(request.headers.get("authorization"))
        bind_actor("user", identity.user_id)
        return identity

    # ------------------------------------------------------------------
    # Session recording
    # ------------------------------------------------------------------
    @app.post("/api/sessions/start")
    async def start_session(request: Request, payload: Optional[StartPayload] = None) -> Dict[str, Any]:
        identity = _require_identity(request)
        payload = payload or StartPayload()
        session_id = recorder.start(
            identity.user_id,
            payload.level or identity.cefr,
            audio_format=payload.audio_format,
            user_agent=request.headers.get("user-agent"),
        )
        session = recorder.get(session_id, identity.user_id)
        log_app_event("Session started", session_id=session_id, format=session.user_audio_format)
        return {
            "success": True,
            "sessionId": session_id,
            "audioFormat": session.user_audio_format,
            "userLevel": session.user_level,
            "uploadUrls": {
                "userAudio": build_blob_name(
                    identity.user_id, session_id, user_audio_artifact(session.user_audio_format)
                ),
                "botAudio": build_blob_name(identity.user_id, session_id, BOT_AUDIO_ARTIFACT),
            },
        }

    @app.post("/api/sessions/append")
    async def append_turn(request: Request, payload: TurnPayload) -> Dict[str, Any]:
        identity = _require_identity(request)
        turn = payload.model_dump(exclude={"session_id"}, exclude_none=True)
        session = recorder.append_turn(payload.session_id, identity.user_id, turn)
        return {
            "success": True,
            "sessionId": session.session_id,
            "totalMessages": session.total_messages,
        }

    @app.post("/api/sessions/append-bot-audio")
    async def append_bot_audio(request: Request, payload: AudioChunkPayload) -> Dict[str, Any]:
        identity = _require_identity(request)
        if payload.audio_ref and not payload.audio:
            session = recorder.append_bot_audio(
                payload.session_id, identity.user_id, payload.audio_ref
            )
            return {"success": True, "audioRef": session.audio_urls["bot"], "bytesAppended": 0}
        chunk = _decode_audio(payload.audio)
        appended = recorder.append_bot_audio_chunk(payload.session_id, identity.user_id, chunk)
        return {"success": True, "bytesAppended": appended}

    @app.post("/api/sessions/append-user-audio")
    async def append_user_audio(request: Request, payload: AudioChunkPayload) -> Dict[str, Any]:
        identity = _require_identity(request)
        chunk = _decode_audio(payload.audio)
        appended = recorder.append_user_audio(payload.session_id, identity.user_id, chunk)
        return {"success": True, "bytesAppended": appended}

    @app.post("/api/sessions/end")
    async def end_session(request: Request, payload: EndPayload) -> Dict[str, Any]:
        identity = _require_identity(request)
        # The mix trigger may block on network I/O.
        session = await run_in_threadpool(recorder.end, payload.session_id, identity.user_id)
        log_app_event("Session ended", session_id=session.session_id, duration=session.duration_seconds)
        return {
            "success": True,
            "sessionId": session.session_id,
            "duration": session.duration_seconds,
            "totalMessages": session.total_messages,
        }

    @app.get("/api/sessions/list")
    async def list_sessions(request: Request, limit: Optional[int] = None) -> Dict[str, Any]:
        identity = _require_identity(request)
        sessions = recorder.list_sessions(identity.user_id, limit=limit)
        return {
            "success": True,
            "sessions": [_serialize_session_summary(session) for session in sessions],
            "total": len(sessions),
        }

    @app.get("/api/sessions/download")
    async def download_session(
        request: Request,
        session_id: Optional[str] = Query(default=None, alias="sessionId"),
    ) -> Dict[str, Any]:
        identity = _require_identity(request)
        if not session_id:
            raise InvalidRequest("Missing sessionId parameter")
        session = recorder.get(session_id, identity.user_id)
        download_urls: Dict[str, str] = {}
        for track, key in _DOWNLOAD_KEYS.items():
            if track == "mixed" and session.status != STATUS_COMPLETED:
                continue
            if session.audio_urls.get(track):
                download_urls[key] = str(
                    request.url_for("stream_session_audio", session_id=session_id, track=track)
                )
        return {
            "success": True,
            "sessionId": session_id,
            "status": session.status,
            "session": _serialize_session_summary(session),
            "downloadUrls": download_urls,
        }

    @app.get("/api/sessions/{session_id}/audio/{track}", name="stream_session_audio")
    async def stream_session_audio(request: Request, session_id: str, track: str) -> FileResponse:
        identity = _require_identity(request)
        if track not in _AUDIO_TRACKS:
            raise NotFound(f"Unknown audio track '{track}'")
        session = recorder.get(session_id, identity.user_id)
        blob_name = session.audio_urls.get(track)
        if not blob_name or not blob_store.exists(blob_name):
            raise NotFound(f"No {track} audio for session {session_id}")

        properties = blob_store.get_properties(blob_name)
        target_dir = config.scratch_root / f"download_{new_correlation_id()}"
        target = target_dir / Path(blob_name).name
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, blob_store.download_to_file, blob_name, target)

        def _cleanup() -> None:
            with contextlib.suppress(OSError):
                target.unlink()
            with contextlib.suppress(OSError):
                target_dir.rmdir()

        return FileResponse(
            target,
            media_type=properties.content_type,
            filename=target.name,
            background=BackgroundTask(_cleanup),
        )

    # ------------------------------------------------------------------
    # Mixing
    # ------------------------------------------------------------------
    @app.post("/api/mix-session")
    async def mix_session(
        payload: MixPayload,
        wait: bool = Query(default=False),
        x_functions_key: Optional[str] = Header(default=None, alias="x-functions-key"),
    ):
        """Queue a mix and answer 202; ``wait=true`` runs it and returns the result."""

        if config.functions_key and x_functions_key != config.functions_key:
            raise AuthenticationError("Invalid function key")
        if not wait:
            job = await mix_queue.enqueue(payload.session_id, payload.user_id)
            log_app_event("Mix queued", session_id=payload.session_id, job_id=job.id)
            return JSONResponse(
                status_code=202,
                content={
                    "success": True,
                    "sessionId": payload.session_id,
                    "jobId": job.id,
                    "status": job.status,
                },
            )

        job_id = new_correlation_id()
        log_app_event("Mix requested", session_id=payload.session_id, job_id=job_id)
        result = await _run_in_background(
            lambda: mixer.run(payload.session_id, payload.user_id),
            context_label="mix",
            job_id=job_id,
        )
        return {
            "success": True,
            "sessionId": result.session_id,
            "skipped": result.skipped,
            "mixed": result.mixed_blob,
            "transcoded": result.transcoded,
            "durationMs": round(result.duration_ms, 3),
        }

    @app.get("/api/mix-jobs")
    async def list_mix_jobs() -> Dict[str, Any]:
        jobs = await mix_queue.list()
        return {"jobs": [job.to_dict() for job in jobs]}

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------
    @app.get("/api/debug/logs")
    async def get_debug_logs(after: Optional[int] = None) -> Dict[str, Any]:
        handler: DebugLogHandler = app.state.debug_log_handler
        entries = handler.collect(after)
        next_marker = handler.last_id if entries else (after or handler.last_id)
        return {"logs": entries, "next": next_marker, "enabled": True}

    @app.get("/api/health")
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "queue": len(await mix_queue.list())}

    return app


__all__ = ["DebugLogHandler", "create_app"]
