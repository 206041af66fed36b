"""Session lifecycle while a conversation is being recorded."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional

from ..errors import InvalidRequest, InvalidState
from .auth import DEFAULT_CEFR_LEVEL
from .blobs import BlobStore
from .naming import (
    BOT_AUDIO_ARTIFACT,
    USER_AUDIO_FORMATS,
    build_blob_name,
    detect_user_audio_format,
    new_session_id,
    resolve_audio_ref,
    user_audio_artifact,
)
from .storage import (
    STATUS_ENDED,
    STATUS_RECORDING,
    SessionRecord,
    SessionRepository,
    Turn,
)
from .triggers import MixTrigger


LOGGER = logging.getLogger(__name__)

MAX_AUDIO_CHUNK_BYTES = 4 * 1024 * 1024
CEFR_LEVELS = ("A1", "A2", "B1", "B2", "C1", "C2")

USER_AUDIO_CONTENT_TYPES: Dict[str, str] = {"webm": "audio/webm", "mp4": "audio/mp4"}
BOT_AUDIO_CONTENT_TYPE = "audio/mpeg"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _coerce_optional_int(value: Any, *, name: str) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError) as error:
        raise InvalidRequest(f"Field '{name}' must be an integer") from error


def normalize_level(level: Optional[str]) -> str:
    """Return the upper-cased CEFR level; a missing level means the default."""

    candidate = (level or "").strip().upper()
    if not candidate:
        return DEFAULT_CEFR_LEVEL
    if candidate not in CEFR_LEVELS:
        raise InvalidRequest(
            f"Unknown CEFR level '{level}'. Expected one of: {', '.join(CEFR_LEVELS)}"
        )
    return candidate


class SessionRecorder:
    """Own the session document between ``start`` and ``end``.

    Writes replace the whole document; concurrent appends to the same session
    resolve as last write wins, so one recording client per session is
    assumed.
    """

    def __init__(
        self,
        repository: SessionRepository,
        *,
        blob_store: Optional[BlobStore] = None,
        trigger: Optional[MixTrigger] = None,
        clock=_utc_now,
    ) -> None:
        self._repository = repository
        self._blob_store = blob_store
        self._trigger = trigger
        self._clock = clock

    def configure_trigger(self, trigger: Optional[MixTrigger]) -> None:
        self._trigger = trigger

    def _require_recording(self, session_id: str, user_id: str) -> SessionRecord:
        session = self._repository.get_session(session_id, user_id)
        if session.status != STATUS_RECORDING:
            raise InvalidState(f"Session {session_id} is {session.status}, not recording")
        return session

    def _require_blob_store(self) -> BlobStore:
        if self._blob_store is None:
            raise InvalidState("Audio uploads are not configured for this recorder")
        return self._blob_store

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(
        self,
        user_id: str,
        level: Optional[str],
        *,
        audio_format: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        if audio_format is not None:
            audio_format = audio_format.strip().lower()
            if audio_format not in USER_AUDIO_FORMATS:
                raise InvalidRequest(
                    f"Unsupported audio format '{audio_format}'. "
                    f"Expected one of: {', '.join(USER_AUDIO_FORMATS)}"
                )
        else:
            audio_format = detect_user_audio_format(user_agent)

        now = self._clock().isoformat()
        session_id = new_session_id(user_id)
        record = SessionRecord(
            session_id=session_id,
            user_id=user_id,
            status=STATUS_RECORDING,
            user_level=normalize_level(level),
            user_audio_format=audio_format,
            started_at=now,
            last_activity=now,
        )
        self._repository.create_session(record)
        LOGGER.info(
            "Started session %s for user %s (level=%s, format=%s)",
            session_id,
            user_id,
            record.user_level,
            audio_format,
        )
        return session_id

    def append_turn(self, session_id: str, user_id: str, turn: Mapping[str, Any]) -> SessionRecord:
        speaker = str(turn.get("speaker") or "user").strip() or "user"
        text = str(turn.get("text") or "").strip()
        if not text:
            raise InvalidRequest("Missing required field: text")

        session = self._require_recording(session_id, user_id)
        now = self._clock().isoformat()
        voice_used = turn.get("voice_used") or turn.get("voiceUsed")
        entry = Turn(
            speaker=speaker,
            text=text,
            timestamp=str(turn.get("timestamp") or now),
            offset_ms=_coerce_optional_int(
                turn.get("offset_ms", turn.get("offsetMs")), name="offsetMs"
            ),
            duration_ms=_coerce_optional_int(
                turn.get("duration_ms", turn.get("durationMs")), name="durationMs"
            ),
            voice_used=str(voice_used) if voice_used else None,
        )
        session.turns.append(entry)
        session.total_messages += 1
        session.last_activity = now
        if entry.voice_used and entry.voice_used not in session.voices_used:
            session.voices_used.append(entry.voice_used)
        self._repository.replace_session(session)
        LOGGER.debug(
            "Appended %s turn to session %s (total=%s)",
            speaker,
            session_id,
            session.total_messages,
        )
        return session

    def append_bot_audio(self, session_id: str, user_id: str, audio_ref: str) -> SessionRecord:
        """Record the blob name holding the bot track."""

        try:
            blob_name = resolve_audio_ref(user_id, session_id, audio_ref)
        except ValueError as error:
            raise InvalidRequest(str(error)) from error
        session = self._require_recording(session_id, user_id)
        session.audio_urls["bot"] = blob_name
        session.last_activity = self._clock().isoformat()
        self._repository.replace_session(session)
        LOGGER.debug("Bot audio for session %s recorded at %s", session_id, blob_name)
        return session

    def _append_chunk(
        self,
        session: SessionRecord,
        track: str,
        blob_name: str,
        chunk: bytes,
        content_type: str,
    ) -> int:
        if not chunk:
            raise InvalidRequest("Audio chunk is empty")
        if len(chunk) > MAX_AUDIO_CHUNK_BYTES:
            raise InvalidRequest("Audio chunk too large (>4MB)")
        size = self._require_blob_store().append_block(blob_name, chunk, content_type=content_type)
        session.audio_urls[track] = blob_name
        session.last_activity = self._clock().isoformat()
        self._repository.replace_session(session)
        LOGGER.debug(
            "Appended %s bytes to %s track of session %s (size=%s)",
            len(chunk),
            track,
            session.session_id,
            size,
        )
        return len(chunk)

    def append_bot_audio_chunk(self, session_id: str, user_id: str, chunk: bytes) -> int:
        session = self._require_recording(session_id, user_id)
        blob_name = session.audio_urls.get("bot") or build_blob_name(
            user_id, session_id, BOT_AUDIO_ARTIFACT
        )
        return self._append_chunk(session, "bot", blob_name, chunk, BOT_AUDIO_CONTENT_TYPE)

    def append_user_audio(self, session_id: str, user_id: str, chunk: bytes) -> int:
        session = self._require_recording(session_id, user_id)
        blob_name = build_blob_name(
            user_id, session_id, user_audio_artifact(session.user_audio_format)
        )
        content_type = USER_AUDIO_CONTENT_TYPES.get(
            session.user_audio_format, "application/octet-stream"
        )
        return self._append_chunk(session, "user", blob_name, chunk, content_type)

    def end(self, session_id: str, user_id: str) -> SessionRecord:
        session = self._repository.get_session(session_id, user_id)
        if not session.can_transition_to(STATUS_ENDED):
            raise InvalidState(f"Session {session_id} is already {session.status}")

        ended = self._clock()
        session.status = STATUS_ENDED
        session.ended_at = ended.isoformat()
        session.last_activity = session.ended_at
        session.duration_seconds = max(
            int((ended - _parse_timestamp(session.started_at)).total_seconds()), 0
        )
        self._repository.replace_session(session)
        LOGGER.info(
            "Ended session %s after %ss with %s messages",
            session_id,
            session.duration_seconds,
            session.total_messages,
        )

        if self._trigger is not None:
            try:
                self._trigger.fire(session_id, user_id)
            except Exception:  # noqa: BLE001 - ending never fails on a lost trigger
                LOGGER.exception("Failed to trigger mix for session %s", session_id)
            else:
                LOGGER.debug("Mix triggered for session %s", session_id)
        return session

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get(self, session_id: str, user_id: str) -> SessionRecord:
        return self._repository.get_session(session_id, user_id)

    def list_sessions(self, user_id: str, *, limit: Optional[int] = None) -> List[SessionRecord]:
        return self._repository.list_sessions(user_id, limit=limit)


__all__ = [
    "CEFR_LEVELS",
    "MAX_AUDIO_CHUNK_BYTES",
    "SessionRecorder",
    "normalize_level",
]
