"""Session document persistence backed by SQLite."""

from __future__ import annotations

import contextlib
import json
import logging
import sqlite3
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from ..config import AppConfig
from ..errors import DatabaseError, NotFound


STATUS_RECORDING = "recording"
STATUS_ENDED = "ended"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

SESSION_STATUSES: Tuple[str, ...] = (
    STATUS_RECORDING,
    STATUS_ENDED,
    STATUS_COMPLETED,
    STATUS_FAILED,
)

# Statuses only ever move forward along these edges.
ALLOWED_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    STATUS_RECORDING: (STATUS_ENDED,),
    STATUS_ENDED: (STATUS_COMPLETED, STATUS_FAILED),
    STATUS_COMPLETED: (),
    STATUS_FAILED: (),
}


@dataclass
class Turn:
    speaker: str
    text: str
    timestamp: str
    offset_ms: Optional[int] = None
    duration_ms: Optional[int] = None
    voice_used: Optional[str] = None


@dataclass
class SessionRecord:
    session_id: str
    user_id: str
    status: str
    user_level: str
    user_audio_format: str
    started_at: str
    audio_urls: Dict[str, str] = field(default_factory=dict)
    turns: List[Turn] = field(default_factory=list)
    voices_used: List[str] = field(default_factory=list)
    total_messages: int = 0
    ended_at: Optional[str] = None
    last_activity: Optional[str] = None
    duration_seconds: int = 0
    mix_error: Optional[str] = None

    def can_transition_to(self, status: str) -> bool:
        return status in ALLOWED_TRANSITIONS.get(self.status, ())

    def to_document(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_document(cls, document: Dict[str, Any]) -> "SessionRecord":
        payload = dict(document)
        payload["turns"] = [Turn(**turn) for turn in payload.get("turns") or []]
        payload["audio_urls"] = dict(payload.get("audio_urls") or {})
        payload["voices_used"] = list(payload.get("voices_used") or [])
        return cls(**payload)


LOGGER = logging.getLogger(__name__)


class SessionRepository:
    """Document-style repository storing one JSON document per session."""

    def __init__(
        self,
        config: AppConfig,
        *,
        event_emitter: Optional[Callable[..., None]] = None,
    ) -> None:
        self._db_path = config.database_file
        self._event_emitter: Optional[Callable[..., None]] = event_emitter

    def configure_event_emitter(self, emitter: Optional[Callable[..., None]]) -> None:
        """Register the callable responsible for emitting debug events."""

        self._event_emitter = emitter

    @contextlib.contextmanager
    def _track_db_event(self, action: str, **payload: Any) -> Iterator[Dict[str, Any]]:
        """Emit a structured debug event capturing execution time for a DB action."""

        event_payload: Dict[str, Any] = dict(payload)
        if self._event_emitter is None:
            yield event_payload
            return

        start = time.perf_counter()
        error: BaseException | None = None
        try:
            yield event_payload
        except Exception as exc:
            error = exc
            event_payload.setdefault("status", "error")
            event_payload.setdefault("error", f"{exc.__class__.__name__}: {exc}")
            raise
        finally:
            duration_ms = (time.perf_counter() - start) * 1000.0
            if error is None:
                event_payload.setdefault("status", "ok")
            filtered = {
                key: value for key, value in event_payload.items() if value is not None
            }
            self._event_emitter(
                "DB_QUERY",
                action,
                payload=filtered,
                duration_ms=duration_ms,
            )

    @contextlib.contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        LOGGER.debug("Opening SQLite connection to %s", self._db_path)
        try:
            connection = sqlite3.connect(self._db_path)
        except sqlite3.Error as error:
            raise DatabaseError(f"Could not open session database: {error}") from error
        connection.row_factory = sqlite3.Row
        try:
            with connection:
                yield connection
        except sqlite3.Error as error:
            raise DatabaseError(f"Session database error: {error}") from error
        finally:
            connection.close()

    @staticmethod
    def _execute(
        connection: sqlite3.Connection,
        statement: str,
        parameters: Sequence[Any] = (),
    ) -> sqlite3.Cursor:
        return connection.execute(statement, tuple(parameters))

    @staticmethod
    def _decode_row(row: sqlite3.Row) -> SessionRecord:
        try:
            document = json.loads(row["document"])
        except (TypeError, ValueError) as error:
            raise DatabaseError(
                f"Corrupt session document for {row['session_id']}: {error}"
            ) from error
        return SessionRecord.from_document(document)

    # ------------------------------------------------------------------
    # Document operations
    # ------------------------------------------------------------------
    def create_session(self, record: SessionRecord) -> None:
        LOGGER.debug("Creating session %s for user %s", record.session_id, record.user_id)
        with self._track_db_event(
            "create_session",
            table="sessions",
            session_id=record.session_id,
            user_id=record.user_id,
        ):
            try:
                with self._connect() as connection:
                    self._execute(
                        connection,
                        "INSERT INTO sessions(session_id, user_id, status, started_at, document) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (
                            record.session_id,
                            record.user_id,
                            record.status,
                            record.started_at,
                            json.dumps(record.to_document()),
                        ),
                    )
            except DatabaseError as error:
                if isinstance(error.__cause__, sqlite3.IntegrityError):
                    raise DatabaseError(
                        f"Session {record.session_id} already exists"
                    ) from error.__cause__
                raise

    def find_session(self, session_id: str, user_id: str) -> Optional[SessionRecord]:
        with self._track_db_event(
            "find_session", table="sessions", session_id=session_id, user_id=user_id
        ) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "SELECT session_id, document FROM sessions WHERE session_id = ? AND user_id = ?",
                    (session_id, user_id),
                )
                row = cursor.fetchone()
            event["found"] = row is not None
            if row is None:
                LOGGER.debug("Session %s not found for user %s", session_id, user_id)
                return None
            return self._decode_row(row)

    def get_session(self, session_id: str, user_id: str) -> SessionRecord:
        """Return the session or raise :class:`NotFound`."""

        record = self.find_session(session_id, user_id)
        if record is None:
            raise NotFound(f"Session {session_id} not found")
        return record

    def replace_session(self, record: SessionRecord) -> None:
        """Overwrite the whole document; no concurrency token is checked."""

        with self._track_db_event(
            "replace_session",
            table="sessions",
            session_id=record.session_id,
            user_id=record.user_id,
            status=record.status,
        ) as event:
            with self._connect() as connection:
                cursor = self._execute(
                    connection,
                    "UPDATE sessions SET status = ?, document = ? "
                    "WHERE session_id = ? AND user_id = ?",
                    (
                        record.status,
                        json.dumps(record.to_document()),
                        record.session_id,
                        record.user_id,
                    ),
                )
                event["rowcount"] = cursor.rowcount
            if cursor.rowcount == 0:
                raise NotFound(f"Session {record.session_id} not found")
        LOGGER.debug(
            "Replaced session %s (status=%s, turns=%s)",
            record.session_id,
            record.status,
            len(record.turns),
        )

    def list_sessions(self, user_id: str, *, limit: Optional[int] = None) -> List[SessionRecord]:
        """Return the user's sessions, newest first."""

        statement = (
            "SELECT session_id, document FROM sessions WHERE user_id = ? "
            "ORDER BY started_at DESC, session_id DESC"
        )
        params: List[Any] = [user_id]
        if limit is not None and limit >= 0:
            statement += " LIMIT ?"
            params.append(int(limit))
        with self._track_db_event(
            "list_sessions", table="sessions", user_id=user_id, limit=limit
        ) as event:
            with self._connect() as connection:
                rows = self._execute(connection, statement, params).fetchall()
            event["rowcount"] = len(rows)
            return [self._decode_row(row) for row in rows]


__all__ = [
    "ALLOWED_TRANSITIONS",
    "SESSION_STATUSES",
    "STATUS_COMPLETED",
    "STATUS_ENDED",
    "STATUS_FAILED",
    "STATUS_RECORDING",
    "SessionRecord",
    "SessionRepository",
    "Turn",
]
