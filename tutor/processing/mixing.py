"""Two-track session mixing.

The mixer runs out of band after a session ends. One run reads the session,
short-circuits when the mix already exists, waits for both tracks to land in
object storage, stages them in a per-session scratch directory, transcodes
the user track when its container cannot be mixed directly, mixes, publishes
the result and marks the session completed. Scratch files are always removed.

Nothing before the final document replace is persisted, so a failed run can
simply be repeated. Two runs for the same session executing at the same time
are not excluded: both may pass the existence check and mix twice.
"""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, Mapping, Optional, Tuple

from ..config import AppConfig
from ..errors import (
    ArtifactNotReady,
    InvalidState,
    NotFound,
    StorageError,
)
from ..services.audio_conversion import (
    DEFAULT_PROCESS_TIMEOUT,
    AudioMixerEngine,
    AudioTranscoder,
    FFmpegAudioEngine,
)
from ..services.blobs import BlobStore
from ..services.events import emit_mix_event
from ..services.naming import (
    BOT_AUDIO_ARTIFACT,
    build_blob_name,
    mixed_audio_artifact,
    scratch_dir_name,
    user_audio_artifact,
)
from ..services.storage import (
    STATUS_COMPLETED,
    STATUS_ENDED,
    STATUS_FAILED,
    STATUS_RECORDING,
    SessionRecord,
    SessionRepository,
)
from .audio import NumpyAudioEngine


LOGGER = logging.getLogger(__name__)

TRACK_USER = "user"
TRACK_BOT = "bot"


@dataclass(frozen=True)
class MixerSettings:
    scratch_root: Path
    ready_retries: int = 10
    ready_delay_seconds: float = 3.0
    mix_timeout_seconds: Optional[float] = 300.0
    transcode_formats: Tuple[str, ...] = ("mp4",)

    @classmethod
    def from_config(cls, config: AppConfig) -> "MixerSettings":
        return cls(
            scratch_root=config.scratch_root,
            ready_retries=config.ready_retries,
            ready_delay_seconds=config.ready_delay_seconds,
            mix_timeout_seconds=config.mix_timeout_seconds or DEFAULT_PROCESS_TIMEOUT,
            transcode_formats=tuple(config.transcode_formats),
        )


@dataclass
class MixResult:
    session_id: str
    mixed_blob: str
    skipped: bool = False
    transcoded: bool = False
    duration_ms: float = 0.0


class AudioMixer:
    """Produce the mixed artifact for an ended session."""

    def __init__(
        self,
        repository: SessionRepository,
        blob_store: BlobStore,
        *,
        transcoder: AudioTranscoder,
        engine: AudioMixerEngine,
        settings: MixerSettings,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._repository = repository
        self._blob_store = blob_store
        self._transcoder = transcoder
        self._engine = engine
        self._settings = settings
        self._sleep = sleep

    @property
    def settings(self) -> MixerSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------
    def mixed_blob_name(self, session: SessionRecord) -> str:
        return build_blob_name(
            session.user_id,
            session.session_id,
            mixed_audio_artifact(self._engine.output_extension),
        )

    @staticmethod
    def track_blob_names(session: SessionRecord) -> Dict[str, str]:
        """Return the blob name of each input track, in mix order."""

        user_blob = session.audio_urls.get(TRACK_USER) or build_blob_name(
            session.user_id,
            session.session_id,
            user_audio_artifact(session.user_audio_format),
        )
        bot_blob = session.audio_urls.get(TRACK_BOT) or build_blob_name(
            session.user_id, session.session_id, BOT_AUDIO_ARTIFACT
        )
        return {TRACK_USER: user_blob, TRACK_BOT: bot_blob}

    # ------------------------------------------------------------------
    # Readiness
    # ------------------------------------------------------------------
    def _is_ready(self, blob_name: str) -> bool:
        if not self._blob_store.exists(blob_name):
            return False
        try:
            properties = self._blob_store.get_properties(blob_name)
        except NotFound:
            return False
        return properties.size > 0

    def wait_until_ready(self, tracks: Mapping[str, str]) -> None:
        """Poll every track until it exists with a non-zero size.

        Each pending track is probed at most ``ready_retries`` times with a
        fixed ``ready_delay_seconds`` pause between rounds. Raises
        :class:`ArtifactNotReady` naming every track that never became ready.
        """

        pending = dict(tracks)
        retries = max(1, self._settings.ready_retries)
        for attempt in range(1, retries + 1):
            for label, blob_name in list(pending.items()):
                if self._is_ready(blob_name):
                    LOGGER.debug("Track %s ready at %s (attempt %s)", label, blob_name, attempt)
                    pending.pop(label)
            if not pending:
                return
            if attempt < retries:
                LOGGER.debug(
                    "Waiting %.1fs for tracks %s (attempt %s/%s)",
                    self._settings.ready_delay_seconds,
                    ", ".join(sorted(pending)),
                    attempt,
                    retries,
                )
                self._sleep(self._settings.ready_delay_seconds)
        raise ArtifactNotReady(pending.keys())

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------
    def run(self, session_id: str, user_id: str) -> MixResult:
        started = time.perf_counter()
        session = self._repository.get_session(session_id, user_id)
        if session.status == STATUS_RECORDING:
            raise InvalidState(f"Session {session_id} is still recording")

        mixed_blob = self.mixed_blob_name(session)
        tracks = self.track_blob_names(session)

        if self._blob_store.exists(mixed_blob):
            if session.status == STATUS_ENDED:
                LOGGER.warning(
                    "Mix %s exists but session %s was never finalized; finalizing now",
                    mixed_blob,
                    session_id,
                )
                self._finalize(session, mixed_blob, tracks)
            LOGGER.info("Mix already exists for session %s: %s", session_id, mixed_blob)
            emit_mix_event("skipped", "Mix already exists", session_id=session_id)
            return MixResult(
                session_id=session_id,
                mixed_blob=mixed_blob,
                skipped=True,
                duration_ms=(time.perf_counter() - started) * 1000.0,
            )

        if session.status != STATUS_ENDED:
            raise InvalidState(
                f"Session {session_id} is {session.status}; only ended sessions can be mixed"
            )

        self.wait_until_ready(tracks)
        emit_mix_event("ready", "Both tracks available", session_id=session_id, payload=tracks)

        scratch_dir = self._settings.scratch_root / scratch_dir_name(session_id)
        transcoded = False
        try:
            try:
                scratch_dir.mkdir(parents=True, exist_ok=True)
            except OSError as error:
                raise StorageError(f"Could not prepare scratch area {scratch_dir}: {error}") from error

            user_format = session.user_audio_format
            user_path = scratch_dir / f"user_{PurePosixPath(tracks[TRACK_USER]).name}"
            bot_path = scratch_dir / f"bot_{PurePosixPath(tracks[TRACK_BOT]).name}"
            self._blob_store.download_to_file(tracks[TRACK_USER], user_path)
            self._blob_store.download_to_file(tracks[TRACK_BOT], bot_path)
            emit_mix_event("staged", "Tracks downloaded", session_id=session_id)

            mix_input = user_path
            if user_format in self._settings.transcode_formats:
                LOGGER.info(
                    "Transcoding %s user track for session %s", user_format, session_id
                )
                converted_path = scratch_dir / (
                    f"user_converted.{self._transcoder.transcoded_extension}"
                )
                mix_input = self._transcoder.transcode(
                    user_path, converted_path, timeout=self._settings.mix_timeout_seconds
                )
                transcoded = True
                emit_mix_event("transcoded", "User track transcoded", session_id=session_id)

            mix_path = scratch_dir / f"mix.{self._engine.output_extension}"
            mix_started = time.perf_counter()
            self._engine.mix(
                mix_input,
                bot_path,
                mix_path,
                timeout=self._settings.mix_timeout_seconds,
            )
            emit_mix_event(
                "mixed",
                "Tracks mixed",
                session_id=session_id,
                duration_ms=(time.perf_counter() - mix_started) * 1000.0,
            )

            self._blob_store.upload_file(mix_path, mixed_blob, self._engine.content_type)
            emit_mix_event("published", "Mix uploaded", session_id=session_id, payload={"blob": mixed_blob})

            self._finalize(session, mixed_blob, tracks)
        finally:
            self._cleanup(scratch_dir)

        duration_ms = (time.perf_counter() - started) * 1000.0
        LOGGER.info("Mix completed for session %s in %.0f ms", session_id, duration_ms)
        emit_mix_event("completed", "Session completed", session_id=session_id, duration_ms=duration_ms)
        return MixResult(
            session_id=session_id,
            mixed_blob=mixed_blob,
            transcoded=transcoded,
            duration_ms=duration_ms,
        )

    def _finalize(self, session: SessionRecord, mixed_blob: str, tracks: Mapping[str, str]) -> None:
        session.status = STATUS_COMPLETED
        session.audio_urls.update(tracks)
        session.audio_urls["mixed"] = mixed_blob
        session.mix_error = None
        self._repository.replace_session(session)

    def _cleanup(self, scratch_dir: Path) -> None:
        if not scratch_dir.exists():
            return
        for child in scratch_dir.iterdir():
            try:
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
            except OSError as error:
                LOGGER.warning("Could not remove scratch file %s: %s", child, error)
        try:
            scratch_dir.rmdir()
        except OSError as error:
            LOGGER.warning("Could not remove scratch directory %s: %s", scratch_dir, error)

    def mark_failed(self, session_id: str, user_id: str, reason: str) -> SessionRecord:
        """Record that redelivery gave up; only ``ended`` sessions move to ``failed``."""

        session = self._repository.get_session(session_id, user_id)
        if session.status == STATUS_FAILED:
            return session
        if not session.can_transition_to(STATUS_FAILED):
            raise InvalidState(
                f"Session {session_id} is {session.status} and cannot be marked failed"
            )
        session.status = STATUS_FAILED
        session.mix_error = reason
        self._repository.replace_session(session)
        LOGGER.warning("Session %s marked failed: %s", session_id, reason)
        return session


def build_audio_engine(config: AppConfig):
    """Return the engine selected by ``mix_engine``; it serves as transcoder too.

    The NumPy engine still needs FFmpeg to decode browser recordings.
    """

    ffmpeg = FFmpegAudioEngine(
        config.ffmpeg_binary,
        bitrate=config.mix_bitrate,
        default_timeout=config.mix_timeout_seconds or DEFAULT_PROCESS_TIMEOUT,
    )
    if config.mix_engine == "numpy":
        return NumpyAudioEngine(decoder=ffmpeg)
    return ffmpeg


def build_mixer(
    config: AppConfig,
    repository: SessionRepository,
    blob_store: BlobStore,
) -> AudioMixer:
    engine = build_audio_engine(config)
    return AudioMixer(
        repository,
        blob_store,
        transcoder=engine,
        engine=engine,
        settings=MixerSettings.from_config(config),
    )


__all__ = [
    "AudioMixer",
    "MixResult",
    "MixerSettings",
    "TRACK_BOT",
    "TRACK_USER",
    "build_audio_engine",
    "build_mixer",
]
