"""Utility helpers for consistent session and blob naming."""

from __future__ import annotations

import re
import time
import uuid
from typing import Optional

__all__ = [
    "BOT_AUDIO_ARTIFACT",
    "USER_AUDIO_FORMATS",
    "blob_prefix",
    "build_blob_name",
    "detect_user_audio_format",
    "mixed_audio_artifact",
    "new_session_id",
    "resolve_audio_ref",
    "scratch_dir_name",
    "user_audio_artifact",
]


BOT_AUDIO_ARTIFACT = "session_bot.mp3"
USER_AUDIO_FORMATS = ("webm", "mp4")

_UNSAFE_SEGMENT = re.compile(r"[^A-Za-z0-9._@-]+")


def _clean_segment(value: str) -> str:
    cleaned = _UNSAFE_SEGMENT.sub("-", str(value).strip()).strip("-.")
    if not cleaned:
        raise ValueError(f"Invalid blob path segment: {value!r}")
    return cleaned


def new_session_id(user_id: str, *, now_ms: Optional[int] = None) -> str:
    """Return a new identifier of the form ``sess_{epoch_ms}_{user}_{8 hex}``."""

    stamp = now_ms if now_ms is not None else int(time.time() * 1000)
    return f"sess_{stamp}_{_clean_segment(user_id)}_{uuid.uuid4().hex[:8]}"


def detect_user_audio_format(user_agent: Optional[str]) -> str:
    """Return the container browsers record in for *user_agent*.

    Safari records ``audio/mp4`` while Chromium and Firefox record WebM.
    """

    agent = user_agent or ""
    if "Safari" in agent and "Chrome" not in agent and "Chromium" not in agent:
        return "mp4"
    return "webm"


def blob_prefix(user_id: str, session_id: str) -> str:
    return f"{_clean_segment(user_id)}/{_clean_segment(session_id)}/"


def build_blob_name(user_id: str, session_id: str, artifact: str) -> str:
    """Return ``{user_id}/{session_id}/{artifact}``."""

    return blob_prefix(user_id, session_id) + _clean_segment(artifact)


def user_audio_artifact(audio_format: str) -> str:
    return f"session_user.{audio_format}"


def scratch_dir_name(session_id: str) -> str:
    """Return the scratch directory name used while mixing *session_id*."""

    return _clean_segment(session_id)


def mixed_audio_artifact(extension: str) -> str:
    return f"session_mix.{extension.lstrip('.')}"


def resolve_audio_ref(user_id: str, session_id: str, audio_ref: str) -> str:
    """Return the blob name for *audio_ref*.

    Bare artifact names resolve below the session prefix; full names must
    already live below it.
    """

    reference = (audio_ref or "").strip().lstrip("/")
    if not reference:
        raise ValueError("Audio reference must not be empty")
    if "/" not in reference:
        return build_blob_name(user_id, session_id, reference)
    if not reference.startswith(blob_prefix(user_id, session_id)):
        raise ValueError(f"Audio reference '{audio_ref}' is outside the session prefix")
    if ".." in reference.split("/"):
        raise ValueError(f"Audio reference '{audio_ref}' is not a valid blob name")
    return reference
