"""Exception hierarchy shared by the recorder, the mixer and the web layer."""

from __future__ import annotations

from typing import Iterable, Tuple


class TutorError(RuntimeError):
    """Base class for failures surfaced to API clients."""

    status_code = 500


class NotFound(TutorError):
    """Raised when a session or artifact does not exist."""

    status_code = 404


class InvalidState(TutorError):
    """Raised when an operation is not allowed for the session's status."""

    status_code = 409


class InvalidRequest(TutorError):
    """Raised when a request payload is malformed."""

    status_code = 400


class AuthenticationError(TutorError):
    """Raised when a bearer token is missing or cannot be verified."""

    status_code = 401


class ArtifactNotReady(TutorError):
    """Raised when audio tracks did not land in storage within the retry bound."""

    status_code = 503

    def __init__(self, missing: Iterable[str]) -> None:
        self.missing: Tuple[str, ...] = tuple(missing)
        super().__init__(
            "Audio tracks not ready after waiting: " + ", ".join(self.missing)
        )


class TranscodeFailed(TutorError):
    """Raised when the user track cannot be converted to a mixable codec."""


class MixFailed(TutorError):
    """Raised when the two-track mix cannot be produced."""


class StorageError(TutorError):
    """Raised when a blob upload or download fails."""


class DatabaseError(TutorError):
    """Raised when the session document cannot be read or replaced."""


__all__ = [
    "ArtifactNotReady",
    "AuthenticationError",
    "DatabaseError",
    "InvalidRequest",
    "InvalidState",
    "MixFailed",
    "NotFound",
    "StorageError",
    "TranscodeFailed",
    "TutorError",
]
