"""Bearer token verification for client requests."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from ..errors import AuthenticationError


JWT_ALGORITHM = "HS256"
DEFAULT_TOKEN_LIFETIME = timedelta(hours=24)
DEFAULT_CEFR_LEVEL = "B1"


@dataclass(frozen=True)
class Identity:
    user_id: str
    role: str = "student"
    cefr: str = DEFAULT_CEFR_LEVEL


class TokenVerifier:
    """Verify HS256 tokens carrying ``userId``, ``role`` and ``cefr`` claims."""

    def __init__(self, secret: str, *, algorithm: str = JWT_ALGORITHM) -> None:
        self._secret = secret
        self._algorithm = algorithm

    def verify(self, token: str) -> Identity:
        if not token:
            raise AuthenticationError("No authorization token provided")
        try:
            payload = jwt.decode(token, self._secret, algorithms=[self._algorithm])
        except jwt.ExpiredSignatureError as error:
            raise AuthenticationError("Token has expired") from error
        except jwt.InvalidTokenError as error:
            raise AuthenticationError("Invalid token") from error

        user_id = payload.get("userId")
        if not user_id:
            raise AuthenticationError("Invalid token")
        return Identity(
            user_id=str(user_id),
            role=str(payload.get("role") or "student"),
            cefr=str(payload.get("cefr") or DEFAULT_CEFR_LEVEL),
        )

    def verify_header(self, authorization: Optional[str]) -> Identity:
        """Verify an ``Authorization: Bearer <token>`` header value."""

        if not authorization or not authorization.startswith("Bearer "):
            raise AuthenticationError("No authorization token provided")
        return self.verify(authorization[len("Bearer "):].strip())

    def issue(
        self,
        user_id: str,
        *,
        role: str = "student",
        cefr: str = DEFAULT_CEFR_LEVEL,
        lifetime: Optional[timedelta] = None,
    ) -> str:
        """Return a signed token; intended for development and tests."""

        expires = datetime.now(timezone.utc) + (lifetime or DEFAULT_TOKEN_LIFETIME)
        claims = {"userId": user_id, "role": role, "cefr": cefr, "exp": expires}
        return jwt.encode(claims, self._secret, algorithm=self._algorithm)


__all__ = ["DEFAULT_CEFR_LEVEL", "Identity", "TokenVerifier"]
