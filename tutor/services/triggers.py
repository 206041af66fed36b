"""Out-of-band signals that start a mix after a session ends."""

from __future__ import annotations

import logging
from typing import Callable, Optional, Protocol

import httpx


LOGGER = logging.getLogger(__name__)


class MixTrigger(Protocol):
    def fire(self, session_id: str, user_id: str) -> None: ...


class HttpMixTrigger:
    """POST ``{sessionId, userId}`` to a remote mix endpoint.

    The request blocks; call ``fire`` off the event loop.
    """

    def __init__(
        self,
        url: str,
        *,
        functions_key: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._url = url
        self._functions_key = functions_key
        self._timeout = timeout
        self._client = client

    def fire(self, session_id: str, user_id: str) -> None:
        headers = {"Content-Type": "application/json"}
        if self._functions_key:
            headers["x-functions-key"] = self._functions_key
        payload = {"sessionId": session_id, "userId": user_id}
        LOGGER.debug("Posting mix trigger for %s to %s", session_id, self._url)
        if self._client is not None:
            response = self._client.post(self._url, json=payload, headers=headers, timeout=self._timeout)
        else:
            response = httpx.post(self._url, json=payload, headers=headers, timeout=self._timeout)
        response.raise_for_status()


class CallbackMixTrigger:
    """Hand the session to an in-process callable such as a queue's ``submit``."""

    def __init__(self, callback: Callable[[str, str], object]) -> None:
        self._callback = callback

    def fire(self, session_id: str, user_id: str) -> None:
        self._callback(session_id, user_id)


__all__ = ["CallbackMixTrigger", "HttpMixTrigger", "MixTrigger"]
