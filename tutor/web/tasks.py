"""In-process queue that runs session mixes in the background."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Deque, Dict, List, Literal, Optional

from ..errors import ArtifactNotReady


LOGGER = logging.getLogger(__name__)

MixJobStatus = Literal["pending", "running", "succeeded", "failed"]


@dataclass
class MixJob:
    """One requested mix for a session."""

    id: str
    session_id: str
    user_id: str
    status: MixJobStatus = "pending"
    attempts: int = 0
    created_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    def mark_running(self) -> None:
        self.status = "running"
        self.attempts += 1
        self.started_at = time.time()
        self.error = None

    def mark_finished(self) -> None:
        self.status = "succeeded"
        self.completed_at = time.time()

    def mark_failed(self, message: str) -> None:
        self.status = "failed"
        self.completed_at = time.time()
        self.error = message

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "status": self.status,
            "attempts": self.attempts,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "error": self.error,
        }


class MixQueue:
    """FIFO queue executing mix jobs one at a time.

    ``processor`` performs one attempt. Jobs failing with
    :class:`ArtifactNotReady` are requeued until ``max_attempts`` is reached,
    after which ``on_give_up`` is called with the job and the last error.
    Other failures are terminal for the job.
    """

    def __init__(
        self,
        processor: Callable[[MixJob], Awaitable[None]],
        *,
        max_attempts: int = 1,
        on_give_up: Optional[Callable[[MixJob, BaseException], Awaitable[None]]] = None,
    ) -> None:
        self._processor = processor
        self._max_attempts = max(1, max_attempts)
        self._on_give_up = on_give_up
        self._pending: Deque[MixJob] = deque()
        self._jobs: Deque[MixJob] = deque()
        self._index: Dict[str, MixJob] = {}
        self._lock = asyncio.Lock()
        self._pending_event = asyncio.Event()
        self._worker: Optional[asyncio.Task[None]] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._history_limit = 200
        self._stopping = False

    async def start(self) -> None:
        async with self._lock:
            if self._worker is None or self._worker.done():
                self._stopping = False
                self._loop = asyncio.get_running_loop()
                self._worker = self._loop.create_task(self._run(), name="mix-queue-worker")

    async def stop(self) -> None:
        async with self._lock:
            self._stopping = True
            self._pending_event.set()
            worker = self._worker
            self._worker = None
        if worker is not None:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker

    async def enqueue(self, session_id: str, user_id: str) -> MixJob:
        job = MixJob(id=uuid.uuid4().hex, session_id=session_id, user_id=user_id)
        async with self._lock:
            self._pending.append(job)
            self._jobs.append(job)
            self._index[job.id] = job
            self._pending_event.set()
            self._prune_history_locked()
        await self.start()
        return job

    def submit(self, session_id: str, user_id: str) -> None:
        """Schedule :meth:`enqueue` from synchronous code."""

        loop = self._loop
        if loop is None or loop.is_closed():
            raise RuntimeError("Mix queue is not running")
        asyncio.run_coroutine_threadsafe(self.enqueue(session_id, user_id), loop)

    async def list(self) -> List[MixJob]:
        async with self._lock:
            return list(self._jobs)

    async def get(self, job_id: str) -> Optional[MixJob]:
        async with self._lock:
            return self._index.get(job_id)

    async def _wait_for_job(self) -> None:
        while True:
            async with self._lock:
                if self._pending or self._stopping:
                    return
                self._pending_event.clear()
            await self._pending_event.wait()

    async def _acquire_next(self) -> Optional[MixJob]:
        async with self._lock:
            if self._pending:
                job = self._pending.popleft()
                job.mark_running()
                return job
            return None

    async def _run(self) -> None:
        while True:
            await self._wait_for_job()
            if self._stopping:
                return
            job = await self._acquire_next()
            if job is None:
                continue
            try:
                await self._processor(job)
            except ArtifactNotReady as error:
                if job.attempts < self._max_attempts:
                    LOGGER.info(
                        "Tracks for session %s not ready; requeueing (attempt %s/%s)",
                        job.session_id,
                        job.attempts,
                        self._max_attempts,
                    )
                    async with self._lock:
                        job.status = "pending"
                        self._pending.append(job)
                        self._pending_event.set()
                    continue
                await self._give_up(job, error)
            except Exception as error:  # noqa: BLE001 - surface job failure
                LOGGER.exception("Mix job failed for session %s", job.session_id)
                job.mark_failed(str(error) or "Mix failed")
            else:
                job.mark_finished()
            finally:
                async with self._lock:
                    self._prune_history_locked()

    async def _give_up(self, job: MixJob, error: BaseException) -> None:
        job.mark_failed(str(error) or "Mix failed")
        LOGGER.warning(
            "Giving up on session %s after %s attempt(s): %s",
            job.session_id,
            job.attempts,
            error,
        )
        if self._on_give_up is None:
            return
        try:
            await self._on_give_up(job, error)
        except Exception:  # noqa: BLE001 - the job outcome is already recorded
            LOGGER.exception("Give-up handler failed for session %s", job.session_id)

    def _prune_history_locked(self) -> None:
        while len(self._jobs) > self._history_limit:
            oldest = self._jobs[0]
            if oldest.status in {"succeeded", "failed"}:
                self._jobs.popleft()
                self._index.pop(oldest.id, None)
            else:
                break


__all__ = ["MixJob", "MixQueue"]
