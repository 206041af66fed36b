from __future__ import annotations

import asyncio

from tutor.errors import ArtifactNotReady, MixFailed
from tutor.web.tasks import MixJob, MixQueue


async def _wait_for(queue: MixQueue, job_id: str, *, timeout: float = 2.0) -> MixJob:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        job = await queue.get(job_id)
        if job is not None and job.status in {"succeeded", "failed"}:
            return job
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"Job {job_id} did not finish")
        await asyncio.sleep(0.01)


def test_jobs_run_in_order() -> None:
    processed = []

    async def processor(job: MixJob) -> None:
        processed.append(job.session_id)

    async def scenario():
        queue = MixQueue(processor)
        await queue.start()
        first = await queue.enqueue("sess_1", "learner")
        second = await queue.enqueue("sess_2", "learner")
        await _wait_for(queue, second.id)
        await queue.stop()
        return first, second

    first, second = asyncio.run(scenario())

    assert processed == ["sess_1", "sess_2"]
    assert first.status == "succeeded"
    assert second.to_dict()["sessionId"] == "sess_2"


def test_not_ready_jobs_are_redelivered_then_given_up() -> None:
    given_up = []

    async def processor(job: MixJob) -> None:
        raise ArtifactNotReady(["bot"])

    async def on_give_up(job: MixJob, error: BaseException) -> None:
        given_up.append((job.session_id, str(error)))

    async def scenario():
        queue = MixQueue(processor, max_attempts=3, on_give_up=on_give_up)
        await queue.start()
        job = await queue.enqueue("sess_1", "learner")
        finished = await _wait_for(queue, job.id)
        await queue.stop()
        return finished

    job = asyncio.run(scenario())

    assert job.status == "failed"
    assert job.attempts == 3
    assert given_up == [("sess_1", "Audio tracks not ready after waiting: bot")]


def test_other_failures_are_terminal_without_give_up() -> None:
    given_up = []

    async def processor(job: MixJob) -> None:
        raise MixFailed("Unable to mix session audio: boom")

    async def on_give_up(job: MixJob, error: BaseException) -> None:
        given_up.append(job.id)

    async def scenario():
        queue = MixQueue(processor, max_attempts=3, on_give_up=on_give_up)
        await queue.start()
        job = await queue.enqueue("sess_1", "learner")
        finished = await _wait_for(queue, job.id)
        await queue.stop()
        return finished

    job = asyncio.run(scenario())

    assert job.status == "failed"
    assert job.attempts == 1
    assert "boom" in job.error
    assert given_up == []


def test_submit_from_synchronous_code() -> None:
    processed = []

    async def processor(job: MixJob) -> None:
        processed.append((job.session_id, job.user_id))

    async def scenario():
        queue = MixQueue(processor)
        await queue.start()
        queue.submit("sess_1", "learner")
        for _ in range(200):
            if processed:
                break
            await asyncio.sleep(0.01)
        await queue.stop()

    asyncio.run(scenario())

    assert processed == [("sess_1", "learner")]
