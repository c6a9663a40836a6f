from __future__ import annotations

import asyncio

import pytest

from snapshot_service.queue import ActiveJob, JobQueue, QueueConfig
from snapshot_service.schemas import JobPayload, JobStatusView
from snapshot_service.worker import QueueWorker


def _payload(snapshot_id: str) -> JobPayload:
    return JobPayload(snapshot_id=snapshot_id)


@pytest.mark.asyncio
async def test_always_failing_handler_runs_exactly_attempt_cap(redis):
    queue = JobQueue(QueueConfig(attempts=3, backoff_ms=1), redis=redis)
    enqueued = await queue.enqueue(_payload("snapshot_doomed"))
    calls: list[int] = []

    async def handler(job: ActiveJob) -> None:
        calls.append(job.attempt)
        raise RuntimeError(f"render crashed on attempt {job.attempt}")

    worker = QueueWorker(queue, handler, concurrency=1, poll_delay=0.005)
    await asyncio.wait_for(worker.run(burst=True), timeout=5)

    assert calls == [1, 2, 3]
    status = await queue.get_job_status(enqueued.job_id)
    assert isinstance(status, JobStatusView)
    assert status.status == "failed"
    assert status.attempts_made == 3
    assert status.failed_reason == "render crashed on attempt 3"
    assert (worker.jobs_failed, worker.jobs_retried, worker.jobs_complete) == (1, 2, 0)


@pytest.mark.asyncio
async def test_handler_that_recovers_on_third_attempt_completes(redis):
    queue = JobQueue(QueueConfig(attempts=5, backoff_ms=1), redis=redis)
    enqueued = await queue.enqueue(_payload("snapshot_flaky"))

    async def handler(job: ActiveJob) -> dict[str, int]:
        if job.attempt < 3:
            raise RuntimeError("Protocol error: Target closed")
        return {"attempt": job.attempt}

    worker = QueueWorker(queue, handler, concurrency=1, poll_delay=0.005)
    await asyncio.wait_for(worker.run(burst=True), timeout=5)

    status = await queue.get_job_status(enqueued.job_id)
    assert isinstance(status, JobStatusView)
    assert status.status == "completed"
    assert status.attempts_made == 3


@pytest.mark.asyncio
async def test_in_flight_jobs_never_exceed_concurrency(queue: JobQueue):
    for index in range(6):
        await queue.enqueue(_payload(f"snapshot_{index}"))
    running = 0
    peak = 0

    async def handler(job: ActiveJob) -> None:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0.02)
        running -= 1

    worker = QueueWorker(queue, handler, concurrency=2, poll_delay=0.005)
    await asyncio.wait_for(worker.run(burst=True), timeout=5)

    assert peak == 2
    assert worker.jobs_complete == 6
    assert (await queue.get_counts()).completed == 6


@pytest.mark.asyncio
async def test_forced_close_leaves_interrupted_job_active(queue: JobQueue):
    await queue.enqueue(_payload("snapshot_stuck"))
    started = asyncio.Event()

    async def handler(job: ActiveJob) -> None:
        started.set()
        await asyncio.sleep(3600)

    worker = QueueWorker(queue, handler, concurrency=1, poll_delay=0.005)
    run_task = asyncio.create_task(worker.run())
    await asyncio.wait_for(started.wait(), timeout=2)

    await worker.close(graceful=False)
    await asyncio.wait_for(run_task, timeout=2)

    counts = await queue.get_counts()
    assert counts.active == 1
    assert counts.failed == 0
    assert worker.in_flight == 0


def test_concurrency_must_be_positive():
    async def handler(job: ActiveJob) -> None:
        return None

    with pytest.raises(ValueError):
        QueueWorker(JobQueue(), handler, concurrency=0)
