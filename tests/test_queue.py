from __future__ import annotations

import asyncio

import pytest
from fakeredis import FakeAsyncRedis, FakeServer
from redis.exceptions import ConnectionError as RedisConnectionError

from snapshot_service.errors import QueueUnavailableError
from snapshot_service.queue import JOB_NAME, JobQueue, JobState, QueueConfig, backoff_delay_ms
from snapshot_service.schemas import JobNotFound, JobPayload, JobStatusView


def _payload(snapshot_id: str, **metadata) -> JobPayload:
    return JobPayload(snapshot_id=snapshot_id, metadata=metadata)


@pytest.mark.asyncio
async def test_list_jobs_caps_each_state_while_counts_stay_exact(queue: JobQueue):
    for index in range(15):
        await queue.enqueue(_payload(f"snapshot_{index}"))

    listing = await queue.list_jobs(limit=10)
    counts = await queue.get_counts()

    assert len(listing.waiting) == 10
    assert [job.data["snapshotId"] for job in listing.waiting[:3]] == ["snapshot_0", "snapshot_1", "snapshot_2"]
    assert counts.waiting == 15
    assert counts.total == counts.waiting + counts.active + counts.completed + counts.failed + counts.delayed


@pytest.mark.asyncio
async def test_enqueued_job_serializes_with_camel_case_fields(queue: JobQueue):
    enqueued = await queue.enqueue(_payload("snapshot_a", url="https://example.com"))

    view = await queue.get_job(enqueued.job_id)
    assert isinstance(view, JobStatusView)
    public = view.to_public()

    assert public["id"] == enqueued.job_id
    assert public["name"] == JOB_NAME
    assert public["status"] == "waiting"
    assert public["data"] == {"snapshotId": "snapshot_a", "metadata": {"url": "https://example.com"}}
    assert public["attemptsMade"] == 0
    assert public["progress"] == 0
    assert public["processedOn"] is None
    assert public["failedReason"] is None


@pytest.mark.asyncio
async def test_higher_priority_is_claimed_first(queue: JobQueue):
    low = await queue.enqueue(_payload("snapshot_low"))
    high = await queue.enqueue(_payload("snapshot_high"), priority=5)
    also_low = await queue.enqueue(_payload("snapshot_low_2"))

    claimed = [await queue.claim_next() for _ in range(3)]

    assert [job.id for job in claimed if job] == [high.job_id, low.job_id, also_low.job_id]
    assert await queue.claim_next() is None
    assert (await queue.get_counts()).active == 3


@pytest.mark.asyncio
async def test_delayed_job_is_not_eligible_until_promoted(queue: JobQueue):
    await queue.enqueue(_payload("snapshot_later"), delay_ms=60_000)
    soon = await queue.enqueue(_payload("snapshot_soon"), delay_ms=1)

    counts = await queue.get_counts()
    assert counts.delayed == 2
    assert counts.waiting == 0
    assert await queue.claim_next() is None

    await asyncio.sleep(0.01)
    assert await queue.promote_delayed() == 1

    job = await queue.claim_next()
    assert job is not None
    assert job.id == soon.job_id
    assert (await queue.get_counts()).delayed == 1


@pytest.mark.asyncio
async def test_failed_attempts_back_off_then_fail_terminally(queue: JobQueue):
    enqueued = await queue.enqueue(_payload("snapshot_broken"), attempts=2)

    first = await queue.claim_next()
    assert first is not None and first.attempt == 1
    assert await queue.fail(first, RuntimeError("Navigation timeout of 30000 ms exceeded")) is JobState.DELAYED

    retrying = await queue.get_job(enqueued.job_id)
    assert retrying is not None
    assert retrying.status == "delayed"
    assert retrying.attempts_made == 1

    await asyncio.sleep(0.01)
    await queue.promote_delayed()
    second = await queue.claim_next()
    assert second is not None and second.attempt == 2
    assert await queue.fail(second, RuntimeError("Target closed")) is JobState.FAILED

    final = await queue.get_job_status(enqueued.job_id)
    assert isinstance(final, JobStatusView)
    assert final.status == "failed"
    assert final.attempts_made == 2
    assert final.failed_reason == "Target closed"
    assert final.finished_on is not None

    counts = await queue.get_counts()
    assert (counts.failed, counts.delayed, counts.active) == (1, 0, 0)


@pytest.mark.asyncio
async def test_complete_records_attempt_and_result(queue: JobQueue):
    enqueued = await queue.enqueue(_payload("snapshot_ok"))
    job = await queue.claim_next()
    assert job is not None

    await job.update_progress(150)
    assert job.progress == 100
    await queue.complete(job, {"snapshotId": "snapshot_ok"})

    view = await queue.get_job(enqueued.job_id)
    assert view is not None
    assert view.status == "completed"
    assert view.attempts_made == 1
    assert view.progress == 100
    assert view.processed_on is not None and view.finished_on is not None


@pytest.mark.asyncio
async def test_retention_prunes_oldest_terminal_jobs(redis):
    queue = JobQueue(QueueConfig(keep_completed=2, keep_failed=1, attempts=1), redis=redis)
    ids = []
    for index in range(3):
        enqueued = await queue.enqueue(_payload(f"snapshot_{index}"))
        ids.append(enqueued.job_id)
        job = await queue.claim_next()
        assert job is not None
        await queue.complete(job)
        await asyncio.sleep(0.002)

    for index in range(2):
        await queue.enqueue(_payload(f"snapshot_bad_{index}"))
        job = await queue.claim_next()
        assert job is not None
        await queue.fail(job, ValueError("boom"))

    counts = await queue.get_counts()
    assert counts.completed == 2
    assert counts.failed == 1
    assert await queue.get_job(ids[0]) is None

    listing = await queue.list_jobs(limit=10)
    assert [job.id for job in listing.completed] == [ids[2], ids[1]]


@pytest.mark.asyncio
async def test_unknown_job_status_is_not_found(queue: JobQueue):
    status = await queue.get_job_status("does-not-exist")

    assert isinstance(status, JobNotFound)
    assert status.to_public() == {"status": "not_found"}


@pytest.mark.asyncio
async def test_cleanup_removes_finished_jobs_past_max_age(queue: JobQueue):
    await queue.enqueue(_payload("snapshot_done"))
    job = await queue.claim_next()
    assert job is not None
    await queue.complete(job)
    await queue.enqueue(_payload("snapshot_waiting"))

    assert await queue.cleanup() == 0
    await asyncio.sleep(0.002)
    assert await queue.cleanup(max_age_ms=0) == 1

    counts = await queue.get_counts()
    assert counts.completed == 0
    assert counts.waiting == 1


@pytest.mark.asyncio
async def test_backend_errors_surface_as_queue_unavailable():
    server = FakeServer()
    server.connected = False
    queue = JobQueue(redis=FakeAsyncRedis(server=server))

    with pytest.raises(QueueUnavailableError):
        await queue.enqueue(_payload("snapshot_x"))
    with pytest.raises(QueueUnavailableError):
        await queue.get_counts()


def test_backoff_grows_exponentially():
    assert backoff_delay_ms(0, 5000) == 0
    assert backoff_delay_ms(1, 5000) == 5000
    assert backoff_delay_ms(2, 5000) == 10_000
    assert backoff_delay_ms(4, 5000) == 40_000


@pytest.mark.asyncio
async def test_enqueue_rejects_invalid_options(queue: JobQueue):
    with pytest.raises(ValueError):
        await queue.enqueue(_payload("snapshot_x"), delay_ms=-1)
    with pytest.raises(ValueError):
        await queue.enqueue(_payload("snapshot_x"), attempts=0)


def _fail_scripts(monkeypatch, redis) -> None:
    async def connection_reset(*args, **kwargs):
        raise RedisConnectionError("Connection reset by peer")

    monkeypatch.setattr(redis, "evalsha", connection_reset)


@pytest.mark.asyncio
async def test_claim_is_a_single_server_side_move(queue: JobQueue, redis, monkeypatch):
    enqueued = await queue.enqueue(_payload("snapshot_atomic"))

    def no_pipelines(*args, **kwargs):
        raise RedisConnectionError("Connection reset by peer")

    monkeypatch.setattr(redis, "pipeline", no_pipelines)
    job = await queue.claim_next()
    monkeypatch.undo()

    assert job is not None and job.id == enqueued.job_id
    assert job.data["snapshotId"] == "snapshot_atomic"
    counts = await queue.get_counts()
    assert (counts.waiting, counts.active, counts.total) == (0, 1, 1)
    view = await queue.get_job_status(enqueued.job_id)
    assert isinstance(view, JobStatusView)
    assert view.status == "active"
    assert view.processed_on is not None


@pytest.mark.asyncio
async def test_failed_claim_leaves_job_waiting(queue: JobQueue, redis, monkeypatch):
    enqueued = await queue.enqueue(_payload("snapshot_kept"))

    _fail_scripts(monkeypatch, redis)
    with pytest.raises(QueueUnavailableError):
        await queue.claim_next()
    monkeypatch.undo()

    counts = await queue.get_counts()
    assert (counts.waiting, counts.total) == (1, 1)
    job = await queue.claim_next()
    assert job is not None and job.id == enqueued.job_id


@pytest.mark.asyncio
async def test_failed_promotion_keeps_job_delayed_and_priority_survives(queue: JobQueue, redis, monkeypatch):
    plain = await queue.enqueue(_payload("snapshot_plain"))
    urgent = await queue.enqueue(_payload("snapshot_urgent"), priority=5, delay_ms=1)
    await asyncio.sleep(0.01)

    _fail_scripts(monkeypatch, redis)
    with pytest.raises(QueueUnavailableError):
        await queue.promote_delayed()
    monkeypatch.undo()

    counts = await queue.get_counts()
    assert (counts.waiting, counts.delayed, counts.total) == (1, 1, 2)

    assert await queue.promote_delayed() == 1
    first = await queue.claim_next()
    second = await queue.claim_next()
    assert [first.id, second.id] == [urgent.job_id, plain.job_id]  # type: ignore[union-attr]
