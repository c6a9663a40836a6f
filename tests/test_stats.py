from __future__ import annotations

import asyncio

import pytest

from snapshot_service.browser_pool import BrowserPool
from snapshot_service.queue import JobQueue
from snapshot_service.schemas import JobNotFound, JobStatusView, SnapshotCreateRequest
from snapshot_service.stats import PipelineStats
from snapshot_service.store import Store
from snapshot_service.worker import QueueWorker


@pytest.mark.asyncio
async def test_counts_and_listing_reflect_queue_state(make_pipeline, store: Store, queue: JobQueue):
    pipeline = make_pipeline(pool_size=1)
    for index in range(3):
        await pipeline.submit(SnapshotCreateRequest(html=f"<p>{index}</p>"))
    worker = QueueWorker(queue, pipeline.process_job, concurrency=1, poll_delay=0.005)
    await asyncio.wait_for(worker.run(burst=True), timeout=5)
    await pipeline.submit(SnapshotCreateRequest(html="<p>late</p>"))
    stats = PipelineStats(queue=queue, store=store, pool=pipeline.pool)

    counts = await stats.queue_counts()
    listing = await stats.list_jobs(limit=2)

    assert (counts.completed, counts.waiting, counts.total) == (3, 1, 4)
    assert len(listing.completed) == 2
    assert len(listing.waiting) == 1
    assert stats.pool_stats() == pipeline.pool.get_stats()


@pytest.mark.asyncio
async def test_job_status_lookup_returns_not_found_for_unknown_ids(queue: JobQueue, store: Store):
    stats = PipelineStats(queue=queue, store=store)

    assert isinstance(await stats.job_status("12345"), JobNotFound)
    assert stats.pool_stats() is None


@pytest.mark.asyncio
async def test_snapshot_status_joins_latest_job(make_pipeline, store: Store, queue: JobQueue):
    pipeline = make_pipeline()
    submitted = await pipeline.submit(SnapshotCreateRequest(html="<p>x</p>", url="https://example.com"))
    stats = PipelineStats(queue=queue, store=store)

    status = await stats.snapshot_status(submitted.snapshot_id)

    assert isinstance(status, dict)
    assert status["processingStatus"] == "pending"
    assert status["queueJobId"] == submitted.job_id
    assert status["job"]["status"] == "waiting"
    assert status["job"]["data"]["snapshotId"] == submitted.snapshot_id
    assert isinstance(await stats.snapshot_status("snapshot_unknown"), JobNotFound)
    job = await stats.job_status(submitted.job_id)
    assert isinstance(job, JobStatusView)


@pytest.mark.asyncio
async def test_overview_combines_queue_pool_and_storage(make_pipeline, store: Store, queue: JobQueue):
    pipeline = make_pipeline(pool_size=2)
    await pipeline.submit(SnapshotCreateRequest(html="<p>a</p>", css="p {}"))
    await pipeline.pool.initialize()
    stats = PipelineStats(queue=queue, store=store, pool=pipeline.pool)

    overview = await stats.overview()
    recent = await stats.recent_snapshots(limit=5)

    assert overview["queue"]["waiting"] == 1
    assert overview["pool"] == {"totalSlots": 2, "busySlots": 0, "availableSlots": 2, "isInitialized": True}
    assert overview["storage"]["total_snapshots"] == 1
    assert overview["storage"]["total_css_bytes"] == len("p {}")
    assert len(recent) == 1


def test_pool_stats_before_initialize(launcher):
    from conftest import browser_settings

    pool = BrowserPool(browser_settings(pool_size=2), launcher=launcher)
    stats = PipelineStats(queue=JobQueue(), store=None, pool=pool)  # type: ignore[arg-type]

    pool_stats = stats.pool_stats()
    assert pool_stats is not None
    assert pool_stats.is_initialized is False
    assert pool_stats.total_slots == 0
