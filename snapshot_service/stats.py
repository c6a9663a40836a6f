"""Read-only projections over the queue, browser pool and snapshot store."""

from __future__ import annotations

import asyncio
from typing import Any

from .browser_pool import BrowserPool
from .queue import JobQueue
from .schemas import JobListing, JobNotFound, JobStatusView, PoolStats, QueueCounts, SnapshotSummary, StorageStats
from .store import Store


class PipelineStats:
    """Aggregate counts and listings; lookups of unknown ids return a not-found result."""

    def __init__(self, *, queue: JobQueue, store: Store, pool: BrowserPool | None = None) -> None:
        self.queue = queue
        self.store = store
        self.pool = pool

    async def queue_counts(self) -> QueueCounts:
        return await self.queue.get_counts()

    async def list_jobs(self, limit: int = 100) -> JobListing:
        return await self.queue.list_jobs(limit=limit)

    async def job_status(self, job_id: str) -> JobStatusView | JobNotFound:
        return await self.queue.get_job_status(job_id)

    def pool_stats(self) -> PoolStats | None:
        """``None`` when this process does not own a browser pool (e.g. the CLI)."""

        return self.pool.get_stats() if self.pool is not None else None

    async def storage_stats(self) -> StorageStats:
        return await asyncio.to_thread(self.store.database_stats)

    async def recent_snapshots(self, limit: int = 50) -> list[SnapshotSummary]:
        return await asyncio.to_thread(self.store.list_recent, limit)

    async def snapshot_status(self, snapshot_id: str) -> dict[str, Any] | JobNotFound:
        """Snapshot processing status joined with the state of its latest job."""

        snapshot = await asyncio.to_thread(self.store.get_by_id, snapshot_id)
        if snapshot is None:
            return JobNotFound()
        job: JobStatusView | JobNotFound = JobNotFound()
        if snapshot.queue_job_id:
            job = await self.queue.get_job_status(snapshot.queue_job_id)
        return {
            "snapshotId": snapshot.id,
            "url": snapshot.url,
            "processingStatus": snapshot.processing_status.value,
            "queueJobId": snapshot.queue_job_id,
            "processedAt": snapshot.processed_at.isoformat() if snapshot.processed_at else None,
            "job": job.to_public(),
        }

    async def overview(self) -> dict[str, Any]:
        counts, storage = await asyncio.gather(self.queue_counts(), self.storage_stats())
        pool = self.pool_stats()
        return {
            "queue": counts.model_dump(),
            "pool": pool.to_public() if pool is not None else None,
            "storage": storage.model_dump(mode="json"),
        }
