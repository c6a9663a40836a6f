"""Per-job state machine tying the store, queue, browser pool and renderer together."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any

from pydantic import ValidationError

from . import metrics
from .browser_pool import BrowserPool
from .errors import EmptySnapshotError, InvalidJobPayloadError, SnapshotNotFoundError
from .queue import ActiveJob, JobQueue
from .render import SnapshotRenderer, build_document
from .schemas import JobPayload, SnapshotCreateRequest, SubmitResult, Viewport
from .settings import PipelineSettings
from .store import ProcessingStatus, Snapshot, Store, generate_snapshot_id

LOGGER = logging.getLogger(__name__)

PROGRESS_STARTED = 10
PROGRESS_LOADED = 25
PROGRESS_RENDERED = 70
PROGRESS_PERSISTED = 90
PROGRESS_DONE = 100


class SnapshotPipeline:
    """Submit snapshots for rendering and process the resulting jobs.

    ``process_job`` is the only place that moves a snapshot's processing
    status; the renderer and pool just raise.
    """

    def __init__(
        self,
        *,
        store: Store,
        queue: JobQueue,
        pool: BrowserPool,
        renderer: SnapshotRenderer,
        settings: PipelineSettings | None = None,
        default_viewport: Viewport | None = None,
    ) -> None:
        self.store = store
        self.queue = queue
        self.pool = pool
        self.renderer = renderer
        self.settings = settings or PipelineSettings(cleanup_after_screenshot=False)
        self.default_viewport = default_viewport or Viewport()

    # -------------------------------------------------------------- submission

    def resolve_viewport(self, width: int | None = None, height: int | None = None) -> Viewport:
        """Fill whichever side is missing from the configured default viewport."""

        return Viewport(
            width=width if width is not None else self.default_viewport.width,
            height=height if height is not None else self.default_viewport.height,
        )

    async def submit(
        self,
        request: SnapshotCreateRequest,
        *,
        priority: int = 0,
        delay_ms: int = 0,
    ) -> SubmitResult:
        """Store a new ``pending`` snapshot and queue a job for it."""

        viewport = request.viewport or self.resolve_viewport()
        snapshot = Snapshot(
            id=generate_snapshot_id(),
            html=request.html,
            css=request.css,
            url=request.url,
            viewport_width=viewport.width,
            viewport_height=viewport.height,
            options=dict(request.options),
            processing_status=ProcessingStatus.PENDING,
        )
        await asyncio.to_thread(self.store.save, snapshot)
        payload = JobPayload(
            snapshot_id=snapshot.id,
            metadata={
                "url": snapshot.url,
                "viewport": viewport.model_dump(),
                "replay": False,
            },
        )
        job = await self.queue.enqueue(payload, priority=priority, delay_ms=delay_ms)
        await asyncio.to_thread(self.store.update_job_reference, snapshot.id, job.job_id)
        metrics.record_submission(replay=False)
        LOGGER.info("Snapshot %s submitted as job %s", snapshot.id, job.job_id)
        return SubmitResult(snapshot_id=snapshot.id, job_id=job.job_id)

    async def replay(self, snapshot_id: str, *, priority: int = 0) -> SubmitResult:
        """Queue a fresh job for an existing snapshot, whatever its current status."""

        snapshot = await asyncio.to_thread(self.store.get_by_id, snapshot_id)
        if snapshot is None:
            raise SnapshotNotFoundError(snapshot_id)
        payload = JobPayload(
            snapshot_id=snapshot_id,
            metadata={
                "url": snapshot.url,
                "viewport": {"width": snapshot.viewport_width, "height": snapshot.viewport_height},
                "replay": True,
                "previousJobId": snapshot.queue_job_id,
            },
        )
        job = await self.queue.enqueue(payload, priority=priority)
        await asyncio.to_thread(self.store.update_job_reference, snapshot_id, job.job_id)
        metrics.record_submission(replay=True)
        LOGGER.info(
            "Snapshot %s replayed as job %s (was %s, status %s)",
            snapshot_id,
            job.job_id,
            snapshot.queue_job_id,
            snapshot.processing_status.value,
        )
        return SubmitResult(snapshot_id=snapshot_id, job_id=job.job_id, replay=True)

    # -------------------------------------------------------------- inspection

    async def load_content(self, snapshot_id: str) -> Snapshot:
        """Stored snapshot with decompressed markup; raises once the markup was reclaimed."""

        snapshot = await asyncio.to_thread(self.store.get_by_id, snapshot_id)
        if snapshot is None:
            raise SnapshotNotFoundError(snapshot_id)
        if snapshot.html is None or not snapshot.html.strip():
            raise EmptySnapshotError(snapshot_id)
        return snapshot

    async def replay_document(self, snapshot_id: str) -> str:
        """The standalone document a render of ``snapshot_id`` would load."""

        snapshot = await self.load_content(snapshot_id)
        return build_document(
            snapshot.html,
            snapshot.css,
            Viewport(width=snapshot.viewport_width, height=snapshot.viewport_height),
            snapshot_id=snapshot_id,
        )

    # -------------------------------------------------------------- processing

    async def process_job(self, job: ActiveJob) -> dict[str, Any]:
        """Render the snapshot named by ``job`` and record the outcome.

        Any failure after the snapshot is loaded marks it ``failed`` (best
        effort) and is re-raised so the queue's retry policy applies.
        """

        started = time.perf_counter()
        try:
            result = await self._process(job)
        except Exception:
            metrics.record_job_attempt("failed", time.perf_counter() - started)
            raise
        metrics.record_job_attempt("completed", time.perf_counter() - started)
        return result

    async def _process(self, job: ActiveJob) -> dict[str, Any]:
        payload = _parse_payload(job.data)
        snapshot_id = payload.snapshot_id
        await job.update_progress(PROGRESS_STARTED)

        snapshot = await asyncio.to_thread(self.store.get_by_id, snapshot_id)
        if snapshot is None:
            raise SnapshotNotFoundError(snapshot_id)
        await job.update_progress(PROGRESS_LOADED)

        try:
            await asyncio.to_thread(self.store.update_status, snapshot_id, ProcessingStatus.PROCESSING)
            async with self.pool.lease() as slot:
                LOGGER.debug("Rendering snapshot %s on %s", snapshot_id, slot.id)
                rendered = await self.renderer.render(
                    slot.browser,
                    snapshot_id=snapshot_id,
                    html=snapshot.html,
                    css=snapshot.css,
                    viewport=Viewport(width=snapshot.viewport_width, height=snapshot.viewport_height),
                )
            await job.update_progress(PROGRESS_RENDERED)
            await asyncio.to_thread(self.store.save_screenshot, snapshot_id, rendered.data, rendered.metadata)
            metrics.record_render(rendered.duration_seconds, rendered.metadata.size)
        except Exception as exc:
            await self._mark_failed(snapshot_id, exc)
            raise

        if self.settings.cleanup_after_screenshot:
            await self._reclaim_content(snapshot_id)
        await job.update_progress(PROGRESS_PERSISTED)

        processed_at = datetime.now(timezone.utc)
        try:
            await asyncio.to_thread(
                self.store.update_status,
                snapshot_id,
                ProcessingStatus.COMPLETED,
                processed_at,
            )
        except Exception as exc:
            await self._mark_failed(snapshot_id, exc)
            raise
        await job.update_progress(PROGRESS_DONE)

        LOGGER.info("Snapshot %s completed (job %s, attempt %d)", snapshot_id, job.id, job.attempt)
        return {
            "snapshotId": snapshot_id,
            "screenshot": rendered.metadata.model_dump(mode="json"),
            "processedAt": processed_at.isoformat(),
        }

    async def _mark_failed(self, snapshot_id: str, error: BaseException) -> None:
        LOGGER.error("Processing failed for snapshot %s: %s", snapshot_id, error)
        try:
            await asyncio.to_thread(self.store.update_status, snapshot_id, ProcessingStatus.FAILED)
        except Exception as status_exc:
            LOGGER.error("Could not mark snapshot %s as failed: %s", snapshot_id, status_exc)

    async def _reclaim_content(self, snapshot_id: str) -> None:
        """Drop stored markup once the screenshot is safe; never fails the job."""

        try:
            cleared = await asyncio.to_thread(self.store.clear_content, snapshot_id)
        except Exception as exc:
            metrics.record_content_cleanup("error")
            LOGGER.warning("Content cleanup failed for snapshot %s: %s", snapshot_id, exc)
            return
        metrics.record_content_cleanup("cleared" if cleared else "empty")
        LOGGER.debug("Content cleanup for snapshot %s (cleared=%s)", snapshot_id, cleared)


def _parse_payload(data: dict[str, Any]) -> JobPayload:
    try:
        return JobPayload.model_validate(data)
    except ValidationError as exc:
        raise InvalidJobPayloadError(f"Invalid job payload, snapshotId is required: {exc.errors()[0]['msg']}") from exc
