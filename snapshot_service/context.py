"""Explicit wiring of the long-lived services one process needs."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .browser_pool import BrowserPool, Launcher
from .pipeline import SnapshotPipeline
from .queue import JobQueue, QueueConfig
from .render import RenderOptions, SnapshotRenderer
from .schemas import Viewport
from .settings import Settings, get_settings
from .stats import PipelineStats
from .store import Store, build_store
from .worker import QueueWorker

LOGGER = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    """Holds one instance of each component; built once at startup and passed around."""

    settings: Settings
    store: Store
    queue: JobQueue
    pool: BrowserPool
    renderer: SnapshotRenderer
    pipeline: SnapshotPipeline
    stats: PipelineStats
    worker: QueueWorker | None = field(default=None)

    async def start(self) -> None:
        await self.queue.connect()
        await self.pool.initialize()

    def build_worker(self) -> QueueWorker:
        if self.worker is None:
            self.worker = QueueWorker(
                self.queue,
                self.pipeline.process_job,
                concurrency=self.settings.worker.concurrency,
                poll_delay=self.settings.worker.poll_delay_ms / 1000,
            )
        return self.worker

    async def close(self, *, graceful: bool = True, timeout: float | None = None) -> None:
        """Stop the worker, then the browsers, then the queue connection."""

        if self.worker is not None:
            await self.worker.close(graceful=graceful, timeout=timeout)
        if self.pool.is_initialized:
            await self.pool.shutdown()
        await self.queue.close()
        LOGGER.info("Service context closed")


def build_context(
    settings: Settings | None = None,
    *,
    store: Store | None = None,
    queue: JobQueue | None = None,
    launcher: Launcher | None = None,
) -> ServiceContext:
    """Construct every component from ``settings``; collaborators may be injected."""

    settings = settings or get_settings()
    store = store or build_store(settings.storage)
    queue = queue or JobQueue(QueueConfig.from_settings(settings.queue))
    pool = BrowserPool(settings.browser, launcher=launcher)
    renderer = SnapshotRenderer(RenderOptions.from_settings(settings.render))
    pipeline = SnapshotPipeline(
        store=store,
        queue=queue,
        pool=pool,
        renderer=renderer,
        settings=settings.pipeline,
        default_viewport=Viewport(
            width=settings.render.viewport_width,
            height=settings.render.viewport_height,
        ),
    )
    stats = PipelineStats(queue=queue, store=store, pool=pool)
    return ServiceContext(
        settings=settings,
        store=store,
        queue=queue,
        pool=pool,
        renderer=renderer,
        pipeline=pipeline,
        stats=stats,
    )
