"""Bounded-concurrency consumer that feeds queued jobs to a handler coroutine."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from .errors import QueueUnavailableError
from .queue import ActiveJob, JobQueue, JobState

LOGGER = logging.getLogger(__name__)

JobHandler = Callable[[ActiveJob], Awaitable[Any]]


class QueueWorker:
    """Poll the queue and run at most ``concurrency`` jobs at a time.

    Each in-flight job runs end-to-end in its own task. The handler's return
    value is stored as the job result; any exception it raises is recorded as
    a failed attempt so the queue's backoff policy decides what happens next.
    """

    def __init__(
        self,
        queue: JobQueue,
        handler: JobHandler,
        *,
        concurrency: int = 3,
        poll_delay: float = 0.5,
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.poll_delay = poll_delay
        self._tasks: set[asyncio.Task[None]] = set()
        self._running = False
        self.jobs_complete = 0
        self.jobs_failed = 0
        self.jobs_retried = 0

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def run(self, *, burst: bool = False) -> None:
        """Consume jobs until :meth:`close` is called.

        With ``burst=True`` the loop returns once nothing is waiting, delayed or
        running, which is handy for one-shot processing and tests.
        """

        self._running = True
        LOGGER.info("Queue worker started (concurrency=%d, burst=%s)", self.concurrency, burst)
        try:
            while self._running:
                try:
                    await self._poll_once()
                    if burst and await self._is_idle():
                        break
                except QueueUnavailableError as exc:
                    LOGGER.error("Queue backend unavailable, retrying in %.1fs: %s", self.poll_delay, exc)
                await asyncio.sleep(self.poll_delay)
            if burst and self._tasks:
                await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            self._running = False
            LOGGER.info(
                "Queue worker stopped (complete=%d, failed=%d, retried=%d)",
                self.jobs_complete,
                self.jobs_failed,
                self.jobs_retried,
            )

    async def _poll_once(self) -> None:
        await self.queue.promote_delayed()
        while self._running and len(self._tasks) < self.concurrency:
            job = await self.queue.claim_next()
            if job is None:
                return
            task = asyncio.create_task(self._execute(job), name=f"snapshot-job-{job.id}")
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _is_idle(self) -> bool:
        if self._tasks:
            return False
        counts = await self.queue.get_counts()
        return counts.waiting == 0 and counts.delayed == 0 and counts.active == 0

    async def _execute(self, job: ActiveJob) -> None:
        LOGGER.info("Job started: %s (attempt %d/%d)", job.id, job.attempt, job.max_attempts)
        try:
            result = await self.handler(job)
        except Exception as exc:
            try:
                state = await self.queue.fail(job, exc)
            except QueueUnavailableError as queue_exc:
                LOGGER.error("Could not record failure of job %s: %s", job.id, queue_exc)
                return
            if state is JobState.FAILED:
                self.jobs_failed += 1
            else:
                self.jobs_retried += 1
            return

        try:
            await self.queue.complete(job, result)
        except QueueUnavailableError as queue_exc:
            LOGGER.error("Could not record completion of job %s: %s", job.id, queue_exc)
            return
        self.jobs_complete += 1
        LOGGER.info("Job completed: %s", job.id)

    async def close(self, *, graceful: bool = True, timeout: float | None = None) -> None:
        """Stop polling; wait for in-flight jobs (graceful) or cancel them.

        Cancelled jobs stay ``active`` in the queue and their snapshots stay
        ``processing`` so an operator can find and replay them.
        """

        self._running = False
        pending = set(self._tasks)
        if not pending:
            return
        if graceful:
            _done, pending = await asyncio.wait(pending, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            LOGGER.warning("Abandoned %d in-flight job(s) during shutdown", len(pending))
            await asyncio.gather(*pending, return_exceptions=True)
