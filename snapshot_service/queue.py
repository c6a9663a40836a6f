"""Durable snapshot job queue on Redis, reached through Arq's connection pool.

Layout (all keys share the ``snapq:<queue name>`` prefix):

* ``:job:<id>``  hash with the job's data and execution bookkeeping
* ``:waiting``   zset ordered by priority (desc) then submission order
* ``:delayed``   zset scored by the epoch-ms time the job becomes eligible
* ``:active``    zset scored by the epoch-ms time the job was claimed
* ``:completed`` / ``:failed`` zsets scored by finish time, capped by retention

Per-state counts are ``ZCARD`` calls, so they stay O(1) regardless of history.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Mapping, Optional

from arq.connections import RedisSettings, create_pool
from redis.asyncio import Redis
from redis.commands.core import AsyncScript
from redis.exceptions import RedisError

from .errors import QueueUnavailableError
from .schemas import EnqueuedJob, JobListing, JobNotFound, JobPayload, JobStatusView, JobView, QueueCounts
from .settings import QueueSettings

LOGGER = logging.getLogger(__name__)

JOB_NAME = "process-snapshot"
# waiting-set scores are -priority * span + sequence; doubles stay exact below 2**53
_PRIORITY_SPAN = 2**32
MAX_PRIORITY = 2**20
_MAX_BACKOFF_EXPONENT = 20

# State moves run as server-side scripts so a job is never outside every state set.
# KEYS: delayed, waiting, seq. ARGV: now_ms, job key prefix, priority span.
_PROMOTE_DELAYED_LUA = """
local ready = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1])
local promoted = 0
for _, id in ipairs(ready) do
    redis.call('ZREM', KEYS[1], id)
    local job_key = ARGV[2] .. id
    if redis.call('EXISTS', job_key) == 1 then
        local priority = tonumber(redis.call('HGET', job_key, 'priority') or '0') or 0
        local seq = redis.call('INCR', KEYS[3])
        local score = string.format('%.0f', -priority * tonumber(ARGV[3]) + seq)
        redis.call('ZADD', KEYS[2], score, id)
        redis.call('HSET', job_key, 'state', 'waiting')
        promoted = promoted + 1
    end
end
return promoted
"""

# KEYS: waiting, active. ARGV: now_ms, job key prefix.
# Returns {job_id, field, value, ...} or nil when nothing is waiting.
_CLAIM_NEXT_LUA = """
while true do
    local popped = redis.call('ZPOPMIN', KEYS[1])
    if #popped == 0 then
        return false
    end
    local id = popped[1]
    local job_key = ARGV[2] .. id
    if redis.call('EXISTS', job_key) == 1 then
        redis.call('ZADD', KEYS[2], ARGV[1], id)
        redis.call('HSET', job_key, 'state', 'active', 'processedOn', ARGV[1])
        local fields = redis.call('HGETALL', job_key)
        table.insert(fields, 1, id)
        return fields
    end
end
"""

_SCRIPTS = {"promote": _PROMOTE_DELAYED_LUA, "claim": _CLAIM_NEXT_LUA}

class JobState(str, Enum):
    """Queue-side execution state of a job."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


@dataclass
class QueueConfig:
    """Connection and policy knobs for :class:`JobQueue`."""

    redis_url: str = "redis://localhost:6379/0"
    queue_name: str = "snapshot-processing"
    attempts: int = 5
    backoff_ms: int = 5000
    keep_completed: int = 100
    keep_failed: int = 50
    conn_timeout_s: int = 5
    conn_retries: int = 3

    @classmethod
    def from_settings(cls, settings: QueueSettings) -> QueueConfig:
        return cls(
            redis_url=settings.redis_url,
            queue_name=settings.queue_name,
            attempts=settings.attempts,
            backoff_ms=settings.backoff_ms,
            keep_completed=settings.keep_completed,
            keep_failed=settings.keep_failed,
            conn_timeout_s=settings.conn_timeout_s,
            conn_retries=settings.conn_retries,
        )


def get_redis_settings(config: QueueConfig) -> RedisSettings:
    """Translate the queue config into Arq's ``RedisSettings``."""

    settings = RedisSettings.from_dsn(config.redis_url)
    settings.conn_timeout = config.conn_timeout_s
    settings.conn_retries = config.conn_retries
    return settings


def backoff_delay_ms(attempts_made: int, base_ms: int) -> int:
    """Exponential backoff: ``base``, ``2*base``, ``4*base``... after each failed attempt."""

    if attempts_made < 1:
        return 0
    exponent = min(attempts_made - 1, _MAX_BACKOFF_EXPONENT)
    return base_ms * (2**exponent)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


def _optional_int(value: Any) -> Optional[int]:
    text = _text(value)
    if text in (None, ""):
        return None
    return int(float(text))


@dataclass(slots=True)
class ActiveJob:
    """A claimed job handed to the worker's handler."""

    id: str
    name: str
    data: dict[str, Any]
    attempts_made: int
    max_attempts: int
    backoff_ms: int
    timestamp: int
    queue: JobQueue = field(repr=False)
    progress: int = 0

    @property
    def attempt(self) -> int:
        """1-based number of the attempt currently running."""

        return self.attempts_made + 1

    async def update_progress(self, progress: int) -> None:
        self.progress = max(0, min(100, int(progress)))
        await self.queue.update_progress(self.id, self.progress)


class JobQueue:
    """High-level interface for snapshot job queue operations."""

    def __init__(self, config: QueueConfig | None = None, *, redis: Redis | None = None) -> None:
        self.config = config or QueueConfig()
        self._redis: Redis | None = redis
        self._owns_connection = redis is None
        self._prefix = f"snapq:{self.config.queue_name}"
        self._scripts: dict[str, AsyncScript] = {}

    # -------------------------------------------------------------- connection

    async def connect(self) -> Redis:
        """Get or create the Redis connection pool."""

        if self._redis is None:
            try:
                self._redis = await create_pool(get_redis_settings(self.config))
            except (RedisError, OSError, asyncio.TimeoutError) as exc:
                msg = f"Job queue backend unreachable at {self.config.redis_url}: {exc}"
                raise QueueUnavailableError(msg) from exc
        return self._redis

    async def close(self) -> None:
        if self._redis is not None and self._owns_connection:
            await self._redis.aclose()
        self._redis = None

    @asynccontextmanager
    async def _backend(self, action: str) -> AsyncIterator[Redis]:
        redis = await self.connect()
        try:
            yield redis
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            raise QueueUnavailableError(f"Failed to {action}: {exc}") from exc

    def _script(self, redis: Redis, name: str) -> AsyncScript:
        script = self._scripts.get(name)
        if script is None or script.registered_client is not redis:
            script = self._scripts[name] = redis.register_script(_SCRIPTS[name])
        return script

    def _key(self, name: str) -> str:
        return f"{self._prefix}:{name}"

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    # -------------------------------------------------------------- submission

    async def enqueue(
        self,
        payload: JobPayload,
        *,
        priority: int = 0,
        delay_ms: int = 0,
        attempts: int | None = None,
        backoff_ms: int | None = None,
    ) -> EnqueuedJob:
        """Add a snapshot job; duplicate snapshot ids create independent jobs."""

        if delay_ms < 0:
            raise ValueError("delay_ms must be >= 0")
        if abs(priority) > MAX_PRIORITY:
            raise ValueError(f"priority must be within +/-{MAX_PRIORITY}")
        max_attempts = attempts if attempts is not None else self.config.attempts
        if max_attempts < 1:
            raise ValueError("attempts must be >= 1")

        async with self._backend("queue snapshot job") as redis:
            job_id = str(await redis.incr(self._key("id")))
            now = _now_ms()
            fields = {
                "name": JOB_NAME,
                "data": json.dumps(payload.to_public()),
                "priority": priority,
                "delay": delay_ms,
                "attempts": max_attempts,
                "backoff": backoff_ms if backoff_ms is not None else self.config.backoff_ms,
                "progress": 0,
                "attemptsMade": 0,
                "timestamp": now,
                "state": JobState.DELAYED.value if delay_ms > 0 else JobState.WAITING.value,
            }
            if delay_ms > 0:
                async with redis.pipeline(transaction=True) as pipe:
                    pipe.hset(self._job_key(job_id), mapping=fields)
                    pipe.zadd(self._key("delayed"), {job_id: now + delay_ms})
                    await pipe.execute()
            else:
                sequence = await redis.incr(self._key("seq"))
                async with redis.pipeline(transaction=True) as pipe:
                    pipe.hset(self._job_key(job_id), mapping=fields)
                    pipe.zadd(self._key("waiting"), {job_id: _waiting_score(priority, sequence)})
                    await pipe.execute()

        LOGGER.info(
            "Enqueued job %s for snapshot %s (priority=%s, delay=%sms)",
            job_id,
            payload.snapshot_id,
            priority,
            delay_ms,
        )
        return EnqueuedJob(job_id=job_id, snapshot_id=payload.snapshot_id)

    # ---------------------------------------------------------- worker side

    async def promote_delayed(self) -> int:
        """Move delayed jobs whose time has come into the waiting set."""

        promoted = 0
        async with self._backend("promote delayed jobs") as redis:
            ready = await redis.zrangebyscore(self._key("delayed"), "-inf", _now_ms())
            for raw_id in ready:
                job_id = _text(raw_id) or ""
                if not await redis.zrem(self._key("delayed"), job_id):
                    continue  # another worker promoted it first
                priority = _optional_int(await redis.hget(self._job_key(job_id), "priority")) or 0
                sequence = await redis.incr(self._key("seq"))
                async with redis.pipeline(transaction=True) as pipe:
                    pipe.zadd(self._key("waiting"), {job_id: _waiting_score(priority, sequence)})
                    pipe.hset(self._job_key(job_id), "state", JobState.WAITING.value)
                    await pipe.execute()
                promoted += 1
        if promoted:
            LOGGER.debug("Promoted %d delayed job(s)", promoted)
        return promoted

    async def claim_next(self) -> ActiveJob | None:
        """Pop the highest-priority waiting job and mark it active."""

        async with self._backend("claim job") as redis:
            while True:
                popped = await redis.zpopmin(self._key("waiting"), 1)
                if not popped:
                    return None
                job_id = _text(popped[0][0]) or ""
                raw = await redis.hgetall(self._job_key(job_id))
                if raw:
                    break
                LOGGER.warning("Dropping waiting entry %s with no job record", job_id)

            now = _now_ms()
            async with redis.pipeline(transaction=True) as pipe:
                pipe.zadd(self._key("active"), {job_id: now})
                pipe.hset(
                    self._job_key(job_id),
                    mapping={"state": JobState.ACTIVE.value, "processedOn": now},
                )
                await pipe.execute()

        fields = _decode_fields(raw)
        return ActiveJob(
            id=job_id,
            name=fields.get("name") or JOB_NAME,
            data=_load_data(fields.get("data")),
            attempts_made=_optional_int(fields.get("attemptsMade")) or 0,
            max_attempts=_optional_int(fields.get("attempts")) or self.config.attempts,
            backoff_ms=_optional_int(fields.get("backoff")) or 0,
            timestamp=_optional_int(fields.get("timestamp")) or now,
            queue=self,
            progress=_optional_int(fields.get("progress")) or 0,
        )

    async def update_progress(self, job_id: str, progress: int) -> None:
        async with self._backend("update job progress") as redis:
            await redis.hset(self._job_key(job_id), "progress", progress)

    async def complete(self, job: ActiveJob, result: Any = None) -> None:
        """Record a successful attempt and prune old completed jobs."""

        now = _now_ms()
        async with self._backend("complete job") as redis:
            async with redis.pipeline(transaction=True) as pipe:
                pipe.zrem(self._key("active"), job.id)
                pipe.zadd(self._key("completed"), {job.id: now})
                pipe.hset(
                    self._job_key(job.id),
                    mapping={
                        "state": JobState.COMPLETED.value,
                        "attemptsMade": job.attempts_made + 1,
                        "finishedOn": now,
                        "failedReason": "",
                        "returnvalue": json.dumps(result, default=str),
                    },
                )
                await pipe.execute()
            await self._trim(redis, JobState.COMPLETED, self.config.keep_completed)

    async def fail(self, job: ActiveJob, error: BaseException) -> JobState:
        """Record a failed attempt; schedule a backoff retry or mark the job failed."""

        attempts_made = job.attempts_made + 1
        reason = str(error) or error.__class__.__name__
        now = _now_ms()
        async with self._backend("fail job") as redis:
            if attempts_made < job.max_attempts:
                retry_at = now + backoff_delay_ms(attempts_made, job.backoff_ms)
                async with redis.pipeline(transaction=True) as pipe:
                    pipe.zrem(self._key("active"), job.id)
                    pipe.zadd(self._key("delayed"), {job.id: retry_at})
                    pipe.hset(
                        self._job_key(job.id),
                        mapping={
                            "state": JobState.DELAYED.value,
                            "attemptsMade": attempts_made,
                            "failedReason": reason,
                        },
                    )
                    await pipe.execute()
                LOGGER.warning(
                    "Job %s attempt %d/%d failed, retrying in %dms: %s",
                    job.id,
                    attempts_made,
                    job.max_attempts,
                    retry_at - now,
                    reason,
                )
                return JobState.DELAYED

            async with redis.pipeline(transaction=True) as pipe:
                pipe.zrem(self._key("active"), job.id)
                pipe.zadd(self._key("failed"), {job.id: now})
                pipe.hset(
                    self._job_key(job.id),
                    mapping={
                        "state": JobState.FAILED.value,
                        "attemptsMade": attempts_made,
                        "failedReason": reason,
                        "finishedOn": now,
                    },
                )
                await pipe.execute()
            await self._trim(redis, JobState.FAILED, self.config.keep_failed)
        LOGGER.error("Job %s failed after %d attempt(s): %s", job.id, attempts_made, reason)
        return JobState.FAILED

    async def _trim(self, redis: Redis, state: JobState, keep: int) -> int:
        key = self._key(state.value)
        excess = await redis.zcard(key) - max(keep, 0)
        if excess <= 0:
            return 0
        stale = [_text(raw) for raw in await redis.zrange(key, 0, excess - 1)]
        async with redis.pipeline(transaction=True) as pipe:
            pipe.zrem(key, *stale)
            pipe.delete(*(self._job_key(job_id) for job_id in stale if job_id))
            await pipe.execute()
        LOGGER.debug("Pruned %d %s job(s) beyond retention", len(stale), state.value)
        return len(stale)

    # ------------------------------------------------------------ observation

    async def get_counts(self) -> QueueCounts:
        async with self._backend("read queue counts") as redis:
            async with redis.pipeline(transaction=False) as pipe:
                for state in JobState:
                    pipe.zcard(self._key(state.value))
                values = await pipe.execute()
        counts = {state.value: int(value) for state, value in zip(JobState, values)}
        return QueueCounts.from_states(**counts)

    async def list_jobs(self, *, limit: int = 100) -> JobListing:
        """Per-state job listings, each capped at ``limit`` entries."""

        if limit <= 0:
            return JobListing()
        async with self._backend("list jobs") as redis:
            ids_by_state: dict[JobState, list[str]] = {}
            for state in JobState:
                key = self._key(state.value)
                if state in (JobState.COMPLETED, JobState.FAILED):
                    raw_ids = await redis.zrevrange(key, 0, limit - 1)
                else:
                    raw_ids = await redis.zrange(key, 0, limit - 1)
                ids_by_state[state] = [job_id for job_id in map(_text, raw_ids) if job_id]

            async with redis.pipeline(transaction=False) as pipe:
                for state in JobState:
                    for job_id in ids_by_state[state]:
                        pipe.hgetall(self._job_key(job_id))
                raw_jobs = iter(await pipe.execute())

        listing: dict[str, list[JobView]] = {}
        for state in JobState:
            views = []
            for job_id in ids_by_state[state]:
                raw = next(raw_jobs)
                if raw:
                    views.append(_to_view(job_id, _decode_fields(raw)))
            listing[state.value] = views
        return JobListing(**listing)

    async def get_job(self, job_id: str) -> JobStatusView | None:
        async with self._backend("read job") as redis:
            raw = await redis.hgetall(self._job_key(job_id))
        if not raw:
            return None
        fields = _decode_fields(raw)
        view = _to_view(job_id, fields)
        return JobStatusView(**view.model_dump(), status=fields.get("state") or "unknown")

    async def get_job_status(self, job_id: str) -> JobStatusView | JobNotFound:
        """Status lookup; unknown ids yield :class:`JobNotFound` instead of raising."""

        job = await self.get_job(job_id)
        return job if job is not None else JobNotFound()

    async def cleanup(self, max_age_ms: int = 24 * 60 * 60 * 1000) -> int:
        """Remove completed and failed jobs that finished more than ``max_age_ms`` ago."""

        cutoff = _now_ms() - max_age_ms
        removed = 0
        async with self._backend("clean up jobs") as redis:
            for state in (JobState.COMPLETED, JobState.FAILED):
                key = self._key(state.value)
                stale = [_text(raw) for raw in await redis.zrangebyscore(key, "-inf", cutoff)]
                if not stale:
                    continue
                async with redis.pipeline(transaction=True) as pipe:
                    pipe.zrem(key, *stale)
                    pipe.delete(*(self._job_key(job_id) for job_id in stale if job_id))
                    await pipe.execute()
                removed += len(stale)
        LOGGER.info("Queue cleanup removed %d job(s) older than %dms", removed, max_age_ms)
        return removed


def _waiting_score(priority: int, sequence: int) -> float:
    return float(-priority * _PRIORITY_SPAN + int(sequence))


def _decode_fields(raw: Mapping[Any, Any]) -> dict[str, str]:
    return {_text(key) or "": _text(value) or "" for key, value in raw.items()}


def _load_data(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        LOGGER.warning("Job data is not valid JSON; treating as empty")
        return {}
    return data if isinstance(data, dict) else {}


def _to_view(job_id: str, fields: Mapping[str, str]) -> JobView:
    return JobView(
        id=job_id,
        name=fields.get("name") or JOB_NAME,
        data=_load_data(fields.get("data")),
        progress=_optional_int(fields.get("progress")) or 0,
        attempts_made=_optional_int(fields.get("attemptsMade")) or 0,
        timestamp=_optional_int(fields.get("timestamp")),
        processed_on=_optional_int(fields.get("processedOn")),
        finished_on=_optional_int(fields.get("finishedOn")),
        failed_reason=fields.get("failedReason") or None,
    )
