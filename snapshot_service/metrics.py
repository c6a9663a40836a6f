"""Prometheus instruments for the snapshot pipeline."""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, Histogram, start_http_server

LOGGER = logging.getLogger(__name__)

_DURATION_BUCKETS = (0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 20.0, 30.0, 60.0, 120.0)

RENDER_DURATION_SECONDS = Histogram(
    "snapshot_render_duration_seconds",
    "Time spent rendering one snapshot in a pooled browser",
    buckets=_DURATION_BUCKETS,
)
JOB_DURATION_SECONDS = Histogram(
    "snapshot_job_duration_seconds",
    "Time from job pickup to the end of the attempt",
    labelnames=("outcome",),
    buckets=_DURATION_BUCKETS,
)
JOB_ATTEMPTS_TOTAL = Counter(
    "snapshot_job_attempts_total",
    "Processing attempts grouped by outcome",
    labelnames=("outcome",),
)
SUBMISSIONS_TOTAL = Counter(
    "snapshot_submissions_total",
    "Snapshots accepted into the pipeline",
    labelnames=("kind",),
)
SCREENSHOT_BYTES = Histogram(
    "snapshot_screenshot_bytes",
    "Encoded screenshot size",
    buckets=(16_384, 65_536, 262_144, 1_048_576, 4_194_304, 16_777_216),
)
CONTENT_CLEANUPS_TOTAL = Counter(
    "snapshot_content_cleanups_total",
    "Post-screenshot markup cleanups grouped by result",
    labelnames=("result",),
)
POOL_BUSY_SLOTS = Gauge(
    "snapshot_browser_pool_busy_slots",
    "Browser slots currently leased",
)

_EXPORTER_STARTED = False


def record_submission(*, replay: bool) -> None:
    SUBMISSIONS_TOTAL.labels(kind="replay" if replay else "new").inc()


def record_render(duration_seconds: float, screenshot_size: int) -> None:
    RENDER_DURATION_SECONDS.observe(max(duration_seconds, 0.0))
    SCREENSHOT_BYTES.observe(max(screenshot_size, 0))


def record_job_attempt(outcome: str, duration_seconds: float) -> None:
    """``outcome`` is ``completed`` or ``failed``."""

    JOB_ATTEMPTS_TOTAL.labels(outcome=outcome).inc()
    JOB_DURATION_SECONDS.labels(outcome=outcome).observe(max(duration_seconds, 0.0))


def record_content_cleanup(result: str) -> None:
    CONTENT_CLEANUPS_TOTAL.labels(result=result).inc()


def set_pool_busy(count: int) -> None:
    POOL_BUSY_SLOTS.set(count)


def start_exporter(port: int) -> bool:
    """Expose metrics on ``port``; returns False when disabled or already running."""

    global _EXPORTER_STARTED
    if _EXPORTER_STARTED or port <= 0:
        return False
    try:
        start_http_server(port)
    except OSError as exc:  # pragma: no cover - system dependent
        LOGGER.warning("Prometheus exporter failed to bind on port %s: %s", port, exc)
        return False
    _EXPORTER_STARTED = True
    LOGGER.info("Prometheus exporter listening on port %s", port)
    return True
