"""Typed configuration objects backed by python-decouple settings."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from decouple import AutoConfig, Config as DecoupleConfig, RepositoryEnv

__all__ = [
    "QueueSettings",
    "WorkerSettings",
    "BrowserSettings",
    "RenderSettings",
    "StorageSettings",
    "PipelineSettings",
    "TelemetrySettings",
    "Settings",
    "DEFAULT_LAUNCH_ARGS",
    "load_config",
    "build_settings",
    "get_settings",
]

# Chromium flags tuned for containerized hosts.
DEFAULT_LAUNCH_ARGS: tuple[str, ...] = (
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
    "--disable-features=TranslateUI",
    "--disable-ipc-flooding-protection",
    "--disable-extensions",
    "--disable-default-apps",
    "--disable-sync",
    "--disable-background-networking",
    "--disable-component-update",
)

SUPPORTED_COMPRESSION = ("none", "zstd")
SUPPORTED_SCREENSHOT_FORMATS = ("png", "jpeg")


@dataclass(frozen=True, slots=True)
class QueueSettings:
    """Redis location plus retry/retention policy for snapshot jobs."""

    redis_url: str
    queue_name: str
    attempts: int
    backoff_ms: int
    keep_completed: int
    keep_failed: int
    conn_timeout_s: int
    conn_retries: int


@dataclass(frozen=True, slots=True)
class WorkerSettings:
    """How many jobs a worker process runs at once and how often it polls."""

    concurrency: int
    poll_delay_ms: int


@dataclass(frozen=True, slots=True)
class BrowserSettings:
    """Browser pool size, launch flags and lifecycle timeouts."""

    pool_size: int
    headless: bool
    executable_path: str | None
    launch_args: tuple[str, ...]
    health_check_timeout_ms: int
    page_close_timeout_ms: int
    browser_close_timeout_ms: int


@dataclass(frozen=True, slots=True)
class RenderSettings:
    """Viewport defaults and the waits applied before each screenshot."""

    viewport_width: int
    viewport_height: int
    device_scale_factor: float
    navigation_timeout_ms: int
    font_timeout_ms: int
    image_timeout_ms: int
    images_total_timeout_ms: int
    settle_ms: int
    screenshot_format: str
    screenshot_quality: int | None


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """SQLite location and at-rest compression for captured markup."""

    db_path: Path
    compression: str
    compression_level: int


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    """Orchestrator behaviour toggles."""

    cleanup_after_screenshot: bool


@dataclass(frozen=True, slots=True)
class TelemetrySettings:
    prometheus_port: int
    log_level: str


@dataclass(frozen=True, slots=True)
class Settings:
    """Top-level immutable configuration container."""

    env_path: str
    queue: QueueSettings
    worker: WorkerSettings
    browser: BrowserSettings
    render: RenderSettings
    storage: StorageSettings
    pipeline: PipelineSettings
    telemetry: TelemetrySettings


def load_config(env_path: str = ".env") -> DecoupleConfig:
    """Return a python-decouple config anchored to ``env_path`` when it exists.

    Without an env file the lookup falls back to ``AutoConfig``, which reads
    the process environment (and any ``settings.ini`` it can find).
    """

    if Path(env_path).is_file():
        return DecoupleConfig(RepositoryEnv(env_path))
    return AutoConfig(search_path=str(Path(env_path).resolve().parent))


def _int(cfg: DecoupleConfig, key: str, *, default: int) -> int:
    return cfg(key, cast=int, default=default)


def _bool(cfg: DecoupleConfig, key: str, *, default: bool) -> bool:
    return cfg(key, cast=bool, default=default)


def _optional_int(cfg: DecoupleConfig, key: str) -> int | None:
    raw = cfg(key, default="")
    if raw in ("", None):
        return None
    return int(raw)


def _csv_tuple(cfg: DecoupleConfig, key: str, *, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    raw = cfg(key, default="")
    if not raw:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def build_settings(cfg: DecoupleConfig, *, env_path: str = ".env") -> Settings:
    """Resolve every settings group from ``cfg`` and validate cross-field rules."""

    pool_size = _int(cfg, "BROWSER_POOL_SIZE", default=3)
    if pool_size < 1:
        raise ValueError("BROWSER_POOL_SIZE must be >= 1")

    queue = QueueSettings(
        redis_url=cfg("REDIS_URL", default="redis://localhost:6379/0"),
        queue_name=cfg("QUEUE_NAME", default="snapshot-processing"),
        attempts=_int(cfg, "QUEUE_ATTEMPTS", default=5),
        backoff_ms=_int(cfg, "QUEUE_BACKOFF_MS", default=5000),
        keep_completed=_int(cfg, "QUEUE_KEEP_COMPLETED", default=100),
        keep_failed=_int(cfg, "QUEUE_KEEP_FAILED", default=50),
        conn_timeout_s=_int(cfg, "QUEUE_CONN_TIMEOUT_S", default=5),
        conn_retries=_int(cfg, "QUEUE_CONN_RETRIES", default=3),
    )
    if queue.attempts < 1:
        raise ValueError("QUEUE_ATTEMPTS must be >= 1")
    if queue.backoff_ms < 0:
        raise ValueError("QUEUE_BACKOFF_MS must be >= 0")

    worker = WorkerSettings(
        concurrency=_int(cfg, "QUEUE_CONCURRENCY", default=pool_size),
        poll_delay_ms=_int(cfg, "QUEUE_POLL_DELAY_MS", default=500),
    )
    if worker.concurrency < 1:
        raise ValueError("QUEUE_CONCURRENCY must be >= 1")
    if worker.concurrency > pool_size:
        msg = "QUEUE_CONCURRENCY must be <= BROWSER_POOL_SIZE or jobs will fail with an exhausted pool"
        raise ValueError(msg)

    browser = BrowserSettings(
        pool_size=pool_size,
        headless=cfg("DEBUG_HEADLESS", default="true").strip().lower() != "false",
        executable_path=cfg("BROWSER_EXECUTABLE_PATH", default=None) or None,
        launch_args=_csv_tuple(cfg, "BROWSER_LAUNCH_ARGS", default=DEFAULT_LAUNCH_ARGS),
        health_check_timeout_ms=_int(cfg, "BROWSER_HEALTH_TIMEOUT_MS", default=3000),
        page_close_timeout_ms=_int(cfg, "BROWSER_PAGE_CLOSE_TIMEOUT_MS", default=2000),
        browser_close_timeout_ms=_int(cfg, "BROWSER_CLOSE_TIMEOUT_MS", default=5000),
    )

    screenshot_format = cfg("SCREENSHOT_FORMAT", default="png").strip().lower()
    if screenshot_format not in SUPPORTED_SCREENSHOT_FORMATS:
        # webp captures come back blank when scripting is disabled
        raise ValueError(f"SCREENSHOT_FORMAT must be one of {SUPPORTED_SCREENSHOT_FORMATS}")
    render = RenderSettings(
        viewport_width=_int(cfg, "VIEWPORT_WIDTH", default=1920),
        viewport_height=_int(cfg, "VIEWPORT_HEIGHT", default=1080),
        device_scale_factor=cfg("RENDER_DEVICE_SCALE_FACTOR", cast=float, default=1.0),
        navigation_timeout_ms=_int(cfg, "RENDER_NAVIGATION_TIMEOUT_MS", default=30000),
        font_timeout_ms=_int(cfg, "RENDER_FONT_TIMEOUT_MS", default=5000),
        image_timeout_ms=_int(cfg, "RENDER_IMAGE_TIMEOUT_MS", default=3000),
        images_total_timeout_ms=_int(cfg, "RENDER_IMAGES_TOTAL_TIMEOUT_MS", default=10000),
        settle_ms=_int(cfg, "RENDER_SETTLE_MS", default=2000),
        screenshot_format=screenshot_format,
        screenshot_quality=_optional_int(cfg, "SCREENSHOT_QUALITY"),
    )

    compression = cfg("SNAPSHOT_COMPRESSION", default="zstd").strip().lower()
    if compression not in SUPPORTED_COMPRESSION:
        raise ValueError(f"SNAPSHOT_COMPRESSION must be one of {SUPPORTED_COMPRESSION}")
    storage = StorageSettings(
        db_path=Path(cfg("DATABASE_PATH", default="database/snapshots.db")),
        compression=compression,
        compression_level=_int(cfg, "SNAPSHOT_COMPRESSION_LEVEL", default=10),
    )

    pipeline = PipelineSettings(
        cleanup_after_screenshot=_bool(cfg, "CLEANUP_DOM_AFTER_SCREENSHOT", default=False),
    )
    telemetry = TelemetrySettings(
        prometheus_port=_int(cfg, "PROMETHEUS_PORT", default=0),
        log_level=cfg("LOG_LEVEL", default="INFO").upper(),
    )

    return Settings(
        env_path=env_path,
        queue=queue,
        worker=worker,
        browser=browser,
        render=render,
        storage=storage,
        pipeline=pipeline,
        telemetry=telemetry,
    )


@lru_cache(maxsize=1)
def get_settings(env_path: str = ".env") -> Settings:
    """Load and memoize structured settings for the current process."""

    return build_settings(load_config(env_path), env_path=env_path)
