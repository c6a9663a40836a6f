from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import pytest
import pyvips
from fakeredis import FakeAsyncRedis, FakeServer

from snapshot_service.browser_pool import BrowserPool, LaunchedBrowser
from snapshot_service.pipeline import SnapshotPipeline
from snapshot_service.queue import JobQueue, QueueConfig
from snapshot_service.render import RenderOptions, SnapshotRenderer
from snapshot_service.settings import DEFAULT_LAUNCH_ARGS, BrowserSettings, PipelineSettings
from snapshot_service.store import StorageConfig, Store


def png_bytes(width: int, height: int) -> bytes:
    return pyvips.Image.black(width, height, bands=3).write_to_buffer(".png")


def jpeg_bytes(width: int, height: int, quality: int = 90) -> bytes:
    return pyvips.Image.black(width, height, bands=3).write_to_buffer(".jpg", Q=quality)


def browser_settings(pool_size: int = 2, **overrides: Any) -> BrowserSettings:
    values: dict[str, Any] = {
        "pool_size": pool_size,
        "headless": True,
        "executable_path": None,
        "launch_args": DEFAULT_LAUNCH_ARGS,
        "health_check_timeout_ms": 200,
        "page_close_timeout_ms": 100,
        "browser_close_timeout_ms": 100,
    }
    values.update(overrides)
    return BrowserSettings(**values)


# ---------------------------------------------------------------- fake playwright


@dataclass
class RenderTracker:
    """Counts concurrently open render contexts across every fake browser."""

    active: int = 0
    max_active: int = 0
    documents: list[str] = field(default_factory=list)
    context_options: list[dict[str, Any]] = field(default_factory=list)
    screenshot_options: list[dict[str, Any]] = field(default_factory=list)

    def enter(self) -> None:
        self.active += 1
        self.max_active = max(self.max_active, self.active)

    def exit(self) -> None:
        self.active -= 1


class FakeImage:
    def __init__(self, behaviour: str) -> None:
        self.behaviour = behaviour

    async def evaluate(self, expression: str) -> bool:
        if self.behaviour == "hang":
            await asyncio.sleep(3600)
        return True


class FakePage:
    def __init__(self, context: FakeContext) -> None:
        self.context = context
        self.browser = context.browser
        self.handlers: dict[str, list[Callable[..., Any]]] = {}
        self.closed = False

    def on(self, event: str, handler: Callable[..., Any]) -> None:
        self.handlers.setdefault(event, []).append(handler)

    async def set_content(self, html: str, *, wait_until: str, timeout: int) -> None:
        self.browser.tracker.documents.append(html)
        if self.browser.render_delay:
            await asyncio.sleep(self.browser.render_delay)
        if self.browser.fail_with is not None:
            raise self.browser.fail_with

    async def evaluate(self, expression: str) -> bool:
        if self.browser.hang_fonts:
            await asyncio.sleep(3600)
        return True

    async def query_selector_all(self, selector: str) -> list[FakeImage]:
        return [FakeImage(behaviour) for behaviour in self.browser.images]

    async def screenshot(self, **options: Any) -> bytes:
        self.browser.tracker.screenshot_options.append(options)
        viewport = self.context.options["viewport"]
        scale = self.context.options.get("device_scale_factor", 1)
        width, height = int(viewport["width"] * scale), int(viewport["height"] * scale)
        if options.get("type") == "jpeg":
            return jpeg_bytes(width, height, options.get("quality", 90))
        return png_bytes(width, height)

    async def close(self) -> None:
        self.closed = True


class FakeContext:
    def __init__(self, browser: FakeBrowser, options: dict[str, Any]) -> None:
        self.browser = browser
        self.options = options
        self.pages: list[FakePage] = []
        self.closed = False

    async def new_page(self) -> FakePage:
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self.browser.tracker.exit()
        if self in self.browser.contexts:
            self.browser.contexts.remove(self)


class FakeCDPSession:
    def __init__(self, browser: FakeBrowser) -> None:
        self.browser = browser

    async def send(self, method: str) -> dict[str, str]:
        if self.browser.hang_health:
            await asyncio.sleep(3600)
        return {"product": "HeadlessChrome/130.0"}

    async def detach(self) -> None:
        return None


class FakeBrowser:
    def __init__(self, tracker: RenderTracker) -> None:
        self.tracker = tracker
        self.contexts: list[FakeContext] = []
        self.connected = True
        self.closed = False
        self.hang_on_close = False
        self.hang_health = False
        self.hang_fonts = False
        self.render_delay = 0.0
        self.fail_with: BaseException | None = None
        self.images: tuple[str, ...] = ()

    def is_connected(self) -> bool:
        return self.connected

    async def new_browser_cdp_session(self) -> FakeCDPSession:
        if not self.connected:
            raise RuntimeError("Target page, context or browser has been closed")
        return FakeCDPSession(self)

    async def new_context(self, **options: Any) -> FakeContext:
        self.tracker.context_options.append(options)
        self.tracker.enter()
        context = FakeContext(self, options)
        self.contexts.append(context)
        return context

    async def close(self) -> None:
        if self.hang_on_close:
            await asyncio.sleep(3600)
        self.closed = True
        self.connected = False


class FakeDriver:
    def __init__(self) -> None:
        self.stopped = False

    async def stop(self) -> None:
        self.stopped = True


class FakeLauncher:
    """Stands in for ``launch_chromium``; every browser shares one tracker."""

    def __init__(self) -> None:
        self.tracker = RenderTracker()
        self.launched: list[tuple[FakeBrowser, FakeDriver]] = []
        self.fail_on_launch: int | None = None
        self.configure: Callable[[FakeBrowser], None] | None = None

    @property
    def browsers(self) -> list[FakeBrowser]:
        return [browser for browser, _ in self.launched]

    async def __call__(self, settings: BrowserSettings) -> LaunchedBrowser:
        if self.fail_on_launch is not None and len(self.launched) >= self.fail_on_launch:
            raise RuntimeError("Failed to launch browser process")
        browser = FakeBrowser(self.tracker)
        if self.configure is not None:
            self.configure(browser)
        driver = FakeDriver()
        self.launched.append((browser, driver))
        return LaunchedBrowser(browser=browser, driver=driver)  # type: ignore[arg-type]


# ------------------------------------------------------------------- fixtures


@pytest.fixture
def store(tmp_path: Path) -> Store:
    return Store(StorageConfig(db_path=tmp_path / "snapshots.db"))


@pytest.fixture
async def redis():
    client = FakeAsyncRedis(server=FakeServer())
    yield client
    await client.aclose()


@pytest.fixture
def queue(redis) -> JobQueue:
    return JobQueue(QueueConfig(backoff_ms=1), redis=redis)


@pytest.fixture
def launcher() -> FakeLauncher:
    return FakeLauncher()


@pytest.fixture
def fast_render_options() -> RenderOptions:
    return RenderOptions(
        navigation_timeout_ms=1_000,
        font_timeout_ms=50,
        image_timeout_ms=50,
        images_total_timeout_ms=100,
        settle_ms=0,
    )


@pytest.fixture
def make_pipeline(store: Store, queue: JobQueue, launcher: FakeLauncher, fast_render_options: RenderOptions):
    def factory(
        *,
        pool_size: int = 1,
        cleanup: bool = False,
        renderer: SnapshotRenderer | None = None,
    ) -> SnapshotPipeline:
        pool = BrowserPool(browser_settings(pool_size), launcher=launcher)
        return SnapshotPipeline(
            store=store,
            queue=queue,
            pool=pool,
            renderer=renderer or SnapshotRenderer(fast_render_options),
            settings=PipelineSettings(cleanup_after_screenshot=cleanup),
        )

    return factory
