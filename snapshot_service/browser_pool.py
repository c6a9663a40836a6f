"""Fixed-size pool of headless Chromium processes with exclusive leases."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from playwright.async_api import Browser, Playwright, async_playwright

from . import metrics
from .errors import PoolExhaustedError, PoolNotInitializedError
from .schemas import PoolStats
from .settings import BrowserSettings

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class LaunchedBrowser:
    """A browser plus the Playwright driver that owns its process (if any)."""

    browser: Browser
    driver: Optional[Playwright] = None


Launcher = Callable[[BrowserSettings], Awaitable[LaunchedBrowser]]


@dataclass(slots=True)
class BrowserSlot:
    """One pool entry; ``id`` survives replacement of the underlying browser."""

    id: str
    browser: Browser
    driver: Optional[Playwright] = None
    in_use: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


async def launch_chromium(settings: BrowserSettings) -> LaunchedBrowser:
    """Start a dedicated Playwright driver and launch Chromium on it.

    One driver per slot means stopping the driver is a reliable way to kill a
    browser that refuses to close.
    """

    driver = await async_playwright().start()
    try:
        options: dict[str, Any] = {
            "headless": settings.headless,
            "args": list(settings.launch_args),
        }
        if settings.executable_path:
            options["executable_path"] = settings.executable_path
        browser = await driver.chromium.launch(**options)
    except BaseException:
        await driver.stop()
        raise
    return LaunchedBrowser(browser=browser, driver=driver)


class BrowserPool:
    """Hand out exclusive access to long-lived browser processes.

    ``acquire`` never waits: if every slot is leased it raises
    :class:`PoolExhaustedError`, so consumer concurrency must stay at or below
    ``pool_size``.
    """

    def __init__(self, settings: BrowserSettings, *, launcher: Launcher | None = None) -> None:
        self.settings = settings
        self.pool_size = settings.pool_size
        self._launcher = launcher or launch_chromium
        self._slots: list[BrowserSlot] = []
        self._lock = asyncio.Lock()
        self._initialized = False
        self._closed = False

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def slots(self) -> tuple[BrowserSlot, ...]:
        return tuple(self._slots)

    async def initialize(self) -> None:
        async with self._lock:
            await self._initialize_locked()

    async def _initialize_locked(self) -> None:
        if self._initialized:
            return
        if self._closed:
            raise PoolNotInitializedError("Browser pool has been shut down")
        slots: list[BrowserSlot] = []
        try:
            for index in range(self.pool_size):
                launched = await self._launcher(self.settings)
                slots.append(BrowserSlot(id=f"browser_{index}", browser=launched.browser, driver=launched.driver))
        except BaseException:
            LOGGER.error("Failed to initialize browser pool; closing %d started browser(s)", len(slots))
            await asyncio.gather(*(self._close_slot(slot) for slot in slots), return_exceptions=True)
            raise
        self._slots = slots
        self._initialized = True
        LOGGER.info("Browser pool initialized (%d browsers)", self.pool_size)

    async def acquire(self) -> BrowserSlot:
        """Lease the first idle slot, replacing its browser first if it is unhealthy."""

        async with self._lock:
            if not self._initialized:
                await self._initialize_locked()
            slot = next((candidate for candidate in self._slots if not candidate.in_use), None)
            if slot is None:
                raise PoolExhaustedError("No available browsers in pool. All browsers are busy.")
            slot.in_use = True
            metrics.set_pool_busy(self._busy_count())

        try:
            if not await self._check_health(slot):
                LOGGER.warning("Browser %s is unhealthy, replacing...", slot.id)
                await self._replace(slot)
        except BaseException:
            self._mark_released(slot)
            raise

        LOGGER.debug("Browser %s acquired", slot.id)
        return slot

    def release(self, slot: BrowserSlot) -> None:
        if self._mark_released(slot):
            LOGGER.debug("Browser %s released", slot.id)

    def _mark_released(self, slot: BrowserSlot) -> bool:
        current = next((candidate for candidate in self._slots if candidate.id == slot.id), None)
        if current is None or not current.in_use:
            return False
        current.in_use = False
        metrics.set_pool_busy(self._busy_count())
        return True

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[BrowserSlot]:
        """``async with pool.lease() as slot:`` guarantees the slot is released."""

        slot = await self.acquire()
        try:
            yield slot
        finally:
            self.release(slot)

    async def _check_health(self, slot: BrowserSlot) -> bool:
        browser = slot.browser
        try:
            if not browser.is_connected():
                return False
            await asyncio.wait_for(self._probe(browser), timeout=self.settings.health_check_timeout_ms / 1000)
        except Exception as exc:
            LOGGER.warning("Browser health check failed for %s: %s", slot.id, exc)
            return False
        return True

    @staticmethod
    async def _probe(browser: Browser) -> None:
        session = await browser.new_browser_cdp_session()
        try:
            await session.send("Browser.getVersion")
        finally:
            await session.detach()

    async def _replace(self, slot: BrowserSlot) -> None:
        LOGGER.info("Replacing unhealthy browser %s...", slot.id)
        await self._close_slot(slot)
        launched = await self._launcher(self.settings)
        slot.browser = launched.browser
        slot.driver = launched.driver
        slot.created_at = datetime.now(timezone.utc)
        LOGGER.info("Browser %s replaced successfully", slot.id)

    async def _close_slot(self, slot: BrowserSlot) -> None:
        """Close pages, then the browser; stop the driver if graceful close stalls."""

        browser = slot.browser
        LOGGER.debug("Closing browser %s...", slot.id)
        page_timeout = self.settings.page_close_timeout_ms / 1000
        pages = [page for context in browser.contexts for page in context.pages]
        if pages:
            results = await asyncio.gather(
                *(asyncio.wait_for(page.close(), timeout=page_timeout) for page in pages),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    LOGGER.warning("Failed to close page in %s: %s", slot.id, result or type(result).__name__)

        try:
            await asyncio.wait_for(browser.close(), timeout=self.settings.browser_close_timeout_ms / 1000)
        except Exception as exc:
            LOGGER.warning("Failed to close browser %s gracefully: %s", slot.id, exc or type(exc).__name__)
            await self._force_kill(slot)
            return

        if slot.driver is not None:
            try:
                await asyncio.wait_for(slot.driver.stop(), timeout=self.settings.browser_close_timeout_ms / 1000)
            except Exception as exc:
                LOGGER.warning("Playwright driver for %s did not stop cleanly: %s", slot.id, exc)
        LOGGER.debug("Browser %s closed successfully", slot.id)

    async def _force_kill(self, slot: BrowserSlot) -> None:
        if slot.driver is None:
            LOGGER.error("Browser %s has no driver to stop; process may be orphaned", slot.id)
            return
        LOGGER.warning("Force killing browser process for %s", slot.id)
        try:
            await asyncio.wait_for(slot.driver.stop(), timeout=self.settings.browser_close_timeout_ms / 1000)
        except Exception as exc:
            LOGGER.error("Failed to force kill browser %s: %s", slot.id, exc or type(exc).__name__)

    async def shutdown(self) -> None:
        """Best-effort teardown of every slot; per-slot failures are logged, not raised."""

        LOGGER.info("Shutting down browser pool (%d browsers, %d busy)", len(self._slots), self._busy_count())
        async with self._lock:
            for slot in self._slots:
                if slot.in_use:
                    LOGGER.warning("Forcing release of busy browser: %s", slot.id)
                    slot.in_use = False
            results = await asyncio.gather(
                *(self._close_slot(slot) for slot in self._slots),
                return_exceptions=True,
            )
            for slot, result in zip(self._slots, results):
                if isinstance(result, BaseException):
                    LOGGER.error("Error closing browser %s: %s", slot.id, result)
            self._slots = []
            self._initialized = False
            self._closed = True
        metrics.set_pool_busy(0)
        LOGGER.info("Browser pool shutdown complete")

    def _busy_count(self) -> int:
        return sum(1 for slot in self._slots if slot.in_use)

    def get_stats(self) -> PoolStats:
        busy = self._busy_count()
        return PoolStats(
            total_slots=len(self._slots),
            busy_slots=busy,
            available_slots=len(self._slots) - busy,
            is_initialized=self._initialized,
        )
