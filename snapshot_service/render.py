"""Rebuild a captured page as a standalone document and screenshot it."""

from __future__ import annotations

import asyncio
import html as html_lib
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import pyvips
from bs4 import BeautifulSoup, Doctype
from playwright.async_api import Browser, BrowserContext, ElementHandle, Page

from .errors import EmptySnapshotError
from .schemas import ScreenshotMetadata, Viewport
from .settings import RenderSettings, SUPPORTED_SCREENSHOT_FORMATS

LOGGER = logging.getLogger(__name__)

RENDER_METHOD = "direct_html_load"

_WAIT_FOR_IMAGE_JS = """
img => img.complete || new Promise(resolve => {
    img.addEventListener('load', resolve, { once: true });
    img.addEventListener('error', resolve, { once: true });
})
"""


@dataclass(frozen=True, slots=True)
class RenderOptions:
    """Timeouts and output encoding for one render."""

    device_scale_factor: float = 1.0
    navigation_timeout_ms: int = 30_000
    font_timeout_ms: int = 5_000
    image_timeout_ms: int = 3_000
    images_total_timeout_ms: int = 10_000
    settle_ms: int = 2_000
    screenshot_format: str = "png"
    screenshot_quality: Optional[int] = None

    def __post_init__(self) -> None:
        if self.screenshot_format not in SUPPORTED_SCREENSHOT_FORMATS:
            raise ValueError(
                f"Unsupported screenshot format '{self.screenshot_format}'; "
                f"expected one of {', '.join(SUPPORTED_SCREENSHOT_FORMATS)}"
            )

    @classmethod
    def from_settings(cls, settings: RenderSettings) -> RenderOptions:
        return cls(
            device_scale_factor=settings.device_scale_factor,
            navigation_timeout_ms=settings.navigation_timeout_ms,
            font_timeout_ms=settings.font_timeout_ms,
            image_timeout_ms=settings.image_timeout_ms,
            images_total_timeout_ms=settings.images_total_timeout_ms,
            settle_ms=settings.settle_ms,
            screenshot_format=settings.screenshot_format,
            screenshot_quality=settings.screenshot_quality,
        )

    @property
    def effective_quality(self) -> int:
        if self.screenshot_format == "jpeg" and self.screenshot_quality is not None:
            return self.screenshot_quality
        return 100


@dataclass(slots=True)
class RenderResult:
    data: bytes
    metadata: ScreenshotMetadata
    duration_seconds: float


# ---------------------------------------------------------------- documents


def build_document(
    html: str | None,
    css: str | None,
    viewport: Viewport,
    *,
    snapshot_id: str | None = None,
) -> str:
    """Return a self-contained HTML document that lays out at ``viewport``.

    The original ``<head>`` content is kept, the captured stylesheet is
    injected after it, and the sizing rules come last so they win. Markup
    without usable structure is embedded as body content unchanged.
    """

    if html is None or not html.strip():
        raise EmptySnapshotError(snapshot_id)

    head_inner, body_markup, html_attrs = _split_document(html)
    width, height = viewport.width, viewport.height
    html_attr_text = _format_attrs(html_attrs)
    return "\n".join(
        [
            "<!DOCTYPE html>",
            f"<html{html_attr_text}>",
            "<head>",
            '<meta charset="UTF-8">',
            f'<meta name="viewport" content="width={width}, initial-scale=1.0">',
            head_inner,
            '<style type="text/css" data-snapshot-styles="captured">',
            css or "/* no captured styles */",
            "</style>",
            '<style type="text/css" data-snapshot-styles="viewport">',
            _viewport_rules(width, height),
            "</style>",
            "</head>",
            body_markup,
            "</html>",
        ]
    )


def _viewport_rules(width: int, height: int) -> str:
    return (
        "html {\n"
        f"    width: {width}px !important;\n"
        f"    min-height: {height}px !important;\n"
        "    margin: 0 !important;\n"
        "    padding: 0 !important;\n"
        "}\n"
        "body {\n"
        "    margin: 0 !important;\n"
        f"    min-width: {width}px !important;\n"
        f"    min-height: {height}px !important;\n"
        "}\n"
        "*, *::before, *::after {\n"
        "    box-sizing: border-box !important;\n"
        "}"
    )


def _split_document(markup: str) -> tuple[str, str, dict[str, Any]]:
    """Return ``(head inner html, body outer html, <html> attributes)``."""

    try:
        soup = BeautifulSoup(markup, "html.parser")
    except Exception as exc:
        LOGGER.warning("HTML parsing failed, rendering raw markup as body: %s", exc)
        return "", f"<body>{markup}</body>", {}

    head = soup.find("head")
    body = soup.find("body")
    if head is None and body is None:
        return "", f"<body>{markup}</body>", {}

    root = soup.find("html")
    html_attrs = dict(root.attrs) if root is not None else {}
    head_inner = head.decode_contents() if head is not None else ""
    if body is not None:
        return head_inner, str(body), html_attrs

    # head without body: everything outside <head> is page content
    head.extract()
    container = root if root is not None else soup
    leftovers = "".join(str(node) for node in container.contents if not isinstance(node, Doctype))
    return head_inner, f"<body>{leftovers.strip()}</body>", html_attrs


def _format_attrs(attrs: dict[str, Any]) -> str:
    parts = []
    for name, value in attrs.items():
        if isinstance(value, (list, tuple)):
            value = " ".join(value)
        parts.append(f'{name}="{html_lib.escape(str(value), quote=True)}"')
    return (" " + " ".join(parts)) if parts else ""


# ------------------------------------------------------------------- images


def read_image_size(data: bytes) -> tuple[int, int]:
    """Pixel dimensions of an encoded screenshot; only the header is decoded."""

    try:
        image = pyvips.Image.new_from_buffer(data, "", access="sequential")
    except pyvips.Error as exc:
        raise ValueError(f"Unreadable screenshot data: {exc}") from exc
    return image.width, image.height


# ----------------------------------------------------------------- renderer


class SnapshotRenderer:
    """Drive one leased browser through a single snapshot render."""

    def __init__(self, options: RenderOptions | None = None) -> None:
        self.options = options or RenderOptions()

    async def render(
        self,
        browser: Browser,
        *,
        snapshot_id: str,
        html: str | None,
        css: str | None,
        viewport: Viewport,
    ) -> RenderResult:
        document = build_document(html, css, viewport, snapshot_id=snapshot_id)
        options = self.options
        started = time.perf_counter()

        context = await browser.new_context(
            java_script_enabled=False,
            viewport={"width": viewport.width, "height": viewport.height},
            device_scale_factor=options.device_scale_factor,
        )
        try:
            page = await context.new_page()
            _attach_debug_listeners(page, snapshot_id)
            LOGGER.debug("Loading snapshot %s (%d chars)", snapshot_id, len(document))
            await page.set_content(
                document,
                wait_until="domcontentloaded",
                timeout=options.navigation_timeout_ms,
            )
            await self._wait_for_fonts(page, snapshot_id)
            await self._wait_for_images(page, snapshot_id)
            if options.settle_ms > 0:
                await asyncio.sleep(options.settle_ms / 1000)
            data = await page.screenshot(**self._screenshot_options())
        finally:
            await _close_context(context, snapshot_id)

        width, height = read_image_size(data)
        metadata = ScreenshotMetadata(
            format=options.screenshot_format,
            width=width,
            height=height,
            size=len(data),
            taken_at=datetime.now(timezone.utc),
            method=RENDER_METHOD,
            viewport_width=viewport.width,
            viewport_height=viewport.height,
            device_scale_factor=options.device_scale_factor,
            full_page=True,
            quality=options.effective_quality,
        )
        duration = time.perf_counter() - started
        LOGGER.info(
            "Rendered snapshot %s: %dx%d %s, %d bytes in %.2fs",
            snapshot_id,
            width,
            height,
            metadata.format,
            metadata.size,
            duration,
        )
        return RenderResult(data=data, metadata=metadata, duration_seconds=duration)

    def _screenshot_options(self) -> dict[str, Any]:
        options: dict[str, Any] = {
            "type": self.options.screenshot_format,
            "full_page": True,
            "omit_background": False,
        }
        if self.options.screenshot_format == "jpeg":
            options["quality"] = self.options.effective_quality
        return options

    async def _wait_for_fonts(self, page: Page, snapshot_id: str) -> None:
        try:
            await asyncio.wait_for(
                page.evaluate("() => document.fonts.ready.then(() => true)"),
                timeout=self.options.font_timeout_ms / 1000,
            )
        except Exception as exc:
            LOGGER.debug("Font wait for %s gave up: %s", snapshot_id, exc or type(exc).__name__)

    async def _wait_for_images(self, page: Page, snapshot_id: str) -> None:
        images = await page.query_selector_all("img")
        if not images:
            return
        per_image = self.options.image_timeout_ms / 1000
        tasks = [asyncio.create_task(_wait_for_image(image, per_image)) for image in images]
        _done, pending = await asyncio.wait(tasks, timeout=self.options.images_total_timeout_ms / 1000)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            LOGGER.debug(
                "Image wait for %s hit the overall deadline with %d/%d image(s) pending",
                snapshot_id,
                len(pending),
                len(tasks),
            )
        unsettled = sum(1 for task in tasks if not task.cancelled() and task.result() is False)
        if unsettled:
            LOGGER.debug("%d image(s) in %s did not settle in time", unsettled, snapshot_id)


async def _wait_for_image(image: ElementHandle, timeout: float) -> bool:
    try:
        await asyncio.wait_for(image.evaluate(_WAIT_FOR_IMAGE_JS), timeout=timeout)
    except Exception:
        return False
    return True


async def _close_context(context: BrowserContext, snapshot_id: str) -> None:
    try:
        await context.close()
    except Exception as exc:
        LOGGER.warning("Failed to close render context for %s: %s", snapshot_id, exc)


def _attach_debug_listeners(page: Page, snapshot_id: str) -> None:
    def _on_console(message: Any) -> None:
        if message.type == "error":
            LOGGER.debug("[%s] console error: %s", snapshot_id, message.text)

    page.on("console", _on_console)
    page.on("pageerror", lambda error: LOGGER.debug("[%s] page error: %s", snapshot_id, error))
    page.on(
        "requestfailed",
        lambda request: LOGGER.debug("[%s] request failed: %s %s", snapshot_id, request.url, request.failure),
    )
