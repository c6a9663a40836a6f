"""Renders against a real headless Chromium; skipped where Playwright browsers are not installed."""

from __future__ import annotations

import pytest
from playwright.async_api import Error as PlaywrightError

from conftest import browser_settings
from snapshot_service.browser_pool import BrowserPool, launch_chromium
from snapshot_service.render import RenderOptions, SnapshotRenderer, read_image_size
from snapshot_service.schemas import Viewport

pytestmark = pytest.mark.integration

TALL_PAGE = """
<html>
  <head><title>Tall</title></head>
  <body>
    <div class="tall">archived</div>
    <script>document.querySelector('.tall').style.height = '10px';</script>
  </body>
</html>
"""


@pytest.fixture
async def chromium():
    try:
        launched = await launch_chromium(browser_settings(pool_size=1))
    except PlaywrightError as exc:
        pytest.skip(f"Chromium unavailable: {exc}")
    yield launched.browser
    await launched.browser.close()
    await launched.driver.stop()


@pytest.mark.asyncio
async def test_full_page_render_ignores_page_scripts(chromium):
    renderer = SnapshotRenderer(RenderOptions(settle_ms=0))

    result = await renderer.render(
        chromium,
        snapshot_id="snapshot_integration",
        html=TALL_PAGE,
        css=".tall { height: 3000px; background: #336699; }",
        viewport=Viewport(width=800, height=600),
    )

    assert result.metadata.format == "png"
    assert read_image_size(result.data) == (800, result.metadata.height)
    assert result.metadata.width == 800
    assert result.metadata.height >= 3000


@pytest.mark.asyncio
async def test_pool_health_probe_against_real_browser():
    pool = BrowserPool(browser_settings(pool_size=1, health_check_timeout_ms=5000))
    try:
        await pool.initialize()
    except PlaywrightError as exc:
        pytest.skip(f"Chromium unavailable: {exc}")
    try:
        async with pool.lease() as slot:
            assert slot.browser.is_connected()
        assert pool.get_stats().busy_slots == 0
    finally:
        await pool.shutdown()
