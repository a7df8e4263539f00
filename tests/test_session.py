# tests/test_session.py
"""
Error translation of ``BrowserSessionManager`` with mocked Playwright
objects; no browser is launched.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from core.exceptions import (
    ExtractionTimeout,
    InteractionError,
    NavigationError,
    SessionCrash,
)
from services.browser.session import BrowserSessionManager, SessionHandle

TABLE_HTML = """
<table class="list">
  <tr><td style="font-weight:bold">561</td><td>ETİMESGUT - KIZILAY</td></tr>
  <tr><td colspan="2"><b style="color:red">Tahmini Varış Süresi: 4 dk</b></td></tr>
</table>
"""


def _handle(connected=True):
    browser = MagicMock()
    browser.is_connected.return_value = connected
    browser.close = AsyncMock()
    context = MagicMock()
    context.close = AsyncMock()
    page = MagicMock()
    page.goto = AsyncMock()
    page.reload = AsyncMock()
    page.wait_for_selector = AsyncMock()
    page.click = AsyncMock()
    page.content = AsyncMock(return_value=TABLE_HTML)
    playwright = MagicMock()
    playwright.stop = AsyncMock()
    return SessionHandle("bus-1", playwright, browser, context, page)


@pytest.fixture
def manager(fast_settings):
    return BrowserSessionManager(fast_settings)


@pytest.mark.asyncio
async def test_navigation_timeout_maps_to_navigation_error(manager):
    handle = _handle()
    handle.page.goto.side_effect = PlaywrightTimeoutError("Timeout 30000ms exceeded")

    with pytest.raises(NavigationError):
        await manager.navigate(handle, "https://example.invalid", timeout=30)


@pytest.mark.asyncio
async def test_missing_control_maps_to_interaction_error(manager):
    handle = _handle()
    handle.page.wait_for_selector.side_effect = PlaywrightTimeoutError("Timeout 10000ms exceeded")

    with pytest.raises(InteractionError):
        await manager.interact(handle, timeout=10)
    handle.page.click.assert_not_called()


@pytest.mark.asyncio
async def test_missing_table_maps_to_extraction_timeout(manager):
    handle = _handle()
    handle.page.wait_for_selector.side_effect = PlaywrightTimeoutError("Timeout 15000ms exceeded")

    with pytest.raises(ExtractionTimeout):
        await manager.extract(handle, timeout=15)


@pytest.mark.asyncio
async def test_browser_dying_mid_call_is_a_crash(manager):
    handle = _handle()

    async def die(*args, **kwargs):
        handle.browser.is_connected.return_value = False
        raise PlaywrightError("Target page, context or browser has been closed")

    handle.page.goto.side_effect = die

    with pytest.raises(SessionCrash):
        await manager.navigate(handle, "https://example.invalid", timeout=30)


@pytest.mark.asyncio
async def test_calls_on_a_dead_browser_fail_fast(manager):
    handle = _handle(connected=False)

    with pytest.raises(SessionCrash):
        await manager.reload(handle, timeout=30)
    handle.page.reload.assert_not_called()


@pytest.mark.asyncio
async def test_extract_parses_the_table(manager):
    handle = _handle()

    rows = await manager.extract(handle, timeout=15)

    assert [(r.line, r.time) for r in rows] == [("561", "4 dk")]


@pytest.mark.asyncio
async def test_close_is_idempotent_and_tolerant(manager):
    handle = _handle()
    handle.browser.close.side_effect = PlaywrightError("Browser has been closed")

    await manager.close(handle)
    await manager.close(handle)

    assert handle.closed
    assert not manager.is_alive(handle)
    handle.context.close.assert_awaited_once()
    handle.playwright.stop.assert_awaited_once()


@pytest.mark.asyncio
async def test_failed_launch_becomes_session_crash(fast_settings):
    fast_settings.BROWSER_LAUNCH_ATTEMPTS = 1
    manager = BrowserSessionManager(fast_settings)

    with patch.object(
        manager, "_launch", AsyncMock(side_effect=PlaywrightError("Executable doesn't exist"))
    ):
        with pytest.raises(SessionCrash):
            await manager.open("bus-1")
