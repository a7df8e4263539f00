# services/browser/session.py
"""
Browser Session Manager.

One Playwright driver + Chromium process per target.  That costs a full
browser per tracked line, but a crash or a wedged page in one target can
never leak into another target's session.
"""

import asyncio
from contextlib import contextmanager
from typing import Iterator, List, Optional, Type

from loguru import logger
from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import Settings, get_settings
from core.exceptions import (
    ExtractionTimeout,
    InteractionError,
    NavigationError,
    ScraperException,
    SessionCrash,
)
from models.scrape_result import ArrivalRow

from .markup import DEFAULT_MARKUP, PageMarkup, parse_arrival_rows

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

HARDENING_SCRIPT = """
Object.defineProperty(navigator, 'webdriver', {get: () => undefined});
Object.defineProperty(navigator, 'plugins', {get: () => [1,2,3,4,5]});
Object.defineProperty(navigator, 'languages', {get: () => ['tr-TR','tr','en-US','en']});
window.chrome = {runtime: {}};
"""


class SessionHandle:
    """
    Wraps the Playwright objects owned by one scrape loop.
    Only the session manager touches the wrapped objects.
    """

    def __init__(
        self,
        target_id: str,
        playwright: Playwright,
        browser: Browser,
        context: BrowserContext,
        page: Page,
    ):
        self.target_id = target_id
        self.playwright = playwright
        self.browser = browser
        self.context = context
        self.page = page
        self.closed = False

    def is_alive(self) -> bool:
        if self.closed:
            return False
        try:
            return self.browser.is_connected()
        except Exception:  # pylint: disable=broad-except
            return False

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<SessionHandle {self.target_id} {state}>"


class BrowserSessionManager:
    """Launches, drives and closes per-target browser sessions."""

    def __init__(self, settings: Optional[Settings] = None, markup: Optional[PageMarkup] = None):
        self._settings = settings or get_settings()
        self._markup = markup or DEFAULT_MARKUP

    # ------------------------------------------------------------------
    # Error translation
    # ------------------------------------------------------------------
    @contextmanager
    def _translate(
        self,
        handle: SessionHandle,
        error_cls: Type[ScraperException],
        what: str,
    ) -> Iterator[None]:
        """Map Playwright failures onto the service's error taxonomy."""
        if not handle.is_alive():
            raise SessionCrash(f"[{handle.target_id}] browser is not running ({what})")
        try:
            yield
        except PlaywrightTimeoutError as exc:
            raise error_cls(f"[{handle.target_id}] timed out: {what}") from exc
        except PlaywrightError as exc:
            if not handle.is_alive():
                raise SessionCrash(f"[{handle.target_id}] browser died during {what}") from exc
            raise error_cls(f"[{handle.target_id}] {what} failed: {exc.message}") from exc

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def _launch(self, target_id: str) -> SessionHandle:
        """Start a fresh Playwright driver and Chromium instance."""
        playwright = await async_playwright().start()
        try:
            browser = await playwright.chromium.launch(
                headless=self._settings.HEADLESS,
                args=list(self._settings.BROWSER_ARGS),
            )
            context = await browser.new_context(
                viewport={"width": 1280, "height": 1024},
                user_agent=USER_AGENT,
                locale="tr-TR",
                ignore_https_errors=True,
                java_script_enabled=True,
            )
            await context.add_init_script(HARDENING_SCRIPT)
            page = await context.new_page()
        except BaseException:
            await playwright.stop()
            raise
        return SessionHandle(target_id, playwright, browser, context, page)

    async def open(self, target_id: str) -> SessionHandle:
        """
        Launch an isolated browser for ``target_id``.

        Raises
        ------
        SessionCrash
            If the browser could not be launched after the configured
            number of attempts.
        """
        logger.info(f"[{target_id}] Launching browser")
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(max(1, self._settings.BROWSER_LAUNCH_ATTEMPTS)),
                wait=wait_exponential(multiplier=1, min=1, max=4),
                retry=retry_if_exception_type(PlaywrightError),
                reraise=True,
            ):
                with attempt:
                    handle = await self._launch(target_id)
        except PlaywrightError as exc:
            raise SessionCrash(f"[{target_id}] browser launch failed: {exc.message}") from exc
        logger.debug(f"[{target_id}] Browser ready")
        return handle

    async def close(self, handle: Optional[SessionHandle]) -> None:
        """Release a session. Safe to call twice or on a dead browser."""
        if handle is None or handle.closed:
            return
        handle.closed = True
        for closer, label in (
            (handle.context.close, "context"),
            (handle.browser.close, "browser"),
            (handle.playwright.stop, "driver"),
        ):
            try:
                await closer()
            except Exception as exc:  # pylint: disable=broad-except
                logger.debug(f"[{handle.target_id}] Ignoring error while closing {label}: {exc}")
        logger.info(f"[{handle.target_id}] Browser closed")

    def is_alive(self, handle: Optional[SessionHandle]) -> bool:
        return handle is not None and handle.is_alive()

    # ------------------------------------------------------------------
    # Page primitives
    # ------------------------------------------------------------------
    async def navigate(self, handle: SessionHandle, locator: str, timeout: float) -> None:
        logger.debug(f"[{handle.target_id}] Navigating to {locator}")
        with self._translate(handle, NavigationError, f"loading {locator}"):
            await handle.page.goto(locator, wait_until="networkidle", timeout=timeout * 1000)

    async def reload(self, handle: SessionHandle, timeout: float) -> None:
        logger.debug(f"[{handle.target_id}] Reloading page")
        with self._translate(handle, NavigationError, "page reload"):
            await handle.page.reload(wait_until="networkidle", timeout=timeout * 1000)

    async def interact(self, handle: SessionHandle, timeout: float) -> None:
        """Click the control that asks the site for fresh estimates."""
        selector = self._markup.control_selector
        with self._translate(handle, InteractionError, f"waiting for {selector}"):
            await handle.page.wait_for_selector(selector, state="visible", timeout=timeout * 1000)
            await handle.page.click(selector, timeout=timeout * 1000)

    async def extract(
        self, handle: SessionHandle, timeout: float, settle_delay: float = 0.0
    ) -> List[ArrivalRow]:
        """
        Wait for the result table, let it fill, then parse it.

        Raises
        ------
        ExtractionTimeout
            If the table never appeared.  A table without rows is not an
            error and yields an empty list.
        """
        selector = self._markup.table_selector
        with self._translate(handle, ExtractionTimeout, f"waiting for {selector}"):
            await handle.page.wait_for_selector(selector, timeout=timeout * 1000)
        if settle_delay > 0:
            await asyncio.sleep(settle_delay)
        with self._translate(handle, ExtractionTimeout, "reading page content"):
            html = await handle.page.content()
        return parse_arrival_rows(html, self._markup)
