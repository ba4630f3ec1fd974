"""
CRAWL — Playwright Page Fetcher & Browser Service
One shared Chromium process; each crawl type gets its own named session
(browser context + page) so crawls of different types never share a page.
"""

import asyncio
import logging
import re
from typing import Optional

from playwright.async_api import async_playwright, Page, Browser, BrowserContext
from playwright.async_api import Error as PlaywrightError

from .base import PageFetcher, FetchError

logger = logging.getLogger(__name__)


class PlaywrightFetcher(PageFetcher):
    """PageFetcher over a single Playwright page."""

    def __init__(self, page: Page, context: BrowserContext):
        self.page = page
        self.context = context

    async def navigate(self, url: str, timeout_ms: int):
        try:
            await self.page.goto(url, wait_until="networkidle", timeout=timeout_ms)
        except PlaywrightError as e:
            raise FetchError(f"Navigation to {url} failed: {e}") from e

    async def wait_for(self, selector: str, timeout_ms: int):
        try:
            await self.page.wait_for_selector(selector, timeout=timeout_ms)
        except PlaywrightError as e:
            raise FetchError(f"Timed out waiting for {selector!r}: {e}") from e

    async def is_present(self, selector: str) -> bool:
        try:
            return await self.page.locator(selector).count() > 0
        except PlaywrightError as e:
            raise FetchError(f"Could not query {selector!r}: {e}") from e

    async def click_matching(self, pattern: str, selector: str = "button", timeout_ms: int = 5000) -> int:
        try:
            matches = self.page.locator(selector).filter(has_text=re.compile(pattern, re.IGNORECASE))
            count = await matches.count()
            for i in range(count):
                await matches.nth(i).click(timeout=timeout_ms)
            return count
        except PlaywrightError as e:
            raise FetchError(f"Clicking {pattern!r} controls failed: {e}") from e

    async def content(self) -> str:
        try:
            return await self.page.content()
        except PlaywrightError as e:
            raise FetchError(f"Could not read page content: {e}") from e

    async def close(self):
        try:
            await self.context.close()
        except PlaywrightError as e:
            logger.debug(f"  [browser] Context already closed: {e}")


class CrawlerService:
    """
    Owns the Playwright driver and Chromium process.

    Sessions are opened lazily per crawl type name and recycled by the engine
    every `recycle_after` items. `close()` refuses to tear the browser down
    while the state store reports any crawl as running.
    """

    def __init__(self, headless: bool = True, profiles=None, state_store=None):
        self.headless = headless
        self.profiles = profiles
        self.state_store = state_store
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._sessions: dict = {}
        self._launch_lock = asyncio.Lock()
        self.sessions_opened = 0

    async def _ensure_browser(self) -> Browser:
        """One driver and one Chromium for all sessions, even when they open concurrently."""
        async with self._launch_lock:
            if self._browser is None or not self._browser.is_connected():
                if self._playwright is None:
                    self._playwright = await async_playwright().start()
                logger.info(f"  🌐 [browser] Launching Chromium (headless={self.headless})")
                self._browser = await self._playwright.chromium.launch(headless=self.headless)
            return self._browser

    async def open_session(self, name: str) -> PageFetcher:
        """Return the live session for `name`, creating one if needed."""
        existing = self._sessions.get(name)
        if existing is not None:
            return existing

        browser = await self._ensure_browser()
        context_kwargs = self.profiles.generate() if self.profiles else {}
        try:
            context = await browser.new_context(**context_kwargs)
            page = await context.new_page()
            if self.profiles:
                await self.profiles.apply_js_overrides(page)
        except PlaywrightError as e:
            raise FetchError(f"Could not open browser session {name!r}: {e}") from e

        fetcher = PlaywrightFetcher(page, context)
        self._sessions[name] = fetcher
        self.sessions_opened += 1
        logger.debug(f"  [browser] Opened session {name}")
        return fetcher

    async def close_session(self, name: str):
        fetcher = self._sessions.pop(name, None)
        if fetcher is not None:
            await fetcher.close()
            logger.debug(f"  [browser] Closed session {name}")

    async def recycle(self, name: str) -> PageFetcher:
        """Drop the session's context and page and open fresh ones."""
        await self.close_session(name)
        return await self.open_session(name)

    async def close(self) -> bool:
        """Shut the browser down unless a crawl is still running. Returns True if closed."""
        if self.state_store is not None and await self.state_store.any_running():
            logger.info("  [browser] Crawl in progress, keeping browser open")
            return False
        await self.force_close()
        return True

    async def force_close(self):
        """Close everything. In-flight navigations fail with FetchError."""
        for name in list(self._sessions):
            await self.close_session(name)
        if self._browser is not None:
            try:
                await self._browser.close()
            except PlaywrightError as e:
                logger.debug(f"  [browser] Browser already closed: {e}")
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
