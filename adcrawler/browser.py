"""
Browser Surface
===============
The narrow set of browser operations the crawl engine needs, behind an
abstract base so the pagination logic can run against an in-memory fake.

``PlaywrightSurface`` is the real implementation: one Chromium instance,
one context (optionally carrying saved session cookies), one page.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

from playwright.async_api import async_playwright, Browser, BrowserContext, Page, Playwright
from playwright.async_api import TimeoutError as PlaywrightTimeout

from .auth.session_store import SessionStore
from .run_config import CrawlerRunConfig

logger = logging.getLogger(__name__)

# callback(url, status, body)
ResponseCallback = Callable[[str, int, str], Union[None, Awaitable[None]]]


class BrowserSurface(ABC):
    """Operations the crawl engine performs against a rendered page."""

    async def open(self) -> None:
        """Acquire browser resources. Default: nothing to do."""

    @abstractmethod
    async def navigate(self, url: str) -> None: ...

    @abstractmethod
    def on_response(self, callback: ResponseCallback, url_filter: str) -> None:
        """Invoke ``callback`` for every response whose URL contains ``url_filter``."""

    @abstractmethod
    async def evaluate(self, script: str) -> Any: ...

    @abstractmethod
    async def content(self) -> str:
        """Serialized HTML of the current DOM."""

    @abstractmethod
    async def locate_and_click(self, selectors: Sequence[str]) -> bool:
        """Click the first visible match among ``selectors``."""

    @abstractmethod
    async def wait_for_selector(self, selector: str, timeout_ms: int) -> bool: ...

    @abstractmethod
    async def scroll_to_bottom(self) -> None: ...

    @abstractmethod
    async def reload(self) -> None: ...

    @abstractmethod
    async def close(self) -> None: ...


class PlaywrightSurface(BrowserSurface):
    """Chromium via ``playwright.async_api``."""

    def __init__(self, config: CrawlerRunConfig, session_store: Optional[SessionStore] = None):
        self.config = config
        self._session_store = session_store
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    @property
    def page(self) -> Page:
        if self._page is None:
            raise RuntimeError("PlaywrightSurface.open() has not been called")
        return self._page

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def open(self) -> None:
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.config.headless,
            args=list(self.config.launch_args),
        )
        width, height = self.config.viewport
        ctx_kwargs = dict(
            user_agent=self.config.user_agent,
            viewport={'width': width, 'height': height},
            locale=self.config.locale,
            timezone_id=self.config.timezone_id,
        )

        has_auth = False
        if self._session_store:
            self._context = await self._session_store.get_authenticated_context(
                self._browser, **ctx_kwargs
            )
            has_auth = self._session_store.authenticated
        else:
            self._context = await self._browser.new_context(**ctx_kwargs)

        self._page = await self._context.new_page()
        auth_label = " + AUTH" if has_auth else ""
        logger.info(f"[BROWSER] Playwright Chromium initialized{auth_label}")

    async def close(self) -> None:
        """Close page, context, browser and Playwright; each step best-effort."""
        for name, closer in (
            ("page", self._page.close if self._page else None),
            ("context", self._context.close if self._context else None),
            ("browser", self._browser.close if self._browser else None),
            ("playwright", self._playwright.stop if self._playwright else None),
        ):
            if closer is None:
                continue
            try:
                await closer()
            except Exception as e:
                logger.debug(f"[BROWSER] Error closing {name}: {e}")
        self._page = None
        self._context = None
        self._browser = None
        self._playwright = None
        logger.info("[BROWSER] Closed")

    # ------------------------------------------------------------------
    # Surface operations
    # ------------------------------------------------------------------

    async def navigate(self, url: str) -> None:
        await self.page.goto(
            url, wait_until="domcontentloaded",
            timeout=self.config.navigation_timeout_ms,
        )

    def on_response(self, callback: ResponseCallback, url_filter: str) -> None:
        async def _on_response(resp):
            if url_filter not in resp.url:
                return
            try:
                body = await resp.text()
            except Exception as e:
                # Redirects and aborted requests have no body
                logger.debug(f"[BROWSER] Unreadable response body from {resp.url}: {e}")
                return
            result = callback(resp.url, resp.status, body)
            if asyncio.iscoroutine(result):
                await result

        self.page.on("response", _on_response)

    async def evaluate(self, script: str) -> Any:
        return await self.page.evaluate(script)

    async def content(self) -> str:
        return await self.page.content()

    async def locate_and_click(self, selectors: Sequence[str]) -> bool:
        for selector in selectors:
            try:
                btn = self.page.locator(selector).first
                if await btn.is_visible():
                    await btn.click(timeout=self.config.click_timeout_ms)
                    logger.debug(f"[BROWSER] Clicked: {selector}")
                    return True
            except PlaywrightTimeout:
                continue
        return False

    async def wait_for_selector(self, selector: str, timeout_ms: int) -> bool:
        try:
            await self.page.wait_for_selector(selector, timeout=timeout_ms)
            return True
        except PlaywrightTimeout:
            return False

    async def scroll_to_bottom(self) -> None:
        await self.page.evaluate("window.scrollTo(0, document.body.scrollHeight)")

    async def reload(self) -> None:
        await self.page.reload(
            wait_until="domcontentloaded",
            timeout=self.config.navigation_timeout_ms,
        )
