"""
Browser engine.

Renders JavaScript-heavy listing pages in headless Chromium (playwright)
and hands the rendered DOM to the same selector extraction as the
static engine.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional

from playwright.async_api import Browser, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from grants_engine.config.settings import EngineConfig
from grants_engine.core.clock import Clock
from grants_engine.core.models import RawRecord, Source
from grants_engine.errors import FetchError

from .base import FetchEngine

LAUNCH_ARGS = [
    "--disable-blink-features=AutomationControlled",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--no-sandbox",
    "--disable-setuid-sandbox",
]

BrowserFactory = Callable[[], Awaitable[Any]]


class BrowserEngine(FetchEngine):
    """
    Engine for pages rendered client-side.

    One Chromium instance is shared; each fetch gets its own context so
    cookies and headers never leak between sources.

    Usage:
        async with BrowserEngine(config) as engine:
            result = await engine.fetch(source)
    """

    name = "browser"

    def __init__(
        self,
        config: EngineConfig,
        clock: Optional[Clock] = None,
        browser_factory: Optional[BrowserFactory] = None,
    ):
        """
        Initialize browser engine.

        Args:
            config: Engine configuration
            clock: Time source for durations
            browser_factory: Coroutine returning a launched browser
                             (defaults to playwright Chromium)
        """
        super().__init__(config, clock)
        self.browser_factory = browser_factory or self._launch_chromium
        self._playwright = None
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    async def _launch_chromium(self) -> Browser:
        if self._playwright is None:
            self._playwright = await async_playwright().start()

        launch_options: dict = {
            "headless": self.config.browser.headless,
            "args": LAUNCH_ARGS,
        }
        if self.config.proxy.enabled:
            launch_options["proxy"] = {"server": self.config.proxy.url}

        return await self._playwright.chromium.launch(**launch_options)

    async def start(self) -> None:
        """Launch the shared browser, replacing one that crashed or disconnected."""
        async with self._lock:
            if self._browser is not None and not self._browser.is_connected():
                self.logger.warning("browser_disconnected")
                self._browser = None
            if self._browser is None:
                self._browser = await self.browser_factory()
                self.logger.info("browser_started", headless=self.config.browser.headless)

    async def close(self) -> None:
        async with self._lock:
            if self._browser is not None:
                await self._browser.close()
                self._browser = None
            if self._playwright is not None:
                await self._playwright.stop()
                self._playwright = None

    async def _fetch(self, source: Source) -> list[RawRecord]:
        try:
            await self.start()
            html, url = await self._render(source)
        except PlaywrightTimeoutError as e:
            raise FetchError(f"Timeout loading {source.url}", url=source.url, kind="timeout") from e
        except PlaywrightError as e:
            raise FetchError(
                f"Rendering {source.url} failed: {e}", url=source.url, kind="browser"
            ) from e

        return self.parse(html, source, url)

    async def _render(self, source: Source) -> tuple[str, str]:
        """Load the page in a fresh context and return its DOM and final URL."""
        timeout = self.config.browser.timeout
        context = await self._browser.new_context(
            user_agent=self.config.static.user_agent,
            extra_http_headers=self.request_headers(source),
        )

        try:
            page = await context.new_page()
            self.logger.debug("page_goto", source_id=source.id, url=source.url)

            response = await page.goto(source.url, wait_until="domcontentloaded", timeout=timeout)
            if response is not None and not response.ok:
                raise FetchError(
                    f"HTTP {response.status} from {source.url}",
                    url=source.url,
                    status_code=response.status,
                    kind="http",
                )

            if source.selectors.wait_for:
                try:
                    await page.wait_for_selector(source.selectors.wait_for, timeout=timeout)
                except PlaywrightTimeoutError:
                    # Parse whatever rendered; an empty result becomes a ParseError
                    self.logger.warning(
                        "wait_for_timeout",
                        source_id=source.id,
                        selector=source.selectors.wait_for,
                    )

            return await page.content(), page.url or source.url
        finally:
            try:
                await context.close()
            except PlaywrightError as e:
                self.logger.warning("context_close_failed", source_id=source.id, error=str(e))
