from typing import Any, Awaitable, Callable, Dict, List, Optional
import asyncio
from contextlib import asynccontextmanager
from loguru import logger
from playwright.async_api import Browser, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from prometheus_client import Counter
from tenacity import AsyncRetrying, RetryError, stop_after_attempt, wait_fixed

from core.exceptions import BrowserUnavailable
from models.request import ProxyCredentials

BROWSER_LAUNCH_TOTAL = Counter('browser_launch_total', 'Total number of browser launches')
BROWSER_LAUNCH_FAILURES = Counter('browser_launch_failures_total', 'Browser launches that exhausted their retries')
BROWSER_DISCONNECTS = Counter('browser_disconnects_total', 'Times the shared browser disconnected')

class PlaywrightLauncher:
    """Starts the Playwright driver once and launches Chromium on demand"""

    LAUNCH_ARGS: List[str] = [
        '--disable-blink-features=AutomationControlled',
        '--no-sandbox',
        '--disable-dev-shm-usage',
    ]

    def __init__(self, headless: bool = False, executable_path: Optional[str] = None,
                 channel: Optional[str] = None, proxy_server: Optional[str] = None):
        self.headless = headless
        self.executable_path = executable_path
        self.channel = channel
        self.proxy_server = proxy_server
        self._playwright: Optional[Playwright] = None

    async def launch(self) -> Browser:
        if self._playwright is None:
            self._playwright = await async_playwright().start()

        options: Dict[str, Any] = {"headless": self.headless, "args": self.LAUNCH_ARGS}
        if self.executable_path:
            options["executable_path"] = self.executable_path
        if self.channel:
            options["channel"] = self.channel
        if self.proxy_server:
            # Chromium needs a browser-level proxy for per-context proxy auth to apply
            options["proxy"] = {"server": self.proxy_server}
        return await self._playwright.chromium.launch(**options)

    async def stop(self):
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

class SessionManager:
    """
    Owns the single browser process and hands out one isolated context per request.

    The browser is launched lazily and relaunched after a disconnect. Each page
    lives in its own BrowserContext so cookies and storage never leak between
    requests; closing the context reclaims everything the request created.
    """

    def __init__(self, launcher: Optional[Any] = None,
                 launch_retries: int = 3, retry_delay: float = 1.0,
                 proxy_server: Optional[str] = None):
        self.launcher = launcher or PlaywrightLauncher(proxy_server=proxy_server)
        self.launch_retries = launch_retries
        self.retry_delay = retry_delay
        self.proxy_server = proxy_server
        self._browser: Optional[Browser] = None
        self._lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    def _on_disconnected(self, browser: Browser):
        BROWSER_DISCONNECTS.inc()
        logger.warning("Browser disconnected")
        if self._browser is browser:
            self._browser = None

    async def _launch(self) -> Browser:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.launch_retries),
                wait=wait_fixed(self.retry_delay),
                reraise=False,
            ):
                with attempt:
                    attempt_number = attempt.retry_state.attempt_number
                    if attempt_number > 1:
                        logger.warning(f"Browser launch attempt {attempt_number}/{self.launch_retries}")
                    browser = await self.launcher.launch()
        except RetryError as e:
            BROWSER_LAUNCH_FAILURES.inc()
            cause = e.last_attempt.exception()
            logger.error(f"Failed to launch browser after {self.launch_retries} attempts: {cause}")
            raise BrowserUnavailable(str(cause)) from cause

        BROWSER_LAUNCH_TOTAL.inc()
        browser.on("disconnected", self._on_disconnected)
        logger.info("Browser initialized")
        return browser

    async def ensure_browser(self) -> Browser:
        """Return a live browser, launching a new one if needed"""
        if self.connected:
            return self._browser

        async with self._lock:
            # Double-check after acquiring lock
            if self.connected:
                return self._browser
            if self._browser is not None:
                logger.warning("Browser handle is dead, reinitializing")
                self._browser = None
            self._browser = await self._launch()
            return self._browser

    async def start(self):
        """Warm up the browser at startup; failures are retried lazily later"""
        try:
            await self.ensure_browser()
        except BrowserUnavailable as e:
            logger.error(f"Initial browser launch failed: {e.message}")

    def _context_options(self, user_agent: Optional[str],
                         proxy: Optional[ProxyCredentials]) -> Dict[str, Any]:
        options: Dict[str, Any] = {"service_workers": "block"}
        if user_agent:
            options["user_agent"] = user_agent
        if proxy is not None and proxy.complete:
            if self.proxy_server:
                options["proxy"] = {
                    "server": self.proxy_server,
                    "username": proxy.username,
                    "password": proxy.password,
                }
            else:
                options["http_credentials"] = {
                    "username": proxy.username,
                    "password": proxy.password,
                }
        return options

    async def get_page(self, user_agent: Optional[str] = None,
                       proxy: Optional[ProxyCredentials] = None) -> Page:
        """
        Open a fresh isolated context with exactly one page.

        Raises:
            BrowserUnavailable: if no browser can be launched or the context
                cannot be created on the current one
        """
        browser = await self.ensure_browser()
        try:
            context = await browser.new_context(**self._context_options(user_agent, proxy))
        except PlaywrightError as e:
            if not browser.is_connected():
                self._on_disconnected(browser)
            raise BrowserUnavailable(str(e)) from e

        try:
            page = await context.new_page()
        except PlaywrightError as e:
            await self._close_context(context)
            raise BrowserUnavailable(str(e)) from e

        await self._disable_cache(page)
        return page

    async def _disable_cache(self, page: Page):
        try:
            cdp = await page.context.new_cdp_session(page)
            await cdp.send("Network.setCacheDisabled", {"cacheDisabled": True})
        except PlaywrightError as e:
            logger.debug(f"Could not disable HTTP cache: {e}")

    async def _close_context(self, context):
        try:
            await context.close()
        except Exception as e:
            logger.warning(f"Error closing browser context: {str(e)}")

    async def close_page(self, page: Page):
        """Close the page's whole context; never raises"""
        await self._close_context(page.context)

    @asynccontextmanager
    async def page(self, user_agent: Optional[str] = None,
                   proxy: Optional[ProxyCredentials] = None):
        """Yield an isolated page and always tear its context down"""
        page = await self.get_page(user_agent=user_agent, proxy=proxy)
        try:
            yield page
        finally:
            await self.close_page(page)

    async def close(self):
        """Shut the browser and the driver down"""
        async with self._lock:
            browser, self._browser = self._browser, None
            if browser is not None:
                try:
                    await browser.close()
                except Exception as e:
                    logger.warning(f"Error closing browser: {str(e)}")
            stop: Optional[Callable[[], Awaitable[None]]] = getattr(self.launcher, "stop", None)
            if stop is not None:
                await stop()
            logger.info("Browser session manager closed")
