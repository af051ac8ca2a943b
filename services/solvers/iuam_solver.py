from typing import Optional
import asyncio
import time
from enum import Enum
from loguru import logger
from playwright.async_api import Page
from playwright.async_api import Error as PlaywrightError

from core.exceptions import BrowserUnavailable, TimedOut
from models.request import ChallengeRequest
from models.response import SolveResult
from services.interception.router import ClearanceCapture, InterceptionRouter

UNCONFIRMED_WARNING = "unconfirmed"

USER_AGENT_JS = "() => navigator.userAgent"

# Challenge iframe or challenge-stage markers still on the page
CHALLENGE_PRESENT_JS = """() => {
    const selectors = [
        'iframe[src*="challenges.cloudflare.com"]',
        '#challenge-stage',
        '#challenge-running',
        '#challenge-form',
        '#cf-challenge-running',
    ];
    if (selectors.some((s) => document.querySelector(s))) return true;
    return /just a moment/i.test(document.title || '');
}"""

class IuamState(str, Enum):
    NAVIGATING = "navigating"
    POLLING = "polling"
    CONFIRMED = "confirmed"
    UNCONFIRMED_FALLBACK = "unconfirmed_fallback"
    TIMED_OUT = "timed_out"

class IuamSolver:
    """
    Resolves an "I'm Under Attack" challenge to a cf_clearance cookie.

    The browser cookie jar is the authoritative signal. A clearance seen only
    in challenge-platform response headers is kept as a candidate and handed
    back with an "unconfirmed" warning if the jar never confirms it.
    """

    mode = "iuam"

    def __init__(self, router: InterceptionRouter, poll_interval: float = 1.5,
                 min_clearance_length: int = 20):
        self.router = router
        self.poll_interval = poll_interval
        self.min_clearance_length = min_clearance_length

    async def solve(self, request: ChallengeRequest, page: Page, timeout_ms: int) -> SolveResult:
        start = time.perf_counter()
        domain = request.domain
        logger.info(f"IUAM solve started for {domain} (timeout {timeout_ms}ms)")

        capture = await self.router.attach(page, self.router.iuam_rules(domain))
        try:
            clearance, user_agent = await asyncio.wait_for(
                self._navigate_and_confirm(page, domain), timeout=timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            return self._fallback(capture, domain, start, timeout_ms)

        elapsed = time.perf_counter() - start
        logger.info(f"IUAM {IuamState.CONFIRMED.value} for {domain} in {elapsed:.2f}s")
        return SolveResult(value=clearance, user_agent=user_agent, elapsed_seconds=elapsed)

    async def _navigate_and_confirm(self, page: Page, domain: str):
        logger.debug(f"IUAM {IuamState.NAVIGATING.value}: {domain}")
        try:
            await page.goto(domain, wait_until="domcontentloaded")
        except PlaywrightError as e:
            if not page.context.browser or not page.context.browser.is_connected():
                raise BrowserUnavailable(str(e)) from e
            # Challenge pages often abort or stall the first navigation
            logger.warning(f"Navigation to {domain} did not settle: {str(e)[:200]}")

        logger.debug(f"IUAM {IuamState.POLLING.value}: {domain}")
        while True:
            clearance = await self._read_clearance(page, domain)
            if clearance is None and not await self._challenge_present(page):
                clearance = await self._read_clearance(page, domain)
            if clearance is not None:
                try:
                    user_agent = await page.evaluate(USER_AGENT_JS)
                    return clearance, user_agent
                except PlaywrightError as e:
                    # The cookie lands while the challenge reloads into the target page
                    logger.debug(f"User agent read failed mid-navigation, retrying: {e}")
            await asyncio.sleep(self.poll_interval)

    async def _read_clearance(self, page: Page, domain: str) -> Optional[str]:
        cookies = await page.context.cookies(domain)
        for cookie in cookies:
            if cookie.get("name") == "cf_clearance" and len(cookie.get("value", "")) >= self.min_clearance_length:
                return cookie["value"]
        return None

    async def _challenge_present(self, page: Page) -> bool:
        try:
            return bool(await page.evaluate(CHALLENGE_PRESENT_JS))
        except PlaywrightError as e:
            # Execution context destroyed mid-navigation: still challenging
            logger.debug(f"Challenge check failed: {e}")
            return True

    def _fallback(self, capture: ClearanceCapture, domain: str, start: float,
                  timeout_ms: int) -> SolveResult:
        if capture.candidate is not None:
            elapsed = time.perf_counter() - start
            logger.warning(
                f"IUAM {IuamState.UNCONFIRMED_FALLBACK.value} for {domain}: "
                "returning header-derived cf_clearance"
            )
            return SolveResult(
                value=capture.candidate,
                user_agent=capture.user_agent,
                elapsed_seconds=elapsed,
                warning=UNCONFIRMED_WARNING,
            )
        logger.warning(f"IUAM {IuamState.TIMED_OUT.value} for {domain}")
        raise TimedOut("cf_clearance not confirmed", timeout_ms)
