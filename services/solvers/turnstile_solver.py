from typing import Optional
import time
from enum import Enum
from loguru import logger
from playwright.async_api import Page
from playwright.async_api import Error as PlaywrightError

from core.exceptions import BrowserUnavailable, InvalidToken, SolverError, TimedOut
from models.request import ChallengeRequest
from models.response import SolveResult
from services.interception.router import InterceptionRouter
from services.solvers.iuam_solver import USER_AGENT_JS
from services.solvers.race import NoWinner, first_completed

TOKEN_SELECTOR = '[name="cf-response"], [name="cf-turnstile-response"]'

# Returns the token once a response input holds a non-empty value, else null
TOKEN_VALUE_JS = """(selector) => {
    for (const el of document.querySelectorAll(selector)) {
        if (el.value) return el.value;
    }
    return null;
}"""

# Resolves as soon as a DOM mutation puts a value into a response input
TOKEN_OBSERVER_JS = """(selector) => new Promise((resolve) => {
    const check = () => {
        for (const el of document.querySelectorAll(selector)) {
            if (el.value) {
                observer.disconnect();
                resolve(el.value);
                return;
            }
        }
    };
    const observer = new MutationObserver(check);
    observer.observe(document, {
        subtree: true, childList: true, attributes: true, attributeFilter: ['value'],
    });
    check();
})"""

class TurnstileState(str, Enum):
    NAVIGATING = "navigating"
    AWAITING_TOKEN = "awaiting_token"
    RESOLVED = "resolved"
    TIMED_OUT = "timed_out"

class TurnstileSolver:
    """Renders a Turnstile widget for the caller's site key and captures its token"""

    mode = "turnstile"

    def __init__(self, router: InterceptionRouter, poll_interval_ms: int = 250,
                 min_token_length: int = 10):
        self.router = router
        self.poll_interval_ms = poll_interval_ms
        self.min_token_length = min_token_length

    async def solve(self, request: ChallengeRequest, page: Page, timeout_ms: int) -> SolveResult:
        start = time.perf_counter()
        deadline = start + timeout_ms / 1000
        logger.info(f"Turnstile solve started for {request.domain} (timeout {timeout_ms}ms)")

        logger.debug(f"Turnstile {TurnstileState.NAVIGATING.value}: {request.domain}")
        await self.router.attach(page, self.router.turnstile_rules(request.domain, request.site_key))
        try:
            await page.goto(request.domain, wait_until="domcontentloaded", timeout=timeout_ms)
        except PlaywrightError as e:
            if not page.context.browser or not page.context.browser.is_connected():
                raise BrowserUnavailable(str(e)) from e
            logger.warning(f"Navigation to {request.domain} did not settle: {str(e)[:200]}")

        logger.debug(f"Turnstile {TurnstileState.AWAITING_TOKEN.value}: {request.domain}")
        remaining = deadline - time.perf_counter()
        try:
            token = await first_completed(
                {
                    "poll": self._poll_token(page, remaining),
                    "observer": self._observe_token(page),
                },
                timeout=remaining,
            )
        except NoWinner as e:
            logger.warning(f"Both token waiters failed: {e}")
            raise SolverError(self.mode, str(e)) from e

        if token is None:
            logger.warning(f"Turnstile {TurnstileState.TIMED_OUT.value} for {request.domain}")
            raise TimedOut("turnstile token not captured", timeout_ms)

        if len(token) < self.min_token_length:
            raise InvalidToken(len(token), self.min_token_length)

        user_agent = await self._user_agent(page)
        elapsed = time.perf_counter() - start
        logger.info(f"Turnstile {TurnstileState.RESOLVED.value} for {request.domain} in {elapsed:.2f}s")
        return SolveResult(value=token, user_agent=user_agent, elapsed_seconds=elapsed)

    async def _poll_token(self, page: Page, remaining: float) -> str:
        handle = await page.wait_for_function(
            TOKEN_VALUE_JS,
            arg=TOKEN_SELECTOR,
            polling=self.poll_interval_ms,
            timeout=max(remaining, 0.001) * 1000,
        )
        return await handle.json_value()

    async def _observe_token(self, page: Page) -> str:
        return await page.evaluate(TOKEN_OBSERVER_JS, TOKEN_SELECTOR)

    async def _user_agent(self, page: Page) -> Optional[str]:
        try:
            return await page.evaluate(USER_AGENT_JS)
        except PlaywrightError as e:
            logger.debug(f"Could not read user agent: {e}")
            return None
