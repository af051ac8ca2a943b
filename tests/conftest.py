"""Shared fake Playwright objects and service factories for the solver tests."""

import asyncio
import inspect

from playwright.async_api import Error as PlaywrightError

from models.response import SolveResult
from services.admission.admission_controller import AdmissionController
from services.browser.session_manager import SessionManager
from services.cache.cache_service import CacheService
from services.challenge.challenge_service import ChallengeService
from services.interception.router import InterceptionRouter
from services.solvers.iuam_solver import CHALLENGE_PRESENT_JS, USER_AGENT_JS, IuamSolver
from services.solvers.turnstile_solver import TOKEN_OBSERVER_JS, TurnstileSolver
from models.request import ChallengeMode

FAKE_USER_AGENT = "Mozilla/5.0 (X11; Linux x86_64) FakeBrowser/1.0"
CLEARANCE = "c" * 40

# ---------------------------------------------------------------------------
# Network objects
# ---------------------------------------------------------------------------


class FakeRequest:
    def __init__(self, url: str, resource_type: str = "document", headers: dict | None = None):
        self.url = url
        self.resource_type = resource_type
        self._headers = {k.lower(): v for k, v in (headers or {}).items()}

    async def header_value(self, name: str):
        return self._headers.get(name.lower())


class FakeResponse:
    def __init__(self, url: str, set_cookies: list[str] | None = None, user_agent: str = FAKE_USER_AGENT):
        self.url = url
        self._set_cookies = set_cookies or []
        self.request = FakeRequest(url, "xhr", {"user-agent": user_agent})

    async def header_values(self, name: str):
        return list(self._set_cookies) if name.lower() == "set-cookie" else []


class FakeRoute:
    def __init__(self):
        self.action = None
        self.kwargs = {}

    async def fulfill(self, **kwargs):
        self.action = "fulfill"
        self.kwargs = kwargs

    async def abort(self):
        self.action = "abort"

    async def continue_(self):
        self.action = "continue"


class FakeHandle:
    def __init__(self, value):
        self._value = value

    async def json_value(self):
        return self._value


# ---------------------------------------------------------------------------
# Page / context / browser
# ---------------------------------------------------------------------------


class FakePage:
    """Scriptable stand-in for a Playwright Page.

    - cookies land in the context jar on goto (``cookies_on_goto``) or are
      pre-seeded on the context
    - ``responses`` are dispatched to "response" listeners during goto
    - ``token`` is what both Turnstile waiters eventually see (None: never)
    """

    def __init__(self, context, *, challenge_present: bool = True, responses=None,
                 cookies_on_goto=None, goto_error: Exception | None = None,
                 token: str | None = None, token_delay: float = 0.01,
                 observer_error: Exception | None = None, poll_error: Exception | None = None,
                 user_agent_errors=None):
        self.context = context
        self.challenge_present = challenge_present
        self.responses = responses or []
        self.cookies_on_goto = cookies_on_goto
        self.goto_error = goto_error
        self.token = token
        self.token_delay = token_delay
        self.observer_error = observer_error
        self.poll_error = poll_error
        # Raised by successive navigator.userAgent reads, one per read
        self.user_agent_errors = list(user_agent_errors or [])
        self.user_agent_reads = 0
        self.visited = []
        self.routes = {}
        self.listeners = {}

    def on(self, event, handler):
        self.listeners.setdefault(event, []).append(handler)

    def remove_listener(self, event, handler):
        self.listeners.get(event, []).remove(handler)

    async def route(self, pattern, handler):
        self.routes[pattern] = handler

    async def unroute(self, pattern, handler=None):
        if self.routes.get(pattern) is handler or handler is None:
            self.routes.pop(pattern, None)

    async def goto(self, url, **kwargs):
        self.visited.append((url, kwargs))
        for response in self.responses:
            for handler in list(self.listeners.get("response", [])):
                result = handler(response)
                if inspect.isawaitable(result):
                    await result
        if self.cookies_on_goto is not None:
            self.context.jar.extend(self.cookies_on_goto)
        if self.goto_error is not None:
            raise self.goto_error

    async def evaluate(self, script, arg=None):
        if script == USER_AGENT_JS:
            self.user_agent_reads += 1
            if self.user_agent_errors:
                raise self.user_agent_errors.pop(0)
            return FAKE_USER_AGENT
        if script == CHALLENGE_PRESENT_JS:
            return self.challenge_present
        if script == TOKEN_OBSERVER_JS:
            if self.observer_error is not None:
                raise self.observer_error
            if self.token is None:
                await asyncio.Event().wait()
            await asyncio.sleep(self.token_delay)
            return self.token
        raise AssertionError(f"unexpected script: {script[:40]}")

    async def wait_for_function(self, script, arg=None, polling=None, timeout=None):
        if self.poll_error is not None:
            raise self.poll_error
        if self.token is None:
            await asyncio.sleep((timeout or 0) / 1000)
            raise PlaywrightError("Timeout exceeded")
        await asyncio.sleep(self.token_delay * 2)
        return FakeHandle(self.token)


class FakeCDPSession:
    def __init__(self):
        self.sent = []

    async def send(self, method, params=None):
        self.sent.append((method, params))


class FakeContext:
    def __init__(self, browser=None, options=None, jar=None, close_error: Exception | None = None):
        self.browser = browser
        self.options = options or {}
        self.jar = list(jar or [])
        self.close_error = close_error
        self.closed = False
        self.pages = []
        self.cdp = FakeCDPSession()
        self.cookie_reads = 0

    async def new_page(self):
        page = self.browser.page_factory(self) if self.browser else FakePage(self)
        self.pages.append(page)
        return page

    async def new_cdp_session(self, page):
        return self.cdp

    async def cookies(self, urls=None):
        self.cookie_reads += 1
        return list(self.jar)

    async def close(self):
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


class FakeBrowser:
    def __init__(self, page_factory=None):
        self.page_factory = page_factory or (lambda context: FakePage(context))
        self.connected = True
        self.contexts = []
        self.handlers = {}
        self.closed = False

    def is_connected(self):
        return self.connected

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    async def new_context(self, **options):
        if not self.connected:
            raise PlaywrightError("Target page, context or browser has been closed")
        context = FakeContext(browser=self, options=options)
        self.contexts.append(context)
        return context

    def disconnect(self):
        self.connected = False
        for handler in self.handlers.get("disconnected", []):
            handler(self)

    async def close(self):
        self.closed = True
        self.connected = False


class FakeLauncher:
    def __init__(self, page_factory=None, failures: int = 0):
        self.page_factory = page_factory
        self.failures = failures
        self.attempts = 0
        self.browsers = []
        self.stopped = False

    async def launch(self):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("chrome exited early")
        browser = FakeBrowser(self.page_factory)
        self.browsers.append(browser)
        return browser

    async def stop(self):
        self.stopped = True


def make_page(jar=None, **page_kwargs) -> FakePage:
    """A page whose context belongs to a live FakeBrowser"""
    context = FakeContext(browser=FakeBrowser(), jar=jar)
    page = FakePage(context, **page_kwargs)
    context.pages.append(page)
    return page


def clearance_cookie(value: str = CLEARANCE) -> dict:
    return {"name": "cf_clearance", "value": value, "domain": ".example.test", "path": "/"}


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


class BlockingSolver:
    """Solver that holds its slot until ``release`` is set"""

    mode = "iuam"

    def __init__(self):
        self.release = asyncio.Event()
        self.calls = 0

    async def solve(self, request, page, timeout_ms):
        self.calls += 1
        await self.release.wait()
        return SolveResult(value=CLEARANCE, user_agent=FAKE_USER_AGENT, elapsed_seconds=0.01)


def make_service(launcher=None, max_concurrent: int = 2, max_queue: int = 2,
                 solvers=None, timeout_ms: int = 1000, cache_ttl_ms: int = 60000) -> ChallengeService:
    router = InterceptionRouter(min_clearance_length=20)
    solvers = solvers or {
        ChallengeMode.TURNSTILE: TurnstileSolver(router, poll_interval_ms=10, min_token_length=10),
        ChallengeMode.IUAM: IuamSolver(router, poll_interval=0.01, min_clearance_length=20),
    }
    return ChallengeService(
        session_manager=SessionManager(launcher=launcher or FakeLauncher(), launch_retries=2, retry_delay=0),
        admission=AdmissionController(max_concurrent, max_queue),
        cache=CacheService(default_ttl_ms=cache_ttl_ms),
        router=router,
        solvers=solvers,
        default_timeout_ms=timeout_ms,
        default_cache_ttl_ms=cache_ttl_ms,
    )
