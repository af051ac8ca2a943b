from typing import Any, Dict, Optional
import time
from loguru import logger
from playwright.async_api import Error as PlaywrightError
from prometheus_client import Counter, Histogram

from core.exceptions import BrowserUnavailable, ChallengeException, SolverError
from models.request import ChallengeMode, ChallengeRequest
from models.response import SolveResult
from services.admission.admission_controller import AdmissionController
from services.browser.session_manager import SessionManager
from services.cache.cache_service import CacheService
from services.interception.router import InterceptionRouter, default_rules

# Metrics for monitoring
CHALLENGE_REQUESTS = Counter('challenge_requests_total', 'Total number of challenge requests', ['mode'])
CHALLENGE_ERRORS = Counter('challenge_errors_total', 'Total number of failed solves', ['mode', 'code'])
CHALLENGE_CACHE_HITS = Counter('challenge_cache_hits_total', 'IUAM requests answered from cache')
SOLVE_DURATION = Histogram('challenge_solve_duration_seconds', 'Time spent inside a solver', ['mode'])

def format_elapsed(seconds: float) -> str:
    return f"{seconds:.2f}s"

class ChallengeService:
    """
    Dispatches a validated request: cache, admission, isolated page, solver.

    Every exit path closes the page's context and releases the admission
    slot; only confirmed IUAM results are written back to the cache.
    """

    def __init__(self, session_manager: SessionManager, admission: AdmissionController,
                 cache: CacheService, router: InterceptionRouter, solvers: Dict[ChallengeMode, Any],
                 default_timeout_ms: int = 60000, default_cache_ttl_ms: Optional[int] = None):
        self.session_manager = session_manager
        self.admission = admission
        self.cache = cache
        self.router = router
        self.solvers = solvers
        self.default_timeout_ms = default_timeout_ms
        self.default_cache_ttl_ms = default_cache_ttl_ms

    async def solve(self, request: ChallengeRequest) -> Dict[str, Any]:
        start_time = time.perf_counter()
        mode = request.mode
        CHALLENGE_REQUESTS.labels(mode=mode.value).inc()

        cache_key = None
        if mode == ChallengeMode.IUAM:
            cache_key = self.cache.key_for(request.domain, request.user_agent)
            cached = self.cache.read(cache_key)
            if cached is not None:
                CHALLENGE_CACHE_HITS.inc()
                logger.info(f"Cache hit for {request.domain}")
                response = self._format(mode, cached)
                response["cached"] = True
                response["elapsed"] = format_elapsed(time.perf_counter() - start_time)
                return response

        try:
            async with self.admission.slot():
                result = await self._run_solver(request)
        except ChallengeException as e:
            CHALLENGE_ERRORS.labels(mode=mode.value, code=e.error_code).inc()
            logger.error(f"{mode.value} solve failed for {request.domain}: {e.message}")
            raise

        if cache_key is not None and result.warning is None:
            self.cache.write(cache_key, result, request.cache_ttl_ms or self.default_cache_ttl_ms)

        response = self._format(mode, result)
        response["elapsed"] = format_elapsed(time.perf_counter() - start_time)
        return response

    async def _run_solver(self, request: ChallengeRequest) -> SolveResult:
        solver = self.solvers[request.mode]
        timeout_ms = request.timeout_ms or self.default_timeout_ms

        async with self.session_manager.page(user_agent=request.user_agent, proxy=request.proxy) as page:
            try:
                await self.router.attach(page, default_rules())
                with SOLVE_DURATION.labels(mode=request.mode.value).time():
                    return await solver.solve(request, page, timeout_ms)
            except PlaywrightError as e:
                if not self.session_manager.connected:
                    raise BrowserUnavailable(str(e)) from e
                raise SolverError(request.mode.value, str(e)) from e
            finally:
                await self.router.detach(page)

    @staticmethod
    def _format(mode: ChallengeMode, result: SolveResult) -> Dict[str, Any]:
        if mode == ChallengeMode.TURNSTILE:
            response = {"token": result.value}
        else:
            response = {"cf_clearance": result.value}
        if result.user_agent is not None:
            response["user_agent"] = result.user_agent
        if result.warning:
            response["warning"] = result.warning
        return response

    def stats(self) -> Dict[str, Any]:
        return {
            **self.admission.stats,
            "browserConnected": self.session_manager.connected,
        }
