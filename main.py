from fastapi import FastAPI, Request, status
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import asyncio
import uvicorn
import time
from loguru import logger
from contextlib import asynccontextmanager
from prometheus_client import make_asgi_app

from core.config import settings
from core.exceptions import ChallengeException
from core.logging import setup_logging
from models.request import ChallengeMode
from services.admission.admission_controller import AdmissionController
from services.browser.session_manager import PlaywrightLauncher, SessionManager
from services.cache.cache_service import CacheService
from services.challenge.challenge_service import ChallengeService
from services.interception.router import InterceptionRouter, load_script
from services.solvers.iuam_solver import IuamSolver
from services.solvers.turnstile_solver import TurnstileSolver
from api.v1.endpoints import cloudflare

# Prometheus metrics endpoint
metrics_app = make_asgi_app()

def build_challenge_service() -> ChallengeService:
    """Wire the solving engine from settings"""
    launcher = PlaywrightLauncher(
        headless=settings.BROWSER_HEADLESS,
        executable_path=settings.BROWSER_EXECUTABLE_PATH,
        channel=settings.BROWSER_CHANNEL,
        proxy_server=settings.PROXY_SERVER,
    )
    session_manager = SessionManager(
        launcher=launcher,
        launch_retries=settings.BROWSER_LAUNCH_RETRIES,
        retry_delay=settings.BROWSER_LAUNCH_RETRY_DELAY,
        proxy_server=settings.PROXY_SERVER,
    )
    router = InterceptionRouter(
        min_clearance_length=settings.MIN_CLEARANCE_LENGTH,
        script_url=settings.TURNSTILE_SCRIPT_URL,
        script_body=load_script(settings.TURNSTILE_SCRIPT_PATH),
    )
    return ChallengeService(
        session_manager=session_manager,
        admission=AdmissionController(settings.MAX_CONCURRENT, settings.MAX_QUEUE),
        cache=CacheService(
            default_ttl_ms=settings.CACHE_TTL,
            sweep_interval=settings.CACHE_SWEEP_INTERVAL,
        ),
        router=router,
        solvers={
            ChallengeMode.TURNSTILE: TurnstileSolver(
                router,
                poll_interval_ms=settings.TURNSTILE_POLL_INTERVAL,
                min_token_length=settings.MIN_TOKEN_LENGTH,
            ),
            ChallengeMode.IUAM: IuamSolver(
                router,
                poll_interval=settings.POLL_INTERVAL,
                min_clearance_length=settings.MIN_CLEARANCE_LENGTH,
            ),
        },
        default_timeout_ms=settings.TIMEOUT,
        default_cache_ttl_ms=settings.CACHE_TTL,
    )

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle events for the application"""
    setup_logging()
    try:
        # Startup
        logger.info("Initializing application...")
        service = build_challenge_service()
        app.state.challenge_service = service
        service.cache.start()

        logger.info("Launching browser in the background...")
        warm_up = asyncio.create_task(service.session_manager.start())

        yield

        # Shutdown
        logger.info("Shutting down application...")
        warm_up.cancel()
        try:
            await warm_up
        except asyncio.CancelledError:
            pass
        await service.cache.stop()
        await service.session_manager.close()
    except Exception as e:
        logger.exception(f"Application lifecycle error: {str(e)}")
        raise

app = FastAPI(
    title=settings.PROJECT_NAME,
    description="Browser-backed Cloudflare challenge solving API",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

app.include_router(cloudflare.router)

app.add_middleware(
    TrustedHostMiddleware,
    allowed_hosts=settings.ALLOWED_HOSTS
)

# Custom middleware for request timing
@app.middleware("http")
async def add_timing_header(request: Request, call_next):
    start_time = time.perf_counter()
    response = await call_next(request)
    process_time = time.perf_counter() - start_time
    response.headers["X-Process-Time"] = str(process_time)
    return response

# Exception handlers
@app.exception_handler(ChallengeException)
async def challenge_exception_handler(request: Request, exc: ChallengeException):
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict()
    )

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail}
    )

@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled exception: {str(exc)}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "code": "INTERNAL_SERVER_ERROR",
            "message": "An unexpected error occurred"
        }
    )

# Mount Prometheus metrics endpoint
app.mount("/metrics", metrics_app)

@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "name": settings.PROJECT_NAME,
        "version": "1.0.0",
        "description": "Browser-backed Cloudflare challenge solving API",
        "docs_url": "/docs",
        "health_check": "/health"
    }

if __name__ == "__main__":
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=settings.WORKERS,
        log_level=settings.LOG_LEVEL.lower()
    )
