import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from prometheus_fastapi_instrumentator import Instrumentator
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from .api.api_v1.api import api_router
from .api.api_v1.websockets import router as websocket_router
from .core.backends import build_channel, build_store
from .core.config import Settings, settings as default_settings
from .core.rate_limit import RateLimitMiddleware
from .core.tracing import setup_tracing, shutdown_tracing
from .services.typing_service import TypingService

logger = logging.getLogger(__name__)


def configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=settings.LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or default_settings

    # --- Lifespan Management ---
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # --- Startup ---
        configure_logging(settings)
        logger.info("Application startup...")
        if settings.OTEL_ENABLED:
            setup_tracing(settings)

        app.state.store = await build_store(settings)
        app.state.channel = await build_channel(settings)

        scheduler = AsyncIOScheduler()
        if settings.TYPING_PURGE_ENABLED:
            typing_service = TypingService(app.state.store, app.state.channel, settings)
            scheduler.add_job(
                typing_service.purge_stale,
                trigger=IntervalTrigger(seconds=settings.TYPING_PURGE_INTERVAL_SECONDS),
                id="typing_purge_job",
                name="Stale Typing Purge Job",
                replace_existing=True
            )
            scheduler.start()
            logger.info("Started typing purge scheduler.")

        yield # Application runs here

        # --- Shutdown ---
        logger.info("Application shutdown...")
        if scheduler.running:
            scheduler.shutdown()
            logger.info("Scheduler shut down.")
        await app.state.channel.close()
        await app.state.store.close()
        if settings.OTEL_ENABLED:
            await shutdown_tracing()

    # --- FastAPI App Initialization ---
    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="NebulaChat room, messaging and typing API",
        version="1.0.0",
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        lifespan=lifespan
    )
    app.state.settings = settings

    # Set up CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[str(origin).rstrip("/") for origin in settings.CORS_ORIGINS],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    if settings.RATE_LIMIT_ENABLED:
        app.add_middleware(
            RateLimitMiddleware,
            max_requests=settings.RATE_LIMIT_PER_MINUTE,
            openapi_url=app.openapi_url,
        )

    # Errors leave as {"error": message}
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc.detail}")
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        message = errors[0]["msg"] if errors else "Invalid request"
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": message},
        )

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}: {exc}")
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "Internal server error"},
        )

    # Include routers
    app.include_router(api_router, prefix=settings.API_V1_STR)
    app.include_router(websocket_router)  # WebSocket router without prefix

    # Uploaded attachments
    app.mount(
        settings.UPLOAD_BASE_URL,
        StaticFiles(directory=settings.UPLOAD_DIR, check_dir=False),
        name="uploads",
    )

    # Instrument FastAPI for Prometheus and OpenTelemetry
    if settings.METRICS_ENABLED:
        Instrumentator().instrument(app).expose(app) # Prometheus /metrics endpoint
    if settings.OTEL_ENABLED:
        FastAPIInstrumentor.instrument_app(app) # OpenTelemetry tracing

    # --- Health Check Endpoints ---
    @app.get("/livez", tags=["Health"], status_code=status.HTTP_200_OK)
    async def liveness_check():
        """Basic liveness check."""
        return {"status": "ok"}

    @app.get("/readyz", tags=["Health"], status_code=status.HTTP_200_OK)
    async def readiness_check(request: Request):
        """Checks if the service and its core dependencies are ready."""
        details = {
            "store": "ready" if await request.app.state.store.ping() else "unhealthy",
            "realtime": "ready" if await request.app.state.channel.ping() else "unhealthy",
        }
        if any(v != "ready" for v in details.values()):
            logger.error(f"Readiness check failed: {details}")
            return JSONResponse(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                content={"status": "unavailable", "dependencies": details},
            )
        return {"status": "ready", "dependencies": details}

    return app


app = create_app()
