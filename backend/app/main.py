"""
FastAPI application entry point.

Run with:
    uvicorn backend.app.main:app --reload --port 8000

Or from the project root:
    python -m uvicorn backend.app.main:app --reload

Tests build their own app around an injected runtime:
    app = create_app(build_runtime(store=..., clock=..., scheduler_enabled=False))
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# ── Core infrastructure ──
from backend.app.core.config import settings
from backend.app.core.logging_config import setup_logging, get_logger
from backend.app.core.errors import register_error_handlers
from backend.app.core.middleware import RequestLoggingMiddleware
from backend.app.core.health import HealthStatus, run_health_check

# ── Delivery engine ──
from backend.app.delivery.runtime import DeliveryRuntime, build_runtime

# ── API routers ──
from backend.app.api.v1.messages import router as message_router
from backend.app.api.v1.delivery import router as delivery_router
from backend.app.api.v1.hub import router as hub_router

# ── Initialise logging ──
setup_logging()
logger = get_logger(__name__)


def create_app(runtime: Optional[DeliveryRuntime] = None) -> FastAPI:
    """Build the application; the runtime is created from settings if not given."""

    # ── Application lifespan (startup / shutdown) ──

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "Starting %s v%s [%s]",
            settings.APP_NAME, settings.APP_VERSION, settings.ENVIRONMENT,
        )
        if app.state.runtime is None:
            app.state.runtime = build_runtime()
        await app.state.runtime.startup()
        yield
        logger.info("Shutting down %s", settings.APP_NAME)
        await app.state.runtime.shutdown()

    app = FastAPI(
        title=settings.APP_NAME,
        description=(
            "Reliable push delivery of short notifications to connected "
            "clients: immediate push when the recipient is online, "
            "persistence and periodic re-push while it is not, "
            "idempotent acknowledgment and time-based expiry."
        ),
        version=settings.APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.runtime = runtime

    # ── Middleware stack (order matters — outermost first) ──

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS if not settings.CORS_ALLOW_ALL else ["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # ── Error handlers ──
    register_error_handlers(app)

    # ── Register routers ──
    app.include_router(message_router)
    app.include_router(delivery_router)
    app.include_router(hub_router)

    # ── Root & health endpoints ──

    @app.get("/", tags=["root"])
    async def root():
        return {
            "service": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "environment": settings.ENVIRONMENT,
            "realtime_channel": settings.WS_PATH,
            "docs": "/docs",
        }

    @app.get("/health", tags=["health"])
    async def health_check():
        """Deep health probe — checks all subsystems."""
        report = await run_health_check(app.state.runtime)
        return report.to_dict()

    @app.get("/health/live", tags=["health"])
    async def liveness():
        """Kubernetes liveness probe — is the process alive?"""
        return {"status": "alive"}

    @app.get("/health/ready", tags=["health"])
    async def readiness():
        """Kubernetes readiness probe — can we serve traffic?"""
        report = await run_health_check(app.state.runtime)
        if report.status == HealthStatus.UNHEALTHY:
            return JSONResponse(status_code=503, content=report.to_dict())
        return report.to_dict()

    return app


app = create_app()
