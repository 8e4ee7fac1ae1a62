"""
tokenmeter - Main API Server

FastAPI server exposing the usage & quota accounting engine.
Uses canonical error layer from tokenmeter/core/errors.py

Supports three modes:
- MODE=local: In-memory store, identities registered on first request
- MODE=test: Same as local, deterministic for the test suite
- MODE=prod: PostgreSQL store (DATABASE_URL required)

Features:
- Pre-flight quota checks and usage recording for metered services
- Per-user usage views and admin reporting
- Free-tier quota sync
- Full observability (metrics, tracing, logging)
"""

import os
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .api import admin_router, metering_router, usage_router
from .auth.config import (
    get_cors_allowed_origins,
    get_run_mode,
    is_prod_mode,
    validate_runtime_config,
)
from .core.config import get_settings
from .core.errors import ErrorDetails, ErrorType, TokenMeterException
from .db.connection import close_db, init_db
from .db.memory import InMemoryUsageStore
from .db.schema import apply_schema
from .db.services import PostgresUsageStore
from .observability import (
    ObservabilityMiddleware,
    get_logger,
    metrics_endpoint,
    setup_observability,
)
from .usage.engine import QuotaEngine, get_engine_optional, set_engine


logger = get_logger("tokenmeter.server")


# ============================================================
# Lifespan management
# ============================================================

async def _build_engine() -> QuotaEngine:
    """Engine over PostgreSQL in prod, over the in-memory store otherwise."""
    settings = get_settings()

    if is_prod_mode():
        db = await init_db(settings.database_url)
        logger.info("Database connected")
        if os.getenv("APPLY_SCHEMA", "false").lower() in {"1", "true", "yes"}:
            await apply_schema(db)
            logger.info("Database schema applied")
        return QuotaEngine.from_settings(PostgresUsageStore(db), settings)

    return QuotaEngine.from_settings(InMemoryUsageStore(), settings)


def _make_lifespan(engine: Optional[QuotaEngine]):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Manage application lifespan - startup and shutdown."""
        mode = get_run_mode()

        # Initialize observability first (for logging during startup)
        observability = setup_observability(
            service_name="tokenmeter",
            service_version=__version__,
        )

        validate_runtime_config()
        logger.info(f"tokenmeter starting in {mode.value.upper()} mode")

        installed = engine or await _build_engine()
        set_engine(installed)

        logger.info(
            "tokenmeter server ready",
            run_mode=mode.value,
            store=type(installed.store).__name__,
            free_daily_limit=installed.policy.free_limits.daily,
            free_monthly_limit=installed.policy.free_limits.monthly,
        )

        yield

        set_engine(None)

        # Close database
        if is_prod_mode():
            await close_db()

        # Shutdown tracing
        if "tracing" in observability:
            observability["tracing"].shutdown()

        logger.info("tokenmeter server stopped")

    return lifespan


# ============================================================
# Error handlers
# ============================================================

def _request_id_for(request: Request) -> str:
    return getattr(request.state, "request_id", "") or f"req_{uuid.uuid4().hex[:24]}"


async def tokenmeter_exception_handler(request: Request, exc: TokenMeterException):
    """Handle all tokenmeter canonical errors."""
    if not exc.error.request_id:
        exc.error.request_id = _request_id_for(request)

    headers = {
        "X-Request-Id": exc.error.request_id,
        "X-Error-Type": exc.error.type.value,
        "X-Error-Code": exc.error.code,
    }

    if exc.error.retry_after:
        headers["Retry-After"] = str(exc.error.retry_after)

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.error.to_dict(),
        headers=headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Report request validation failures in the canonical error shape."""
    request_id = _request_id_for(request)
    errors = exc.errors()
    first = errors[0] if errors else {}
    loc = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]

    error = ErrorDetails(
        code="invalid_request",
        message=first.get("msg", "Invalid request"),
        type=ErrorType.SEMANTIC,
        param=".".join(loc) or None,
        request_id=request_id,
        retryable=False,
    )
    return JSONResponse(
        status_code=400,
        content=error.to_dict(),
        headers={
            "X-Request-Id": request_id,
            "X-Error-Type": error.type.value,
            "X-Error-Code": error.code,
        },
    )


async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    request_id = _request_id_for(request)
    logger.exception(
        "Unhandled exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    error = ErrorDetails(
        code="internal_error",
        message="An unexpected error occurred",
        type=ErrorType.INFRA,
        request_id=request_id,
        retryable=True,
    )
    return JSONResponse(
        status_code=500,
        content=error.to_dict(),
        headers={
            "X-Request-Id": request_id,
            "X-Error-Type": error.type.value,
            "X-Error-Code": error.code,
        },
    )


# ============================================================
# FastAPI App
# ============================================================

def create_app(engine: Optional[QuotaEngine] = None) -> FastAPI:
    """
    Build the application.

    Args:
        engine: Pre-built engine to install at startup instead of building
            one for the current MODE (used by tests)
    """
    app = FastAPI(
        title="tokenmeter",
        description="Usage & quota accounting for AI model token consumption",
        version=__version__,
        lifespan=_make_lifespan(engine),
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
    )

    # ObservabilityMiddleware handles metrics, tracing, and logging in one place
    app.add_middleware(ObservabilityMiddleware, service_name="tokenmeter")

    origins = get_cors_allowed_origins()
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
            expose_headers=["X-Request-Id", "X-Trace-Id", "Retry-After"],
        )

    app.add_exception_handler(TokenMeterException, tokenmeter_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    app.include_router(usage_router)
    app.include_router(metering_router)
    app.include_router(admin_router)

    @app.get("/health")
    async def health_check():
        """Liveness: the process is up."""
        return {
            "status": "healthy",
            "version": __version__,
            "mode": get_run_mode().value,
        }

    @app.get("/ready")
    async def readiness_check():
        """
        Readiness check endpoint.

        Returns 200 once the engine is installed and its store answers.
        """
        engine_instance = get_engine_optional()
        if engine_instance is None:
            return JSONResponse(
                status_code=503,
                content={"status": "not_ready", "reason": "Quota engine not initialized"},
            )

        try:
            reachable = await engine_instance.store.ping()
        except Exception as e:
            logger.warning("Store ping failed", error=str(e))
            reachable = False

        if not reachable:
            return JSONResponse(
                status_code=503,
                content={"status": "not_ready", "reason": "Usage store unreachable"},
            )
        return {"status": "ready"}

    @app.get("/metrics")
    async def prometheus_metrics():
        """Prometheus metrics in text exposition format."""
        return metrics_endpoint()

    return app


app = create_app()


# ============================================================
# Run server
# ============================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "tokenmeter.server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
