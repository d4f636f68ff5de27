"""Affiliate attribution API — FastAPI application with DB-backed storage."""
from __future__ import annotations

import logging

from src.logging_config import setup_logging
setup_logging()
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from src.db.engine import engine, get_session
from src.db.tables import Base
from src.errors import AffiliateError
from src.services.partner_notify import drain_notifications
from config.settings import settings

__version__ = "1.0.0"

# ── Sentry Error Tracking ────────────────────────
if settings.SENTRY_DSN:
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
    from sentry_sdk.integrations.logging import LoggingIntegration

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.SENTRY_ENVIRONMENT,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        integrations=[
            FastApiIntegration(),
            SqlalchemyIntegration(),
            LoggingIntegration(level=logging.WARNING, event_level=logging.ERROR),
        ],
        # Scrub sensitive data
        send_default_pii=False,
        before_send=lambda event, hint: (
            {**event, "request": {**event.get("request", {}), "cookies": None}}
            if "request" in event else event
        ),
    )

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Validate config and create tables on startup; flush partner calls on shutdown."""
    from src.startup_checks import validate_settings
    validate_settings()

    # Register the click table with Base.metadata
    import src.db.affiliate_tables  # noqa: F401
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables ready")

    yield

    logger.info("Shutting down — waiting for partner notifications...")
    await drain_notifications(timeout=settings.PARTNER_NOTIFY_TIMEOUT_SECONDS)
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Affiliate Attribution API",
    version=__version__,
    description="Click tracking, conversion attribution and commission ledger for financial-product partners",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Prometheus metrics
from src.middleware.metrics import MetricsMiddleware
app.add_middleware(MetricsMiddleware)

# Request ID tracing
from src.middleware.request_id import RequestIDMiddleware
app.add_middleware(RequestIDMiddleware)


from src.api.affiliate import router as affiliate_router
from src.api.affiliate_webhooks import router as affiliate_webhooks_router
from src.api.affiliate_admin import router as affiliate_admin_router
app.include_router(affiliate_router)
app.include_router(affiliate_webhooks_router)
app.include_router(affiliate_admin_router)


@app.get("/health")
async def health(session: AsyncSession = Depends(get_session)):
    """Deep health check — validates DB connectivity."""
    try:
        await session.execute(text("SELECT 1"))
        db_status = "connected"
    except Exception:
        logger.exception("Health check: database unreachable")
        db_status = "error"
    status = "ok" if db_status == "connected" else "degraded"
    return {"status": status, "db": db_status, "version": __version__}


@app.get("/ready")
async def readiness(session: AsyncSession = Depends(get_session)):
    """Readiness probe for orchestrators (K8s, Railway).

    Returns 503 if not ready to serve traffic.
    """
    try:
        await session.execute(text("SELECT 1"))
    except Exception:
        logger.exception("Readiness check: database unreachable")
        return JSONResponse(status_code=503, content={"ready": False, "reason": "database unavailable"})
    return {"ready": True}


# --- Structured Error Responses ---

from fastapi import Request as FastAPIRequest
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError


@app.exception_handler(AffiliateError)
async def affiliate_error_handler(request: FastAPIRequest, exc: AffiliateError):
    """Domain errors → same envelope as HTTP errors, with a stable error code."""
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.code, request.method, request.url.path, exc.message)
    content = {"error": exc.code, "message": exc.message}
    if exc.details:
        content["details"] = exc.details
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: FastAPIRequest, exc: RequestValidationError):
    """Return clean, structured validation errors instead of raw Pydantic output."""
    errors = []
    for err in exc.errors():
        field = " → ".join(str(loc) for loc in err["loc"]) if err.get("loc") else "unknown"
        errors.append({"field": field, "message": err["msg"]})
    return JSONResponse(status_code=422, content={
        "error": "validation_error",
        "message": "Invalid request data",
        "details": errors,
    })


@app.exception_handler(HTTPException)
async def http_error_handler(request: FastAPIRequest, exc: HTTPException):
    """Consistent error envelope for all HTTP errors."""
    return JSONResponse(status_code=exc.status_code, content={
        "error": exc.detail if isinstance(exc.detail, str) else "error",
        "message": exc.detail,
    })


@app.exception_handler(Exception)
async def unhandled_error_handler(request: FastAPIRequest, exc: Exception):
    """Catch-all for unhandled exceptions — never leak stack traces."""
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={
        "error": "internal_error",
        "message": "Something went wrong. Please try again.",
    })
