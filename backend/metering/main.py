"""FastAPI application entry point."""

import structlog
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from sqlalchemy import text

from metering.config import get_settings
from metering.database import Base, async_session, engine
from metering.middleware.observability import ObservabilityMiddleware, configure_logging

settings = get_settings()
configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("startup", environment=settings.ENVIRONMENT)

    # Create tables (in production, use alembic migrate instead)
    if settings.ENVIRONMENT == "development":
        import metering.models  # noqa: F401

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    yield

    # Shutdown: let in-flight usage flushes finish before the pool goes away
    from metering.billing.notifications import drain_notifications
    from metering.billing.pipeline import close_redis, flusher

    await flusher.drain(timeout=30)
    await drain_notifications()
    await close_redis()
    await engine.dispose()
    logger.info("shutdown")


app = FastAPI(
    title="Metering API",
    description="Tenant usage metering and billing ledger",
    version="0.1.0",
    default_response_class=ORJSONResponse,
    lifespan=lifespan,
    docs_url="/api/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/api/redoc" if settings.ENVIRONMENT != "production" else None,
)

# CORS
origins = [o.strip() for o in settings.ALLOWED_ORIGINS.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_middleware(ObservabilityMiddleware)

# Usage tracking (only when BILLING_ENABLED=true)
if settings.BILLING_ENABLED:
    from metering.billing.middleware import UsageTrackingMiddleware
    app.add_middleware(UsageTrackingMiddleware)
    logger.info("billing_enabled")

# Error handlers
from metering.middleware.error_handler import register_error_handlers
register_error_handlers(app)

# Conditionally register billing API routes
if settings.BILLING_ENABLED:
    from metering.billing.api import router as billing_router
    app.include_router(billing_router, prefix=settings.API_V1_PREFIX)


@app.get("/health")
async def health_check():
    return {"status": "ok", "version": "0.1.0"}


@app.get("/api/v1/status")
async def api_status():
    """Aggregate system status."""
    status = {"api": "ok", "billing_enabled": settings.BILLING_ENABLED}

    try:
        async with async_session() as db:
            await db.execute(text("SELECT 1"))
        status["database"] = "ok"
    except Exception:
        status["database"] = "error"

    try:
        from metering.billing.pipeline import get_redis
        await get_redis().ping()
        status["redis"] = "ok"
    except Exception:
        status["redis"] = "error"

    return status
