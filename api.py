"""
FastAPI admin API for the retention engine.

Composition root: loads and validates retention policies, opens the
database pool, and owns the retention scheduler for the process lifetime.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.responses import JSONResponse

from api_models import API_VERSION, HealthResponse
from config import get_config
from database import get_db_manager, close_db_manager
from errors import ConfigError
from retention_maintenance import RetentionScheduler
from retention_policy import load_policies
from routers.retention_api import retention_router

logger = logging.getLogger(__name__)

# Seconds to let an in-flight retention run finish during shutdown
SHUTDOWN_GRACE_SECONDS = 30


def configure_logging(level: str = "info") -> None:
    """Configure root logging for the API and CLI."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


# Lifespan context manager for startup/shutdown
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifespan."""
    config = get_config()
    configure_logging(config.api.log_level)
    logger.info("Starting retention engine API...")

    # Fail fast on malformed policies before anything runs.
    try:
        policies = load_policies(config)
    except ConfigError as e:
        logger.critical("Invalid retention configuration: %s", e)
        raise
    logger.info(
        "Loaded retention policies: %s",
        ", ".join(p.collection for p in policies),
    )

    try:
        get_db_manager()
    except Exception as e:
        # Retention retries every cycle; an unreachable database is not fatal.
        logger.warning("Database not reachable at startup: %s", e)

    scheduler = RetentionScheduler()
    app.state.retention_scheduler = scheduler
    await scheduler.start()

    yield

    # Shutdown
    logger.info("Shutting down retention engine API...")
    await scheduler.stop()
    if not await scheduler.wait_for_idle(timeout=SHUTDOWN_GRACE_SECONDS):
        logger.warning("Retention run still in progress at shutdown")
    close_db_manager()
    logger.info("Cleanup complete")


app = FastAPI(
    title="Retention Engine API",
    description="Admin surface for the notification and integration log retention engine",
    version="1.0.0",
    lifespan=lifespan
)

v1_router = APIRouter(prefix=f"/api/v{API_VERSION}")
v1_router.include_router(retention_router)


@v1_router.get("/health", response_model=HealthResponse, tags=["General"])
async def health_check(request: Request):
    """Check API and database health."""
    try:
        db_health = get_db_manager().health_check()
    except Exception as e:
        logger.error("Health check failed: %s", e)
        db_health = {"status": "unhealthy", "error": str(e)}

    scheduler = getattr(request.app.state, "retention_scheduler", None)
    return HealthResponse(
        status="healthy" if db_health.get("status") == "healthy" else "degraded",
        database=db_health,
        scheduler=scheduler.get_status() if scheduler else None,
    )


app.include_router(v1_router)


# Error handlers
@app.exception_handler(Exception)
async def global_exception_handler(request, exc):
    """Global exception handler."""
    logger.error("Unhandled exception: %s", exc, exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "detail": "Internal server error",
            "error": str(exc)
        }
    )


if __name__ == "__main__":
    import uvicorn

    config = get_config()
    uvicorn.run(
        "api:app",
        host=config.api.host,
        port=config.api.port,
        log_level=config.api.log_level
    )
