"""
Retention routes for the admin API.

Thin collaborators of ``run_once``: they read the effective policies,
trigger a run through the scheduler's gate, and report scheduler status.
"""

import logging
from fastapi import APIRouter, Depends, Request

from api_models import PolicyDefaultsResponse, RetentionReportResponse, SchedulerStatusResponse
from auth import require_api_key
from errors import ConfigError, ErrorCode, OverlapSkipped, StorageError, raise_api_error

logger = logging.getLogger(__name__)

retention_router = APIRouter(tags=["Retention"])


def get_scheduler(request: Request):
    """Return the scheduler owned by the application lifespan."""
    scheduler = getattr(request.app.state, "retention_scheduler", None)
    if scheduler is None:
        raise_api_error(ErrorCode.SERVICE_INITIALIZING)
    return scheduler


@retention_router.get("/retention/policy", response_model=PolicyDefaultsResponse,
                      dependencies=[Depends(require_api_key)])
async def get_retention_policy():
    """Return effective per-collection retention thresholds."""
    from retention_policy import get_policy_defaults
    try:
        return get_policy_defaults()
    except ConfigError as e:
        raise_api_error(ErrorCode.RETENTION_CONFIG_INVALID, details={"error": str(e)})


@retention_router.post("/retention/run", response_model=RetentionReportResponse,
                       dependencies=[Depends(require_api_key)])
async def run_retention(scheduler=Depends(get_scheduler)):
    """Run retention once, now, unless a run is already in progress."""
    try:
        report = await scheduler.trigger()
    except OverlapSkipped as e:
        raise_api_error(ErrorCode.RETENTION_RUN_IN_PROGRESS, details={"error": str(e)})
    except StorageError as e:
        logger.error("Manual retention run failed: %s", e)
        raise_api_error(
            ErrorCode.RETENTION_STORAGE_FAILED,
            details={"error": str(e), "collection": e.collection, "rule": e.rule},
        )
    except ConfigError as e:
        raise_api_error(ErrorCode.RETENTION_CONFIG_INVALID, details={"error": str(e)})
    return report.to_dict()


@retention_router.get("/retention/status", response_model=SchedulerStatusResponse,
                      dependencies=[Depends(require_api_key)])
async def get_retention_status(scheduler=Depends(get_scheduler)):
    """Get retention scheduler status."""
    return scheduler.get_status()
