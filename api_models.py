"""
Pydantic models for the retention admin API.

This module centralizes request and response models shared by the routers.
"""

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field

# API Version Constants
API_VERSION = "1"


class PolicyModel(BaseModel):
    """Effective retention policy for one collection."""
    collection: str
    table: str
    partition_key: str
    age_threshold_days: Optional[int] = None
    requires_terminal_state: bool = False
    terminal_column: Optional[str] = None
    per_partition_cap: Optional[int] = None


class PolicyDefaultsResponse(BaseModel):
    """Response model for GET /retention/policy."""
    collections: Dict[str, PolicyModel]
    interval_hours: float
    isolation_level: str


class PolicyResultModel(BaseModel):
    """Rows removed from one collection."""
    collection: str
    age_deleted: int = Field(..., ge=0)
    cap_deleted: int = Field(..., ge=0)
    total_deleted: int = Field(..., ge=0)


class RetentionReportResponse(BaseModel):
    """Response model for a retention run."""
    started_at: str
    finished_at: Optional[str] = None
    duration_ms: int
    outcome: str
    total_deleted: int
    policies: List[PolicyResultModel]
    error: Optional[str] = None


class SchedulerStatusResponse(BaseModel):
    """Response model for GET /retention/status."""
    enabled: bool
    running: bool
    run_in_progress: bool
    interval_seconds: float
    last_run_at: Optional[str] = None
    last_outcome: Optional[str] = None
    last_report: Optional[Dict[str, Any]] = None
    last_error: Optional[str] = None
    missed_cycles: int = 0
    runs_succeeded: int = 0
    runs_failed: int = 0


class HealthResponse(BaseModel):
    """Response model for health check."""
    status: str
    database: Dict[str, Any]
    scheduler: Optional[Dict[str, Any]] = None
