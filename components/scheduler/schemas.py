"""Pydantic schemas for scheduler status and manual triggers."""

from datetime import datetime
from typing import Any, Dict, Optional
from pydantic import BaseModel


class JobStatus(BaseModel):
    """Schema for one job's runtime state."""
    name: str
    trigger: str
    state: str
    next_run: Optional[datetime] = None
    last_run: Optional[datetime] = None
    last_error: Optional[str] = None


class SchedulerStatus(BaseModel):
    """Schema for scheduler status response."""
    running: bool
    job_count: int
    timezone: str
    next_run_times: Dict[str, Optional[datetime]]
    jobs: Dict[str, JobStatus]


class TriggerResult(BaseModel):
    """Outcome of a manually triggered job run."""
    success: bool
    message: str
    data: Optional[Any] = None
