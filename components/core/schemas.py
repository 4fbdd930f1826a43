"""Core schemas for the application."""

from typing import Any, Optional

from pydantic import BaseModel


class HealthCheck(BaseModel):
    """Schema for health check response."""
    service_name: str
    status: str


class APIResponse(BaseModel):
    """Envelope returned by every public operation."""
    success: bool
    message: str
    data: Optional[Any] = None
