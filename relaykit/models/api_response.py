"""API response data models."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel


class CreatedResponse(BaseModel):
    """Response carrying the id of a newly created record."""

    id: str


class StatusResponse(BaseModel):
    """Generic status response."""

    status: str
    message: Optional[str] = None


class RetryScheduledResponse(BaseModel):
    """Result of a manual retry request."""

    success: bool
    reason: Optional[str] = None
    next_retry_at: Optional[datetime] = None


class DeletedResponse(BaseModel):
    """Result of a retention cleanup."""

    deleted_count: int
