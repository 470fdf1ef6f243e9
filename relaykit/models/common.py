"""Shared helpers for record ids and timestamps."""

import uuid
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, field_validator


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    """Generate a record id."""
    return uuid.uuid4().hex


def to_epoch_ms(value: datetime) -> int:
    """Convert a datetime to epoch milliseconds."""
    return int(value.timestamp() * 1000)


def from_epoch_ms(value: int) -> datetime:
    """Convert epoch milliseconds to a UTC datetime."""
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class TimeRange(BaseModel):
    """Inclusive time window used by queries and reports."""

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        # Naive bounds are read as UTC so they compare with stored timestamps
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)

    def contains(self, moment: Optional[datetime]) -> bool:
        return moment is not None and self.start <= moment <= self.end
