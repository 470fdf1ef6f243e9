"""Scheduled task data model."""

from datetime import datetime
from typing import Any, Dict

from pydantic import BaseModel, Field

from .common import new_id, utc_now


class ScheduledTask(BaseModel):
    """Delayed unit of work, executed once its due time has passed."""

    id: str = Field(default_factory=new_id)
    task_name: str
    payload: Dict[str, Any] = {}
    due_at: datetime
    created_at: datetime = Field(default_factory=utc_now)
