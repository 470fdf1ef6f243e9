"""API request body models."""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from .audit import AuditLogFilter, AuditMetadata, RiskLevel
from .error import ErrorCategory, ErrorContext, ErrorSeverity, RetryConfig
from .webhook import WebhookEvent


class AcknowledgeRequest(BaseModel):
    acknowledged_by: str
    notes: Optional[str] = None


class ResolveRequest(BaseModel):
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None


class ErrorCreate(BaseModel):
    """Failure reported by another service; category and severity are classified when omitted."""

    message: str = Field(min_length=1)
    category: Optional[ErrorCategory] = None
    severity: Optional[ErrorSeverity] = None
    details: Optional[Any] = None
    context: Optional[ErrorContext] = None
    retry_config: Optional[RetryConfig] = None
    integration_id: Optional[str] = None
    stack_trace: Optional[str] = None
    tags: Optional[List[str]] = None


class EventTrigger(BaseModel):
    event: WebhookEvent
    payload: Any = None

    @field_validator("event")
    @classmethod
    def _not_test(cls, value: WebhookEvent) -> WebhookEvent:
        if value == WebhookEvent.TEST:
            raise ValueError("test deliveries go through the endpoint test route")
        return value


class AuditLogCreate(BaseModel):
    """Audit entry submitted by another service."""

    event_type: str
    action: str
    description: str
    user_id: Optional[str] = None
    integration_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    details: Optional[Any] = None
    metadata: Optional[AuditMetadata] = None
    risk_level: Optional[RiskLevel] = None
    tags: Optional[List[str]] = None
    related_events: Optional[List[str]] = None


class AuditTrailCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str
    event_ids: List[str]
    metadata: Optional[Any] = None


class ComplianceReportRequest(BaseModel):
    start: datetime
    end: datetime
    framework: str = "general"
    include_recommendations: bool = False


class AuditExportRequest(BaseModel):
    filters: Optional[AuditLogFilter] = None
    format: str = Field(default="json", pattern="^(json|csv)$")
    include_details: bool = False
