"""Audit log data models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .common import TimeRange, new_id, utc_now


class RiskLevel(str, Enum):
    """Audit analogue of error severity."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AuditEventType(str, Enum):
    """Known audit event types. Entries accept other strings as well."""

    # Integration events
    INTEGRATION_CREATED = "integration_created"
    INTEGRATION_UPDATED = "integration_updated"
    INTEGRATION_DELETED = "integration_deleted"
    INTEGRATION_CONNECTED = "integration_connected"
    INTEGRATION_DISCONNECTED = "integration_disconnected"

    # Configuration events
    CONFIG_UPDATED = "config_updated"
    SETTINGS_CHANGED = "settings_changed"
    CREDENTIALS_ROTATED = "credentials_rotated"

    # Security events
    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"
    PERMISSION_GRANTED = "permission_granted"
    PERMISSION_DENIED = "permission_denied"
    SECURITY_SCAN_STARTED = "security_scan_started"
    SECURITY_ALERT_CREATED = "security_alert_created"

    # Data events
    DATA_SYNC_STARTED = "data_sync_started"
    DATA_SYNC_COMPLETED = "data_sync_completed"
    DATA_SYNC_FAILED = "data_sync_failed"
    DATA_EXPORTED = "data_exported"
    DATA_IMPORTED = "data_imported"
    DATA_DELETED = "data_deleted"

    # Webhook events
    WEBHOOK_CREATED = "webhook_created"
    WEBHOOK_UPDATED = "webhook_updated"
    WEBHOOK_DELETED = "webhook_deleted"
    WEBHOOK_DELIVERED = "webhook_delivered"
    WEBHOOK_FAILED = "webhook_failed"

    # Version events
    VERSION_DEPLOYED = "version_deployed"
    VERSION_ROLLED_BACK = "version_rolled_back"

    # Error events
    ERROR_OCCURRED = "error_occurred"
    ERROR_RESOLVED = "error_resolved"

    # Performance events
    PERFORMANCE_ALERT = "performance_alert"
    AUTO_TUNING_APPLIED = "auto_tuning_applied"

    # Admin events
    USER_CREATED = "user_created"
    USER_UPDATED = "user_updated"
    USER_DELETED = "user_deleted"
    ROLE_ASSIGNED = "role_assigned"
    ROLE_REVOKED = "role_revoked"


class AuditMetadata(BaseModel):
    """Request metadata captured with an audit entry."""

    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    session_id: Optional[str] = None
    request_id: Optional[str] = None
    source: Optional[str] = None
    api_version: Optional[str] = None


class AuditLogEntry(BaseModel):
    """Immutable audit record."""

    id: str = Field(default_factory=new_id)
    event_type: str
    user_id: Optional[str] = None
    integration_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    action: str
    description: str
    details: Optional[Any] = None
    metadata: Optional[AuditMetadata] = None
    risk_level: RiskLevel
    tags: List[str] = []
    related_events: List[str] = []
    timestamp: datetime = Field(default_factory=utc_now)
    indexed: bool = False


class AuditAlert(BaseModel):
    """Alert raised for a high or critical risk audit entry."""

    id: str = Field(default_factory=new_id)
    audit_log_id: str
    event_type: str
    risk_level: RiskLevel
    message: str
    details: Optional[Any] = None
    is_active: bool = True
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class AuditTrail(BaseModel):
    """Curated, ordered grouping of audit entry ids."""

    id: str = Field(default_factory=new_id)
    name: str
    description: str
    event_ids: List[str] = []
    metadata: Optional[Any] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class AuditTrailDetails(AuditTrail):
    """Trail with its entries resolved and sorted by timestamp."""

    events: List[AuditLogEntry] = []


class AuditLogFilter(BaseModel):
    """Filter for audit log queries; unset fields do not filter."""

    user_id: Optional[str] = None
    integration_id: Optional[str] = None
    event_type: Optional[str] = None
    action: Optional[str] = None
    risk_level: Optional[RiskLevel] = None
    resource_type: Optional[str] = None
    time_range: Optional[TimeRange] = None
    tags: Optional[List[str]] = None
    limit: int = Field(default=100, ge=1)
    offset: int = Field(default=0, ge=0)


class AuditStatistics(BaseModel):
    total_events: int = 0
    events_by_type: Dict[str, int] = {}
    events_by_risk: Dict[str, int] = {}
    events_by_action: Dict[str, int] = {}
    events_by_hour: Dict[str, int] = {}
    top_users: Dict[str, int] = {}
    top_integrations: Dict[str, int] = {}
    security_events: int = 0
    data_events: int = 0
    configuration_events: int = 0
    error_events: int = 0


class ComplianceRecommendation(BaseModel):
    priority: str
    category: str
    title: str
    description: str
    actions: List[str] = []


class ComplianceSummary(BaseModel):
    total_events: int
    security_events: int
    data_events: int
    configuration_changes: int
    high_risk_events: int


class ComplianceGroups(BaseModel):
    data_processing_events: List[AuditLogEntry] = []
    access_control_events: List[AuditLogEntry] = []
    security_incidents: List[AuditLogEntry] = []
    configuration_changes: List[AuditLogEntry] = []


class ComplianceReport(BaseModel):
    generated_at: datetime
    time_range: TimeRange
    framework: str
    summary: ComplianceSummary
    compliance: ComplianceGroups
    recommendations: List[ComplianceRecommendation] = []


class AuditExport(BaseModel):
    """Rendered export document of audit entries."""

    success: bool = True
    format: str
    record_count: int
    exported_at: datetime
    expires_at: datetime
    content: str
