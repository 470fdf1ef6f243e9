"""Data models for relaykit."""

from .api_response import (
    CreatedResponse,
    DeletedResponse,
    RetryScheduledResponse,
    StatusResponse,
)
from .audit import (
    AuditAlert,
    AuditEventType,
    AuditExport,
    AuditLogEntry,
    AuditLogFilter,
    AuditMetadata,
    AuditStatistics,
    AuditTrail,
    AuditTrailDetails,
    ComplianceGroups,
    ComplianceRecommendation,
    ComplianceReport,
    ComplianceSummary,
    RiskLevel,
)
from .common import TimeRange, from_epoch_ms, new_id, to_epoch_ms, utc_now
from .error import (
    ErrorAlert,
    ErrorCategory,
    ErrorContext,
    ErrorRecord,
    ErrorSeverity,
    ErrorStatistics,
    ErrorStatus,
    OperationResult,
    RetryConfig,
    RetryOutcome,
    RetryStrategy,
    RetrySweepResult,
    TrendPoint,
)
from .requests import (
    AcknowledgeRequest,
    AuditExportRequest,
    AuditLogCreate,
    AuditTrailCreate,
    ComplianceReportRequest,
    ErrorCreate,
    EventTrigger,
    ResolveRequest,
)
from .task import ScheduledTask
from .webhook import (
    MASKED_CREDENTIALS,
    AuthType,
    DeliveryResponse,
    DeliveryResult,
    HttpMethod,
    MaskedAuthentication,
    WebhookAuthentication,
    WebhookDeliveryLog,
    WebhookEndpoint,
    WebhookEndpointCreate,
    WebhookEndpointUpdate,
    WebhookEndpointView,
    WebhookEvent,
    WebhookRetryPolicy,
)

__all__ = [
    # Common
    "TimeRange",
    "new_id",
    "utc_now",
    "to_epoch_ms",
    "from_epoch_ms",
    "ScheduledTask",
    # Error models
    "ErrorCategory",
    "ErrorSeverity",
    "ErrorStatus",
    "RetryStrategy",
    "RetryConfig",
    "ErrorContext",
    "ErrorRecord",
    "ErrorAlert",
    "ErrorStatistics",
    "TrendPoint",
    "OperationResult",
    "RetryOutcome",
    "RetrySweepResult",
    # Webhook models
    "WebhookEvent",
    "HttpMethod",
    "AuthType",
    "WebhookAuthentication",
    "WebhookRetryPolicy",
    "WebhookEndpoint",
    "WebhookEndpointCreate",
    "WebhookEndpointUpdate",
    "WebhookEndpointView",
    "MaskedAuthentication",
    "MASKED_CREDENTIALS",
    "DeliveryResponse",
    "WebhookDeliveryLog",
    "DeliveryResult",
    # Audit models
    "RiskLevel",
    "AuditEventType",
    "AuditMetadata",
    "AuditLogEntry",
    "AuditAlert",
    "AuditTrail",
    "AuditTrailDetails",
    "AuditLogFilter",
    "AuditStatistics",
    "ComplianceRecommendation",
    "ComplianceSummary",
    "ComplianceGroups",
    "ComplianceReport",
    "AuditExport",
    # API response models
    "CreatedResponse",
    "StatusResponse",
    "RetryScheduledResponse",
    "DeletedResponse",
    # API request models
    "AcknowledgeRequest",
    "ResolveRequest",
    "AuditLogCreate",
    "AuditTrailCreate",
    "ComplianceReportRequest",
    "AuditExportRequest",
    "ErrorCreate",
    "EventTrigger",
]
