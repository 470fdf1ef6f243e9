"""Business logic services package."""

from relaykit.services.exceptions import (
    RelayKitError,
    StoreConnectionError,
    ConcurrentUpdateError,
    ErrorNotFound,
    AlertNotFound,
    WebhookNotFound,
    WebhookValidationError,
    AuditTrailNotFound
)
from relaykit.services.store import RedisStore, get_store
from relaykit.services.error_classifier import (
    categorize_error,
    determine_error_severity,
    classify
)
from relaykit.services.retry_policy import (
    RetryPolicy,
    RetryPolicyTable,
    compute_retry_delay
)
from relaykit.services.error_recorder import ErrorRecorder
from relaykit.services.retry_scheduler import OperationDispatcher, RetryScheduler
from relaykit.services.task_scheduler import TaskScheduler
from relaykit.services.webhook_registry import WebhookRegistry
from relaykit.services.webhook_delivery import WebhookDeliveryEngine
from relaykit.services.audit_logger import AuditLogger, determine_risk_level

__all__ = [
    'RelayKitError',
    'StoreConnectionError',
    'ConcurrentUpdateError',
    'ErrorNotFound',
    'AlertNotFound',
    'WebhookNotFound',
    'WebhookValidationError',
    'AuditTrailNotFound',
    'RedisStore',
    'get_store',
    'categorize_error',
    'determine_error_severity',
    'classify',
    'RetryPolicy',
    'RetryPolicyTable',
    'compute_retry_delay',
    'ErrorRecorder',
    'OperationDispatcher',
    'RetryScheduler',
    'TaskScheduler',
    'WebhookRegistry',
    'WebhookDeliveryEngine',
    'AuditLogger',
    'determine_risk_level'
]
