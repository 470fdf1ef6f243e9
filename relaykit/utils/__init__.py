"""
Utility modules for relaykit.
"""

from relaykit.utils.logging import (
    get_logger,
    setup_logging,
    log_error_recorded,
    log_retry_outcome,
    log_webhook_delivery,
    log_audit_event,
    log_api_call,
    log_error_with_context,
)
from relaykit.utils.metrics import (
    SweepMetrics,
    DeliveryMetrics,
    track_http_call,
    emit_metric,
)
from relaykit.utils.resilience import (
    calculate_backoff_delay,
    webhook_retry_delay,
    ErrorRecoveryManager,
)

__all__ = [
    "get_logger",
    "setup_logging",
    "log_error_recorded",
    "log_retry_outcome",
    "log_webhook_delivery",
    "log_audit_event",
    "log_api_call",
    "log_error_with_context",
    "SweepMetrics",
    "DeliveryMetrics",
    "track_http_call",
    "emit_metric",
    "calculate_backoff_delay",
    "webhook_retry_delay",
    "ErrorRecoveryManager",
]
