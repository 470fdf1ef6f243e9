"""Domain exceptions raised by relaykit services."""


class RelayKitError(Exception):
    """Base class for relaykit service errors."""
    pass


class StoreConnectionError(RelayKitError):
    """Raised when the store cannot be reached after retries."""
    pass


class ConcurrentUpdateError(RelayKitError):
    """Raised when a record keeps changing underneath a compare-and-swap update."""
    pass


class ErrorNotFound(RelayKitError):
    """Raised when an error record does not exist."""
    pass


class AlertNotFound(RelayKitError):
    """Raised when an error or audit alert does not exist."""
    pass


class WebhookNotFound(RelayKitError):
    """Raised when a webhook endpoint does not exist or belongs to another user."""
    pass


class WebhookValidationError(RelayKitError):
    """Raised when a webhook definition is rejected."""
    pass


class AuditTrailNotFound(RelayKitError):
    """Raised when an audit trail does not exist."""
    pass
