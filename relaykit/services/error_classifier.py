"""
Keyword-based classification of integration failures.

Maps a raw failure (exception or message) to an error category and an
independent severity. Both ladders are ordered; the first matching rule wins.
"""

from typing import Any, Mapping, Optional, Tuple, Union

from relaykit.models.error import ErrorCategory, ErrorSeverity


ErrorInput = Union[str, BaseException]

# Order matters: "timeout" is claimed by the network rule before the
# dedicated timeout rule is reached.
CATEGORY_RULES: Tuple[Tuple[ErrorCategory, Tuple[str, ...]], ...] = (
    (ErrorCategory.AUTHENTICATION, ("auth", "token", "unauthorized")),
    (ErrorCategory.RATE_LIMIT, ("rate limit", "too many requests")),
    (ErrorCategory.NETWORK, ("network", "connection", "timeout")),
    (ErrorCategory.VALIDATION, ("validation", "invalid", "required")),
    (ErrorCategory.WEBHOOK, ("webhook",)),
    (ErrorCategory.DATA_SYNC, ("sync", "synchroniz")),
    (ErrorCategory.PERMISSION, ("permission", "forbidden", "access denied")),
    (ErrorCategory.TIMEOUT, ("timeout",)),
)

SEVERITY_RULES: Tuple[Tuple[ErrorSeverity, Tuple[str, ...]], ...] = (
    (ErrorSeverity.CRITICAL, ("critical", "fatal", "auth", "security")),
    (ErrorSeverity.HIGH, ("data loss", "corruption", "sync failed")),
    (ErrorSeverity.MEDIUM, ("rate limit", "timeout", "temporary")),
)


def _message_of(error: ErrorInput) -> str:
    if isinstance(error, BaseException):
        return str(error).lower()
    return (error or "").lower()


def _integration_id_of(context: Any) -> Optional[str]:
    if context is None:
        return None
    if isinstance(context, Mapping):
        return context.get("integration_id")
    return getattr(context, "integration_id", None)


def categorize_error(error: ErrorInput, context: Any = None) -> ErrorCategory:
    """
    Categorize a failure by keywords in its message.

    Args:
        error: Exception or error message
        context: Optional mapping or object exposing ``integration_id``

    Returns:
        Matching category; ``integration`` when nothing matches but the
        context names an integration, ``unknown`` otherwise
    """
    message = _message_of(error)

    for category, keywords in CATEGORY_RULES:
        if any(keyword in message for keyword in keywords):
            return category

    if _integration_id_of(context):
        return ErrorCategory.INTEGRATION

    return ErrorCategory.UNKNOWN


def determine_error_severity(error: ErrorInput) -> ErrorSeverity:
    """
    Rate a failure by keywords in its message, independently of its category.

    Args:
        error: Exception or error message

    Returns:
        Matching severity, ``low`` when nothing matches
    """
    message = _message_of(error)

    for severity, keywords in SEVERITY_RULES:
        if any(keyword in message for keyword in keywords):
            return severity

    return ErrorSeverity.LOW


def classify(error: ErrorInput, context: Any = None) -> Tuple[ErrorCategory, ErrorSeverity]:
    """Categorize and rate a failure in one call."""
    return categorize_error(error, context), determine_error_severity(error)
