"""
Structured logging utilities with JSON formatting and context injection.

This module provides structured logging capabilities with:
- JSON formatted log output for machine-readable logs
- Context injection (error_id, webhook_id, integration_id) via LoggerAdapter
- Domain helpers for error, retry, webhook and audit events
- Integration with Python's standard logging module
"""

import logging
import json
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, Optional, MutableMapping
from logging import LogRecord


# Context fields promoted to the top level of every JSON log line
CONTEXT_FIELDS = ("error_id", "webhook_id", "integration_id", "request_id", "audit_id")

_RESERVED_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "message", "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info", "taskName",
}


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Outputs log records as JSON with standard fields:
    - timestamp: ISO 8601 formatted timestamp
    - level: Log level (INFO, WARNING, ERROR, etc.)
    - logger: Logger name
    - message: Log message
    - context: Additional context fields
    - error: Error details (when exc_info is attached)
    """

    def format(self, record: LogRecord) -> str:
        """
        Format log record as JSON.

        Args:
            record: Log record to format

        Returns:
            JSON formatted log string
        """
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for field in CONTEXT_FIELDS:
            if hasattr(record, field):
                log_data[field] = getattr(record, field)

        extra_fields = {}
        for key, value in record.__dict__.items():
            if key not in _RESERVED_ATTRS and key not in CONTEXT_FIELDS:
                extra_fields[key] = value

        if extra_fields:
            log_data["context"] = extra_fields

        if record.exc_info:
            log_data["error"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "stack_trace": "".join(traceback.format_exception(*record.exc_info))
            }

        log_data["source"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName
        }

        return json.dumps(log_data, default=str)


class ContextLoggerAdapter(logging.LoggerAdapter):
    """
    Logger adapter that injects context fields into all log records.
    """

    def __init__(self, logger: logging.Logger, extra: Optional[Dict[str, Any]] = None):
        super().__init__(logger, extra or {})

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        """
        Process log message and inject context.

        Args:
            msg: Log message
            kwargs: Log kwargs

        Returns:
            Tuple of (message, kwargs) with context injected
        """
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs

    def with_context(self, **context: Any) -> "ContextLoggerAdapter":
        """
        Create a new logger adapter with additional context.

        Args:
            **context: Additional context fields

        Returns:
            New logger adapter with merged context
        """
        new_extra = self.extra.copy()
        new_extra.update(context)
        return ContextLoggerAdapter(self.logger, new_extra)


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    formatter = JSONFormatter()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()
    root_logger.addHandler(console_handler)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str, **context: Any) -> ContextLoggerAdapter:
    """
    Get a context-aware logger for a module.

    Args:
        name: Logger name (typically __name__)
        **context: Initial context fields (error_id, webhook_id, etc.)

    Returns:
        Context logger adapter

    Example:
        logger = get_logger(__name__, webhook_id="wh_123")
        logger.info("Delivering")  # Will include webhook_id
    """
    base_logger = logging.getLogger(name)
    return ContextLoggerAdapter(base_logger, context)


def log_error_recorded(
    logger: logging.LoggerAdapter,
    error_id: str,
    category: str,
    severity: str,
    alerted: bool
) -> None:
    """
    Log creation of an error record.

    Args:
        logger: Logger to use
        error_id: New error record id
        category: Error category
        severity: Error severity
        alerted: Whether an alert was raised alongside the record
    """
    logger.info(
        f"Error recorded: {category}/{severity}",
        extra={
            "error_id": error_id,
            "category": category,
            "severity": severity,
            "alerted": alerted,
        }
    )


def log_retry_outcome(
    logger: logging.LoggerAdapter,
    error_id: str,
    outcome: str,
    retry_count: int,
    message: Optional[str] = None
) -> None:
    """
    Log the outcome of one retry attempt.

    Args:
        logger: Logger to use
        error_id: Error record id
        outcome: resolved, failed, retry_scheduled or retry_failed
        retry_count: Retry count after the attempt
        message: Operation message, if any
    """
    extra = {
        "error_id": error_id,
        "outcome": outcome,
        "retry_count": retry_count,
    }
    if message:
        extra["operation_message"] = message

    if outcome in ("failed", "retry_failed"):
        logger.warning(f"Retry {outcome} for error {error_id}", extra=extra)
    else:
        logger.info(f"Retry {outcome} for error {error_id}", extra=extra)


def log_webhook_delivery(
    logger: logging.LoggerAdapter,
    webhook_id: str,
    event: str,
    attempt: int,
    success: bool,
    status_code: Optional[int] = None,
    error: Optional[str] = None
) -> None:
    """
    Log a single webhook delivery attempt.

    Args:
        logger: Logger to use
        webhook_id: Endpoint id
        event: Event name
        attempt: 1-based attempt number
        success: Whether the endpoint answered 2xx
        status_code: HTTP status, if a response was received
        error: Failure description
    """
    extra: Dict[str, Any] = {
        "webhook_id": webhook_id,
        "event": event,
        "attempt": attempt,
        "success": success,
    }
    if status_code is not None:
        extra["status_code"] = status_code
    if error is not None:
        extra["error"] = error

    if success:
        logger.info(f"Webhook delivered: {event} (attempt {attempt})", extra=extra)
    else:
        logger.warning(f"Webhook delivery failed: {event} (attempt {attempt})", extra=extra)


def log_audit_event(
    logger: logging.LoggerAdapter,
    audit_id: str,
    event_type: str,
    risk_level: str
) -> None:
    """Log an appended audit entry."""
    logger.info(
        f"Audit event: {event_type}",
        extra={"audit_id": audit_id, "event_type": event_type, "risk_level": risk_level}
    )


def log_api_call(
    logger: logging.LoggerAdapter,
    service: str,
    endpoint: str,
    method: str,
    status_code: Optional[int] = None,
    duration_ms: Optional[float] = None,
    error: Optional[str] = None
) -> None:
    """
    Log outbound HTTP call with request/response details.

    Args:
        logger: Logger to use
        service: Service name (e.g., 'webhook')
        endpoint: Target URL
        method: HTTP method
        status_code: Response status code (if available)
        duration_ms: Request duration in milliseconds (if available)
        error: Error message (if request failed)
    """
    extra = {
        "service": service,
        "endpoint": endpoint,
        "method": method,
    }

    if status_code is not None:
        extra["status_code"] = status_code
    if duration_ms is not None:
        extra["duration_ms"] = round(duration_ms, 2)
    if error is not None:
        extra["error"] = error

    if error:
        logger.error(f"API call failed: {method} {endpoint}", extra=extra)
    else:
        logger.info(f"API call: {method} {endpoint}", extra=extra)


def log_error_with_context(
    logger: logging.LoggerAdapter,
    message: str,
    error: Exception,
    **context: Any
) -> None:
    """
    Log error with full stack trace and context.

    Args:
        logger: Logger to use
        message: Error message
        error: Exception object
        **context: Additional context fields
    """
    logger.error(
        message,
        extra=context,
        exc_info=True
    )
