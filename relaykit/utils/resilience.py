"""
Resilience utilities for retry scheduling and fault tolerance.

This module provides:
- Backoff delay calculations for error retries and webhook redelivery
- Partial failure reporting for batch operations such as the retry sweep
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


EXPONENTIAL_BACKOFF = "exponential_backoff"
LINEAR_BACKOFF = "linear_backoff"
FIXED_DELAY = "fixed_delay"
IMMEDIATE = "immediate"
NO_RETRY = "no_retry"


def calculate_backoff_delay(
    strategy: str,
    base_delay: int,
    max_delay: int,
    retry_count: int,
    multiplier: Optional[float] = None
) -> int:
    """
    Calculate the delay before the next retry attempt.

    Formulas (all values in milliseconds):
    - exponential_backoff: min(base * multiplier ** retry_count, max)
    - linear_backoff: min(base + base * retry_count, max)
    - immediate: 0
    - fixed_delay and anything else: base

    Args:
        strategy: Retry strategy name
        base_delay: Base delay in milliseconds
        max_delay: Upper bound for computed delays in milliseconds
        retry_count: Retries already performed (0 for the first retry)
        multiplier: Exponential multiplier (default: 2)

    Returns:
        Delay in milliseconds

    Example:
        >>> calculate_backoff_delay("exponential_backoff", 1000, 30000, 3)
        8000
    """
    if strategy == EXPONENTIAL_BACKOFF:
        factor = multiplier if multiplier else 2
        return int(min(base_delay * (factor ** retry_count), max_delay))

    if strategy == LINEAR_BACKOFF:
        return int(min(base_delay + base_delay * retry_count, max_delay))

    if strategy == IMMEDIATE:
        return 0

    return int(base_delay)


def webhook_retry_delay(retry_delay: int, attempt: int, exponential_backoff: bool) -> int:
    """
    Delay before redelivering a webhook after attempt ``attempt`` failed.

    Args:
        retry_delay: Base delay in milliseconds from the endpoint retry policy
        attempt: 1-based number of the attempt that just failed
        exponential_backoff: Double the delay for every further attempt

    Returns:
        Delay in milliseconds
    """
    if exponential_backoff:
        return int(retry_delay * (2 ** (attempt - 1)))
    return int(retry_delay)


class ErrorRecoveryManager:
    """
    Helpers for reporting partial failures in batch operations.
    """

    @staticmethod
    def handle_partial_failure(
        operation_name: str,
        total_items: int,
        successful_items: int,
        errors: list,
        context: dict
    ) -> None:
        """
        Log partial failure with context.

        Args:
            operation_name: Name of the operation
            total_items: Total number of items processed
            successful_items: Number of items that completed without raising
            errors: List of error messages
            context: Additional context information
        """
        failed_items = total_items - successful_items

        if failed_items > 0:
            logger.warning(
                f"Partial failure in {operation_name}: "
                f"{successful_items}/{total_items} succeeded, {failed_items} failed",
                extra={
                    "operation": operation_name,
                    "total_items": total_items,
                    "successful_items": successful_items,
                    "failed_items": failed_items,
                    "errors": errors[:10],  # Limit to first 10 errors
                    "context": context
                }
            )
        else:
            logger.info(
                f"{operation_name} completed successfully: {successful_items}/{total_items}",
                extra={
                    "operation": operation_name,
                    "total_items": total_items,
                    "context": context
                }
            )
