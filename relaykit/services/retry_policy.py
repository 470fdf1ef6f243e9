"""
Per-category retry policies and backoff computation.
"""

from typing import Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict

from relaykit.models.error import ErrorCategory, ErrorSeverity, RetryConfig, RetryStrategy
from relaykit.utils.resilience import calculate_backoff_delay


DEFAULT_BACKOFF_MULTIPLIER = 2


class RetryPolicy(BaseModel):
    """Retry and alerting behaviour of one error category (delays in ms)."""

    model_config = ConfigDict(frozen=True)

    max_retries: int
    strategy: RetryStrategy
    base_delay: int
    max_delay: int
    default_severity: ErrorSeverity
    should_alert: bool
    auto_resolve: bool

    def to_retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            strategy=self.strategy,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            backoff_multiplier=DEFAULT_BACKOFF_MULTIPLIER,
        )


def _policy(max_retries, strategy, base_delay, max_delay, severity, should_alert, auto_resolve):
    return RetryPolicy(
        max_retries=max_retries,
        strategy=strategy,
        base_delay=base_delay,
        max_delay=max_delay,
        default_severity=severity,
        should_alert=should_alert,
        auto_resolve=auto_resolve,
    )


_DEFAULT_POLICIES = {
    ErrorCategory.AUTHENTICATION: _policy(
        3, RetryStrategy.EXPONENTIAL_BACKOFF, 1000, 30000, ErrorSeverity.HIGH, True, False
    ),
    ErrorCategory.RATE_LIMIT: _policy(
        5, RetryStrategy.EXPONENTIAL_BACKOFF, 5000, 300000, ErrorSeverity.MEDIUM, False, True
    ),
    ErrorCategory.NETWORK: _policy(
        3, RetryStrategy.EXPONENTIAL_BACKOFF, 2000, 60000, ErrorSeverity.MEDIUM, True, True
    ),
    ErrorCategory.VALIDATION: _policy(
        0, RetryStrategy.NO_RETRY, 0, 0, ErrorSeverity.LOW, False, False
    ),
    ErrorCategory.INTEGRATION: _policy(
        3, RetryStrategy.EXPONENTIAL_BACKOFF, 1000, 30000, ErrorSeverity.HIGH, True, False
    ),
    ErrorCategory.WEBHOOK: _policy(
        5, RetryStrategy.EXPONENTIAL_BACKOFF, 1000, 60000, ErrorSeverity.MEDIUM, True, False
    ),
    ErrorCategory.DATA_SYNC: _policy(
        3, RetryStrategy.LINEAR_BACKOFF, 5000, 120000, ErrorSeverity.HIGH, True, False
    ),
    ErrorCategory.PERMISSION: _policy(
        1, RetryStrategy.FIXED_DELAY, 1000, 1000, ErrorSeverity.HIGH, True, False
    ),
    ErrorCategory.TIMEOUT: _policy(
        2, RetryStrategy.EXPONENTIAL_BACKOFF, 2000, 30000, ErrorSeverity.MEDIUM, True, True
    ),
    ErrorCategory.UNKNOWN: _policy(
        2, RetryStrategy.EXPONENTIAL_BACKOFF, 1000, 10000, ErrorSeverity.MEDIUM, True, False
    ),
}


class RetryPolicyTable:
    """
    Immutable category -> policy mapping, built once and shared.

    Categories missing from the table use the ``unknown`` policy.
    """

    def __init__(self, policies: Mapping[ErrorCategory, RetryPolicy]):
        if ErrorCategory.UNKNOWN not in policies:
            raise ValueError("Policy table must define the 'unknown' category")
        self._policies: Dict[ErrorCategory, RetryPolicy] = dict(policies)

    @classmethod
    def default(cls) -> "RetryPolicyTable":
        return cls(_DEFAULT_POLICIES)

    def policy_for(self, category: Optional[ErrorCategory]) -> RetryPolicy:
        if category in self._policies:
            return self._policies[category]
        return self._policies[ErrorCategory.UNKNOWN]

    def __iter__(self):
        return iter(self._policies)

    def __len__(self) -> int:
        return len(self._policies)


def compute_retry_delay(retry_config: RetryConfig, retry_count: int) -> int:
    """
    Delay in ms before the retry following ``retry_count`` completed retries.

    ``no_retry`` and ``fixed_delay`` use the base delay, ``immediate`` is 0.
    """
    return calculate_backoff_delay(
        retry_config.strategy.value,
        retry_config.base_delay,
        retry_config.max_delay,
        retry_count,
        retry_config.backoff_multiplier,
    )
