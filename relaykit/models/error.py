"""Error tracking data models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .common import new_id, utc_now


class ErrorCategory(str, Enum):
    """Classification bucket of a failure; drives its retry policy."""

    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    VALIDATION = "validation"
    INTEGRATION = "integration"
    WEBHOOK = "webhook"
    DATA_SYNC = "data_sync"
    PERMISSION = "permission"
    TIMEOUT = "timeout"
    UNKNOWN = "unknown"

    @classmethod
    def _missing_(cls, value):
        # Unrecognised categories fall back to UNKNOWN instead of failing
        return cls.UNKNOWN


class ErrorSeverity(str, Enum):
    """Error severity levels; drive alerting."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorStatus(str, Enum):
    """Lifecycle status of an error record."""

    NEW = "new"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    FAILED = "failed"


class RetryStrategy(str, Enum):
    """Backoff formula used between retry attempts."""

    EXPONENTIAL_BACKOFF = "exponential_backoff"
    LINEAR_BACKOFF = "linear_backoff"
    FIXED_DELAY = "fixed_delay"
    IMMEDIATE = "immediate"
    NO_RETRY = "no_retry"


class RetryConfig(BaseModel):
    """Retry configuration carried by each error record (delays in ms)."""

    max_retries: int = Field(ge=0)
    strategy: RetryStrategy
    base_delay: int = Field(ge=0)
    max_delay: int = Field(ge=0)
    backoff_multiplier: Optional[float] = 2


class ErrorContext(BaseModel):
    """Where the failure happened; `operation` keys the retry dispatcher."""

    operation: Optional[str] = None
    endpoint: Optional[str] = None
    method: Optional[str] = None
    request_id: Optional[str] = None
    user_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class ErrorRecord(BaseModel):
    """Error record for tracking failures and their retries."""

    id: str = Field(default_factory=new_id)
    integration_id: Optional[str] = None
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    details: Optional[Any] = None
    context: Optional[ErrorContext] = None
    stack_trace: Optional[str] = None
    status: ErrorStatus = ErrorStatus.NEW
    retry_config: RetryConfig
    retry_count: int = 0
    next_retry_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None
    tags: List[str] = []
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    version: int = 0


class ErrorAlert(BaseModel):
    """Alert raised alongside an error record."""

    id: str = Field(default_factory=new_id)
    error_id: str
    level: ErrorSeverity
    message: str
    is_active: bool = True
    notifications_sent: List[str] = []
    acknowledged_by: Optional[str] = None
    acknowledged_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class TrendPoint(BaseModel):
    """Hourly error count bucket."""

    time: str
    count: int


class ErrorStatistics(BaseModel):
    """Aggregated error counts for a time range."""

    total: int = 0
    by_category: Dict[str, int] = {}
    by_severity: Dict[str, int] = {}
    by_status: Dict[str, int] = {}
    resolved: int = 0
    failed: int = 0
    retrying: int = 0
    avg_resolution_time_ms: float = 0
    trend_data: List[TrendPoint] = []


class OperationResult(BaseModel):
    """Result returned by a retried operation."""

    success: bool
    message: Optional[str] = None


class RetryOutcome(BaseModel):
    """Outcome of processing one due error record."""

    error_id: str
    status: str  # 'resolved', 'failed', 'retry_scheduled', 'retry_failed'
    error: Optional[str] = None
    next_retry_at: Optional[datetime] = None


class RetrySweepResult(BaseModel):
    """Summary of one retry sweep."""

    processed: int
    results: List[RetryOutcome] = []
