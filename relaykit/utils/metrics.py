"""
Metrics collection and emission for observability.

This module provides metrics tracking for:
- Retry sweep duration and outcome counts
- Webhook delivery latency per endpoint
"""

import time
from datetime import datetime, timezone
from typing import Optional, Dict, Any
from contextlib import asynccontextmanager

from relaykit.utils.logging import get_logger

logger = get_logger(__name__)


class SweepMetrics:
    """
    Collects metrics for one retry sweep.

    Tracks:
    - Sweep start/end time
    - Number of due records processed
    - Count per outcome (resolved, failed, retry_scheduled, retry_failed)
    """

    def __init__(self, sweep_name: str = "error_retry_sweep"):
        self.sweep_name = sweep_name

        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.duration_ms: Optional[int] = None

        self.records_processed: int = 0
        self.outcomes: Dict[str, int] = {}

    def start(self) -> None:
        """Mark sweep start."""
        self.start_time = datetime.now(timezone.utc)

    def record_outcome(self, outcome: str) -> None:
        """
        Record the outcome of one processed record.

        Args:
            outcome: Outcome label
        """
        self.records_processed += 1
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def complete(self) -> None:
        """Mark sweep completion and log the summary."""
        self.end_time = datetime.now(timezone.utc)

        if self.start_time:
            duration = (self.end_time - self.start_time).total_seconds()
            self.duration_ms = int(duration * 1000)

        logger.info(
            f"Sweep {self.sweep_name} completed",
            extra={
                "sweep": self.sweep_name,
                "duration_ms": self.duration_ms,
                "records_processed": self.records_processed,
                "outcomes": self.outcomes,
            }
        )

    def get_metrics_summary(self) -> Dict[str, Any]:
        """
        Get summary of collected metrics.

        Returns:
            Dictionary of metrics
        """
        return {
            "sweep": self.sweep_name,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_ms": self.duration_ms,
            "records_processed": self.records_processed,
            "outcomes": dict(self.outcomes),
        }


class DeliveryMetrics:
    """
    Collects webhook delivery latencies keyed by endpoint id.
    """

    def __init__(self):
        self.calls: Dict[str, int] = {}
        self.failures: Dict[str, int] = {}
        self.latencies: Dict[str, list[float]] = {}

    def record_call(self, endpoint_id: str, duration_ms: float, success: bool) -> None:
        """
        Record one delivery call.

        Args:
            endpoint_id: Webhook endpoint id
            duration_ms: Call duration in milliseconds
            success: Whether the call succeeded
        """
        self.calls[endpoint_id] = self.calls.get(endpoint_id, 0) + 1
        if not success:
            self.failures[endpoint_id] = self.failures.get(endpoint_id, 0) + 1
        self.latencies.setdefault(endpoint_id, []).append(duration_ms)

    def get_metrics_summary(self) -> Dict[str, Any]:
        """
        Get per-endpoint call counts and latency statistics.

        Returns:
            Dictionary of metrics
        """
        latency_stats = {}
        for endpoint_id, latencies in self.latencies.items():
            if latencies:
                latency_stats[endpoint_id] = {
                    "count": len(latencies),
                    "min_ms": round(min(latencies), 2),
                    "max_ms": round(max(latencies), 2),
                    "avg_ms": round(sum(latencies) / len(latencies), 2),
                }

        return {
            "calls": dict(self.calls),
            "failures": dict(self.failures),
            "latencies": latency_stats,
        }


@asynccontextmanager
async def track_http_call(
    metrics: Optional[DeliveryMetrics],
    endpoint_id: str,
    url: str,
    method: str,
    logger_adapter
):
    """
    Context manager to track outbound HTTP call timing.

    Usage:
        async with track_http_call(metrics, endpoint.id, endpoint.url, "POST", logger) as call:
            response = await client.request(...)
            call["status_code"] = response.status_code
            call["success"] = response.is_success

    Args:
        metrics: Delivery metrics collector (optional)
        endpoint_id: Webhook endpoint id
        url: Target URL
        method: HTTP method
        logger_adapter: Logger for logging the call

    Yields:
        Mutable dict the caller fills with status_code and success
    """
    start_time = time.perf_counter()
    call: Dict[str, Any] = {"status_code": None, "success": False}
    error = None

    try:
        yield call
    except Exception as e:
        error = e
        raise
    finally:
        duration_ms = (time.perf_counter() - start_time) * 1000
        call["duration_ms"] = duration_ms

        if metrics:
            metrics.record_call(endpoint_id, duration_ms, call["success"] and error is None)

        from relaykit.utils.logging import log_api_call
        log_api_call(
            logger_adapter,
            service="webhook",
            endpoint=url,
            method=method,
            status_code=call["status_code"],
            duration_ms=duration_ms,
            error=str(error) if error else None
        )


def emit_metric(metric_name: str, value: float, **tags: Any) -> None:
    """
    Emit a metric.

    Metrics are written to the structured log; a log shipper forwards them
    to the monitoring backend.

    Args:
        metric_name: Metric name
        value: Metric value
        **tags: Metric tags/labels
    """
    logger.info(
        f"Metric: {metric_name}",
        extra={
            "metric_name": metric_name,
            "metric_value": value,
            "metric_tags": tags,
        }
    )
