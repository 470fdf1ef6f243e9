"""
Unit tests for metrics collection utilities.
"""

import pytest
from datetime import datetime

from relaykit.utils.metrics import DeliveryMetrics, SweepMetrics, emit_metric, track_http_call
from relaykit.utils.logging import get_logger


def test_sweep_metrics_initialization():
    """Test sweep metrics initialization."""
    metrics = SweepMetrics("error_retry_sweep")

    assert metrics.sweep_name == "error_retry_sweep"
    assert metrics.records_processed == 0
    assert metrics.outcomes == {}
    assert metrics.start_time is None


def test_sweep_metrics_start_and_complete():
    metrics = SweepMetrics()

    metrics.start()
    metrics.complete()

    assert isinstance(metrics.start_time, datetime)
    assert metrics.end_time is not None
    assert metrics.duration_ms is not None
    assert metrics.duration_ms >= 0


def test_sweep_metrics_record_outcome():
    metrics = SweepMetrics()

    metrics.record_outcome("resolved")
    metrics.record_outcome("resolved")
    metrics.record_outcome("retry_failed")

    assert metrics.records_processed == 3
    assert metrics.outcomes == {"resolved": 2, "retry_failed": 1}


def test_sweep_metrics_summary():
    metrics = SweepMetrics("nightly")
    metrics.start()
    metrics.record_outcome("failed")
    metrics.complete()

    summary = metrics.get_metrics_summary()

    assert summary["sweep"] == "nightly"
    assert summary["records_processed"] == 1
    assert summary["outcomes"] == {"failed": 1}
    assert summary["duration_ms"] is not None


def test_delivery_metrics_summary():
    """Test recording delivery call metrics."""
    metrics = DeliveryMetrics()

    metrics.record_call("wh_1", 150.0, True)
    metrics.record_call("wh_1", 200.0, False)
    metrics.record_call("wh_2", 500.0, True)

    summary = metrics.get_metrics_summary()

    assert summary["calls"] == {"wh_1": 2, "wh_2": 1}
    assert summary["failures"] == {"wh_1": 1}
    assert summary["latencies"]["wh_1"]["count"] == 2
    assert summary["latencies"]["wh_1"]["avg_ms"] == 175.0
    assert summary["latencies"]["wh_2"]["max_ms"] == 500.0


@pytest.mark.asyncio
async def test_track_http_call_records_duration():
    metrics = DeliveryMetrics()
    logger = get_logger("test_track_http_call")

    async with track_http_call(metrics, "wh_1", "https://hooks.example.com", "POST", logger) as call:
        call["status_code"] = 204
        call["success"] = True

    assert call["duration_ms"] >= 0
    assert metrics.calls == {"wh_1": 1}
    assert metrics.failures == {}


@pytest.mark.asyncio
async def test_track_http_call_counts_exceptions_as_failures():
    metrics = DeliveryMetrics()
    logger = get_logger("test_track_http_call")

    with pytest.raises(ConnectionError):
        async with track_http_call(metrics, "wh_1", "https://hooks.example.com", "POST", logger):
            raise ConnectionError("refused")

    assert metrics.failures == {"wh_1": 1}


def test_emit_metric():
    """Test emitting a metric."""
    # This should not raise an exception
    emit_metric("retry_sweep.processed", 3, resolved=2, failed=1)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
