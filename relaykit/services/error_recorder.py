"""
Error recorder for persisting classified failures.

This service handles:
- Persisting error records with their initial retry schedule
- Raising alerts for categories whose policy asks for one
- Manual retry, resolution and failure transitions
- Alert acknowledgement, statistics and retention cleanup
"""

import traceback
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from relaykit.models.common import to_epoch_ms, utc_now
from relaykit.models.error import (
    ErrorAlert,
    ErrorCategory,
    ErrorContext,
    ErrorRecord,
    ErrorSeverity,
    ErrorStatistics,
    ErrorStatus,
    RetryConfig,
    TrendPoint,
)
from relaykit.models.api_response import RetryScheduledResponse
from relaykit.services.error_classifier import classify
from relaykit.services.exceptions import AlertNotFound, ErrorNotFound
from relaykit.services.retry_policy import RetryPolicyTable, compute_retry_delay
from relaykit.services.store import RedisStore
from relaykit.utils.logging import get_logger, log_error_recorded


logger = get_logger(__name__)

AUTO_RESOLUTION = "Automatically resolved through retry"

STATISTICS_TIME_RANGES = {
    "1h": timedelta(hours=1),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


def sync_retry_schedule(pipe, record: ErrorRecord) -> None:
    """Keep the retry schedule in step with a record being written."""
    if record.status == ErrorStatus.RETRYING and record.next_retry_at:
        pipe.zadd(RedisStore.ERROR_RETRY_SCHEDULE_KEY, {record.id: to_epoch_ms(record.next_retry_at)})
    else:
        pipe.zrem(RedisStore.ERROR_RETRY_SCHEDULE_KEY, record.id)


class ErrorRecorder:
    """
    Service persisting error records and driving their lifecycle.

    Records move new -> retrying -> resolved | failed. Every transition is a
    single compare-and-swap write of the record, so concurrent sweeps never
    double-increment the retry count.
    """

    def __init__(
        self,
        store: RedisStore,
        policies: Optional[RetryPolicyTable] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        """
        Initialize the error recorder.

        Args:
            store: Durable store
            policies: Retry policy table (default policies if None)
            clock: Returns the current UTC time
        """
        self.store = store
        self.policies = policies or RetryPolicyTable.default()
        self.clock = clock

    async def record_error(
        self,
        category: ErrorCategory,
        severity: ErrorSeverity,
        message: str,
        details: Optional[Any] = None,
        context: Optional[ErrorContext] = None,
        retry_config: Optional[RetryConfig] = None,
        integration_id: Optional[str] = None,
        stack_trace: Optional[str] = None,
        tags: Optional[List[str]] = None
    ) -> str:
        """
        Persist a new error record.

        The record gets the category's retry configuration unless one is
        supplied. When the policy alerts, an active alert is created with the
        policy's default severity. When the policy allows retries the record
        starts out retrying, due after the policy's base delay.

        Args:
            category: Error category
            severity: Error severity (explicit value always wins)
            message: Error message
            details: Opaque error details
            context: Operation context; ``context.operation`` keys the retry dispatcher
            retry_config: Explicit retry configuration
            integration_id: Owning integration
            stack_trace: Captured traceback
            tags: Free-form tags

        Returns:
            The new error record id
        """
        category = ErrorCategory(category)
        severity = ErrorSeverity(severity)
        policy = self.policies.policy_for(category)
        config = retry_config or policy.to_retry_config()
        now = self.clock()

        record = ErrorRecord(
            integration_id=integration_id,
            category=category,
            severity=severity,
            message=message,
            details=details,
            context=context,
            stack_trace=stack_trace,
            status=ErrorStatus.NEW,
            retry_config=config,
            tags=tags or [],
            created_at=now,
            updated_at=now,
        )

        # The first transition follows the category policy, not the stored config
        if policy.max_retries > 0:
            record.status = ErrorStatus.RETRYING
            record.next_retry_at = now + timedelta(milliseconds=policy.base_delay)

        alert = None
        if policy.should_alert:
            alert = ErrorAlert(
                error_id=record.id,
                level=policy.default_severity,
                message=f"{category.value.upper()}: {message}",
                created_at=now,
                updated_at=now,
            )

        def _write(pipe, document: ErrorRecord) -> None:
            sync_retry_schedule(pipe, document)
            if alert is not None:
                self.store.queue_insert(pipe, RedisStore.ERROR_ALERTS, alert)

        await self.store.insert(RedisStore.ERRORS, record, extra_ops=_write)

        log_error_recorded(logger, record.id, category.value, severity.value, policy.should_alert)
        return record.id

    async def record_exception(
        self,
        error: BaseException,
        context: Optional[ErrorContext] = None,
        integration_id: Optional[str] = None,
        details: Optional[Any] = None,
        retry_config: Optional[RetryConfig] = None
    ) -> str:
        """
        Classify an exception and record it with its traceback.

        Returns:
            The new error record id
        """
        classifier_context = {"integration_id": integration_id} if integration_id else None
        category, severity = classify(error, classifier_context)
        stack_trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))

        return await self.record_error(
            category,
            severity,
            str(error) or type(error).__name__,
            details=details,
            context=context,
            retry_config=retry_config,
            integration_id=integration_id,
            stack_trace=stack_trace,
        )

    async def get_error(self, error_id: str) -> ErrorRecord:
        """
        Get an error record.

        Raises:
            ErrorNotFound: If the record does not exist
        """
        record = await self.store.get(RedisStore.ERRORS, error_id, ErrorRecord)
        if record is None:
            raise ErrorNotFound(f"Error {error_id} not found")
        return record

    async def get_errors(
        self,
        integration_id: Optional[str] = None,
        category: Optional[ErrorCategory] = None,
        severity: Optional[ErrorSeverity] = None,
        status: Optional[ErrorStatus] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[ErrorRecord]:
        """
        List error records, newest first.

        Args:
            integration_id: Only errors of this integration
            category: Only errors of this category
            severity: Only errors of this severity
            status: Only errors in this status
            limit: Maximum number of records
            offset: Records to skip

        Returns:
            Matching error records
        """
        records = await self.store.list_all(RedisStore.ERRORS, ErrorRecord)

        filtered = [
            record for record in records
            if (integration_id is None or record.integration_id == integration_id)
            and (category is None or record.category == category)
            and (severity is None or record.severity == severity)
            and (status is None or record.status == status)
        ]
        filtered.sort(key=lambda record: record.created_at, reverse=True)

        return filtered[offset:offset + limit]

    async def retry_error(self, error_id: str) -> RetryScheduledResponse:
        """
        Schedule the next retry of an error record.

        If the retry budget is spent the record is marked failed instead.

        Args:
            error_id: Error record id

        Returns:
            Whether a retry was scheduled, and when

        Raises:
            ErrorNotFound: If the record does not exist
        """
        outcome: Dict[str, Any] = {}

        def _schedule(record: ErrorRecord) -> ErrorRecord:
            now = self.clock()
            record.updated_at = now

            if record.status == ErrorStatus.RESOLVED:
                outcome["response"] = RetryScheduledResponse(success=False, reason="Error already resolved")
                return record

            if record.retry_count >= record.retry_config.max_retries:
                record.status = ErrorStatus.FAILED
                record.next_retry_at = None
                outcome["response"] = RetryScheduledResponse(success=False, reason="Max retries exceeded")
                return record

            delay = compute_retry_delay(record.retry_config, record.retry_count)
            record.retry_count += 1
            record.next_retry_at = now + timedelta(milliseconds=delay)
            record.status = ErrorStatus.RETRYING
            outcome["response"] = RetryScheduledResponse(success=True, next_retry_at=record.next_retry_at)
            return record

        updated = await self.store.update(
            RedisStore.ERRORS, error_id, ErrorRecord, _schedule, extra_ops=sync_retry_schedule
        )
        if updated is None:
            raise ErrorNotFound(f"Error {error_id} not found")

        return outcome["response"]

    async def resolve_error(
        self,
        error_id: str,
        resolution: Optional[str] = None,
        resolved_by: Optional[str] = None
    ) -> ErrorRecord:
        """
        Resolve an error record and deactivate every alert referencing it.

        Raises:
            ErrorNotFound: If the record does not exist
        """
        def _resolve(record: ErrorRecord) -> ErrorRecord:
            now = self.clock()
            record.status = ErrorStatus.RESOLVED
            record.resolved_at = now
            record.resolution = resolution
            record.next_retry_at = None
            record.updated_at = now
            return record

        updated = await self.store.update(
            RedisStore.ERRORS, error_id, ErrorRecord, _resolve, extra_ops=sync_retry_schedule
        )
        if updated is None:
            raise ErrorNotFound(f"Error {error_id} not found")

        await self._deactivate_alerts(error_id, resolution, resolved_by)

        logger.info(f"Error {error_id} resolved", extra={"error_id": error_id})
        return updated

    async def mark_failed(self, error_id: str) -> ErrorRecord:
        """
        Move an error record to the terminal failed state.

        Active alerts stay active for manual triage.

        Raises:
            ErrorNotFound: If the record does not exist
        """
        def _fail(record: ErrorRecord) -> ErrorRecord:
            record.status = ErrorStatus.FAILED
            record.next_retry_at = None
            record.updated_at = self.clock()
            return record

        updated = await self.store.update(
            RedisStore.ERRORS, error_id, ErrorRecord, _fail, extra_ops=sync_retry_schedule
        )
        if updated is None:
            raise ErrorNotFound(f"Error {error_id} not found")
        return updated

    async def _deactivate_alerts(
        self,
        error_id: str,
        resolution: Optional[str],
        resolved_by: Optional[str]
    ) -> None:
        alerts = await self.store.find_by_field(RedisStore.ERROR_ALERTS, "error_id", error_id, ErrorAlert)

        for alert in alerts:
            if not alert.is_active:
                continue

            def _deactivate(current: ErrorAlert) -> ErrorAlert:
                now = self.clock()
                current.is_active = False
                current.resolved_at = now
                current.resolved_by = resolved_by
                current.resolution = resolution
                current.updated_at = now
                return current

            await self.store.update(RedisStore.ERROR_ALERTS, alert.id, ErrorAlert, _deactivate)

    async def get_alerts_for_error(self, error_id: str) -> List[ErrorAlert]:
        """Get every alert referencing an error record."""
        return await self.store.find_by_field(RedisStore.ERROR_ALERTS, "error_id", error_id, ErrorAlert)

    async def get_active_alerts(self, integration_id: Optional[str] = None) -> List[ErrorAlert]:
        """
        Get active alerts, newest first.

        Args:
            integration_id: Only alerts whose error belongs to this integration

        Returns:
            Active alerts
        """
        alerts = [
            alert for alert in await self.store.list_all(RedisStore.ERROR_ALERTS, ErrorAlert)
            if alert.is_active
        ]

        if integration_id:
            errors = await self.store.get_many(
                RedisStore.ERRORS, {alert.error_id for alert in alerts}, ErrorRecord
            )
            owned = {error.id for error in errors if error.integration_id == integration_id}
            alerts = [alert for alert in alerts if alert.error_id in owned]

        alerts.sort(key=lambda alert: alert.created_at, reverse=True)
        return alerts

    async def acknowledge_alert(self, alert_id: str, acknowledged_by: str) -> ErrorAlert:
        """
        Acknowledge an alert.

        Raises:
            AlertNotFound: If the alert does not exist
        """
        def _acknowledge(alert: ErrorAlert) -> ErrorAlert:
            now = self.clock()
            alert.acknowledged_by = acknowledged_by
            alert.acknowledged_at = now
            alert.updated_at = now
            return alert

        updated = await self.store.update(RedisStore.ERROR_ALERTS, alert_id, ErrorAlert, _acknowledge)
        if updated is None:
            raise AlertNotFound(f"Alert {alert_id} not found")
        return updated

    async def get_error_statistics(
        self,
        integration_id: Optional[str] = None,
        time_range: str = "24h"
    ) -> ErrorStatistics:
        """
        Aggregate error records created within a time range.

        Args:
            integration_id: Only errors of this integration
            time_range: One of 1h, 24h, 7d, 30d

        Returns:
            Error statistics with hourly trend buckets

        Raises:
            ValueError: If the time range is not supported
        """
        if time_range not in STATISTICS_TIME_RANGES:
            raise ValueError(
                f"Unsupported time range '{time_range}'. Use one of: {', '.join(STATISTICS_TIME_RANGES)}"
            )

        start = self.clock() - STATISTICS_TIME_RANGES[time_range]
        errors = [
            record for record in await self.store.list_all(RedisStore.ERRORS, ErrorRecord)
            if record.created_at >= start
            and (integration_id is None or record.integration_id == integration_id)
        ]

        stats = ErrorStatistics(total=len(errors))
        buckets: Dict[str, int] = {}

        for record in errors:
            stats.by_category[record.category.value] = stats.by_category.get(record.category.value, 0) + 1
            stats.by_severity[record.severity.value] = stats.by_severity.get(record.severity.value, 0) + 1
            stats.by_status[record.status.value] = stats.by_status.get(record.status.value, 0) + 1

            bucket = record.created_at.replace(minute=0, second=0, microsecond=0).isoformat()
            buckets[bucket] = buckets.get(bucket, 0) + 1

        stats.resolved = stats.by_status.get(ErrorStatus.RESOLVED.value, 0)
        stats.failed = stats.by_status.get(ErrorStatus.FAILED.value, 0)
        stats.retrying = stats.by_status.get(ErrorStatus.RETRYING.value, 0)

        resolved = [record for record in errors if record.resolved_at]
        if resolved:
            total_ms = sum(
                (record.resolved_at - record.created_at).total_seconds() * 1000 for record in resolved
            )
            stats.avg_resolution_time_ms = total_ms / len(resolved)

        stats.trend_data = [TrendPoint(time=time, count=count) for time, count in sorted(buckets.items())]
        return stats

    async def cleanup_old_errors(self, older_than_days: Optional[int] = None) -> int:
        """
        Delete resolved and failed records older than the cutoff, with their alerts.

        Args:
            older_than_days: Age cutoff in days (default: settings.error_retention_days)

        Returns:
            Number of deleted error records
        """
        if older_than_days is None:
            from relaykit.config import settings
            older_than_days = settings.error_retention_days

        cutoff = self.clock() - timedelta(days=older_than_days)
        records = await self.store.list_all(RedisStore.ERRORS, ErrorRecord)
        deleted = 0

        for record in records:
            if record.status not in (ErrorStatus.RESOLVED, ErrorStatus.FAILED):
                continue
            if record.created_at >= cutoff:
                continue

            for alert in await self.get_alerts_for_error(record.id):
                await self.store.delete(RedisStore.ERROR_ALERTS, alert.id, ErrorAlert)

            if await self.store.delete(RedisStore.ERRORS, record.id, ErrorRecord, extra_ops=sync_retry_schedule):
                deleted += 1

        logger.info(f"Cleaned up {deleted} old error records", extra={"older_than_days": older_than_days})
        return deleted
