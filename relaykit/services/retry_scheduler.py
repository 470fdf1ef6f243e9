"""
Retry sweep over due error records.

The sweep selects records whose retry is due, re-invokes the failed
operation through the operation dispatcher and moves each record to
resolved, failed or its next retry. Records are processed concurrently
with a cap; one record's failure never affects its siblings.
"""

import asyncio
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from relaykit.models.common import to_epoch_ms, utc_now
from relaykit.models.error import (
    ErrorRecord,
    ErrorStatus,
    OperationResult,
    RetryOutcome,
    RetrySweepResult,
)
from relaykit.services.error_recorder import AUTO_RESOLUTION, ErrorRecorder
from relaykit.services.store import RedisStore
from relaykit.utils.logging import get_logger, log_retry_outcome
from relaykit.utils.metrics import SweepMetrics, emit_metric
from relaykit.utils.resilience import ErrorRecoveryManager


logger = get_logger(__name__)

INSUFFICIENT_CONTEXT = "insufficient context for retry"

Operation = Callable[[ErrorRecord], Awaitable[OperationResult]]


class OperationDispatcher:
    """
    Registry of retryable operations keyed by name.

    The key of a record is ``record.context.operation``.
    """

    def __init__(self):
        self._operations: Dict[str, Operation] = {}

    def register(self, name: str, operation: Operation) -> None:
        self._operations[name] = operation
        logger.debug(f"Registered retry operation: {name}")

    def unregister(self, name: str) -> None:
        self._operations.pop(name, None)

    @property
    def operations(self) -> List[str]:
        return sorted(self._operations)

    async def dispatch(self, record: ErrorRecord) -> OperationResult:
        """
        Re-invoke the operation that produced an error record.

        Never raises: a missing operation and a raising operation both
        produce a failed result.

        Args:
            record: Error record being retried

        Returns:
            Operation result
        """
        name = record.context.operation if record.context else None
        operation = self._operations.get(name) if name else None

        if operation is None:
            return OperationResult(success=False, message=INSUFFICIENT_CONTEXT)

        try:
            return await operation(record)
        except Exception as e:
            logger.warning(
                f"Retry operation {name} raised: {e}",
                extra={"error_id": record.id, "operation": name}
            )
            return OperationResult(success=False, message=str(e))


class RetryScheduler:
    """
    Executes due retries of error records.

    Each due record is claimed from the retry schedule and re-read before
    it is processed. A sweep working from a stale due read skips records
    another sweep has already retried, and puts their schedule entry back.
    """

    def __init__(
        self,
        store: RedisStore,
        recorder: ErrorRecorder,
        dispatcher: OperationDispatcher,
        clock: Callable[[], datetime] = utc_now,
        concurrency: Optional[int] = None
    ):
        """
        Initialize the retry scheduler.

        Args:
            store: Durable store
            recorder: Error recorder applying state transitions
            dispatcher: Operation dispatcher
            clock: Returns the current UTC time
            concurrency: Maximum records processed at once
                (default: settings.retry_sweep_concurrency)
        """
        if concurrency is None:
            from relaykit.config import settings
            concurrency = settings.retry_sweep_concurrency

        self.store = store
        self.recorder = recorder
        self.dispatcher = dispatcher
        self.clock = clock
        self.concurrency = concurrency

    async def get_due_errors(self, now: datetime) -> List[ErrorRecord]:
        """
        Get retrying records whose next retry is at or before ``now``.
        """
        due_ids = await self.store.due_members(RedisStore.ERROR_RETRY_SCHEDULE_KEY, to_epoch_ms(now))
        records = await self.store.get_many(RedisStore.ERRORS, due_ids, ErrorRecord)

        return [record for record in records if self._is_due(record, now)]

    @staticmethod
    def _is_due(record: ErrorRecord, now: datetime) -> bool:
        return (
            record.status == ErrorStatus.RETRYING
            and record.next_retry_at is not None
            and to_epoch_ms(record.next_retry_at) <= to_epoch_ms(now)
        )

    async def process_pending_retries(self, now: Optional[datetime] = None) -> RetrySweepResult:
        """
        Process every due retry.

        Args:
            now: Sweep time (default: clock)

        Returns:
            One outcome per processed record: resolved, failed,
            retry_scheduled or retry_failed
        """
        now = now or self.clock()
        metrics = SweepMetrics("error_retry_sweep")
        metrics.start()

        due = await self.get_due_errors(now)
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _process(snapshot: ErrorRecord) -> Optional[RetryOutcome]:
            async with semaphore:
                if not await self.store.claim_member(RedisStore.ERROR_RETRY_SCHEDULE_KEY, snapshot.id):
                    return None

                # The due read may predate another sweep's write
                record = await self.store.get(RedisStore.ERRORS, snapshot.id, ErrorRecord)
                if record is None or not self._is_due(record, now):
                    await self._restore_schedule(record)
                    return None

                try:
                    outcome = await self._process_record(record)
                except Exception as e:
                    logger.error(
                        f"Retry processing failed for error {record.id}: {e}",
                        extra={"error_id": record.id},
                        exc_info=True
                    )
                    outcome = RetryOutcome(error_id=record.id, status="retry_failed", error=str(e))

            metrics.record_outcome(outcome.status)
            log_retry_outcome(logger, record.id, outcome.status, record.retry_count, outcome.error)
            return outcome

        outcomes = await asyncio.gather(*(_process(record) for record in due))
        results = [outcome for outcome in outcomes if outcome is not None]

        metrics.complete()
        ErrorRecoveryManager.handle_partial_failure(
            operation_name="error_retry_sweep",
            total_items=len(results),
            successful_items=sum(1 for outcome in results if outcome.status != "retry_failed"),
            errors=[outcome.error for outcome in results if outcome.status == "retry_failed"],
            context={"sweep_time": now.isoformat()}
        )
        emit_metric("retry_sweep.processed", len(results), **metrics.outcomes)

        return RetrySweepResult(processed=len(results), results=results)

    async def _restore_schedule(self, record: Optional[ErrorRecord]) -> None:
        """Put back a schedule entry claimed for a record that is not due."""
        if record is not None and record.status == ErrorStatus.RETRYING and record.next_retry_at:
            await self.store.schedule_member(
                RedisStore.ERROR_RETRY_SCHEDULE_KEY, record.id, to_epoch_ms(record.next_retry_at)
            )

    async def _process_record(self, record: ErrorRecord) -> RetryOutcome:
        result = await self.dispatcher.dispatch(record)

        if result.success:
            await self.recorder.resolve_error(record.id, AUTO_RESOLUTION)
            return RetryOutcome(error_id=record.id, status="resolved")

        if record.retry_count >= record.retry_config.max_retries:
            await self.recorder.mark_failed(record.id)
            return RetryOutcome(error_id=record.id, status="failed", error=result.message)

        scheduled = await self.recorder.retry_error(record.id)
        if not scheduled.success:
            return RetryOutcome(error_id=record.id, status="failed", error=scheduled.reason)

        return RetryOutcome(
            error_id=record.id,
            status="retry_scheduled",
            error=result.message,
            next_retry_at=scheduled.next_retry_at,
        )

    async def reconcile_schedule(self) -> int:
        """
        Re-add retrying records missing from the retry schedule.

        A worker that stops between claiming a record and writing its next
        state leaves the record off the schedule; run at worker startup.

        Returns:
            Number of records put back on the schedule
        """
        records = await self.store.list_all(RedisStore.ERRORS, ErrorRecord)
        scheduled = set(await self.store.due_members(RedisStore.ERROR_RETRY_SCHEDULE_KEY, 2 ** 62))
        restored = 0

        for record in records:
            if record.status == ErrorStatus.RETRYING and record.next_retry_at and record.id not in scheduled:
                await self.store.schedule_member(
                    RedisStore.ERROR_RETRY_SCHEDULE_KEY, record.id, to_epoch_ms(record.next_retry_at)
                )
                restored += 1

        if restored:
            logger.warning(f"Restored {restored} error records to the retry schedule")
        return restored
