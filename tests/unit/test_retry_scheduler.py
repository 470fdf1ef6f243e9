"""
Unit tests for the retry sweep.
"""

import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from relaykit.models.error import (
    ErrorCategory,
    ErrorContext,
    ErrorRecord,
    ErrorSeverity,
    ErrorStatus,
    OperationResult,
)
from relaykit.services.error_recorder import AUTO_RESOLUTION, ErrorRecorder
from relaykit.services.retry_scheduler import INSUFFICIENT_CONTEXT, OperationDispatcher, RetryScheduler
from relaykit.services.store import RedisStore


@pytest.fixture
def recorder(store, clock) -> ErrorRecorder:
    return ErrorRecorder(store, clock=clock)


@pytest.fixture
def dispatcher() -> OperationDispatcher:
    return OperationDispatcher()


@pytest.fixture
def scheduler(store, recorder, dispatcher, clock) -> RetryScheduler:
    return RetryScheduler(store, recorder, dispatcher, clock=clock, concurrency=5)


def _context(operation: str = "data_sync") -> ErrorContext:
    return ErrorContext(operation=operation, metadata={"batch_id": "b-1"})


@pytest.mark.asyncio
class TestOperationDispatcher:
    """Tests for the operation registry."""

    async def test_dispatch_registered_operation(self, dispatcher):
        operation = AsyncMock(return_value=OperationResult(success=True))
        dispatcher.register("data_sync", operation)
        record = ErrorRecord(
            category=ErrorCategory.DATA_SYNC,
            severity=ErrorSeverity.HIGH,
            message="sync failed",
            context=_context(),
            retry_config={"max_retries": 1, "strategy": "fixed_delay", "base_delay": 0, "max_delay": 0},
        )

        result = await dispatcher.dispatch(record)

        assert result.success is True
        operation.assert_awaited_once_with(record)
        assert dispatcher.operations == ["data_sync"]

    async def test_dispatch_without_operation_is_insufficient_context(self, dispatcher):
        record = ErrorRecord(
            category=ErrorCategory.UNKNOWN,
            severity=ErrorSeverity.LOW,
            message="boom",
            retry_config={"max_retries": 1, "strategy": "fixed_delay", "base_delay": 0, "max_delay": 0},
        )

        result = await dispatcher.dispatch(record)

        assert result.success is False
        assert result.message == INSUFFICIENT_CONTEXT

    async def test_dispatch_unregistered_operation(self, dispatcher):
        dispatcher.register("api_request", AsyncMock())
        dispatcher.unregister("api_request")
        record = ErrorRecord(
            category=ErrorCategory.UNKNOWN,
            severity=ErrorSeverity.LOW,
            message="boom",
            context=_context("api_request"),
            retry_config={"max_retries": 1, "strategy": "fixed_delay", "base_delay": 0, "max_delay": 0},
        )

        result = await dispatcher.dispatch(record)

        assert result.message == INSUFFICIENT_CONTEXT

    async def test_raising_operation_becomes_failed_result(self, dispatcher):
        dispatcher.register("data_sync", AsyncMock(side_effect=RuntimeError("upstream down")))
        record = ErrorRecord(
            category=ErrorCategory.DATA_SYNC,
            severity=ErrorSeverity.HIGH,
            message="sync failed",
            context=_context(),
            retry_config={"max_retries": 1, "strategy": "fixed_delay", "base_delay": 0, "max_delay": 0},
        )

        result = await dispatcher.dispatch(record)

        assert result.success is False
        assert result.message == "upstream down"


@pytest.mark.asyncio
class TestProcessPendingRetries:
    """Tests for the retry sweep."""

    async def test_nothing_due(self, scheduler, recorder):
        await recorder.record_error(ErrorCategory.NETWORK, ErrorSeverity.LOW, "reset", context=_context())

        result = await scheduler.process_pending_retries()

        assert result.processed == 0
        assert result.results == []

    async def test_successful_retry_resolves_record(self, scheduler, recorder, dispatcher, clock):
        dispatcher.register("data_sync", AsyncMock(return_value=OperationResult(success=True)))
        error_id = await recorder.record_error(
            ErrorCategory.RATE_LIMIT, ErrorSeverity.MEDIUM, "too many requests", context=_context()
        )
        clock.advance(5000)

        result = await scheduler.process_pending_retries()

        assert result.processed == 1
        assert result.results[0].status == "resolved"
        record = await recorder.get_error(error_id)
        assert record.status == ErrorStatus.RESOLVED
        assert record.resolution == AUTO_RESOLUTION
        assert await recorder.get_alerts_for_error(error_id) == []

    async def test_failed_retry_is_rescheduled(self, scheduler, recorder, dispatcher, clock):
        dispatcher.register("data_sync", AsyncMock(return_value=OperationResult(success=False, message="503")))
        error_id = await recorder.record_error(
            ErrorCategory.NETWORK, ErrorSeverity.MEDIUM, "connection reset", context=_context()
        )
        clock.advance(2000)

        result = await scheduler.process_pending_retries()

        outcome = result.results[0]
        assert outcome.status == "retry_scheduled"
        assert outcome.error == "503"
        assert outcome.next_retry_at == clock.now + timedelta(milliseconds=2000)
        record = await recorder.get_error(error_id)
        assert record.retry_count == 1
        assert record.status == ErrorStatus.RETRYING

    async def test_retry_budget_ends_in_failed(self, scheduler, recorder, dispatcher, clock):
        """Test a record with max_retries=3 fails on the fourth due sweep."""
        dispatcher.register("data_sync", AsyncMock(return_value=OperationResult(success=False)))
        error_id = await recorder.record_error(
            ErrorCategory.NETWORK, ErrorSeverity.MEDIUM, "connection reset", context=_context()
        )

        statuses = []
        for _ in range(4):
            clock.advance(60000)
            result = await scheduler.process_pending_retries()
            statuses.extend(outcome.status for outcome in result.results)

        assert statuses == ["retry_scheduled", "retry_scheduled", "retry_scheduled", "failed"]
        record = await recorder.get_error(error_id)
        assert record.status == ErrorStatus.FAILED
        assert record.retry_count == 3

        clock.advance(60000)
        assert (await scheduler.process_pending_retries()).processed == 0

    async def test_validation_errors_are_never_selected(self, scheduler, recorder, dispatcher, clock):
        operation = AsyncMock(return_value=OperationResult(success=True))
        dispatcher.register("data_sync", operation)
        error_id = await recorder.record_error(
            ErrorCategory.VALIDATION, ErrorSeverity.LOW, "email is invalid", context=_context()
        )
        clock.advance(days=1)

        result = await scheduler.process_pending_retries()

        assert result.processed == 0
        operation.assert_not_awaited()
        assert (await recorder.get_error(error_id)).status == ErrorStatus.NEW

    async def test_missing_context_consumes_budget(self, scheduler, recorder, clock):
        error_id = await recorder.record_error(ErrorCategory.NETWORK, ErrorSeverity.LOW, "connection reset")
        clock.advance(2000)

        result = await scheduler.process_pending_retries()

        assert result.results[0].status == "retry_scheduled"
        assert result.results[0].error == INSUFFICIENT_CONTEXT
        assert (await recorder.get_error(error_id)).retry_count == 1

    async def test_one_failing_record_does_not_affect_siblings(
        self, scheduler, recorder, dispatcher, store, clock
    ):
        dispatcher.register("data_sync", AsyncMock(return_value=OperationResult(success=True)))
        ids = [
            await recorder.record_error(ErrorCategory.NETWORK, ErrorSeverity.LOW, f"reset {n}", context=_context())
            for n in range(3)
        ]
        clock.advance(2000)

        original = recorder.resolve_error

        async def _flaky_resolve(error_id, resolution=None, resolved_by=None):
            if error_id == ids[1]:
                raise RuntimeError("store hiccup")
            return await original(error_id, resolution, resolved_by)

        recorder.resolve_error = _flaky_resolve

        result = await scheduler.process_pending_retries()

        by_id = {outcome.error_id: outcome for outcome in result.results}
        assert result.processed == 3
        assert by_id[ids[0]].status == "resolved"
        assert by_id[ids[1]].status == "retry_failed"
        assert by_id[ids[1]].error == "store hiccup"
        assert by_id[ids[2]].status == "resolved"

    async def test_concurrent_sweeps_process_each_record_once(self, store, recorder, dispatcher, clock):
        operation = AsyncMock(return_value=OperationResult(success=True))
        dispatcher.register("data_sync", operation)
        for n in range(4):
            await recorder.record_error(ErrorCategory.NETWORK, ErrorSeverity.LOW, f"reset {n}", context=_context())
        clock.advance(2000)

        first = RetryScheduler(store, recorder, dispatcher, clock=clock, concurrency=2)
        second = RetryScheduler(store, recorder, dispatcher, clock=clock, concurrency=2)

        results = await asyncio.gather(first.process_pending_retries(), second.process_pending_retries())

        assert sum(result.processed for result in results) == 4
        assert operation.await_count == 4

    async def test_stale_due_read_does_not_retry_twice(self, store, recorder, dispatcher, clock):
        operation = AsyncMock(return_value=OperationResult(success=False, message="still down"))
        dispatcher.register("data_sync", operation)
        error_id = await recorder.record_error(
            ErrorCategory.NETWORK, ErrorSeverity.LOW, "reset", context=_context()
        )
        clock.advance(2000)

        first = RetryScheduler(store, recorder, dispatcher, clock=clock)
        second = RetryScheduler(store, recorder, dispatcher, clock=clock)
        stale = await second.get_due_errors(clock.now)

        await first.process_pending_retries()
        second.get_due_errors = AsyncMock(return_value=stale)
        result = await second.process_pending_retries()

        record = await recorder.get_error(error_id)
        assert result.processed == 0
        assert operation.await_count == 1
        assert record.retry_count == 1
        assert record.next_retry_at > clock.now
        assert await store.due_members(RedisStore.ERROR_RETRY_SCHEDULE_KEY, 2 ** 62) == [error_id]

    async def test_reconcile_restores_claimed_records(self, scheduler, recorder, store, clock):
        error_id = await recorder.record_error(ErrorCategory.NETWORK, ErrorSeverity.LOW, "reset", context=_context())
        # A worker claimed the record and stopped before rescheduling it
        await store.claim_member(RedisStore.ERROR_RETRY_SCHEDULE_KEY, error_id)

        assert await scheduler.reconcile_schedule() == 1
        assert await scheduler.reconcile_schedule() == 0

        clock.advance(2000)
        due = await scheduler.get_due_errors(clock.now)
        assert [record.id for record in due] == [error_id]
