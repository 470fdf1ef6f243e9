"""
Unit tests for the Redis store.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError, WatchError

from relaykit.models.error import ErrorAlert, ErrorSeverity
from relaykit.models.webhook import WebhookEndpoint
from relaykit.services.exceptions import ConcurrentUpdateError, StoreConnectionError
from relaykit.services.store import RedisStore


def _endpoint(user_id: str = "user-1", name: str = "hook") -> WebhookEndpoint:
    return WebhookEndpoint(user_id=user_id, name=name, url="https://hooks.example.com/in")


@pytest.mark.asyncio
class TestDocuments:
    """Tests for document CRUD."""

    async def test_insert_and_get(self, store):
        endpoint = _endpoint()
        await store.insert(RedisStore.WEBHOOKS, endpoint)

        loaded = await store.get(RedisStore.WEBHOOKS, endpoint.id, WebhookEndpoint)

        assert loaded == endpoint

    async def test_get_missing_returns_none(self, store):
        assert await store.get(RedisStore.WEBHOOKS, "missing", WebhookEndpoint) is None

    async def test_get_many_skips_missing(self, store):
        first = _endpoint(name="first")
        second = _endpoint(name="second")
        await store.insert(RedisStore.WEBHOOKS, first)
        await store.insert(RedisStore.WEBHOOKS, second)

        loaded = await store.get_many(RedisStore.WEBHOOKS, [second.id, "missing", first.id], WebhookEndpoint)

        assert [endpoint.name for endpoint in loaded] == ["second", "first"]

    async def test_list_all(self, store):
        for index in range(3):
            await store.insert(RedisStore.WEBHOOKS, _endpoint(name=f"hook-{index}"))

        endpoints = await store.list_all(RedisStore.WEBHOOKS, WebhookEndpoint)

        assert sorted(endpoint.name for endpoint in endpoints) == ["hook-0", "hook-1", "hook-2"]

    async def test_find_by_indexed_field(self, store):
        await store.insert(RedisStore.WEBHOOKS, _endpoint(user_id="alice"))
        await store.insert(RedisStore.WEBHOOKS, _endpoint(user_id="bob"))

        found = await store.find_by_field(RedisStore.WEBHOOKS, "user_id", "alice", WebhookEndpoint)

        assert len(found) == 1
        assert found[0].user_id == "alice"

    async def test_find_by_unindexed_field_scans(self, store):
        await store.insert(RedisStore.WEBHOOKS, _endpoint(name="a"))
        await store.insert(RedisStore.WEBHOOKS, _endpoint(name="b"))

        found = await store.find_by_field(RedisStore.WEBHOOKS, "name", "b", WebhookEndpoint)

        assert [endpoint.name for endpoint in found] == ["b"]

    async def test_delete_removes_document_and_index(self, store):
        endpoint = _endpoint(user_id="alice")
        await store.insert(RedisStore.WEBHOOKS, endpoint)

        assert await store.delete(RedisStore.WEBHOOKS, endpoint.id, WebhookEndpoint) is True
        assert await store.get(RedisStore.WEBHOOKS, endpoint.id, WebhookEndpoint) is None
        assert await store.find_by_field(RedisStore.WEBHOOKS, "user_id", "alice", WebhookEndpoint) == []
        assert await store.list_all(RedisStore.WEBHOOKS, WebhookEndpoint) == []

    async def test_delete_missing_returns_false(self, store):
        assert await store.delete(RedisStore.WEBHOOKS, "missing", WebhookEndpoint) is False

    async def test_insert_runs_extra_ops_in_transaction(self, store):
        alert = ErrorAlert(error_id="err-1", level=ErrorSeverity.HIGH, message="boom")

        def _schedule(pipe, document):
            pipe.zadd("relaykit:test:schedule", {document.id: 42})

        await store.insert(RedisStore.ERROR_ALERTS, alert, extra_ops=_schedule)

        assert await store.due_members("relaykit:test:schedule", 42) == [alert.id]

    async def test_queue_insert_writes_related_document(self, store):
        endpoint = _endpoint()
        alert = ErrorAlert(error_id="err-1", level=ErrorSeverity.HIGH, message="boom")

        await store.insert(
            RedisStore.WEBHOOKS,
            endpoint,
            extra_ops=lambda pipe, document: store.queue_insert(pipe, RedisStore.ERROR_ALERTS, alert)
        )

        found = await store.find_by_field(RedisStore.ERROR_ALERTS, "error_id", "err-1", ErrorAlert)
        assert [doc.id for doc in found] == [alert.id]


@pytest.mark.asyncio
class TestUpdate:
    """Tests for compare-and-swap updates."""

    async def test_update_applies_mutator_and_bumps_version(self, store):
        endpoint = _endpoint()
        await store.insert(RedisStore.WEBHOOKS, endpoint)

        def _count(current):
            current.success_count += 1
            return current

        updated = await store.update(RedisStore.WEBHOOKS, endpoint.id, WebhookEndpoint, _count)

        assert updated.success_count == 1
        assert updated.version == 1
        loaded = await store.get(RedisStore.WEBHOOKS, endpoint.id, WebhookEndpoint)
        assert loaded.success_count == 1
        assert loaded.version == 1

    async def test_update_missing_returns_none(self, store):
        result = await store.update(RedisStore.WEBHOOKS, "missing", WebhookEndpoint, lambda doc: doc)
        assert result is None

    async def test_concurrent_updates_do_not_lose_writes(self, store):
        endpoint = _endpoint()
        await store.insert(RedisStore.WEBHOOKS, endpoint)

        def _count(current):
            current.failure_count += 1
            return current

        await asyncio.gather(*(
            store.update(RedisStore.WEBHOOKS, endpoint.id, WebhookEndpoint, _count) for _ in range(5)
        ))

        loaded = await store.get(RedisStore.WEBHOOKS, endpoint.id, WebhookEndpoint)
        assert loaded.failure_count == 5
        assert loaded.version == 5

    async def test_update_gives_up_when_document_keeps_changing(self, store):
        endpoint = _endpoint()
        await store.insert(RedisStore.WEBHOOKS, endpoint)
        store._max_cas_attempts = 2

        with patch("redis.asyncio.client.Pipeline.execute", AsyncMock(side_effect=WatchError())) as execute:
            with pytest.raises(ConcurrentUpdateError):
                await store.update(RedisStore.WEBHOOKS, endpoint.id, WebhookEndpoint, lambda doc: doc)

        assert execute.await_count == 2


@pytest.mark.asyncio
class TestSchedules:
    """Tests for sorted-set schedules."""

    async def test_due_members_are_ordered_and_bounded(self, store):
        await store.schedule_member("relaykit:test:due", "late", 3000)
        await store.schedule_member("relaykit:test:due", "early", 1000)
        await store.schedule_member("relaykit:test:due", "future", 9000)

        assert await store.due_members("relaykit:test:due", 3000) == ["early", "late"]
        assert await store.schedule_size("relaykit:test:due") == 3

    async def test_schedule_member_moves_existing_member(self, store):
        await store.schedule_member("relaykit:test:due", "task", 1000)
        await store.schedule_member("relaykit:test:due", "task", 5000)

        assert await store.due_members("relaykit:test:due", 1000) == []
        assert await store.schedule_size("relaykit:test:due") == 1

    async def test_claim_member_succeeds_once(self, store):
        await store.schedule_member("relaykit:test:due", "task", 1000)

        claims = await asyncio.gather(
            store.claim_member("relaykit:test:due", "task"),
            store.claim_member("relaykit:test:due", "task"),
        )

        assert sorted(claims) == [False, True]

    async def test_move_member_between_schedules(self, store):
        await store.schedule_member("relaykit:test:due", "task", 1000)

        assert await store.move_member("relaykit:test:due", "relaykit:test:processing", "task", 7000) is True
        assert await store.move_member("relaykit:test:due", "relaykit:test:processing", "task", 8000) is False

        assert await store.schedule_size("relaykit:test:due") == 0
        assert await store.due_members("relaykit:test:processing", 8000) == ["task"]

    async def test_losing_move_leaves_target_untouched(self, store):
        await store.schedule_member("relaykit:test:due", "task", 1000)
        assert await store.move_member("relaykit:test:due", "relaykit:test:processing", "task", 7000) is True

        # Owner finished and removed the member
        await store.claim_member("relaykit:test:processing", "task")

        assert await store.move_member("relaykit:test:due", "relaykit:test:processing", "task", 9000) is False
        assert await store.schedule_size("relaykit:test:processing") == 0

    async def test_concurrent_moves_have_one_winner(self, store):
        await store.schedule_member("relaykit:test:due", "task", 1000)

        moves = await asyncio.gather(
            store.move_member("relaykit:test:due", "relaykit:test:processing", "task", 7000),
            store.move_member("relaykit:test:due", "relaykit:test:processing", "task", 9000),
        )

        assert sorted(moves) == [False, True]
        assert await store.schedule_size("relaykit:test:processing") == 1


@pytest.mark.asyncio
class TestConnection:
    """Tests for connection handling."""

    async def test_ping(self, store):
        assert await store.ping() is True

    async def test_uninitialized_store_raises(self):
        with pytest.raises(RuntimeError):
            await RedisStore().get(RedisStore.WEBHOOKS, "id", WebhookEndpoint)

    async def test_transient_errors_are_retried(self, store):
        store._retry_delay = 0
        operation = AsyncMock(side_effect=[RedisConnectionError("reset"), "ok"])

        assert await store._retry_operation(operation) == "ok"
        assert operation.await_count == 2

    async def test_retries_exhausted_raise_store_error(self, store):
        store._retry_delay = 0
        operation = AsyncMock(side_effect=RedisConnectionError("down"))

        with pytest.raises(StoreConnectionError):
            await store._retry_operation(operation)

        assert operation.await_count == 3

    async def test_clear_all_data(self, store):
        await store.insert(RedisStore.WEBHOOKS, _endpoint())
        await store.clear_all_data()

        assert await store.list_all(RedisStore.WEBHOOKS, WebhookEndpoint) == []
