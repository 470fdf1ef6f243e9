"""
Unit tests for the webhook delivery engine.
"""

import base64
import json
from datetime import datetime, timezone
from typing import List

import httpx
import pytest

from relaykit.models.common import to_epoch_ms
from relaykit.models.error import ErrorCategory, ErrorContext, ErrorSeverity
from relaykit.models.webhook import (
    WebhookDeliveryLog,
    WebhookEndpoint,
    WebhookEndpointCreate,
    WebhookEndpointUpdate,
    WebhookEvent,
)
from relaykit.services.error_recorder import ErrorRecorder
from relaykit.services.exceptions import WebhookNotFound
from relaykit.services.store import RedisStore
from relaykit.services.task_scheduler import TaskScheduler
from relaykit.services.webhook_delivery import (
    RETRY_TASK_NAME,
    TEST_MESSAGE,
    WebhookDeliveryEngine,
    apply_authentication,
    build_headers,
)
from relaykit.services.webhook_registry import WebhookRegistry


class RecordingTransport:
    """Mock transport answering with queued status codes and recording requests."""

    def __init__(self, statuses: List[int] = None, error: Exception = None):
        self.statuses = list(statuses or [200])
        self.error = error
        self.requests: List[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error:
            raise self.error
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(status, json={"ok": status < 300})


@pytest.fixture
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture
def registry(store, clock) -> WebhookRegistry:
    return WebhookRegistry(store, clock=clock)


@pytest.fixture
def tasks(store, clock) -> TaskScheduler:
    return TaskScheduler(store, clock=clock)


@pytest.fixture
async def engine(store, registry, tasks, clock, transport):
    client = httpx.AsyncClient(transport=httpx.MockTransport(transport.handler))
    delivery = WebhookDeliveryEngine(store, registry, tasks, client=client, clock=clock)
    yield delivery
    await delivery.close()


async def _endpoint(registry, **overrides) -> WebhookEndpoint:
    data = {
        "name": "CRM",
        "url": "https://hooks.example.com/crm",
        "events": [WebhookEvent.CONTACT_CREATED],
    }
    data.update(overrides)
    return await registry.create_webhook("user-1", WebhookEndpointCreate(**data))


class TestHeaders:
    """Tests for header construction and authentication."""

    def _endpoint(self, **overrides) -> WebhookEndpoint:
        return WebhookEndpoint(user_id="user-1", name="hook", url="https://hooks.example.com/in", **overrides)

    def test_system_headers(self):
        timestamp = datetime(2024, 3, 1, tzinfo=timezone.utc)

        headers = build_headers(self._endpoint(), "contact_created", timestamp)

        assert headers["Content-Type"] == "application/json"
        assert headers["User-Agent"] == "SmartBatch-Webhook/1.0"
        assert headers["X-SmartBatch-Event"] == "contact_created"
        assert headers["X-SmartBatch-Timestamp"] == str(to_epoch_ms(timestamp))

    def test_endpoint_headers_override_system_headers(self):
        endpoint = self._endpoint(headers={"content-type": "application/vnd.crm+json", "X-Team": "growth"})

        headers = build_headers(endpoint, "contact_created", datetime.now(timezone.utc))

        assert "Content-Type" not in headers
        assert headers["content-type"] == "application/vnd.crm+json"
        assert headers["X-Team"] == "growth"

    def test_bearer_authentication(self):
        headers = {}
        apply_authentication(headers, self._endpoint(
            authentication={"type": "bearer", "credentials": {"token": "abc"}}
        ).authentication)

        assert headers == {"Authorization": "Bearer abc"}

    def test_basic_authentication(self):
        headers = {}
        apply_authentication(headers, self._endpoint(
            authentication={"type": "basic", "credentials": {"username": "user", "password": "pass"}}
        ).authentication)

        assert headers["Authorization"] == "Basic " + base64.b64encode(b"user:pass").decode()

    def test_api_key_authentication(self):
        headers = {}
        apply_authentication(headers, self._endpoint(
            authentication={"type": "api_key", "credentials": {"key": "X-Api-Key", "value": "k-1"}}
        ).authentication)

        assert headers == {"X-Api-Key": "k-1"}

    def test_incomplete_credentials_add_nothing(self):
        headers = {}
        apply_authentication(headers, self._endpoint(
            authentication={"type": "basic", "credentials": {"username": "user"}}
        ).authentication)
        apply_authentication(headers, self._endpoint(authentication={"type": "none"}).authentication)
        apply_authentication(headers, None)

        assert headers == {}


@pytest.mark.asyncio
class TestDeliver:
    """Tests for single delivery attempts."""

    async def test_successful_delivery(self, engine, registry, transport):
        endpoint = await _endpoint(registry, authentication={"type": "bearer", "credentials": {"token": "abc"}})

        result = await engine.deliver(endpoint, "contact_created", {"contact_id": "c-1"})

        assert result.success is True
        assert result.retry_scheduled is False
        assert result.response.status == 200
        assert result.response.response_time_ms >= 0

        request = transport.requests[0]
        assert request.method == "POST"
        assert str(request.url) == "https://hooks.example.com/crm"
        assert json.loads(request.content) == {"contact_id": "c-1"}
        assert request.headers["Authorization"] == "Bearer abc"
        assert request.headers["X-SmartBatch-Event"] == "contact_created"

        logs = await registry.get_webhook_logs("user-1")
        assert len(logs) == 1
        assert logs[0].success is True
        assert logs[0].attempt == 1
        assert (await registry.get_webhook(endpoint.id)).success_count == 1

    async def test_get_delivery_has_no_body(self, engine, registry, transport):
        endpoint = await _endpoint(registry, method="GET")

        await engine.deliver(endpoint, "contact_created", {"contact_id": "c-1"})

        assert transport.requests[0].method == "GET"
        assert transport.requests[0].content == b""

    async def test_non_2xx_is_a_failure(self, engine, registry, transport, tasks):
        transport.statuses = [503]
        endpoint = await _endpoint(registry)

        result = await engine.deliver(endpoint, "contact_created", {})

        assert result.success is False
        assert result.error == "HTTP 503: Service Unavailable"
        assert result.response.status == 503
        assert result.retry_scheduled is True
        assert (await registry.get_webhook(endpoint.id)).failure_count == 1
        assert await tasks.pending_count() == 1

    async def test_transport_error_is_a_failure(self, engine, registry, transport):
        transport.error = httpx.ConnectError("connection refused")
        endpoint = await _endpoint(registry)

        result = await engine.deliver(endpoint, "contact_created", {})

        assert result.success is False
        assert result.response is None
        assert result.error == "connection refused"
        logs = await registry.get_webhook_logs("user-1")
        assert logs[0].error == "connection refused"

    async def test_every_call_writes_one_log(self, engine, registry, transport):
        transport.statuses = [500, 200, 404]
        endpoint = await _endpoint(registry, retry_policy={"max_retries": 0})

        for _ in range(3):
            await engine.deliver(endpoint, "contact_created", {})

        logs = await registry.get_webhook_logs("user-1")
        stored = await registry.get_webhook(endpoint.id)
        assert len(logs) == 3
        assert stored.success_count + stored.failure_count == 3
        assert stored.success_count == 1

    async def test_retries_follow_backoff_until_budget_spent(self, engine, registry, transport, tasks, clock):
        """Test max_retries=3 yields attempts after 1000, 2000 and 4000 ms and no more."""
        transport.statuses = [500]
        endpoint = await _endpoint(registry)
        start = clock.now

        await engine.deliver(endpoint, "contact_created", {"contact_id": "c-1"})

        due_offsets = []
        for _ in range(5):
            pending = await tasks.get_pending_tasks()
            if not pending:
                break
            assert pending[0].task_name == RETRY_TASK_NAME
            due_offsets.append(int((pending[0].due_at - start).total_seconds() * 1000))
            clock.now = pending[0].due_at
            assert await tasks.run_due_tasks() == 1

        assert due_offsets == [1000, 3000, 7000]
        assert len(transport.requests) == 4

        logs = await registry.get_webhook_logs("user-1")
        assert sorted(log.attempt for log in logs) == [1, 2, 3, 4]
        assert (await registry.get_webhook(endpoint.id)).failure_count == 4

    async def test_fixed_retry_delay(self, engine, registry, transport, tasks, clock):
        transport.statuses = [500]
        endpoint = await _endpoint(registry, retry_policy={"max_retries": 2, "retry_delay": 500, "exponential_backoff": False})

        await engine.deliver(endpoint, "contact_created", {})
        clock.advance(500)
        await tasks.run_due_tasks()

        pending = await tasks.get_pending_tasks()
        assert len(pending) == 1
        assert int((pending[0].due_at - clock.now).total_seconds() * 1000) == 500

    async def test_retry_to_deactivated_endpoint_is_noop(self, engine, registry, transport, tasks, clock):
        transport.statuses = [500]
        endpoint = await _endpoint(registry)
        await engine.deliver(endpoint, "contact_created", {})
        await registry.update_webhook("user-1", endpoint.id, WebhookEndpointUpdate(is_active=False))

        clock.advance(1000)
        assert await tasks.run_due_tasks() == 1

        assert len(transport.requests) == 1
        assert await tasks.pending_count() == 0

    async def test_retry_to_deleted_endpoint_is_noop(self, engine, registry, transport, tasks, clock):
        transport.statuses = [500]
        endpoint = await _endpoint(registry)
        await engine.deliver(endpoint, "contact_created", {})
        await registry.delete_webhook("user-1", endpoint.id)

        clock.advance(1000)
        await tasks.run_due_tasks()

        assert len(transport.requests) == 1
        assert await registry.get_webhook_logs("user-1") == []


    async def test_endpoint_deleted_mid_delivery_leaves_no_log(self, store, registry, tasks, clock):
        endpoint = await _endpoint(registry)

        async def _delete_then_fail(request: httpx.Request) -> httpx.Response:
            if await registry.get_webhook(endpoint.id) is not None:
                await registry.delete_webhook("user-1", endpoint.id)
            return httpx.Response(500)

        client = httpx.AsyncClient(transport=httpx.MockTransport(_delete_then_fail))
        delivery = WebhookDeliveryEngine(store, registry, tasks, client=client, clock=clock)
        try:
            result = await delivery.deliver(endpoint, "contact_created", {"contact_id": "c-1"})
            test_result = await delivery.deliver(endpoint, "test", {}, schedule_retries=False, update_stats=False)
        finally:
            await delivery.close()

        assert result.success is False
        assert result.log_id is None
        assert result.retry_scheduled is False
        assert test_result.log_id is None
        assert await store.find_by_field(
            RedisStore.WEBHOOK_LOGS, "webhook_endpoint_id", endpoint.id, WebhookDeliveryLog
        ) == []
        assert await tasks.pending_count() == 0


@pytest.mark.asyncio
class TestEventsAndTests:
    """Tests for event fan-out and manual test deliveries."""

    async def test_trigger_event_reaches_active_subscribers(self, engine, registry, transport):
        subscribed = await _endpoint(registry)
        await _endpoint(registry, name="opens", events=[WebhookEvent.EMAIL_OPENED])
        inactive = await _endpoint(registry, name="inactive")
        await registry.update_webhook("user-1", inactive.id, WebhookEndpointUpdate(is_active=False))

        results = await engine.trigger_event("user-1", WebhookEvent.CONTACT_CREATED, {"contact_id": "c-1"})

        assert len(results) == 1
        assert len(transport.requests) == 1
        assert (await registry.get_webhook(subscribed.id)).success_count == 1

    async def test_deliver_to_unsubscribed_endpoint_is_noop(self, engine, registry, transport):
        endpoint = await _endpoint(registry)

        assert await engine.deliver_to_endpoint(endpoint.id, "email_opened", {}) is None
        assert await engine.deliver_to_endpoint("missing", "contact_created", {}) is None
        assert transport.requests == []

    async def test_test_webhook(self, engine, registry, transport, tasks, clock):
        transport.statuses = [500]
        endpoint = await _endpoint(registry)

        result = await engine.test_webhook(endpoint.id, "user-1")

        body = json.loads(transport.requests[0].content)
        assert body["event"] == "test"
        assert body["timestamp"] == to_epoch_ms(clock.now)
        assert body["data"]["message"] == TEST_MESSAGE
        assert transport.requests[0].headers["X-SmartBatch-Event"] == "test"

        assert result.success is False
        assert result.retry_scheduled is False
        assert await tasks.pending_count() == 0

        logs = await registry.get_webhook_logs("user-1")
        assert logs[0].event == "test"
        assert logs[0].attempt == 1
        stored = await registry.get_webhook(endpoint.id)
        assert stored.success_count == 0
        assert stored.failure_count == 0

    async def test_test_webhook_with_custom_payload(self, engine, registry, transport):
        endpoint = await _endpoint(registry)

        await engine.test_webhook(endpoint.id, "user-1", {"hello": "world"})

        assert json.loads(transport.requests[0].content) == {"hello": "world"}

    async def test_test_foreign_webhook(self, engine, registry):
        endpoint = await _endpoint(registry)

        with pytest.raises(WebhookNotFound):
            await engine.test_webhook(endpoint.id, "user-2")


@pytest.mark.asyncio
class TestRetryOperation:
    """Tests for redelivery through the error retry sweep."""

    async def test_retry_operation_redelivers_once(self, engine, registry, transport, store, clock, tasks):
        transport.statuses = [500]
        endpoint = await _endpoint(registry)
        recorder = ErrorRecorder(store, clock=clock)
        error_id = await recorder.record_error(
            ErrorCategory.WEBHOOK,
            ErrorSeverity.MEDIUM,
            "webhook delivery failed",
            context=ErrorContext(
                operation="webhook_delivery",
                metadata={"webhook_id": endpoint.id, "event": "contact_created", "payload": {"id": 1}},
            ),
        )

        result = await engine.retry_operation(await recorder.get_error(error_id))

        assert result.success is False
        assert result.message == "HTTP 500: Internal Server Error"
        assert len(transport.requests) == 1
        assert await tasks.pending_count() == 0

    async def test_retry_operation_without_metadata(self, engine, store, clock):
        recorder = ErrorRecorder(store, clock=clock)
        error_id = await recorder.record_error(
            ErrorCategory.WEBHOOK, ErrorSeverity.MEDIUM, "webhook failed",
            context=ErrorContext(operation="webhook_delivery"),
        )

        result = await engine.retry_operation(await recorder.get_error(error_id))

        assert result.success is False
        assert result.message == "insufficient context for retry"
