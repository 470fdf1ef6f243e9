"""
Unit tests for webhook management API endpoints.
"""

import logging

import pytest
from unittest.mock import AsyncMock, MagicMock, patch

# Skip tests if fastapi is not installed
pytest.importorskip("fastapi")

from fastapi.testclient import TestClient
from relaykit.main import app
from relaykit.config import settings
from relaykit.dependencies import get_container
from relaykit.models.webhook import DeliveryResult, WebhookDeliveryLog, WebhookEndpoint, WebhookEvent
from relaykit.services.exceptions import ConcurrentUpdateError, WebhookNotFound, WebhookValidationError


@pytest.fixture
def container():
    """Mock service container."""
    mock = MagicMock()
    mock.audit.create_audit_log = AsyncMock(return_value="audit-1")
    app.dependency_overrides[get_container] = lambda: mock
    yield mock
    app.dependency_overrides.clear()


@pytest.fixture
def client(container):
    """Create test client."""
    with patch.object(settings, "admin_api_key", "test-admin-key"):
        yield TestClient(app)


@pytest.fixture
def api_headers():
    """Headers with valid API key and acting user."""
    return {"X-API-Key": "test-admin-key", "X-User-Id": "user-1"}


def _endpoint(**overrides) -> WebhookEndpoint:
    data = {
        "id": "wh-1",
        "user_id": "user-1",
        "name": "CRM",
        "url": "https://hooks.example.com/crm",
        "events": ["contact_created"],
        "authentication": {"type": "bearer", "credentials": {"token": "secret-token"}},
    }
    data.update(overrides)
    return WebhookEndpoint(**data)


def test_list_webhooks_requires_auth(client):
    """Test that listing webhooks requires an API key."""
    response = client.get("/api/webhooks", headers={"X-User-Id": "user-1"})
    assert response.status_code == 401


def test_invalid_api_key_is_rejected(client):
    response = client.get("/api/webhooks", headers={"X-API-Key": "wrong", "X-User-Id": "user-1"})
    assert response.status_code == 401


def test_user_id_is_required(client):
    response = client.get("/api/webhooks", headers={"X-API-Key": "test-admin-key"})
    assert response.status_code == 401


def test_create_webhook_masks_credentials(client, container, api_headers):
    """Test creation returns the masked view and writes an audit entry."""
    container.registry.create_webhook = AsyncMock(return_value=_endpoint())

    response = client.post(
        "/api/webhooks",
        json={
            "name": "CRM",
            "url": "https://hooks.example.com/crm",
            "events": ["contact_created"],
            "authentication": {"type": "bearer", "credentials": {"token": "secret-token"}},
        },
        headers=api_headers
    )

    assert response.status_code == 201
    data = response.json()
    assert data["authentication"] == {"type": "bearer", "credentials": "***"}
    assert "secret-token" not in response.text

    user_id, request = container.registry.create_webhook.call_args.args
    assert user_id == "user-1"
    assert request.name == "CRM"
    assert container.audit.create_audit_log.call_args.args[0] == "webhook_created"


def test_create_webhook_rejects_test_event(client, container, api_headers):
    response = client.post(
        "/api/webhooks",
        json={"name": "CRM", "url": "https://hooks.example.com/crm", "events": ["test"]},
        headers=api_headers
    )

    assert response.status_code == 422


def test_create_webhook_validation_error(client, container, api_headers):
    container.registry.create_webhook = AsyncMock(side_effect=WebhookValidationError("Invalid URL format"))

    response = client.post(
        "/api/webhooks",
        json={"name": "CRM", "url": "https://hooks.example.com/crm", "events": ["bounce"]},
        headers=api_headers
    )

    assert response.status_code == 400


def test_list_webhooks(client, container, api_headers):
    from relaykit.models.webhook import WebhookEndpointView

    container.registry.get_user_webhooks = AsyncMock(return_value=[WebhookEndpointView.from_endpoint(_endpoint())])

    response = client.get("/api/webhooks", headers=api_headers)

    assert response.status_code == 200
    assert response.json()[0]["authentication"]["credentials"] == "***"
    container.registry.get_user_webhooks.assert_awaited_once_with("user-1")


def test_update_webhook(client, container, api_headers):
    container.registry.update_webhook = AsyncMock(return_value=_endpoint(is_active=False))

    response = client.patch("/api/webhooks/wh-1", json={"is_active": False}, headers=api_headers)

    assert response.status_code == 200
    assert response.json()["is_active"] is False
    _, _, changes = container.registry.update_webhook.call_args.args
    assert changes.model_fields_set == {"is_active"}
    assert container.audit.create_audit_log.call_args.args[1] == "update"


def test_update_foreign_webhook_not_found(client, container, api_headers):
    container.registry.update_webhook = AsyncMock(side_effect=WebhookNotFound("Webhook wh-1 not found"))

    response = client.patch("/api/webhooks/wh-1", json={"name": "x"}, headers=api_headers)

    assert response.status_code == 404


def test_delete_webhook(client, container, api_headers):
    container.registry.delete_webhook = AsyncMock(return_value=3)

    response = client.delete("/api/webhooks/wh-1", headers=api_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "success"
    assert container.audit.create_audit_log.call_args.kwargs["details"] == {"deleted_logs": 3}


def test_delete_webhook_not_found(client, container, api_headers):
    container.registry.delete_webhook = AsyncMock(side_effect=WebhookNotFound("Webhook wh-1 not found"))

    response = client.delete("/api/webhooks/wh-1", headers=api_headers)

    assert response.status_code == 404


def test_test_webhook(client, container, api_headers):
    container.delivery.test_webhook = AsyncMock(
        return_value=DeliveryResult(success=False, attempt=1, error="HTTP 500: Internal Server Error")
    )

    response = client.post("/api/webhooks/wh-1/test", headers=api_headers)

    assert response.status_code == 200
    assert response.json()["success"] is False
    container.delivery.test_webhook.assert_awaited_once_with("wh-1", "user-1", None)


def test_test_webhook_with_payload(client, container, api_headers):
    container.delivery.test_webhook = AsyncMock(return_value=DeliveryResult(success=True, attempt=1))

    response = client.post("/api/webhooks/wh-1/test", json={"hello": "world"}, headers=api_headers)

    assert response.status_code == 200
    container.delivery.test_webhook.assert_awaited_once_with("wh-1", "user-1", {"hello": "world"})


def test_get_webhook_logs(client, container, api_headers):
    container.registry.get_webhook_logs = AsyncMock(return_value=[
        WebhookDeliveryLog(user_id="user-1", webhook_endpoint_id="wh-1", event="bounce", success=False)
    ])

    response = client.get("/api/webhooks/logs?webhook_id=wh-1&success=false&limit=10", headers=api_headers)

    assert response.status_code == 200
    assert response.json()[0]["event"] == "bounce"
    container.registry.get_webhook_logs.assert_awaited_once_with("user-1", "wh-1", None, False, 10)


def test_internal_error_is_500(client, container, api_headers):
    container.registry.get_user_webhooks = AsyncMock(side_effect=RuntimeError("redis down"))

    response = client.get("/api/webhooks", headers=api_headers)

    assert response.status_code == 500
    assert response.json()["detail"] == "Internal server error"


def test_internal_error_logs_webhook_context(client, container, api_headers, caplog):
    container.registry.delete_webhook = AsyncMock(side_effect=RuntimeError("redis down"))

    with caplog.at_level(logging.ERROR, logger="relaykit.api.webhooks"):
        response = client.delete("/api/webhooks/wh-1", headers=api_headers)

    assert response.status_code == 500
    record = next(r for r in caplog.records if r.name == "relaykit.api.webhooks")
    assert record.webhook_id == "wh-1"
    assert record.exc_info[0] is RuntimeError


def test_concurrent_update_is_409(client, container, api_headers):
    container.registry.update_webhook = AsyncMock(side_effect=ConcurrentUpdateError("webhook_endpoints/wh-1"))

    response = client.patch("/api/webhooks/wh-1", json={"name": "CRM v2"}, headers=api_headers)

    assert response.status_code == 409
    container.audit.create_audit_log.assert_not_awaited()


def test_trigger_event(client, container, api_headers):
    container.delivery.trigger_event = AsyncMock(return_value=[
        DeliveryResult(success=True, attempt=1, log_id="log-1"),
        DeliveryResult(success=False, attempt=1, error="HTTP 503: Service Unavailable", retry_scheduled=True),
    ])

    response = client.post(
        "/api/webhooks/events",
        json={"event": "bounce", "payload": {"email": "a@example.com"}},
        headers=api_headers
    )

    assert response.status_code == 200
    assert [result["success"] for result in response.json()] == [True, False]
    assert response.json()[1]["retry_scheduled"] is True
    container.delivery.trigger_event.assert_awaited_once_with("user-1", WebhookEvent.BOUNCE, {"email": "a@example.com"})


def test_trigger_event_without_subscribers(client, container, api_headers):
    container.delivery.trigger_event = AsyncMock(return_value=[])

    response = client.post("/api/webhooks/events", json={"event": "campaign_sent"}, headers=api_headers)

    assert response.status_code == 200
    assert response.json() == []


@pytest.mark.parametrize("event", ["test", "not_an_event"])
def test_trigger_event_rejects_unknown_or_test_event(client, container, api_headers, event):
    container.delivery.trigger_event = AsyncMock(return_value=[])

    response = client.post("/api/webhooks/events", json={"event": event}, headers=api_headers)

    assert response.status_code == 422
    container.delivery.trigger_event.assert_not_awaited()


def test_trigger_event_requires_user(client, container):
    response = client.post(
        "/api/webhooks/events",
        json={"event": "bounce"},
        headers={"X-API-Key": "test-admin-key"}
    )

    assert response.status_code == 401
