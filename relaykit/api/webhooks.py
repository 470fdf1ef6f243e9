"""
Webhook endpoint management REST API.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from relaykit.dependencies import ServiceContainer, get_container, get_user_id, verify_api_key
from relaykit.models.api_response import StatusResponse
from relaykit.models.requests import EventTrigger
from relaykit.models.webhook import (
    DeliveryResult,
    WebhookDeliveryLog,
    WebhookEndpointCreate,
    WebhookEndpointUpdate,
    WebhookEndpointView,
)
from relaykit.services.exceptions import ConcurrentUpdateError, WebhookNotFound, WebhookValidationError
from relaykit.utils.logging import get_logger, log_error_with_context

logger = get_logger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"], dependencies=[Depends(verify_api_key)])


@router.get("", response_model=List[WebhookEndpointView])
async def list_webhooks(
    user_id: str = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container)
) -> List[WebhookEndpointView]:
    """
    List the user's webhook endpoints with credentials masked.
    """
    try:
        return await container.registry.get_user_webhooks(user_id)
    except Exception as e:
        log_error_with_context(logger, f"Error listing webhooks: {e}", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("", response_model=WebhookEndpointView, status_code=201)
async def create_webhook(
    webhook: WebhookEndpointCreate,
    user_id: str = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container)
) -> WebhookEndpointView:
    """
    Register a webhook endpoint.

    Raises:
        HTTPException: 400 if the endpoint definition is rejected
    """
    try:
        endpoint = await container.registry.create_webhook(user_id, webhook)
        await container.audit.create_audit_log(
            "webhook_created",
            "create",
            f"Webhook endpoint '{endpoint.name}' created",
            user_id=user_id,
            integration_id=endpoint.integration_id,
            resource_type="webhook_endpoint",
            resource_id=endpoint.id,
        )
        return WebhookEndpointView.from_endpoint(endpoint)

    except WebhookValidationError as e:
        logger.warning(f"Webhook validation failed: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        log_error_with_context(logger, f"Error creating webhook: {e}", e)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.patch("/{webhook_id}", response_model=WebhookEndpointView)
async def update_webhook(
    webhook_id: str,
    changes: WebhookEndpointUpdate,
    user_id: str = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container)
) -> WebhookEndpointView:
    """
    Partially update a webhook endpoint.
    """
    try:
        endpoint = await container.registry.update_webhook(user_id, webhook_id, changes)
        await container.audit.create_audit_log(
            "webhook_updated",
            "update",
            f"Webhook endpoint '{endpoint.name}' updated",
            user_id=user_id,
            integration_id=endpoint.integration_id,
            resource_type="webhook_endpoint",
            resource_id=endpoint.id,
            details={"fields": sorted(changes.model_fields_set)},
        )
        return WebhookEndpointView.from_endpoint(endpoint)

    except WebhookNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except WebhookValidationError as e:
        logger.warning(f"Webhook validation failed: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except ConcurrentUpdateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        log_error_with_context(logger, f"Error updating webhook {webhook_id}: {e}", e, webhook_id=webhook_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.delete("/{webhook_id}", response_model=StatusResponse)
async def delete_webhook(
    webhook_id: str,
    user_id: str = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container)
) -> StatusResponse:
    """
    Delete a webhook endpoint and its delivery logs.
    """
    try:
        deleted_logs = await container.registry.delete_webhook(user_id, webhook_id)
        await container.audit.create_audit_log(
            "webhook_deleted",
            "delete",
            f"Webhook endpoint {webhook_id} deleted",
            user_id=user_id,
            resource_type="webhook_endpoint",
            resource_id=webhook_id,
            details={"deleted_logs": deleted_logs},
        )
        return StatusResponse(status="success", message=f"Webhook {webhook_id} deleted")

    except WebhookNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except Exception as e:
        log_error_with_context(logger, f"Error deleting webhook {webhook_id}: {e}", e, webhook_id=webhook_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/{webhook_id}/test", response_model=DeliveryResult)
async def test_webhook(
    webhook_id: str,
    payload: Optional[Dict[str, Any]] = Body(default=None),
    user_id: str = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container)
) -> DeliveryResult:
    """
    Send a test delivery to a webhook endpoint.
    """
    try:
        return await container.delivery.test_webhook(webhook_id, user_id, payload)
    except WebhookNotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except ConcurrentUpdateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        log_error_with_context(logger, f"Error testing webhook {webhook_id}: {e}", e, webhook_id=webhook_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.post("/events", response_model=List[DeliveryResult])
async def trigger_event(
    trigger: EventTrigger,
    user_id: str = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container)
) -> List[DeliveryResult]:
    """
    Deliver an event to every active endpoint of the user subscribed to it.
    """
    try:
        return await container.delivery.trigger_event(user_id, trigger.event, trigger.payload)
    except ConcurrentUpdateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        log_error_with_context(logger, f"Error triggering event {trigger.event.value}: {e}", e, user_id=user_id)
        raise HTTPException(status_code=500, detail="Internal server error")


@router.get("/logs", response_model=List[WebhookDeliveryLog])
async def get_webhook_logs(
    webhook_id: Optional[str] = None,
    event: Optional[str] = None,
    success: Optional[bool] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    user_id: str = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container)
) -> List[WebhookDeliveryLog]:
    """
    List delivery logs of the user's endpoints, newest first.
    """
    try:
        return await container.registry.get_webhook_logs(user_id, webhook_id, event, success, limit)
    except Exception as e:
        log_error_with_context(logger, f"Error listing webhook logs: {e}", e)
        raise HTTPException(status_code=500, detail="Internal server error")
