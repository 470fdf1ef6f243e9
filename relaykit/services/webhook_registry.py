"""
Webhook registry for managing outbound webhook endpoints.

This service handles CRUD operations for webhook endpoints, delivery log
queries and the per-endpoint delivery counters. Read paths never expose
authentication credentials.
"""

from datetime import datetime
from typing import Callable, List, Optional

from relaykit.models.common import utc_now
from relaykit.models.webhook import (
    WebhookDeliveryLog,
    WebhookEndpoint,
    WebhookEndpointCreate,
    WebhookEndpointUpdate,
    WebhookEndpointView,
    WebhookRetryPolicy,
)
from relaykit.services.exceptions import WebhookNotFound, WebhookValidationError
from relaykit.services.store import RedisStore
from relaykit.utils.logging import get_logger


logger = get_logger(__name__)


class WebhookRegistry:
    """
    Service for managing webhook endpoints.

    Every mutating operation checks that the endpoint belongs to the
    calling user; a foreign endpoint is reported as not found.
    """

    def __init__(self, store: RedisStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock

    async def create_webhook(self, user_id: str, webhook: WebhookEndpointCreate) -> WebhookEndpoint:
        """
        Register a new webhook endpoint.

        Args:
            user_id: Owning user
            webhook: Endpoint definition

        Returns:
            The stored endpoint

        Raises:
            WebhookValidationError: If the URL is not http(s)
        """
        url = str(webhook.url)
        self._validate_url(url)

        now = self.clock()
        endpoint = WebhookEndpoint(
            user_id=user_id,
            integration_id=webhook.integration_id,
            name=webhook.name,
            url=url,
            method=webhook.method,
            is_active=True,
            events=webhook.events,
            headers=webhook.headers or {},
            authentication=webhook.authentication,
            retry_policy=webhook.retry_policy or WebhookRetryPolicy(),
            created_at=now,
            updated_at=now,
        )

        await self.store.insert(RedisStore.WEBHOOKS, endpoint)

        logger.info(
            f"Created webhook endpoint {endpoint.name}",
            extra={"webhook_id": endpoint.id, "user_id": user_id}
        )
        return endpoint

    async def update_webhook(
        self,
        user_id: str,
        webhook_id: str,
        changes: WebhookEndpointUpdate
    ) -> WebhookEndpoint:
        """
        Apply a partial update to an endpoint.

        Only fields set on ``changes`` are written.

        Raises:
            WebhookNotFound: If the endpoint does not exist or belongs to another user
            WebhookValidationError: If the new URL is not http(s)
        """
        await self._get_owned(user_id, webhook_id)

        updates = {}
        for field in changes.model_fields_set:
            value = getattr(changes, field)
            if value is None and field != "authentication":
                continue
            updates[field] = str(value) if field == "url" else value

        if "url" in updates:
            self._validate_url(updates["url"])

        def _apply(endpoint: WebhookEndpoint) -> WebhookEndpoint:
            for field, value in updates.items():
                setattr(endpoint, field, value)
            endpoint.updated_at = self.clock()
            return endpoint

        updated = await self.store.update(RedisStore.WEBHOOKS, webhook_id, WebhookEndpoint, _apply)
        if updated is None:
            raise WebhookNotFound(f"Webhook {webhook_id} not found")

        logger.info(
            f"Updated webhook endpoint {webhook_id}",
            extra={"webhook_id": webhook_id, "fields": sorted(updates)}
        )
        return updated

    async def delete_webhook(self, user_id: str, webhook_id: str) -> int:
        """
        Delete an endpoint together with its delivery logs.

        Pending retries become no-ops once the endpoint is gone.

        Returns:
            Number of delivery logs deleted

        Raises:
            WebhookNotFound: If the endpoint does not exist or belongs to another user
        """
        await self._get_owned(user_id, webhook_id)

        # Endpoint first: later deliveries see it gone and write no log
        await self.store.delete(RedisStore.WEBHOOKS, webhook_id, WebhookEndpoint)

        logs = await self.store.find_by_field(
            RedisStore.WEBHOOK_LOGS, "webhook_endpoint_id", webhook_id, WebhookDeliveryLog
        )
        for log in logs:
            await self.store.delete(RedisStore.WEBHOOK_LOGS, log.id, WebhookDeliveryLog)

        logger.info(
            f"Deleted webhook endpoint {webhook_id} and {len(logs)} delivery logs",
            extra={"webhook_id": webhook_id, "user_id": user_id}
        )
        return len(logs)

    async def get_webhook(self, webhook_id: str) -> Optional[WebhookEndpoint]:
        """Get an endpoint with its credentials, for delivery."""
        return await self.store.get(RedisStore.WEBHOOKS, webhook_id, WebhookEndpoint)

    async def get_owned_webhook(self, user_id: str, webhook_id: str) -> WebhookEndpoint:
        """
        Get an endpoint of a user.

        Raises:
            WebhookNotFound: If the endpoint does not exist or belongs to another user
        """
        return await self._get_owned(user_id, webhook_id)

    async def get_user_webhooks(self, user_id: str) -> List[WebhookEndpointView]:
        """
        List a user's endpoints with credentials masked, oldest first.
        """
        endpoints = await self.store.find_by_field(RedisStore.WEBHOOKS, "user_id", user_id, WebhookEndpoint)
        endpoints.sort(key=lambda endpoint: endpoint.created_at)
        return [WebhookEndpointView.from_endpoint(endpoint) for endpoint in endpoints]

    async def get_active_subscribers(self, user_id: str, event: str) -> List[WebhookEndpoint]:
        """Active endpoints of a user subscribed to an event."""
        endpoints = await self.store.find_by_field(RedisStore.WEBHOOKS, "user_id", user_id, WebhookEndpoint)
        return [
            endpoint for endpoint in endpoints
            if endpoint.is_active and endpoint.subscribes_to(event)
        ]

    async def get_webhook_logs(
        self,
        user_id: str,
        webhook_id: Optional[str] = None,
        event: Optional[str] = None,
        success: Optional[bool] = None,
        limit: int = 100
    ) -> List[WebhookDeliveryLog]:
        """
        List delivery logs, newest first.

        Args:
            user_id: Owning user
            webhook_id: Only logs of this endpoint
            event: Only logs of this event
            success: Only successful (True) or failed (False) attempts
            limit: Maximum number of logs

        Returns:
            Matching delivery logs
        """
        if webhook_id:
            logs = await self.store.find_by_field(
                RedisStore.WEBHOOK_LOGS, "webhook_endpoint_id", webhook_id, WebhookDeliveryLog
            )
            logs = [log for log in logs if log.user_id == user_id]
        else:
            logs = await self.store.find_by_field(
                RedisStore.WEBHOOK_LOGS, "user_id", user_id, WebhookDeliveryLog
            )

        if event is not None:
            logs = [log for log in logs if log.event == event]
        if success is not None:
            logs = [log for log in logs if log.success == success]

        logs.sort(key=lambda log: log.timestamp, reverse=True)
        return logs[:limit]

    async def record_delivery_stats(
        self,
        webhook_id: str,
        success: bool,
        triggered_at: datetime,
        log: Optional[WebhookDeliveryLog] = None
    ) -> Optional[WebhookEndpoint]:
        """
        Count one delivery attempt on its endpoint.

        Counter, ``last_triggered`` and the optional delivery log are written
        in one compare-and-swap update, so no log outlives a deleted endpoint.

        Returns:
            The updated endpoint, or None if it was deleted meanwhile
        """
        def _count(endpoint: WebhookEndpoint) -> WebhookEndpoint:
            if success:
                endpoint.success_count += 1
            else:
                endpoint.failure_count += 1
            endpoint.last_triggered = triggered_at
            return endpoint

        def _write_log(pipe, endpoint: WebhookEndpoint) -> None:
            self.store.queue_insert(pipe, RedisStore.WEBHOOK_LOGS, log)

        return await self.store.update(
            RedisStore.WEBHOOKS, webhook_id, WebhookEndpoint, _count,
            extra_ops=_write_log if log is not None else None
        )

    async def _get_owned(self, user_id: str, webhook_id: str) -> WebhookEndpoint:
        endpoint = await self.store.get(RedisStore.WEBHOOKS, webhook_id, WebhookEndpoint)
        if endpoint is None or endpoint.user_id != user_id:
            raise WebhookNotFound(f"Webhook {webhook_id} not found")
        return endpoint

    @staticmethod
    def _validate_url(url: str) -> None:
        if not url.startswith(("http://", "https://")):
            raise WebhookValidationError(f"Invalid URL format: {url}")
