"""
Webhook delivery engine.

Sends event notifications to registered endpoints, logs every attempt and
schedules redelivery of failed attempts through the task scheduler. The
engine never sleeps between attempts; each retry is an independent task.
"""

import base64
import json
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import httpx

from relaykit.models.common import to_epoch_ms, utc_now
from relaykit.models.error import ErrorRecord, OperationResult
from relaykit.models.webhook import (
    AuthType,
    DeliveryResponse,
    DeliveryResult,
    HttpMethod,
    WebhookAuthentication,
    WebhookDeliveryLog,
    WebhookEndpoint,
    WebhookEvent,
)
from relaykit.services.store import RedisStore
from relaykit.services.task_scheduler import TaskScheduler
from relaykit.services.webhook_registry import WebhookRegistry
from relaykit.utils.logging import get_logger, log_webhook_delivery
from relaykit.utils.metrics import DeliveryMetrics, track_http_call
from relaykit.utils.resilience import webhook_retry_delay


logger = get_logger(__name__)

RETRY_TASK_NAME = "webhook_retry_delivery"
TEST_MESSAGE = "This is a test webhook delivery from SmartBatch"


def build_headers(
    endpoint: WebhookEndpoint,
    event: str,
    timestamp: datetime,
    user_agent: str = "SmartBatch-Webhook/1.0"
) -> Dict[str, str]:
    """
    Build request headers for a delivery.

    System headers are set first; endpoint headers are applied after them,
    so an endpoint header with a colliding name (case-insensitive) wins.
    """
    headers = {
        "Content-Type": "application/json",
        "User-Agent": user_agent,
        "X-SmartBatch-Event": event,
        "X-SmartBatch-Timestamp": str(to_epoch_ms(timestamp)),
    }

    for name, value in (endpoint.headers or {}).items():
        for existing in [key for key in headers if key.lower() == name.lower()]:
            del headers[existing]
        headers[name] = value

    return headers


def apply_authentication(headers: Dict[str, str], authentication: Optional[WebhookAuthentication]) -> None:
    """
    Add authentication headers in place.

    - bearer: ``Authorization: Bearer <token>``
    - basic: ``Authorization: Basic base64(username:password)``
    - api_key: header named by ``key`` set to ``value``

    Incomplete credentials add nothing.
    """
    if not authentication or not authentication.credentials:
        return

    credentials = authentication.credentials

    if authentication.type == AuthType.BEARER:
        if credentials.get("token"):
            headers["Authorization"] = f"Bearer {credentials['token']}"

    elif authentication.type == AuthType.BASIC:
        if credentials.get("username") and credentials.get("password"):
            token = base64.b64encode(
                f"{credentials['username']}:{credentials['password']}".encode("utf-8")
            ).decode("ascii")
            headers["Authorization"] = f"Basic {token}"

    elif authentication.type == AuthType.API_KEY:
        if credentials.get("key") and credentials.get("value"):
            headers[credentials["key"]] = credentials["value"]


class WebhookDeliveryEngine:
    """
    Delivers events to webhook endpoints.

    Every call to ``deliver`` writes exactly one delivery log row and one
    counter update on the endpoint.
    """

    def __init__(
        self,
        store: RedisStore,
        registry: WebhookRegistry,
        scheduler: TaskScheduler,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utc_now,
        metrics: Optional[DeliveryMetrics] = None
    ):
        """
        Initialize the delivery engine.

        Args:
            store: Durable store for delivery logs
            registry: Webhook registry
            scheduler: Task scheduler used for redelivery
            client: HTTP client (default: one with settings.webhook_timeout_seconds)
            clock: Returns the current UTC time
            metrics: Delivery metrics collector
        """
        from relaykit.config import settings

        self.store = store
        self.registry = registry
        self.scheduler = scheduler
        self.client = client or httpx.AsyncClient(timeout=settings.webhook_timeout_seconds)
        self.clock = clock
        self.metrics = metrics or DeliveryMetrics()
        self.user_agent = settings.webhook_user_agent

        self.scheduler.register_handler(RETRY_TASK_NAME, self.retry_delivery)

    async def close(self) -> None:
        await self.client.aclose()

    async def deliver(
        self,
        endpoint: WebhookEndpoint,
        event: str,
        payload: Any,
        attempt: int = 1,
        schedule_retries: bool = True,
        update_stats: bool = True
    ) -> DeliveryResult:
        """
        Send one delivery attempt.

        Subscription and activity checks are the caller's job. A failed
        attempt ``n`` schedules attempt ``n + 1`` while ``n`` does not exceed
        the endpoint's ``max_retries``.

        Args:
            endpoint: Target endpoint
            event: Event name
            payload: JSON-serialisable payload
            attempt: 1-based attempt number
            schedule_retries: Schedule redelivery on failure
            update_stats: Count the attempt on the endpoint

        Returns:
            Delivery result
        """
        event = event.value if isinstance(event, WebhookEvent) else event
        triggered_at = self.clock()

        headers = build_headers(endpoint, event, triggered_at, self.user_agent)
        apply_authentication(headers, endpoint.authentication)

        response, error = await self._send(endpoint, headers, payload)
        success = response is not None and error is None

        log = WebhookDeliveryLog(
            user_id=endpoint.user_id,
            webhook_endpoint_id=endpoint.id,
            event=event,
            payload=payload,
            response=response,
            success=success,
            error=error,
            attempt=attempt,
            timestamp=triggered_at,
        )

        if update_stats:
            # Log and counters land together, or not at all once the endpoint is gone
            counted = await self.registry.record_delivery_stats(endpoint.id, success, triggered_at, log=log)
            if counted is None:
                logger.info(
                    f"Webhook {endpoint.id} deleted during delivery, dropping attempt {attempt}",
                    extra={"webhook_id": endpoint.id, "event": event}
                )
                return DeliveryResult(success=success, attempt=attempt, response=response, error=error)
        else:
            await self.store.insert(RedisStore.WEBHOOK_LOGS, log)
            if await self.registry.get_webhook(endpoint.id) is None:
                await self.store.delete(RedisStore.WEBHOOK_LOGS, log.id, WebhookDeliveryLog)
                return DeliveryResult(success=success, attempt=attempt, response=response, error=error)

        log_webhook_delivery(
            logger, endpoint.id, event, attempt, success,
            status_code=response.status if response else None,
            error=error
        )

        retry_scheduled = False
        if not success and schedule_retries and attempt <= endpoint.retry_policy.max_retries:
            delay = webhook_retry_delay(
                endpoint.retry_policy.retry_delay, attempt, endpoint.retry_policy.exponential_backoff
            )
            await self.scheduler.schedule_at(
                delay,
                RETRY_TASK_NAME,
                {"webhook_id": endpoint.id, "event": event, "payload": payload, "attempt": attempt + 1},
            )
            retry_scheduled = True

        return DeliveryResult(
            success=success,
            attempt=attempt,
            response=response,
            error=error,
            log_id=log.id,
            retry_scheduled=retry_scheduled,
        )

    async def _send(self, endpoint: WebhookEndpoint, headers: Dict[str, str], payload: Any):
        method = endpoint.method.value
        content = json.dumps(payload, default=str) if endpoint.method != HttpMethod.GET else None

        try:
            async with track_http_call(self.metrics, endpoint.id, endpoint.url, method, logger) as call:
                http_response = await self.client.request(method, endpoint.url, headers=headers, content=content)

                call["status_code"] = http_response.status_code
                call["success"] = http_response.is_success
        except Exception as e:
            return None, str(e) or type(e).__name__

        response = DeliveryResponse(
            status=http_response.status_code,
            headers=dict(http_response.headers),
            body=http_response.text,
            response_time_ms=int(call["duration_ms"]),
        )

        if not http_response.is_success:
            return response, f"HTTP {http_response.status_code}: {http_response.reason_phrase}"
        return response, None

    async def deliver_to_endpoint(
        self,
        endpoint_id: str,
        event: str,
        payload: Any,
        attempt: int = 1,
        schedule_retries: bool = True
    ) -> Optional[DeliveryResult]:
        """
        Deliver to an endpoint by id.

        No-op (returns None) if the endpoint is missing, inactive or not
        subscribed to the event.
        """
        endpoint = await self.registry.get_webhook(endpoint_id)
        if endpoint is None or not endpoint.is_active or not endpoint.subscribes_to(event):
            return None
        return await self.deliver(endpoint, event, payload, attempt, schedule_retries=schedule_retries)

    async def trigger_event(self, user_id: str, event: str, payload: Any) -> List[DeliveryResult]:
        """
        Deliver a system event to every active subscribed endpoint of a user.

        Returns:
            One result per endpoint
        """
        event = event.value if isinstance(event, WebhookEvent) else event
        endpoints = await self.registry.get_active_subscribers(user_id, event)

        results = []
        for endpoint in endpoints:
            results.append(await self.deliver(endpoint, event, payload))
        return results

    async def test_webhook(
        self,
        endpoint_id: str,
        user_id: str,
        payload: Optional[Dict[str, Any]] = None
    ) -> DeliveryResult:
        """
        Send a manual test delivery.

        Ignores the subscription list, logs attempt 1 with event ``test``,
        leaves the endpoint counters alone and never schedules retries.

        Raises:
            WebhookNotFound: If the endpoint does not exist or belongs to another user
        """
        endpoint = await self.registry.get_owned_webhook(user_id, endpoint_id)

        test_payload = payload or {
            "event": WebhookEvent.TEST.value,
            "timestamp": to_epoch_ms(self.clock()),
            "data": {"message": TEST_MESSAGE},
        }

        return await self.deliver(
            endpoint,
            WebhookEvent.TEST.value,
            test_payload,
            attempt=1,
            schedule_retries=False,
            update_stats=False,
        )

    async def retry_delivery(self, task_payload: Dict[str, Any]) -> Optional[DeliveryResult]:
        """
        Scheduled-task handler redelivering a failed attempt.

        The endpoint is reloaded first; a deleted or deactivated endpoint
        makes the retry a no-op.
        """
        webhook_id = task_payload["webhook_id"]
        endpoint = await self.registry.get_webhook(webhook_id)

        if endpoint is None or not endpoint.is_active:
            logger.info(
                f"Skipping webhook retry for unavailable endpoint {webhook_id}",
                extra={"webhook_id": webhook_id}
            )
            return None

        return await self.deliver(
            endpoint,
            task_payload["event"],
            task_payload.get("payload"),
            attempt=int(task_payload.get("attempt", 1)),
        )

    async def retry_operation(self, record: ErrorRecord) -> OperationResult:
        """
        Retry-dispatcher entry for errors recorded with operation
        ``webhook_delivery``.

        Expects ``webhook_id``, ``event`` and ``payload`` in the context
        metadata. Redelivers once, without scheduling webhook-level retries.
        """
        metadata = (record.context.metadata if record.context else None) or {}
        if not metadata.get("webhook_id") or not metadata.get("event"):
            return OperationResult(success=False, message="insufficient context for retry")

        result = await self.deliver_to_endpoint(
            metadata["webhook_id"],
            metadata["event"],
            metadata.get("payload"),
            schedule_retries=False,
        )
        if result is None:
            return OperationResult(success=False, message="webhook endpoint unavailable")

        return OperationResult(success=result.success, message=result.error)
