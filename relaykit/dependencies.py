"""
Service wiring shared by the API and the worker.
"""

from datetime import datetime
from typing import Callable, Optional

import httpx
from fastapi import Header, HTTPException

from relaykit.config import settings
from relaykit.models.common import utc_now
from relaykit.services.audit_logger import AuditLogger
from relaykit.services.error_recorder import ErrorRecorder
from relaykit.services.retry_policy import RetryPolicyTable
from relaykit.services.retry_scheduler import OperationDispatcher, RetryScheduler
from relaykit.services.store import RedisStore, get_store
from relaykit.services.task_scheduler import TaskScheduler
from relaykit.services.webhook_delivery import WebhookDeliveryEngine
from relaykit.services.webhook_registry import WebhookRegistry
from relaykit.utils.logging import get_logger


logger = get_logger(__name__)


class ServiceContainer:
    """
    Builds every service on one store.

    The ``webhook_delivery`` retry operation is registered on the
    dispatcher; hosts register further operations (``data_sync``,
    ``api_request``) through ``container.dispatcher.register``.
    """

    def __init__(
        self,
        store: Optional[RedisStore] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], datetime] = utc_now
    ):
        self.store = store or get_store()
        self.clock = clock
        self.policies = RetryPolicyTable.default()

        self.recorder = ErrorRecorder(self.store, self.policies, clock)
        self.dispatcher = OperationDispatcher()
        self.retry_scheduler = RetryScheduler(self.store, self.recorder, self.dispatcher, clock)
        self.tasks = TaskScheduler(self.store, clock, settings.retry_sweep_concurrency)
        self.registry = WebhookRegistry(self.store, clock)
        self.delivery = WebhookDeliveryEngine(
            self.store, self.registry, self.tasks, client=http_client, clock=clock
        )
        self.audit = AuditLogger(self.store, clock)

        self.dispatcher.register("webhook_delivery", self.delivery.retry_operation)

    async def initialize(self) -> None:
        await self.store.initialize()
        logger.info("Service container initialized")

    async def close(self) -> None:
        await self.delivery.close()
        await self.store.close()
        logger.info("Service container closed")


_container: Optional[ServiceContainer] = None


def get_container() -> ServiceContainer:
    """
    Get or create the global service container.

    Returns:
        ServiceContainer instance
    """
    global _container
    if _container is None:
        _container = ServiceContainer()
    return _container


async def verify_api_key(x_api_key: str = Header(None)) -> None:
    """
    Verify API key for admin endpoints.

    Args:
        x_api_key: API key from request header

    Raises:
        HTTPException: If API key is invalid or missing
    """
    if not x_api_key:
        raise HTTPException(status_code=401, detail="API key required")

    if not settings.admin_api_key or x_api_key != settings.admin_api_key:
        raise HTTPException(status_code=401, detail="Invalid API key")


async def get_user_id(x_user_id: str = Header(None)) -> str:
    """
    Resolve the acting user from the ``X-User-Id`` header.

    Raises:
        HTTPException: If the header is missing
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="User id required")
    return x_user_id
