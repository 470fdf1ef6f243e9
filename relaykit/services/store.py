"""
Redis-backed durable store for relaykit records.

This service provides Redis operations for:
- JSON documents per record (error logs, alerts, webhook endpoints,
  delivery logs, audit entries and trails)
- Per-collection id sets and secondary field indexes for query-by-field
- Compare-and-swap single-record updates (WATCH/MULTI)
- Time-ordered schedules using sorted sets (retry schedule, delayed tasks)

Includes connection pooling and retry logic for resilience.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Type, TypeVar
from contextlib import asynccontextmanager

import redis.asyncio as redis
from pydantic import BaseModel
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError, ConnectionError, TimeoutError, WatchError

from relaykit.services.exceptions import ConcurrentUpdateError, StoreConnectionError


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Queues extra commands on the transaction that writes the document
ExtraOps = Callable[[Any, BaseModel], None]


class RedisStore:
    """
    Document store on top of Redis with connection pooling and retry logic.

    Provides methods for:
    - Document CRUD (string keys holding JSON)
    - Field index lookups (sets)
    - Atomic read-modify-write of a single document
    - Sorted-set schedules
    """

    # Redis key templates
    DOCUMENT_KEY = "relaykit:{collection}:{doc_id}"
    COLLECTION_IDS_KEY = "relaykit:{collection}:ids"
    FIELD_INDEX_KEY = "relaykit:{collection}:by_{field}:{value}"

    # Collections
    ERRORS = "error_logs"
    ERROR_ALERTS = "error_alerts"
    WEBHOOKS = "webhook_endpoints"
    WEBHOOK_LOGS = "webhook_logs"
    AUDIT_LOGS = "audit_logs"
    AUDIT_ALERTS = "audit_alerts"
    AUDIT_TRAILS = "audit_trails"
    SCHEDULED_TASKS = "scheduled_tasks"

    # Schedules
    ERROR_RETRY_SCHEDULE_KEY = "relaykit:error_logs:retry_schedule"
    SCHEDULED_TASKS_KEY = "relaykit:scheduled_tasks:due"
    PROCESSING_TASKS_KEY = "relaykit:scheduled_tasks:processing"

    INDEXED_FIELDS: Dict[str, Tuple[str, ...]] = {
        ERROR_ALERTS: ("error_id",),
        WEBHOOKS: ("user_id",),
        WEBHOOK_LOGS: ("webhook_endpoint_id", "user_id"),
        AUDIT_ALERTS: ("audit_log_id",),
    }

    def __init__(
        self,
        redis_url: Optional[str] = None,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        connection_timeout: int = 5,
        max_cas_attempts: int = 10
    ):
        """
        Initialize the store.

        Args:
            redis_url: Redis connection URL. If None, will load from settings.
            max_retries: Maximum number of retry attempts for transient errors
            retry_delay: Base delay between retries (exponential backoff)
            connection_timeout: Connection timeout in seconds
            max_cas_attempts: Attempts for a compare-and-swap update before giving up
        """
        self._redis_url = redis_url
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[redis.Redis] = None
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._connection_timeout = connection_timeout
        self._max_cas_attempts = max_cas_attempts

    async def initialize(self) -> None:
        """
        Initialize Redis connection pool.

        Should be called during application startup.

        Raises:
            StoreConnectionError: If connection fails
        """
        try:
            from relaykit.config import settings

            if not self._redis_url:
                self._redis_url = settings.redis_url

            self._pool = ConnectionPool.from_url(
                self._redis_url,
                max_connections=settings.redis_max_connections,
                decode_responses=True,
                socket_timeout=self._connection_timeout,
                socket_connect_timeout=self._connection_timeout
            )
            self._client = redis.Redis(connection_pool=self._pool)

            await self._client.ping()

            logger.info("Redis store initialized successfully")

        except Exception as e:
            logger.error(f"Failed to initialize Redis store: {e}")
            raise StoreConnectionError(f"Failed to connect to Redis: {e}")

    async def close(self) -> None:
        """
        Close Redis connection pool.

        Should be called during application shutdown.
        """
        if self._client:
            await self._client.aclose()

        if self._pool:
            await self._pool.disconnect()

        logger.info("Redis store closed")

    @asynccontextmanager
    async def _get_client(self):
        """
        Get Redis client with connection check.

        Yields:
            redis.Redis: Redis client instance

        Raises:
            RuntimeError: If client not initialized
        """
        if not self._client:
            raise RuntimeError("Redis store not initialized. Call initialize() first.")

        yield self._client

    async def _retry_operation(self, operation, *args, **kwargs):
        """
        Execute Redis operation with retry logic.

        Args:
            operation: Async function to execute
            *args: Positional arguments for operation
            **kwargs: Keyword arguments for operation

        Returns:
            Operation result

        Raises:
            StoreConnectionError: If operation fails after all retries
        """
        last_error = None

        for attempt in range(self._max_retries):
            try:
                return await operation(*args, **kwargs)

            except (ConnectionError, TimeoutError) as e:
                last_error = e
                if attempt < self._max_retries - 1:
                    delay = self._retry_delay * (2 ** attempt)
                    logger.warning(
                        f"Redis operation failed (attempt {attempt + 1}/{self._max_retries}), "
                        f"retrying in {delay}s: {e}"
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.error(f"Redis operation failed after {self._max_retries} attempts: {e}")

            except RedisError as e:
                # Non-transient errors, don't retry
                logger.error(f"Redis operation failed with non-transient error: {e}")
                raise

        raise StoreConnectionError(f"Redis operation failed after {self._max_retries} retries: {last_error}")

    # ========== Keys ==========

    def _doc_key(self, collection: str, doc_id: str) -> str:
        return self.DOCUMENT_KEY.format(collection=collection, doc_id=doc_id)

    def _ids_key(self, collection: str) -> str:
        return self.COLLECTION_IDS_KEY.format(collection=collection)

    def _index_key(self, collection: str, field: str, value: Any) -> str:
        if isinstance(value, Enum):
            value = value.value
        return self.FIELD_INDEX_KEY.format(collection=collection, field=field, value=value)

    def _index_entries(self, collection: str, document: BaseModel) -> List[str]:
        """Index keys a document belongs to."""
        keys = []
        for field in self.INDEXED_FIELDS.get(collection, ()):
            value = getattr(document, field, None)
            if value is not None:
                keys.append(self._index_key(collection, field, value))
        return keys

    # ========== Document Operations ==========

    def queue_insert(self, pipe, collection: str, document: BaseModel) -> None:
        """
        Queue the commands writing a document and its index entries.

        Lets an ``extra_ops`` callback insert a related document in the same
        transaction.
        """
        pipe.set(self._doc_key(collection, document.id), document.model_dump_json())
        pipe.sadd(self._ids_key(collection), document.id)
        for index_key in self._index_entries(collection, document):
            pipe.sadd(index_key, document.id)

    async def insert(
        self,
        collection: str,
        document: BaseModel,
        extra_ops: Optional[ExtraOps] = None
    ) -> None:
        """
        Insert a document and its index entries in one transaction.

        Args:
            collection: Collection name
            document: Pydantic model with an ``id`` attribute
            extra_ops: Optional callback queuing more commands on the transaction

        Raises:
            StoreConnectionError: If operation fails after retries
        """
        async def _insert():
            async with self._get_client() as client:
                async with client.pipeline(transaction=True) as pipe:
                    self.queue_insert(pipe, collection, document)
                    if extra_ops:
                        extra_ops(pipe, document)
                    await pipe.execute()

                logger.debug(f"Inserted {collection} document {document.id}")

        await self._retry_operation(_insert)

    async def get(self, collection: str, doc_id: str, model_cls: Type[ModelT]) -> Optional[ModelT]:
        """
        Retrieve a document.

        Args:
            collection: Collection name
            doc_id: Document id
            model_cls: Model to parse the document into

        Returns:
            Parsed document if found, None otherwise
        """
        async def _get():
            async with self._get_client() as client:
                raw = await client.get(self._doc_key(collection, doc_id))
                if raw is None:
                    return None
                return model_cls.model_validate_json(raw)

        return await self._retry_operation(_get)

    async def get_many(
        self,
        collection: str,
        doc_ids: Iterable[str],
        model_cls: Type[ModelT]
    ) -> List[ModelT]:
        """
        Retrieve several documents, skipping ids that no longer exist.

        Args:
            collection: Collection name
            doc_ids: Document ids (order is preserved)
            model_cls: Model to parse the documents into

        Returns:
            List of parsed documents
        """
        ids = list(doc_ids)
        if not ids:
            return []

        async def _get_many():
            async with self._get_client() as client:
                raws = await client.mget([self._doc_key(collection, doc_id) for doc_id in ids])
                return [model_cls.model_validate_json(raw) for raw in raws if raw is not None]

        return await self._retry_operation(_get_many)

    async def list_all(self, collection: str, model_cls: Type[ModelT]) -> List[ModelT]:
        """
        Retrieve every document of a collection.

        Args:
            collection: Collection name
            model_cls: Model to parse the documents into

        Returns:
            List of parsed documents (unordered)
        """
        async def _ids():
            async with self._get_client() as client:
                return await client.smembers(self._ids_key(collection))

        ids = await self._retry_operation(_ids)
        return await self.get_many(collection, sorted(ids), model_cls)

    async def find_by_field(
        self,
        collection: str,
        field: str,
        value: Any,
        model_cls: Type[ModelT]
    ) -> List[ModelT]:
        """
        Retrieve documents whose ``field`` equals ``value``.

        Uses the field index when the collection indexes the field, otherwise
        scans the collection.

        Args:
            collection: Collection name
            field: Attribute name
            value: Value to match
            model_cls: Model to parse the documents into

        Returns:
            Matching documents
        """
        if field in self.INDEXED_FIELDS.get(collection, ()):
            async def _ids():
                async with self._get_client() as client:
                    return await client.smembers(self._index_key(collection, field, value))

            ids = await self._retry_operation(_ids)
            return await self.get_many(collection, sorted(ids), model_cls)

        documents = await self.list_all(collection, model_cls)
        return [doc for doc in documents if getattr(doc, field, None) == value]

    async def update(
        self,
        collection: str,
        doc_id: str,
        model_cls: Type[ModelT],
        mutator: Callable[[ModelT], ModelT],
        extra_ops: Optional[ExtraOps] = None
    ) -> Optional[ModelT]:
        """
        Atomically read, modify and write one document.

        The document key is WATCHed; if another writer changes it before the
        transaction executes, the read-modify-write is repeated. Documents
        with a ``version`` attribute get it incremented on every write.

        Args:
            collection: Collection name
            doc_id: Document id
            model_cls: Model to parse the document into
            mutator: Receives the current document and returns the new one
            extra_ops: Optional callback queuing more commands on the transaction

        Returns:
            The written document, or None if it does not exist

        Raises:
            ConcurrentUpdateError: If the document kept changing for every attempt
            StoreConnectionError: If operation fails after retries
        """
        key = self._doc_key(collection, doc_id)

        async def _update():
            async with self._get_client() as client:
                for _ in range(self._max_cas_attempts):
                    async with client.pipeline(transaction=True) as pipe:
                        try:
                            await pipe.watch(key)
                            raw = await pipe.get(key)
                            if raw is None:
                                await pipe.unwatch()
                                return None

                            updated = mutator(model_cls.model_validate_json(raw))
                            if hasattr(updated, "version"):
                                updated.version += 1

                            pipe.multi()
                            pipe.set(key, updated.model_dump_json())
                            if extra_ops:
                                extra_ops(pipe, updated)
                            await pipe.execute()
                            return updated

                        except WatchError:
                            logger.debug(f"Concurrent write on {key}, retrying update")
                            continue

                raise ConcurrentUpdateError(
                    f"{collection} document {doc_id} changed during {self._max_cas_attempts} update attempts"
                )

        return await self._retry_operation(_update)

    async def delete(
        self,
        collection: str,
        doc_id: str,
        model_cls: Type[ModelT],
        extra_ops: Optional[ExtraOps] = None
    ) -> bool:
        """
        Delete a document and its index entries.

        Args:
            collection: Collection name
            doc_id: Document id
            model_cls: Model used to read the index fields before deletion
            extra_ops: Optional callback queuing more commands on the transaction

        Returns:
            True if the document existed
        """
        document = await self.get(collection, doc_id, model_cls)
        if document is None:
            return False

        async def _delete():
            async with self._get_client() as client:
                async with client.pipeline(transaction=True) as pipe:
                    pipe.delete(self._doc_key(collection, doc_id))
                    pipe.srem(self._ids_key(collection), doc_id)
                    for index_key in self._index_entries(collection, document):
                        pipe.srem(index_key, doc_id)
                    if extra_ops:
                        extra_ops(pipe, document)
                    await pipe.execute()

                logger.debug(f"Deleted {collection} document {doc_id}")

        await self._retry_operation(_delete)
        return True

    # ========== Schedule Operations (Sorted Set) ==========

    async def schedule_member(self, schedule_key: str, member: str, due_at_ms: int) -> None:
        """
        Add or move a member on a schedule.

        Args:
            schedule_key: Sorted set key
            member: Member to schedule
            due_at_ms: Epoch milliseconds when the member becomes due
        """
        async def _schedule():
            async with self._get_client() as client:
                await client.zadd(schedule_key, {member: due_at_ms})

        await self._retry_operation(_schedule)

    async def due_members(self, schedule_key: str, now_ms: int) -> List[str]:
        """
        Get members due at or before ``now_ms``, earliest first.

        Args:
            schedule_key: Sorted set key
            now_ms: Current epoch milliseconds

        Returns:
            List of due members
        """
        async def _due():
            async with self._get_client() as client:
                return await client.zrangebyscore(schedule_key, min=0, max=now_ms)

        return list(await self._retry_operation(_due))

    async def claim_member(self, schedule_key: str, member: str) -> bool:
        """
        Remove a member from a schedule; only one caller can succeed.

        Returns:
            True if this caller removed the member
        """
        async def _claim():
            async with self._get_client() as client:
                return await client.zrem(schedule_key, member)

        return bool(await self._retry_operation(_claim))

    async def move_member(self, source_key: str, target_key: str, member: str, score_ms: int) -> bool:
        """
        Move a member from one schedule to another in one transaction.

        ``source_key`` is WATCHed, so the member lands on ``target_key`` only
        for the caller that removed it. A caller that keeps losing the race
        leaves the member where it is.

        Returns:
            True if this caller moved the member
        """
        async def _move():
            async with self._get_client() as client:
                for _ in range(self._max_cas_attempts):
                    async with client.pipeline(transaction=True) as pipe:
                        try:
                            await pipe.watch(source_key)
                            if await pipe.zscore(source_key, member) is None:
                                await pipe.unwatch()
                                return False

                            pipe.multi()
                            pipe.zrem(source_key, member)
                            pipe.zadd(target_key, {member: score_ms})
                            removed, _ = await pipe.execute()
                            return bool(removed)

                        except WatchError:
                            logger.debug(f"Concurrent change on {source_key}, retrying move of {member}")
                            continue

                return False

        return await self._retry_operation(_move)

    async def schedule_size(self, schedule_key: str) -> int:
        async def _size():
            async with self._get_client() as client:
                return await client.zcard(schedule_key)

        return await self._retry_operation(_size)

    # ========== Utility Methods ==========

    async def ping(self) -> bool:
        """
        Test Redis connection.

        Returns:
            True if connection is healthy
        """
        async def _ping():
            async with self._get_client() as client:
                return await client.ping()

        return await self._retry_operation(_ping)

    async def clear_all_data(self) -> None:
        """
        Clear all data (for testing purposes only).

        WARNING: This will delete all keys in the Redis database.
        """
        async def _clear():
            async with self._get_client() as client:
                await client.flushdb()
                logger.warning("Cleared all Redis data")

        await self._retry_operation(_clear)


# Global service instance factory
def get_store() -> RedisStore:
    """
    Create a store instance using the configured Redis URL.

    Returns:
        RedisStore instance
    """
    return RedisStore()
