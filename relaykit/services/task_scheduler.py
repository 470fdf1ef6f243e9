"""
Durable delayed-task facility.

Tasks are persisted as documents and scored by due time in a sorted set.
Workers poll ``run_due_tasks``; each due task is claimed by one worker,
leased on a processing schedule and handed to the handler registered for
its name. A task whose worker stops before finishing runs again once its
lease expires, so handlers must tolerate repeated execution.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Optional

from relaykit.models.common import to_epoch_ms, utc_now
from relaykit.models.task import ScheduledTask
from relaykit.services.store import RedisStore
from relaykit.utils.logging import get_logger


logger = get_logger(__name__)

TaskHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

# Time a claimed task may run before another worker picks it up again
DEFAULT_LEASE_MS = 5 * 60 * 1000


class TaskScheduler:
    """Schedules named tasks to run after a delay."""

    def __init__(
        self,
        store: RedisStore,
        clock: Callable[[], datetime] = utc_now,
        concurrency: int = 20,
        lease_ms: int = DEFAULT_LEASE_MS
    ):
        self.store = store
        self.clock = clock
        self.concurrency = concurrency
        self.lease_ms = lease_ms
        self._handlers: Dict[str, TaskHandler] = {}

    def register_handler(self, task_name: str, handler: TaskHandler) -> None:
        """
        Register the coroutine function executing tasks of a name.

        Args:
            task_name: Task name
            handler: Receives the task payload
        """
        self._handlers[task_name] = handler
        logger.debug(f"Registered task handler: {task_name}")

    async def schedule_at(self, delay_ms: int, task_name: str, payload: Dict[str, Any]) -> ScheduledTask:
        """
        Schedule a task to run ``delay_ms`` milliseconds from now.

        Args:
            delay_ms: Delay in milliseconds
            task_name: Name of the handler to run
            payload: JSON-serialisable handler argument

        Returns:
            The persisted task
        """
        task = ScheduledTask(
            task_name=task_name,
            payload=payload,
            due_at=self.clock() + timedelta(milliseconds=delay_ms),
        )

        def _enqueue(pipe, document: ScheduledTask) -> None:
            pipe.zadd(RedisStore.SCHEDULED_TASKS_KEY, {document.id: to_epoch_ms(document.due_at)})

        await self.store.insert(RedisStore.SCHEDULED_TASKS, task, extra_ops=_enqueue)

        logger.info(
            f"Scheduled task {task_name} in {delay_ms}ms",
            extra={"task_id": task.id, "task_name": task_name, "delay_ms": delay_ms}
        )
        return task

    async def pending_count(self) -> int:
        """Number of tasks waiting to run."""
        return await self.store.schedule_size(RedisStore.SCHEDULED_TASKS_KEY)

    async def get_pending_tasks(self) -> list:
        """Every task waiting to run, earliest first."""
        tasks = await self.store.list_all(RedisStore.SCHEDULED_TASKS, ScheduledTask)
        return sorted(tasks, key=lambda task: task.due_at)

    async def run_due_tasks(self, now: Optional[datetime] = None) -> int:
        """
        Run every task due at ``now``.

        A claimed task is leased on the processing schedule and deleted
        once its handler returns; tasks whose lease expired (worker
        stopped mid-task) are put back on the due schedule first. Handler
        failures are logged and never stop the other tasks.

        Args:
            now: Current time (default: clock)

        Returns:
            Number of tasks this call claimed
        """
        now = now or self.clock()
        now_ms = to_epoch_ms(now)

        await self._requeue_expired(now_ms)

        due_ids = await self.store.due_members(RedisStore.SCHEDULED_TASKS_KEY, now_ms)
        if not due_ids:
            return 0

        semaphore = asyncio.Semaphore(self.concurrency)

        async def _run(task_id: str) -> bool:
            async with semaphore:
                claimed = await self.store.move_member(
                    RedisStore.SCHEDULED_TASKS_KEY,
                    RedisStore.PROCESSING_TASKS_KEY,
                    task_id,
                    now_ms + self.lease_ms
                )
                if not claimed:
                    # Another worker owns it
                    return False

                task = await self.store.get(RedisStore.SCHEDULED_TASKS, task_id, ScheduledTask)
                if task is None:
                    await self.store.claim_member(RedisStore.PROCESSING_TASKS_KEY, task_id)
                    return False

                handler = self._handlers.get(task.task_name)
                if handler is None:
                    logger.warning(
                        f"No handler registered for task {task.task_name}",
                        extra={"task_id": task.id, "task_name": task.task_name}
                    )
                else:
                    try:
                        await handler(task.payload)
                    except Exception as e:
                        logger.error(
                            f"Task {task.task_name} failed: {e}",
                            extra={"task_id": task.id, "task_name": task.task_name},
                            exc_info=True
                        )

                await self.store.delete(
                    RedisStore.SCHEDULED_TASKS,
                    task_id,
                    ScheduledTask,
                    extra_ops=lambda pipe, document: pipe.zrem(RedisStore.PROCESSING_TASKS_KEY, document.id)
                )
                return True

        claimed = await asyncio.gather(*(_run(task_id) for task_id in due_ids))
        return sum(1 for was_claimed in claimed if was_claimed)

    async def _requeue_expired(self, now_ms: int) -> int:
        """Put tasks with an expired lease back on the due schedule."""
        expired = await self.store.due_members(RedisStore.PROCESSING_TASKS_KEY, now_ms)
        requeued = 0

        for task_id in expired:
            if await self.store.move_member(
                RedisStore.PROCESSING_TASKS_KEY, RedisStore.SCHEDULED_TASKS_KEY, task_id, now_ms
            ):
                requeued += 1

        if requeued:
            logger.warning(f"Re-queued {requeued} tasks with an expired lease")
        return requeued
