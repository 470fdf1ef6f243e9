"""
Worker process for retries and scheduled tasks.

Runs the error retry sweep on a fixed cadence and polls the scheduled-task
facility for due webhook redeliveries. Several worker instances can run
side by side; due records and tasks are claimed by exactly one of them.
Implements graceful shutdown on SIGTERM.
"""

import asyncio
import signal
import sys
import time
from typing import Optional

from relaykit.config import settings
from relaykit.dependencies import ServiceContainer
from relaykit.utils.logging import setup_logging, get_logger

# Configure structured logging
setup_logging(settings.log_level.upper())
logger = get_logger(__name__)


class Worker:
    """Worker process driving the retry sweep and scheduled tasks."""

    def __init__(self, container: Optional[ServiceContainer] = None):
        """Initialize the worker."""
        self.container = container or ServiceContainer()
        self.running = False
        self._stopped = False
        self._last_sweep: Optional[float] = None
        self._shutdown_event = asyncio.Event()

    async def start(self) -> None:
        """
        Start the worker process.

        Initializes connections and begins polling.
        """
        logger.info("Starting worker process...")

        try:
            await self.container.initialize()
            logger.info("Store connection initialized")

            restored = await self.container.retry_scheduler.reconcile_schedule()
            if restored:
                logger.info(f"Re-queued {restored} retrying error records")

            self.running = True

            # Register signal handlers for graceful shutdown
            self._register_signal_handlers()

            logger.info("Worker process started successfully")

            await self._run_loop()

        except Exception as e:
            logger.error(f"Failed to start worker: {e}", exc_info=True)
            raise

    async def stop(self) -> None:
        """
        Stop the worker process gracefully.
        """
        if self._stopped:
            return
        self._stopped = True

        logger.info("Stopping worker process...")
        self.running = False
        self._shutdown_event.set()

        await self.container.close()

        logger.info("Worker process stopped")

    async def run_once(self) -> None:
        """
        Run one polling tick: due scheduled tasks, then the retry sweep when
        its interval has elapsed.
        """
        executed = await self.container.tasks.run_due_tasks()
        if executed:
            logger.info(f"Executed {executed} scheduled tasks")

        now = time.monotonic()
        if self._last_sweep is None or now - self._last_sweep >= settings.retry_sweep_interval_seconds:
            self._last_sweep = now
            result = await self.container.retry_scheduler.process_pending_retries()
            if result.processed:
                logger.info(f"Retry sweep processed {result.processed} error records")

    async def _run_loop(self) -> None:
        """
        Main processing loop.

        Keeps polling until shutdown; a failing tick is logged and the loop
        continues.
        """
        logger.info("Starting processing loop...")

        while self.running:
            try:
                await self.run_once()

            except asyncio.CancelledError:
                logger.info("Processing cancelled")
                break

            except Exception as e:
                logger.error(f"Error in worker tick: {e}", exc_info=True)

            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=settings.task_poll_interval_seconds
                )
            except asyncio.TimeoutError:
                pass

        logger.info("Processing loop stopped")

    def _register_signal_handlers(self) -> None:
        """Register signal handlers for graceful shutdown."""

        def signal_handler(signum, frame):
            """Handle shutdown signals."""
            signal_name = signal.Signals(signum).name
            logger.info(f"Received signal {signal_name}, initiating graceful shutdown...")

            self.running = False
            self._shutdown_event.set()

        # Register handlers for SIGTERM and SIGINT
        signal.signal(signal.SIGTERM, signal_handler)
        signal.signal(signal.SIGINT, signal_handler)

        logger.info("Signal handlers registered (SIGTERM, SIGINT)")


async def main():
    """Main entry point for worker process."""
    logger.info("Worker process starting...")

    worker = Worker()

    try:
        await worker.start()
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    except Exception as e:
        logger.error(f"Worker process failed: {e}", exc_info=True)
        sys.exit(1)
    finally:
        await worker.stop()


if __name__ == "__main__":
    asyncio.run(main())
