"""
Background scheduler for the delivery dispatcher.

Enqueue never waits for delivery. Producers call ``notify()`` after an
enqueue, which only sets an event; the scheduler task wakes on that hint or
every ``interval`` seconds, runs a dispatch batch in a worker thread, and
keeps draining while batches come back full.
"""

import asyncio
from typing import Callable, Optional

from starlette.concurrency import run_in_threadpool

from backend.src.config.settings import AppSettings
from backend.src.db.database import session_scope
from backend.src.services.delivery_dispatcher import DeliveryDispatcher, DispatchReport
from backend.src.services.push_gateway import PushGateway, WebPushGateway
from backend.src.utils.logging_config import get_logger


logger = get_logger("dispatch")

BatchRunner = Callable[[int], DispatchReport]


def make_batch_runner(settings: AppSettings, gateway: Optional[PushGateway] = None) -> BatchRunner:
    """
    Build the blocking callable the scheduler runs per batch.

    Each batch gets its own database session.
    """
    gateway = gateway or WebPushGateway.from_settings(settings)

    def run_batch(limit: int) -> DispatchReport:
        with session_scope() as db:
            dispatcher = DeliveryDispatcher(db, gateway, max_attempts=settings.max_attempts)
            return dispatcher.dispatch_batch(limit)

    return run_batch


class DispatchScheduler:
    """
    Runs dispatch batches on a timer and on enqueue hints.

    Attributes:
        interval: Seconds between unprompted batches
        batch_size: Intents claimed per batch
    """

    def __init__(self, run_batch: BatchRunner, interval: float = 30.0, batch_size: int = 50):
        self._run_batch = run_batch
        self.interval = interval
        self.batch_size = batch_size
        self._wake = asyncio.Event()
        self._stopping = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def notify(self) -> None:
        """Hint that new intents are waiting; never blocks."""
        self._wake.set()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._task = asyncio.create_task(self._loop(), name="dispatch-scheduler")
        logger.info(
            "Dispatch scheduler started",
            extra={"interval_seconds": self.interval, "batch_size": self.batch_size},
        )

    async def stop(self) -> None:
        """Stop the loop and wait for the in-flight batch to finish."""
        self._stopping = True
        self._wake.set()
        if self._task is not None:
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Dispatch scheduler stopped")

    async def run_once(self) -> DispatchReport:
        """Run a single batch off the event loop."""
        return await run_in_threadpool(self._run_batch, self.batch_size)

    async def _loop(self) -> None:
        while not self._stopping:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            if self._stopping:
                break

            try:
                report = await self.run_once()
                while report.claimed >= self.batch_size and not self._stopping:
                    report = await self.run_once()
            except Exception as e:
                logger.error(f"Dispatch batch failed: {e}", exc_info=True)
