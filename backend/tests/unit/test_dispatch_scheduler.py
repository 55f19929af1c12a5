"""
Unit tests for DispatchScheduler.
"""

import asyncio
import threading
from unittest.mock import MagicMock

import pytest

from backend.src.services.delivery_dispatcher import DispatchReport
from backend.src.services.dispatch_scheduler import DispatchScheduler


class TestDispatchScheduler:

    @pytest.mark.asyncio
    async def test_run_once_runs_batch_in_thread(self):
        run_batch = MagicMock(return_value=DispatchReport(claimed=2, sent=2))
        scheduler = DispatchScheduler(run_batch, interval=60, batch_size=25)

        report = await scheduler.run_once()
        assert report.sent == 2
        run_batch.assert_called_once_with(25)

    @pytest.mark.asyncio
    async def test_notify_wakes_loop(self):
        """Should run a batch right after notify() instead of waiting for the interval."""
        ran = threading.Event()

        def run_batch(limit):
            ran.set()
            return DispatchReport()

        scheduler = DispatchScheduler(run_batch, interval=60, batch_size=10)
        scheduler.start()
        assert scheduler.running

        scheduler.notify()
        for _ in range(200):
            if ran.is_set():
                break
            await asyncio.sleep(0.01)
        assert ran.is_set()
        await scheduler.stop()
        assert not scheduler.running

    @pytest.mark.asyncio
    async def test_drains_while_batches_are_full(self):
        reports = [DispatchReport(claimed=10), DispatchReport(claimed=10), DispatchReport(claimed=3)]
        run_batch = MagicMock(side_effect=reports + [DispatchReport()] * 10)
        scheduler = DispatchScheduler(run_batch, interval=60, batch_size=10)
        scheduler.start()
        scheduler.notify()

        for _ in range(100):
            if run_batch.call_count >= 3:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()
        assert run_batch.call_count == 3

    @pytest.mark.asyncio
    async def test_batch_errors_do_not_stop_loop(self):
        run_batch = MagicMock(side_effect=[RuntimeError("db down")] + [DispatchReport()] * 500)
        scheduler = DispatchScheduler(run_batch, interval=0.01, batch_size=10)
        scheduler.start()

        for _ in range(100):
            if run_batch.call_count >= 2:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()
        assert run_batch.call_count >= 2
