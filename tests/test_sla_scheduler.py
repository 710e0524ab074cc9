# tests/test_sla_scheduler.py
"""Tests for the periodic SLA sweep task"""
import asyncio

import pytest

from app.core.dispatch.domain import SweepResult
from app.infra.metrics import get_metrics_collector
from app.infra.sla_scheduler import SLASweepScheduler


class TestTick:
    @pytest.mark.asyncio
    async def test_runs_sweep_and_keeps_result(self):
        async def sweep():
            return SweepResult(breached=3, escalated=1)

        scheduler = SLASweepScheduler(sweep, interval=3600)

        assert scheduler.tick() is True
        await scheduler._current

        assert scheduler.last_result == SweepResult(breached=3, escalated=1)
        assert scheduler.sweeps_run == 1

    @pytest.mark.asyncio
    async def test_skips_tick_while_sweep_in_flight(self):
        release = asyncio.Event()
        calls = 0

        async def slow_sweep():
            nonlocal calls
            calls += 1
            await release.wait()
            return SweepResult(breached=0, escalated=0)

        scheduler = SLASweepScheduler(slow_sweep, interval=3600)

        assert scheduler.tick() is True
        await asyncio.sleep(0)
        assert scheduler.tick() is False

        release.set()
        await scheduler._current
        assert calls == 1
        assert scheduler.tick() is True
        await scheduler._current
        assert calls == 2

        counters = get_metrics_collector().get_metrics()["counters"]
        assert counters["sla_sweeps_skipped_total"] == 1

    @pytest.mark.asyncio
    async def test_sweep_error_is_logged_not_raised(self):
        async def broken():
            raise RuntimeError("database unavailable")

        scheduler = SLASweepScheduler(broken, interval=3600)

        scheduler.tick()
        await scheduler._current

        assert scheduler.sweeps_run == 0
        assert scheduler.last_result is None
        assert get_metrics_collector().get_metrics()["counters"]["sla_sweep_errors"] == 1


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_runs_first_sweep_immediately(self):
        done = asyncio.Event()

        async def sweep():
            done.set()
            return SweepResult(breached=0, escalated=0)

        scheduler = SLASweepScheduler(sweep, interval=3600)
        await scheduler.start()
        assert scheduler.running is True

        await asyncio.wait_for(done.wait(), timeout=1)
        await scheduler.stop()

        assert scheduler.running is False
        assert scheduler.sweeps_run == 1

    @pytest.mark.asyncio
    async def test_stop_waits_for_in_flight_sweep(self):
        started = asyncio.Event()

        async def sweep():
            started.set()
            await asyncio.sleep(0.05)
            return SweepResult(breached=1, escalated=1)

        scheduler = SLASweepScheduler(sweep, interval=3600)
        await scheduler.start()
        await asyncio.wait_for(started.wait(), timeout=1)

        await scheduler.stop()

        assert scheduler.last_result == SweepResult(breached=1, escalated=1)
