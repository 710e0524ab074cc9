# app/infra/sla_scheduler.py
"""
Periodic SLA sweep as an in-process asyncio task.

Runs ``SLAMonitor.check_and_escalate`` every ``interval`` seconds. A tick
that fires while the previous sweep is still running is skipped; the next
sweep picks up whatever it missed.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from app.core.dispatch.domain import SweepResult
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics, inc_counter

logger = get_logger(__name__)


class SLASweepScheduler:
    """
    Usage:
        scheduler = SLASweepScheduler(engine.check_slas, interval=60)
        await scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(self, sweep: Callable[[], Awaitable[SweepResult]], *, interval: float = 60.0):
        self._sweep = sweep
        self._interval = interval
        self._task: asyncio.Task | None = None
        self._current: asyncio.Task | None = None
        self._running = False
        self.last_result: SweepResult | None = None
        self.sweeps_run = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="sla_sweep_scheduler")
        self._task.add_done_callback(self._on_task_done)
        logger.info(f"SLA sweep scheduler started: interval={self._interval}s")

    async def stop(self) -> None:
        """Stop ticking and wait for an in-flight sweep to finish."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._current and not self._current.done():
            try:
                await self._current
            except Exception as exc:
                logger.warning(f"In-flight SLA sweep failed during shutdown: {exc}")
        logger.info("SLA sweep scheduler stopped")

    def tick(self) -> bool:
        """Start a sweep unless one is in flight. Returns False when skipped."""
        if self._current is not None and not self._current.done():
            DispatchMetrics.sla_sweep_skipped()
            logger.warning("SLA sweep still running, skipping tick")
            return False
        self._current = asyncio.create_task(self._run_once(), name="sla_sweep")
        return True

    async def _run_once(self) -> None:
        try:
            self.last_result = await self._sweep()
            self.sweeps_run += 1
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(f"SLA sweep failed: {exc}", exc_info=True)
            inc_counter("sla_sweep_errors")

    async def _loop(self) -> None:
        while self._running:
            self.tick()
            await asyncio.sleep(self._interval)

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected scheduler death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"SLA sweep scheduler died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
