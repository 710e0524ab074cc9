# app/infra/notification_queue.py
"""
In-process retry queue for failed e-mail/push deliveries.

The dispatcher hands a notification here after a failed send:
1. The entry waits ``base_retry_delay * 2**(attempts-1)`` seconds (capped)
2. A background loop re-sends whatever is due
3. After ``max_attempts`` failures, or one non-retryable failure, the entry
   is dropped and counted

The queue is best effort: it lives in process memory and does not
survive a restart. Persistence is the ``notifications`` table, not this.
"""
from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from dataclasses import dataclass, field

from app.config import settings
from app.core.dispatch.domain import Notification
from app.core.dispatch.notifications import send_notification
from app.core.dispatch.ports import NotificationFacility
from app.infra.logging_config import get_logger
from app.infra.metrics import DispatchMetrics, inc_counter

logger = get_logger(__name__)


@dataclass
class QueuedNotification:
    """Notification waiting to be re-sent"""
    notification: Notification
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    attempts: int = 1
    last_error: str = ""
    created_at: float = field(default_factory=time.time)
    next_retry_at: float = 0
    retryable: bool = True


class NotificationRetryQueue:
    """
    Retry queue with exponential backoff.

    Usage:
        queue = NotificationRetryQueue(facility)
        queue.enqueue(notification, "timeout")   # from the dispatcher
        await queue.start()                      # background loop
        ...
        await queue.stop()
    """

    def __init__(
        self,
        facility: NotificationFacility,
        *,
        max_attempts: int = 3,
        base_retry_delay: float = 5.0,
        max_retry_delay: float = 300.0,
        interval: float = 30.0,
    ):
        self._facility = facility
        self._queue: deque[QueuedNotification] = deque()
        self._max_attempts = max_attempts
        self._base_retry_delay = base_retry_delay
        self._max_retry_delay = max_retry_delay
        self._interval = interval
        self._processing = False
        self._task: asyncio.Task | None = None
        self._running = False

    def retry_delay(self, attempts: int) -> float:
        """Backoff before the next try, given how many sends already failed."""
        delay = self._base_retry_delay * (2 ** (max(attempts, 1) - 1))
        return min(delay, self._max_retry_delay)

    def enqueue(self, notification: Notification, error: str) -> None:
        """Queue a notification whose first send just failed."""
        if self._max_attempts <= 1:
            self._drop(QueuedNotification(notification, last_error=error))
            return

        entry = QueuedNotification(notification, last_error=error)
        entry.next_retry_at = time.time() + self.retry_delay(entry.attempts)
        self._queue.append(entry)
        inc_counter("notification_retry_queued", channel=notification.channel.value)
        logger.info(
            f"Notification queued for retry: id={entry.id[:8]}, "
            f"type={notification.type.value}, channel={notification.channel.value}, "
            f"queue_size={len(self._queue)}",
        )

    async def process(self) -> int:
        """Re-send every due entry once. Returns the number delivered."""
        if self._processing:
            return 0

        self._processing = True
        delivered = 0
        try:
            now = time.time()
            due = [entry for entry in self._queue if entry.next_retry_at <= now]
            for entry in due:
                self._queue.remove(entry)

            for entry in due:
                if await self._try_send(entry):
                    delivered += 1
                    continue

                entry.attempts += 1
                if not entry.retryable or entry.attempts >= self._max_attempts:
                    self._drop(entry)
                    continue

                delay = self.retry_delay(entry.attempts)
                entry.next_retry_at = time.time() + delay
                self._queue.append(entry)
                logger.info(
                    f"Notification scheduled for retry: id={entry.id[:8]}, "
                    f"attempt={entry.attempts}, delay={delay}s",
                )
        finally:
            self._processing = False

        return delivered

    async def _try_send(self, entry: QueuedNotification) -> bool:
        channel = entry.notification.channel.value
        try:
            await send_notification(self._facility, entry.notification)
        except Exception as exc:
            entry.last_error = f"{exc.__class__.__name__}: {exc}"[:300]
            entry.retryable = getattr(exc, "retryable", True)
            logger.warning(f"Retry failed: id={entry.id[:8]}, channel={channel}, error={entry.last_error}")
            DispatchMetrics.notification_failed(channel)
            return False

        DispatchMetrics.notification_sent(channel)
        logger.info(f"Notification delivered on retry: id={entry.id[:8]}, attempt={entry.attempts + 1}")
        return True

    def _drop(self, entry: QueuedNotification) -> None:
        DispatchMetrics.notification_dropped(entry.notification.channel.value)
        logger.error(
            f"Notification dropped after {entry.attempts} attempts: id={entry.id[:8]}, "
            f"type={entry.notification.type.value}, error={entry.last_error}",
            extra={"appraiser_id": entry.notification.user_id},
        )

    # ------------------------------------------------------------------
    # Admin helpers
    # ------------------------------------------------------------------

    @property
    def queue_size(self) -> int:
        return len(self._queue)

    def stats(self) -> dict:
        by_attempt: dict[int, int] = {}
        for entry in self._queue:
            by_attempt[entry.attempts] = by_attempt.get(entry.attempts, 0) + 1
        oldest = min((entry.created_at for entry in self._queue), default=None)
        return {
            "pending": len(self._queue),
            "pending_by_attempt": by_attempt,
            "oldest_in_queue_seconds": round(time.time() - oldest, 1) if oldest is not None else None,
        }

    def remove(self, entry_id: str) -> bool:
        for entry in self._queue:
            if entry.id == entry_id:
                self._queue.remove(entry)
                return True
        return False

    def clear(self) -> int:
        count = len(self._queue)
        self._queue.clear()
        return count

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="notification_retry_queue")
        logger.info(
            f"Notification retry queue started: interval={self._interval}s, "
            f"max_attempts={self._max_attempts}",
        )

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._queue:
            logger.warning(f"Notification retry queue stopped with {len(self._queue)} pending entries")
        else:
            logger.info("Notification retry queue stopped")

    async def _loop(self) -> None:
        while self._running:
            await asyncio.sleep(self._interval)
            try:
                await self.process()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Notification retry loop error: {exc}", exc_info=True)
                inc_counter("notification_retry_loop_errors")


# Global queue instance
_retry_queue: NotificationRetryQueue | None = None


def get_notification_retry_queue(facility: NotificationFacility) -> NotificationRetryQueue:
    """Get the global retry queue, created on first use with settings from config"""
    global _retry_queue
    if _retry_queue is None:
        _retry_queue = NotificationRetryQueue(
            facility,
            max_attempts=settings.notification_max_attempts,
            base_retry_delay=settings.notification_base_retry_delay,
            max_retry_delay=settings.notification_max_retry_delay,
            interval=settings.notification_queue_interval,
        )
    return _retry_queue
