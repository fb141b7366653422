"""
Best-effort notification delivery.

Ledger mutations commit first; notifications are enqueued afterwards and
delivered by a background worker. Delivery failures are logged and never
reach the code that enqueued them.
"""

from typing import Any, Dict, Optional, Protocol, Sequence, Tuple
import asyncio
import logging

from .clock import Clock, utc_now

logger = logging.getLogger(__name__)

NOTIFICATIONS_COLLECTION = "notifications"


class NotificationType:
    SETTLEMENT_COMPLETED = "settlement_completed"
    LEDGER_ENTRY_CREATED = "ledger_entry_created"
    REVENUE_RULE_MODIFIED = "revenue_rule_modified"
    SETTLEMENT_REMINDER = "settlement_reminder"
    REVENUE_PROCESSING_FAILED = "revenue_processing_failed"
    CRITICAL_AUDIT_EVENT = "critical_audit_event"
    SETTLEMENT_REPAIR_REQUIRED = "settlement_repair_required"


class Notifier(Protocol):
    async def notify(self, targets: Sequence[str], notification_type: str, metadata: Dict[str, Any]) -> None:
        ...


class StoreNotifier:
    """Writes one unread notification document per target"""

    def __init__(self, store, clock: Clock = utc_now):
        self.store = store
        self.clock = clock

    async def notify(self, targets: Sequence[str], notification_type: str, metadata: Dict[str, Any]) -> None:
        for target in targets:
            await self.store.create(NOTIFICATIONS_COLLECTION, {
                "target": target,
                "type": notification_type,
                "metadata": metadata,
                "read": False,
                "sent_at": self.clock(),
            })
        logger.info(f"[NOTIFY] {notification_type} -> {len(targets)} target(s)")


Job = Tuple[Tuple[str, ...], str, Dict[str, Any]]


class NotificationDispatcher:
    """
    Failure-isolated queue in front of a Notifier.

    `notify()` only enqueues, so callers never wait on delivery. Call
    `start()` to run the delivery worker and `stop()` to drain and shut it
    down. Without a running worker, `drain()` delivers inline.
    """

    def __init__(self, notifier: Notifier, max_queue_size: int = 1000):
        self.notifier = notifier
        self._queue: "asyncio.Queue[Job]" = asyncio.Queue(maxsize=max_queue_size)
        self._worker: Optional[asyncio.Task] = None
        self.delivered = 0
        self.failed = 0

    @property
    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def notify(self, targets: Sequence[str], notification_type: str, metadata: Dict[str, Any]) -> None:
        self.enqueue(targets, notification_type, metadata)

    def enqueue(self, targets: Sequence[str], notification_type: str, metadata: Dict[str, Any]) -> bool:
        targets = tuple(t for t in targets if t)
        if not targets:
            return False
        try:
            self._queue.put_nowait((targets, notification_type, dict(metadata)))
        except asyncio.QueueFull:
            logger.warning(f"[NOTIFY] Queue full, dropped {notification_type} for {list(targets)}")
            return False
        return True

    async def start(self):
        if self.is_running:
            return
        self._worker = asyncio.create_task(self._run())
        logger.info("[NOTIFY] Dispatcher started")

    async def stop(self):
        await self.drain()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        logger.info("[NOTIFY] Dispatcher stopped")

    async def drain(self):
        if self.is_running:
            await self._queue.join()
            return
        while not self._queue.empty():
            job = self._queue.get_nowait()
            await self._deliver(job)
            self._queue.task_done()

    async def _run(self):
        while True:
            job = await self._queue.get()
            try:
                await self._deliver(job)
            finally:
                self._queue.task_done()

    async def _deliver(self, job: Job):
        targets, notification_type, metadata = job
        try:
            await self.notifier.notify(list(targets), notification_type, metadata)
            self.delivered += 1
        except Exception as e:
            self.failed += 1
            logger.error(f"[NOTIFY] Delivery of {notification_type} failed: {str(e)}")
