"""
Queue Consumer — watches pending queue entries and delivers each one once.

Runs as a single coordinating task inside the application process. Store
callbacks become typed events (FeedBatch | FeedError) on an asyncio.Queue;
the coordinator handles them in order and spawns one delivery task per newly
added entry.

Topology:
  ┌──────────────┐  live view    ┌─────────────┐  events   ┌─────────────┐
  │ Queue Store  │──(pending)───▶│ FeedSession │──────────▶│ Coordinator │
  └──────▲───────┘               └──────▲──────┘           └──┬──────┬───┘
         │                              │ restart             │      │ added
         │ status write                 │ after backoff       │      ▼
  ┌──────┴─────────┐                    └──── feed error ─────┘  ┌────────┐
  │ StatusReporter │◀──── sent / error ──────────────────────────│  Sink  │
  └────────────────┘                                             └────────┘

State machine:
  CONNECTED ──error──▶ BACKING_OFF(d) ──timer──▶ CONNECTED
                              ▲                     │ subscribe fails
                              └──── d*2 (capped) ◀──┘
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

import httpx
from google.api_core import exceptions as google_exceptions

from channels.base import DeliverySink
from database.store_base import QueueStore
from job_queue.ledger import DispatchLedger
from job_queue.reporter import StatusReporter
from job_queue.session import Backoff, FeedSession
from models.schemas import (
    ChangeType, ConsumerState, DocumentChange, FeedBatch, FeedError,
    QueueEntry, QueueStatus,
)

logger = structlog.get_logger()

PENDING_FILTER = {"status": QueueStatus.PENDING.value}

TRANSIENT_ERROR_TYPES = (
    ConnectionError,
    TimeoutError,
    httpx.TransportError,
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.Aborted,
    google_exceptions.InternalServerError,
)

TRANSIENT_ERROR_MARKERS = (
    "idle stream",
    "target timeout",
    "deadline exceeded",
    "deadline-exceeded",
    "unavailable",
)


def is_transient_feed_error(error: Any, kind: str = "") -> bool:
    """
    True for transport-level feed failures (idle-stream disconnects, target
    timeouts, unavailable backends). Used for log severity only; every feed
    error gets the same reconnect treatment.
    """
    if kind == "transport" or getattr(error, "kind", "") == "transport":
        return True
    if isinstance(error, TRANSIENT_ERROR_TYPES):
        return True
    text = str(error).lower()
    return any(marker in text for marker in TRANSIENT_ERROR_MARKERS)


class QueueConsumer:
    """
    Consumes the pending-entry live view and drives delivery.

    Usage:
        consumer = QueueConsumer(store, sink)
        await consumer.start()              # blocks, runs forever
        await consumer.start_background()   # returns immediately, runs as task
        await consumer.stop()
    """

    def __init__(
        self,
        store: QueueStore,
        sink: DeliverySink,
        reporter: Optional[StatusReporter] = None,
        ledger: Optional[DispatchLedger] = None,
        backoff_floor_s: float = 1.0,
        backoff_ceiling_s: float = 60.0,
        parse_mode: Optional[str] = None,
        filters: Optional[dict[str, Any]] = None,
    ):
        self.store = store
        self.sink = sink
        self.reporter = reporter or StatusReporter(store)
        self.ledger = ledger or DispatchLedger()
        self.parse_mode = parse_mode
        self._events: asyncio.Queue = asyncio.Queue()
        self.session = FeedSession(
            store, filters or PENDING_FILTER, self._push,
            Backoff(backoff_floor_s, backoff_ceiling_s),
        )
        self.state = ConsumerState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._deliveries: set[asyncio.Task] = set()
        self._running = False
        self.stats = {"batches": 0, "dispatched": 0, "sent": 0, "failed": 0,
                      "skipped": 0, "feed_errors": 0, "reconnects": 0}

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self):
        """Open the feed and consume events — blocks until stop() is called."""
        self._running = True
        self._events = asyncio.Queue()
        logger.info("queue_consumer_starting",
                    collection=self.store.collection,
                    filters=self.session.filters)
        self.restart()
        await self._run()

    async def start_background(self) -> asyncio.Task:
        """Start consuming in a background task. Returns the task handle."""
        self._task = asyncio.create_task(self.start(), name="queue_consumer")
        return self._task

    async def stop(self):
        """Release the feed and stop the coordinator. In-flight deliveries keep running."""
        self._running = False
        self._events.put_nowait(None)
        for task in (self._restart_task, self._task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._restart_task = None
        self._task = None
        self.session.close()
        self.state = ConsumerState.STOPPED
        logger.info("queue_consumer_stopped", in_flight=len(self._deliveries))

    async def drain(self):
        """Wait for every in-flight delivery to finish."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    # ── Session ───────────────────────────────────────────────

    def restart(self) -> bool:
        """
        Release any existing feed and open a fresh pending-entry subscription.
        A failure to subscribe is treated as a feed error and rescheduled.
        """
        try:
            self.session.restart()
        except Exception as e:
            logger.warning("feed_subscribe_failed", error=str(e))
            self.handle_feed_error(FeedError(generation=self.session.generation, error=e))
            return False
        self.state = ConsumerState.CONNECTED
        return True

    async def _restart_after(self, delay: float):
        await asyncio.sleep(delay)
        self._restart_task = None
        if not self._running:
            return
        self.stats["reconnects"] += 1
        logger.info("feed_reconnecting", generation=self.session.generation + 1)
        self.restart()

    # ── Event loop ────────────────────────────────────────────

    def _push(self, event):
        self._events.put_nowait(event)

    async def _run(self):
        while self._running:
            event = await self._events.get()
            if event is None:  # stop() wake-up
                break
            if not self.session.is_current(event):
                logger.debug("stale_feed_event_dropped",
                             generation=event.generation,
                             current=self.session.generation)
                continue
            if isinstance(event, FeedBatch):
                self.handle_snapshot(event.changes)
            else:
                self.handle_feed_error(event)

    def handle_snapshot(self, changes: list[DocumentChange]) -> list[asyncio.Task]:
        """
        Spawn a delivery for every ADDED change. MODIFIED / REMOVED changes,
        including echoes of our own status writes, are ignored. Any snapshot
        proves the feed is healthy and resets the backoff.
        """
        self.stats["batches"] += 1
        self.session.reset_backoff()
        if self.state != ConsumerState.STOPPED:
            self.state = ConsumerState.CONNECTED

        spawned = []
        for change in changes:
            if change.type != ChangeType.ADDED:
                continue
            entry = change.entry
            if not self.ledger.claim(entry.id):
                self.stats["skipped"] += 1
                logger.info("notification_already_dispatched", entry_id=entry.id)
                continue
            task = asyncio.create_task(self.deliver(entry), name=f"deliver:{entry.id}")
            self._deliveries.add(task)
            task.add_done_callback(self._on_delivery_done)
            spawned.append(task)

        self.stats["dispatched"] += len(spawned)
        return spawned

    def handle_feed_error(self, event: FeedError) -> Optional[float]:
        """
        Log the error by class and schedule a restart after the current
        backoff. Returns the scheduled delay, or None when a restart is
        already pending.
        """
        self.stats["feed_errors"] += 1
        transient = is_transient_feed_error(event.error, event.kind)
        if transient:
            logger.warning("feed_transient_error", error=event.detail,
                           generation=event.generation)
        else:
            logger.error("feed_error", error=event.detail,
                         error_type=type(event.error).__name__,
                         generation=event.generation)

        if self._restart_task is not None and not self._restart_task.done():
            return None
        if not self._running:
            return None

        delay = self.session.next_backoff()
        self.state = ConsumerState.BACKING_OFF
        self._restart_task = asyncio.create_task(self._restart_after(delay),
                                                 name="feed_restart")
        logger.info("feed_reconnect_scheduled", delay_s=delay, transient=transient)
        return delay

    # ── Delivery ──────────────────────────────────────────────

    async def deliver(self, entry: QueueEntry) -> QueueStatus:
        """
        One delivery attempt for one entry, then the status write.
        Sink failures mark the entry ERROR; nothing is retried. Malformed
        entries are marked ERROR without reaching the sink.
        """
        if entry.is_malformed:
            self.stats["failed"] += 1
            logger.error("notification_rejected", entry_id=entry.id,
                         error=entry.malformed_reason)
            await self.reporter.mark_failed(entry, entry.malformed_reason)
            return QueueStatus.ERROR

        logger.info("processing_notification", entry_id=entry.id, chat_id=entry.telegram_id)
        try:
            await self.sink.send_message(entry.telegram_id, entry.message, self.parse_mode)
        except Exception as e:
            reason = str(e) or type(e).__name__
            self.stats["failed"] += 1
            logger.error("notification_send_failed",
                         entry_id=entry.id,
                         chat_id=entry.telegram_id,
                         error=reason)
            await self.reporter.mark_failed(entry, reason)
            return QueueStatus.ERROR

        self.stats["sent"] += 1
        await self.reporter.mark_sent(entry)
        logger.info("notification_sent", entry_id=entry.id)
        return QueueStatus.SENT

    def _on_delivery_done(self, task: asyncio.Task):
        self._deliveries.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("delivery_task_crashed", task=task.get_name(), error=str(exc))

    # ── Health ────────────────────────────────────────────────

    def health(self) -> dict[str, Any]:
        handle = self.session.current_handle()
        return {
            "state": self.state.value,
            "generation": self.session.generation,
            "feed_active": bool(handle and handle.active),
            "next_backoff_s": self.session.backoff.current,
            "in_flight": len(self._deliveries),
            "ledger_size": len(self.ledger),
            "write_failures": self.reporter.write_failures,
            **self.stats,
        }
