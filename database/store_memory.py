"""
In-memory queue store — for development and testing.

Emulates a live query: callbacks are dispatched on the event loop (never
inline with the write that caused them), a new subscription first reports
every matching document as ADDED, and a document entering / changing within /
leaving the filter is reported as ADDED / MODIFIED / REMOVED.

Fault injection hooks let tests break the feed or the writes on demand.
"""
from __future__ import annotations

import asyncio
import copy
import uuid
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from database.store_base import (
    BatchCallback, ErrorCallback, FeedHandle, QueueStore,
    StoreConflictError, StoreError,
)
from models.schemas import SERVER_TIMESTAMP, ChangeType, DocumentChange, QueueEntry

logger = structlog.get_logger()


class _MemorySubscription(FeedHandle):

    def __init__(self, store: InMemoryQueueStore, filters: dict[str, Any],
                 on_batch: BatchCallback, on_error: ErrorCallback):
        self._store = store
        self.filters = dict(filters)
        self.on_batch = on_batch
        self.on_error = on_error
        self.view: set[str] = set()
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if self._active:
            self._active = False
            self._store._subscriptions.discard(self)

    def matches(self, data: dict[str, Any]) -> bool:
        return all(data.get(k) == v for k, v in self.filters.items())


class InMemoryQueueStore(QueueStore):
    """Dict-backed queue store with live-view semantics."""

    def __init__(self, collection: str = "notification_queue"):
        self.collection = collection
        self._docs: dict[str, dict[str, Any]] = {}
        self._revisions: dict[str, int] = {}
        self._revision = 0
        self._subscriptions: set[_MemorySubscription] = set()
        self.subscribe_count = 0
        self.update_count = 0
        self._subscribe_failures: list[Exception] = []
        self._update_failure: Optional[Exception] = None
        self._update_failures_left: Optional[int] = None

    # ── Fault injection ───────────────────────────────────────

    def fail_feeds(self, error: Exception) -> int:
        """Kill every active subscription with error. Returns how many were killed."""
        killed = list(self._subscriptions)
        for sub in killed:
            sub.cancel()
            self._schedule(sub.on_error, error)
        return len(killed)

    def fail_next_subscribes(self, count: int, error: Exception) -> None:
        """The next `count` subscriptions error out instead of delivering a snapshot."""
        self._subscribe_failures.extend([error] * count)

    def fail_updates(self, error: Exception, count: Optional[int] = None) -> None:
        """Make update_fields raise error, for `count` calls or until cleared."""
        self._update_failure = error
        self._update_failures_left = count

    def clear_faults(self) -> None:
        self._subscribe_failures.clear()
        self._update_failure = None
        self._update_failures_left = None

    @property
    def active_subscriptions(self) -> int:
        return len(self._subscriptions)

    # ── Live view ─────────────────────────────────────────────

    def subscribe(self, filters: dict[str, Any], on_batch: BatchCallback,
                  on_error: ErrorCallback) -> FeedHandle:
        sub = _MemorySubscription(self, filters, on_batch, on_error)
        self.subscribe_count += 1

        if self._subscribe_failures:
            error = self._subscribe_failures.pop(0)
            sub._active = False
            self._schedule(on_error, error)
            return sub

        self._subscriptions.add(sub)
        changes = []
        for doc_id, data in self._docs.items():
            if sub.matches(data):
                sub.view.add(doc_id)
                changes.append(self._change(ChangeType.ADDED, doc_id, data))
        self._deliver(sub, changes)
        return sub

    def _schedule(self, callback, *args) -> None:
        asyncio.get_running_loop().call_soon(callback, *args)

    def _deliver(self, sub: _MemorySubscription, changes: list[DocumentChange]) -> None:
        def fire():
            if sub.active:
                sub.on_batch(changes)
        self._schedule(fire)

    def _change(self, change_type: ChangeType, doc_id: str,
                data: dict[str, Any]) -> DocumentChange:
        entry = QueueEntry.parse_document(doc_id, copy.deepcopy(data),
                                          update_time=self._revisions.get(doc_id))
        if entry.is_malformed:
            logger.warning("queue_entry_malformed", entry_id=doc_id,
                           error=entry.malformed_reason)
        return DocumentChange(type=change_type, entry=entry)

    def _notify(self, doc_id: str) -> None:
        data = self._docs[doc_id]
        for sub in list(self._subscriptions):
            in_view = doc_id in sub.view
            matches = sub.matches(data)
            if matches and not in_view:
                change_type = ChangeType.ADDED
                sub.view.add(doc_id)
            elif matches:
                change_type = ChangeType.MODIFIED
            elif in_view:
                change_type = ChangeType.REMOVED
                sub.view.discard(doc_id)
            else:
                continue
            self._deliver(sub, [self._change(change_type, doc_id, data)])

    # ── Reads / writes ────────────────────────────────────────

    def _bump(self, doc_id: str) -> None:
        self._revision += 1
        self._revisions[doc_id] = self._revision

    async def add(self, data: dict[str, Any]) -> str:
        doc_id = uuid.uuid4().hex[:20]
        doc = {k: self._resolve(v) for k, v in data.items()}
        doc.setdefault("created_at", datetime.now(timezone.utc))
        self._docs[doc_id] = doc
        self._bump(doc_id)
        self._notify(doc_id)
        return doc_id

    async def get(self, entry_id: str) -> Optional[QueueEntry]:
        data = self._docs.get(entry_id)
        if data is None:
            return None
        return QueueEntry.parse_document(entry_id, copy.deepcopy(data),
                                         update_time=self._revisions.get(entry_id))

    async def update_fields(self, entry_id: str, fields: dict[str, Any],
                            precondition: Optional[Any] = None) -> None:
        if self._update_failure is not None:
            error = self._update_failure
            if self._update_failures_left is not None:
                self._update_failures_left -= 1
                if self._update_failures_left <= 0:
                    self._update_failure = None
                    self._update_failures_left = None
            raise error

        if entry_id not in self._docs:
            raise StoreError(f"No document to update: {entry_id}", entry_id)
        if precondition is not None and self._revisions.get(entry_id) != precondition:
            raise StoreConflictError(f"Document changed since it was read: {entry_id}", entry_id)

        self._docs[entry_id].update({k: self._resolve(v) for k, v in fields.items()})
        self.update_count += 1
        self._bump(entry_id)
        self._notify(entry_id)

    @staticmethod
    def _resolve(value: Any) -> Any:
        if value is SERVER_TIMESTAMP:
            return datetime.now(timezone.utc)
        return value
