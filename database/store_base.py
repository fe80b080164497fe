"""
Abstract base class for queue store backends.

All backends (in-memory, Firestore) implement this interface.
The consumer depends only on this class, so swapping backends requires
no changes to the delivery logic.

Contract:
  subscribe(filters, on_batch, on_error) -> FeedHandle
      A live view over documents matching every `field == value` pair in
      filters. The first snapshot reports every matching document as ADDED;
      later snapshots report ADDED / MODIFIED / REMOVED relative to the view.
      After an error callback the subscription is dead and delivers nothing
      further.
  update_fields(entry_id, fields, precondition=None)
      Partial update of one document. SERVER_TIMESTAMP values are replaced
      by the store's clock. Raises StoreError when the document is missing
      or the precondition (last observed update_time) no longer holds.
"""
from __future__ import annotations

import abc
from typing import Any, Callable, Optional

from models.schemas import DocumentChange, QueueEntry

BatchCallback = Callable[[list[DocumentChange]], None]
ErrorCallback = Callable[[Exception], None]


class StoreError(Exception):
    """Base exception for store operations."""

    def __init__(self, message: str, entry_id: str = ""):
        self.entry_id = entry_id
        super().__init__(message)


class StoreConflictError(StoreError):
    """A conditional write found the document changed since it was observed."""
    pass


class FeedHandle(abc.ABC):
    """Cancel handle for one live-view subscription."""

    @abc.abstractmethod
    def cancel(self) -> None:
        """Stop delivery. Safe to call more than once."""
        ...

    @property
    @abc.abstractmethod
    def active(self) -> bool:
        ...


class QueueStore(abc.ABC):
    """Interface for all queue store backends."""

    collection: str = "notification_queue"

    @abc.abstractmethod
    def subscribe(
        self,
        filters: dict[str, Any],
        on_batch: BatchCallback,
        on_error: ErrorCallback,
    ) -> FeedHandle:
        ...

    @abc.abstractmethod
    async def update_fields(
        self,
        entry_id: str,
        fields: dict[str, Any],
        precondition: Optional[Any] = None,
    ) -> None:
        ...

    @abc.abstractmethod
    async def add(self, data: dict[str, Any]) -> str:
        """Create a document with a store-assigned id. Producer helper."""
        ...

    @abc.abstractmethod
    async def get(self, entry_id: str) -> Optional[QueueEntry]:
        ...

    async def close(self) -> None:
        pass
