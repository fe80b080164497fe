"""
Status Reporter — writes delivery outcomes back onto queue entries.

Writes are fire-and-forget relative to the feed: a failed write is logged and
reported as False, never retried and never raised. Delivery has already
happened (or conclusively failed) by the time the write runs, so the entry
may stay pending in the store when a write fails.

Writes only require the document to exist. An edit to some other field while
the send was in flight must not block the outcome, so the observed
update_time is used as a precondition only when conditional=True.
"""
from __future__ import annotations

import structlog
from typing import Any

from database.store_base import QueueStore
from models.schemas import SERVER_TIMESTAMP, QueueEntry, QueueStatus

logger = structlog.get_logger()


class StatusReporter:

    def __init__(self, store: QueueStore, conditional: bool = False):
        self.store = store
        self.conditional = conditional
        self.write_failures = 0

    async def mark_sent(self, entry: QueueEntry) -> bool:
        return await self._write(entry, {
            "status": QueueStatus.SENT.value,
            "sent_at": SERVER_TIMESTAMP,
        })

    async def mark_failed(self, entry: QueueEntry, reason: str) -> bool:
        return await self._write(entry, {
            "status": QueueStatus.ERROR.value,
            "error_message": reason,
        })

    async def _write(self, entry: QueueEntry, fields: dict[str, Any]) -> bool:
        precondition = entry.update_time if self.conditional else None
        try:
            await self.store.update_fields(entry.id, fields, precondition=precondition)
        except Exception as e:
            self.write_failures += 1
            logger.error("status_write_failed",
                         entry_id=entry.id,
                         status=fields["status"],
                         error=str(e))
            return False
        return True
