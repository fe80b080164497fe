"""
Feed Session — the consumer's owned connection to the store's live view.

Holds the single active FeedHandle, a generation counter that tags every
event with the subscription that produced it, and the reconnect Backoff.
restart() always releases the previous handle before opening the next one,
so at most one subscription is ever live.
"""
from __future__ import annotations

import structlog
from typing import Any, Callable, Optional

from database.store_base import FeedHandle, QueueStore
from models.schemas import FeedBatch, FeedError, FeedEvent

logger = structlog.get_logger()


class Backoff:
    """
    Doubling reconnect delay between a floor and a ceiling.

    next() returns the delay to use now and doubles the one after it, so
    consecutive failures yield floor, 2*floor, 4*floor, ... capped at ceiling.
    """

    def __init__(self, floor_s: float = 1.0, ceiling_s: float = 60.0):
        if floor_s <= 0 or ceiling_s < floor_s:
            raise ValueError("backoff requires 0 < floor <= ceiling")
        self.floor_s = floor_s
        self.ceiling_s = ceiling_s
        self._current = floor_s

    @property
    def current(self) -> float:
        return self._current

    def next(self) -> float:
        delay = self._current
        self._current = min(self._current * 2, self.ceiling_s)
        return delay

    def reset(self) -> None:
        self._current = self.floor_s


class FeedSession:
    """
    Owns the live-view subscription lifecycle.

    Usage:
        session = FeedSession(store, {"status": "pending"}, events.put_nowait)
        session.restart()          # open (or reopen) the feed
        session.is_current(event)  # drop events from superseded feeds
        session.close()
    """

    def __init__(
        self,
        store: QueueStore,
        filters: dict[str, Any],
        on_event: Callable[[FeedEvent], None],
        backoff: Optional[Backoff] = None,
    ):
        self.store = store
        self.filters = dict(filters)
        self._on_event = on_event
        self.backoff = backoff or Backoff()
        self.generation = 0
        self._handle: Optional[FeedHandle] = None

    def current_handle(self) -> Optional[FeedHandle]:
        return self._handle

    def restart(self) -> FeedHandle:
        """Release the current feed, then subscribe again. Subscribe errors propagate."""
        self._release()
        self.generation += 1
        generation = self.generation

        def on_batch(changes):
            self._on_event(FeedBatch(generation=generation, changes=changes))

        def on_error(error):
            self._on_event(FeedError(generation=generation, error=error,
                                     kind=getattr(error, "kind", "")))

        self._handle = self.store.subscribe(self.filters, on_batch, on_error)
        logger.info("feed_subscribed", generation=generation, filters=self.filters)
        return self._handle

    def next_backoff(self) -> float:
        return self.backoff.next()

    def reset_backoff(self) -> None:
        self.backoff.reset()

    def is_current(self, event: FeedEvent) -> bool:
        return event.generation == self.generation

    def close(self) -> None:
        self._release()
        # bump so late events from the released feed read as stale
        self.generation += 1

    def _release(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            handle.cancel()
        except Exception as e:
            logger.warning("feed_release_failed", generation=self.generation, error=str(e))
