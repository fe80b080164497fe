"""
Dispatch Ledger — per-process record of queue entries already handed to the sink.

The live view reports an entry as ADDED again whenever a new subscription
starts, so an entry whose status write failed would otherwise be re-sent
after every reconnect. Entries are remembered for a TTL and the ledger is
capped in size; the oldest claims are evicted first.
"""
from __future__ import annotations

import time
from collections import OrderedDict


class DispatchLedger:
    """TTL- and size-bounded seen-set keyed by entry id."""

    def __init__(self, ttl_seconds: float = 86400.0, max_size: int = 10000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._seen: OrderedDict[str, float] = OrderedDict()

    def claim(self, entry_id: str) -> bool:
        """Record entry_id. Returns False if it was already claimed."""
        self._prune()
        if entry_id in self._seen:
            return False
        self._seen[entry_id] = time.monotonic()
        while len(self._seen) > self.max_size:
            self._seen.popitem(last=False)
        return True

    def __contains__(self, entry_id: str) -> bool:
        self._prune()
        return entry_id in self._seen

    def __len__(self) -> int:
        return len(self._seen)

    def _prune(self):
        cutoff = time.monotonic() - self.ttl
        while self._seen:
            entry_id, claimed_at = next(iter(self._seen.items()))
            if claimed_at >= cutoff:
                break
            del self._seen[entry_id]
