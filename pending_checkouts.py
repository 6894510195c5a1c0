# --- START OF FILE pending_checkouts.py ---

"""
Pending checkout tracker.
In-memory map of approved pre-checkout queries awaiting the successful_payment
update. Entries expire after a TTL and the map never grows past max_entries
(oldest entries are dropped first). Nothing here is persisted.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingCheckout:
    payer_id: int
    product_id: str
    observed_at_ms: int


def _now_ms() -> int:
    return int(time.time() * 1000)


class PendingCheckoutTracker:

    def __init__(self, ttl_seconds: int = 3600, max_entries: int = 10000, clock=_now_ms):
        if ttl_seconds <= 0 or max_entries <= 0:
            raise ValueError("ttl_seconds and max_entries must be positive")
        self.ttl_ms = ttl_seconds * 1000
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, PendingCheckout]" = OrderedDict()

    def register(self, query_id: str, payer_id: int, product_id: str) -> PendingCheckout:
        entry = PendingCheckout(payer_id=payer_id, product_id=product_id, observed_at_ms=self._clock())
        self._entries.pop(query_id, None)
        self._entries[query_id] = entry
        while len(self._entries) > self.max_entries:
            evicted_id, _ = self._entries.popitem(last=False)
            logger.warning(f"Pending checkout tracker full ({self.max_entries}); dropped oldest query {evicted_id}")
        return entry

    def get(self, query_id: str) -> Optional[PendingCheckout]:
        entry = self._entries.get(query_id)
        if entry and self._is_expired(entry, self._clock()):
            del self._entries[query_id]
            return None
        return entry

    def sweep(self) -> int:
        """Drops expired entries. Returns how many were removed."""
        now = self._clock()
        # insertion order == observation order, so stop at the first live entry
        removed = 0
        while self._entries:
            query_id, entry = next(iter(self._entries.items()))
            if not self._is_expired(entry, now):
                break
            del self._entries[query_id]
            removed += 1
        if removed:
            logger.debug(f"Swept {removed} expired pending checkouts, {len(self._entries)} remain")
        return removed

    def _is_expired(self, entry: PendingCheckout, now_ms: int) -> bool:
        return now_ms - entry.observed_at_ms >= self.ttl_ms

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, query_id) -> bool:
        return self.get(query_id) is not None

# --- END OF FILE pending_checkouts.py ---
