"""
Event deduplication.

Sources deliver at least once: a restart before the cursor is persisted,
or a client report followed by the chain event, can hand the same event
to the engine twice. The deduplicator remembers idempotency keys of
events that already produced a buyback so a redelivery is skipped.
"""
from __future__ import annotations

import time
from collections import OrderedDict
from typing import Callable, Optional


class EventDeduplicator:
    """
    Bounded, time-evicted set of idempotency keys.

    Keys older than ttl_seconds are forgotten, and when more than
    max_entries are held the oldest are dropped first. Events without
    a key (None) are never deduplicated.

    Usage:
        dedup = EventDeduplicator(ttl_seconds=86400, max_entries=10000)

        if not dedup.seen(event.event_id):
            ...  # execute
            dedup.mark(event.event_id)
    """

    def __init__(
        self,
        ttl_seconds: float = 24 * 60 * 60,
        max_entries: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        if max_entries <= 0:
            raise ValueError(f"max_entries must be positive, got {max_entries}")

        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._keys: OrderedDict[str, float] = OrderedDict()

    def seen(self, key: Optional[str]) -> bool:
        """Whether a key was marked and has not expired yet."""
        if key is None:
            return False
        self.evict()
        return key in self._keys

    def mark(self, key: Optional[str]) -> None:
        """Remember a key. Re-marking refreshes its age."""
        if key is None:
            return
        self._keys[key] = self._clock()
        self._keys.move_to_end(key)
        self.evict()

    def evict(self) -> int:
        """
        Drop expired keys and trim to max_entries.

        Returns:
            Number of keys dropped
        """
        dropped = 0
        cutoff = self._clock() - self._ttl

        # Insertion order is age order
        while self._keys:
            key, marked_at = next(iter(self._keys.items()))
            if marked_at > cutoff and len(self._keys) <= self._max_entries:
                break
            del self._keys[key]
            dropped += 1

        return dropped

    def __len__(self) -> int:
        return len(self._keys)
