"""Bounded FIFO ledger of processed tx hashes."""

from __future__ import annotations

from collections import deque


class DedupLedger:
    """Remembers the last ``capacity`` processed tx hashes.

    ``admit()`` only asks; ``mark_seen()`` records. Once full, the oldest
    recorded hash is evicted first, so a very old tx recurring after
    ``capacity`` newer ones is treated as new again.
    """

    def __init__(self, capacity: int = 10_000) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._capacity = capacity
        self._order: deque[str] = deque()
        self._seen: set[str] = set()

    @property
    def capacity(self) -> int:
        return self._capacity

    def admit(self, tx_hash: str) -> bool:
        """True if the hash has not been marked seen."""
        return tx_hash not in self._seen

    def mark_seen(self, tx_hash: str) -> None:
        """Record a hash, evicting the oldest entry when over capacity."""
        if tx_hash in self._seen:
            return
        self._seen.add(tx_hash)
        self._order.append(tx_hash)

        if len(self._order) > self._capacity:
            oldest = self._order.popleft()
            self._seen.discard(oldest)

    def __contains__(self, tx_hash: object) -> bool:
        return tx_hash in self._seen

    def __len__(self) -> int:
        return len(self._order)

    def snapshot(self) -> list[str]:
        """Recorded hashes, oldest first."""
        return list(self._order)
