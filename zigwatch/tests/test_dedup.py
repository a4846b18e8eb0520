"""Tests for the bounded FIFO dedup ledger."""

from __future__ import annotations

import pytest

from zigwatch.core.dedup import DedupLedger


class TestDedupLedger:
    def test_admit_does_not_mark(self) -> None:
        ledger = DedupLedger(capacity=3)
        assert ledger.admit("H1") is True
        assert ledger.admit("H1") is True
        assert len(ledger) == 0

    def test_mark_seen_blocks_admission(self) -> None:
        ledger = DedupLedger(capacity=3)
        ledger.mark_seen("H1")
        assert ledger.admit("H1") is False
        assert "H1" in ledger

    @pytest.mark.parametrize(("capacity", "extra"), [(1, 1), (3, 1), (3, 4), (10, 25)])
    def test_keeps_only_most_recent(self, capacity: int, extra: int) -> None:
        ledger = DedupLedger(capacity=capacity)
        hashes = [f"H{i}" for i in range(capacity + extra)]
        for h in hashes:
            ledger.mark_seen(h)

        assert len(ledger) == capacity
        assert ledger.snapshot() == hashes[-capacity:]
        for old in hashes[:extra]:
            assert ledger.admit(old) is True
        for recent in hashes[-capacity:]:
            assert ledger.admit(recent) is False

    def test_remarking_does_not_duplicate(self) -> None:
        ledger = DedupLedger(capacity=2)
        ledger.mark_seen("H1")
        ledger.mark_seen("H1")
        ledger.mark_seen("H2")
        assert ledger.snapshot() == ["H1", "H2"]
        ledger.mark_seen("H3")
        assert ledger.snapshot() == ["H2", "H3"]
        assert "H1" not in ledger

    def test_default_capacity(self) -> None:
        assert DedupLedger().capacity == 10_000

    def test_invalid_capacity(self) -> None:
        with pytest.raises(ValueError):
            DedupLedger(capacity=0)
