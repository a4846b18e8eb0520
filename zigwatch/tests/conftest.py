"""Shared test fixtures for the zigwatch test suite."""

from __future__ import annotations

from typing import Any

import pytest

WATCHED = "zig1l9l6ztayaeservh407jgy5t0ek32rva5edsajn"


@pytest.fixture
def watched_wallet() -> str:
    return WATCHED


@pytest.fixture
def mapped_event_frame() -> dict[str, Any]:
    """Subscription event in the indexed-map shape (50 ZIG from A to B)."""
    return {
        "jsonrpc": "2.0",
        "id": 1,
        "result": {
            "query": "tm.event='Tx'",
            "events": {
                "transfer.sender": ["A"],
                "transfer.recipient": ["B"],
                "transfer.amount": ["50000000uzig"],
            },
            "tx.hash": ["H1"],
        },
    }
