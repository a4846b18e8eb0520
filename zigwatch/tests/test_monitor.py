"""Tests for the ingestion coordinator (frame → alerts)."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest
from aioresponses import aioresponses

from zigwatch.alerts.models import Direction, TransferAlert
from zigwatch.config.settings import MonitorConfig, ZigwatchConfig
from zigwatch.connectors.lcd_client import LcdClient, TxContext
from zigwatch.core.dedup import DedupLedger
from zigwatch.core.monitor import TransferMonitor, build_alert
from zigwatch.core.normalizer import NormalizedTransfer


def _mapped_frame(sender: str, recipient: str, amount: str, tx_hash: str) -> str:
    return json.dumps(
        {
            "jsonrpc": "2.0",
            "id": 1,
            "result": {
                "events": {
                    "transfer.sender": [sender],
                    "transfer.recipient": [recipient],
                    "transfer.amount": [amount],
                },
                "tx.hash": [tx_hash],
            },
        }
    )


@pytest.fixture
def notifier() -> AsyncMock:
    mock = AsyncMock()
    mock.send_large_transfer_alert = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def context_source() -> AsyncMock:
    mock = AsyncMock()
    mock.lookup = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def monitor(notifier: AsyncMock, context_source: AsyncMock) -> TransferMonitor:
    return TransferMonitor(
        notifier=notifier,
        context_source=context_source,
        watchlist={"A"},
        min_amount_base=40_000_000,
    )


def _alerts(notifier: AsyncMock) -> list[TransferAlert]:
    return [call.args[0] for call in notifier.send_large_transfer_alert.await_args_list]


class TestScenarios:
    async def test_sent_alert(
        self,
        monitor: TransferMonitor,
        notifier: AsyncMock,
        mapped_event_frame: dict[str, Any],
    ) -> None:
        sent = await monitor.handle_raw_message(json.dumps(mapped_event_frame))

        assert sent == 1
        (alert,) = _alerts(notifier)
        assert alert.wallet == "A"
        assert alert.direction is Direction.SENT
        assert alert.amount_display == "50"
        assert alert.amount_base == "50000000"
        assert alert.tx_hash == "H1"
        assert alert.event_type == "wasm"
        assert alert.contract_address == "B"

    async def test_duplicate_delivery_is_ignored(
        self,
        monitor: TransferMonitor,
        notifier: AsyncMock,
        context_source: AsyncMock,
        mapped_event_frame: dict[str, Any],
    ) -> None:
        raw = json.dumps(mapped_event_frame)
        assert await monitor.handle_raw_message(raw) == 1
        assert await monitor.handle_raw_message(raw) == 0
        assert notifier.send_large_transfer_alert.await_count == 1
        assert context_source.lookup.await_count == 1

    async def test_self_transfer_alerts_both_sides(
        self, monitor: TransferMonitor, notifier: AsyncMock
    ) -> None:
        sent = await monitor.handle_raw_message(_mapped_frame("A", "A", "50000000uzig", "H2"))
        assert sent == 2
        assert [a.direction for a in _alerts(notifier)] == [Direction.SENT, Direction.RECEIVED]

    async def test_received_alert(self, monitor: TransferMonitor, notifier: AsyncMock) -> None:
        await monitor.handle_raw_message(_mapped_frame("X", "A", "40000000uzig", "H3"))
        (alert,) = _alerts(notifier)
        assert alert.direction is Direction.RECEIVED
        assert alert.wallet == "A"
        assert alert.amount_display == "40"


class TestFilters:
    @pytest.mark.parametrize(
        ("sender", "recipient", "amount"),
        [
            ("X", "Y", "50000000uzig"),  # not watched
            ("A", "B", "50000000uatom"),  # other denom
            ("A", "B", "39999999uzig"),  # below threshold
        ],
    )
    async def test_filtered_transfers_are_still_marked_seen(
        self,
        monitor: TransferMonitor,
        notifier: AsyncMock,
        context_source: AsyncMock,
        sender: str,
        recipient: str,
        amount: str,
    ) -> None:
        sent = await monitor.handle_raw_message(_mapped_frame(sender, recipient, amount, "HF"))
        assert sent == 0
        notifier.send_large_transfer_alert.assert_not_awaited()
        context_source.lookup.assert_awaited_once_with("HF")
        assert monitor.ledger.admit("HF") is False

    async def test_invalid_amount_dropped_without_lookup(
        self, monitor: TransferMonitor, context_source: AsyncMock
    ) -> None:
        raw = json.dumps(
            {"sender": "A", "recipient": "B", "amount": "0", "denom": "uzig", "txhash": "HZ"}
        )
        assert await monitor.handle_raw_message(raw) == 0
        context_source.lookup.assert_not_awaited()

    async def test_one_lookup_per_tx_group(
        self, monitor: TransferMonitor, notifier: AsyncMock, context_source: AsyncMock
    ) -> None:
        raw = json.dumps(
            {
                "result": {
                    "events": {
                        "transfer.sender": ["A", "A"],
                        "transfer.recipient": ["B", "C"],
                        "transfer.amount": ["50000000uzig", "60000000uzig"],
                        "tx.hash": ["HG"],
                    }
                }
            }
        )
        assert await monitor.handle_raw_message(raw) == 2
        context_source.lookup.assert_awaited_once_with("HG")


class TestResilience:
    async def test_non_json_frame(self, monitor: TransferMonitor, notifier: AsyncMock) -> None:
        assert await monitor.handle_raw_message("not json {") == 0
        notifier.send_large_transfer_alert.assert_not_awaited()

    async def test_non_event_frames(self, monitor: TransferMonitor) -> None:
        assert await monitor.handle_raw_message('{"jsonrpc": "2.0", "id": 1, "result": {}}') == 0
        assert await monitor.handle_raw_message('{"jsonrpc": "2.0", "id": 1, "error": {"code": 1}}') == 0
        for _ in range(60):
            await monitor.handle_raw_message('{"jsonrpc": "2.0", "id": 1, "result": {}}')

    async def test_notifier_failure_is_swallowed(
        self, monitor: TransferMonitor, notifier: AsyncMock, mapped_event_frame: dict[str, Any]
    ) -> None:
        notifier.send_large_transfer_alert.side_effect = RuntimeError("telegram down")
        assert await monitor.handle_raw_message(json.dumps(mapped_event_frame)) == 0
        assert monitor.ledger.admit("H1") is False

    async def test_unexpected_lookup_error_does_not_escape(
        self, monitor: TransferMonitor, context_source: AsyncMock, mapped_event_frame: dict[str, Any]
    ) -> None:
        context_source.lookup.side_effect = RuntimeError("boom")
        assert await monitor.handle_raw_message(json.dumps(mapped_event_frame)) == 0
        # Not marked: the group never finished processing
        assert monitor.ledger.admit("H1") is True


class TestEnrichment:
    async def test_context_fields_flow_into_alert(
        self,
        monitor: TransferMonitor,
        notifier: AsyncMock,
        context_source: AsyncMock,
        mapped_event_frame: dict[str, Any],
    ) -> None:
        context_source.lookup.return_value = TxContext(
            event_type="wasm",
            contract_address="zig1pool",
            action="swap",
            offer_asset="uzig",
            ask_asset="ibc/usdc",
            offer_amount="50000000",
            return_amount="99",
        )
        await monitor.handle_raw_message(json.dumps(mapped_event_frame))
        (alert,) = _alerts(notifier)
        assert alert.contract_address == "zig1pool"
        assert alert.action == "swap"
        assert alert.return_amount == "99"

    async def test_lcd_failure_still_alerts_with_defaults(
        self, notifier: AsyncMock, mapped_event_frame: dict[str, Any]
    ) -> None:
        lcd = LcdClient(base_url="https://lcd.example.org", retry_delay_s=0)
        monitor = TransferMonitor(
            notifier=notifier,
            context_source=lcd,
            watchlist={"A"},
            min_amount_base=40_000_000,
            ledger=DedupLedger(capacity=5),
        )
        with aioresponses() as m:
            m.get("https://lcd.example.org/cosmos/tx/v1beta1/txs/H1", status=500, repeat=True)
            sent = await monitor.handle_raw_message(json.dumps(mapped_event_frame))
        await lcd.close()

        assert sent == 1
        (alert,) = _alerts(notifier)
        assert alert.event_type == "wasm"
        assert alert.contract_address == "B"
        assert alert.action is None


class TestBuildAlert:
    def test_defaults_without_context(self) -> None:
        transfer = NormalizedTransfer("A", "B", 1_500_000, "uzig", "H")
        alert = build_alert(transfer, "A", Direction.SENT, "1.5", None)
        assert alert.to_dict()["direction"] == "Sent"
        assert alert.event_type == "wasm"
        assert alert.contract_address == "B"
        assert alert.offer_asset is None


class TestConcurrency:
    async def test_same_hash_during_enrichment_wait_alerts_once(
        self,
        monitor: TransferMonitor,
        notifier: AsyncMock,
        context_source: AsyncMock,
        mapped_event_frame: dict[str, Any],
    ) -> None:
        release = asyncio.Event()

        async def _slow_lookup(tx_hash: str) -> None:
            await release.wait()
            return None

        context_source.lookup.side_effect = _slow_lookup
        raw = json.dumps(mapped_event_frame)

        first = asyncio.create_task(monitor.handle_raw_message(raw))
        await asyncio.sleep(0)
        second = await monitor.handle_raw_message(raw)
        release.set()

        assert second == 0
        assert await first == 1
        assert notifier.send_large_transfer_alert.await_count == 1


class TestLedgerWiring:
    def test_from_config_uses_configured_capacity(
        self,
        notifier: AsyncMock,
        context_source: AsyncMock,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.chdir(tmp_path)
        config = ZigwatchConfig(
            telegram_bot_token="tok", monitor=MonitorConfig(max_seen_tx_hashes=5)
        )
        monitor = TransferMonitor.from_config(config, notifier, context_source)
        assert monitor.ledger.capacity == 5

    def test_injected_empty_ledger_is_kept(
        self, notifier: AsyncMock, context_source: AsyncMock
    ) -> None:
        ledger = DedupLedger(capacity=3)
        monitor = TransferMonitor(
            notifier=notifier,
            context_source=context_source,
            watchlist={"A"},
            min_amount_base=1,
            ledger=ledger,
        )
        assert monitor.ledger is ledger


class TestGroupIsolation:
    async def test_failing_group_does_not_drop_later_groups(
        self, monitor: TransferMonitor, notifier: AsyncMock, context_source: AsyncMock
    ) -> None:
        async def _lookup(tx_hash: str) -> None:
            if tx_hash == "H1":
                raise RuntimeError("lcd exploded")
            return None

        context_source.lookup.side_effect = _lookup
        transfer = {"sender": "A", "recipient": "B", "amount": "50000000", "denom": "uzig"}
        raw = json.dumps(
            {"txs": [{**transfer, "txhash": "H1"}, {**transfer, "txhash": "H2"}]}
        )

        assert await monitor.handle_raw_message(raw) == 1
        (alert,) = _alerts(notifier)
        assert alert.tx_hash == "H2"
        assert monitor.ledger.admit("H1") is True
        assert monitor.ledger.admit("H2") is False
