"""Ingestion coordinator: raw frame → transfers → filtered alerts.

Per frame: parse JSON, run the extraction cascade, group transfers by tx
hash, drop hashes already processed, enrich each group once via the LCD,
then filter (watchlist → denom → threshold) and alert per matching side.
A hash is marked seen after its group is processed, alert or not.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import TYPE_CHECKING, Any, Protocol

from zigwatch.alerts.models import Direction, Notifier, TransferAlert
from zigwatch.core.dedup import DedupLedger
from zigwatch.core.normalizer import NormalizedTransfer, extract, normalize_transfer
from zigwatch.utils.amounts import format_display_amount
from zigwatch.utils.logger import get_logger

if TYPE_CHECKING:
    from zigwatch.config.settings import ZigwatchConfig
    from zigwatch.connectors.lcd_client import TxContext

logger = get_logger("monitor")

NON_EVENT_SAMPLE_EVERY = 50
PREVIEW_CHARS = 280


class ContextSource(Protocol):
    async def lookup(self, tx_hash: str) -> TxContext | None: ...


class TransferMonitor:
    """Turns stream frames into large-transfer alerts for watched wallets.

    Owns the dedup ledger for the process lifetime; the context cache lives
    in the injected ``context_source``.
    """

    def __init__(
        self,
        notifier: Notifier,
        context_source: ContextSource,
        watchlist: Iterable[str],
        min_amount_base: int,
        base_denom: str = "uzig",
        decimals_factor: int = 1_000_000,
        ledger: DedupLedger | None = None,
    ) -> None:
        self._notifier = notifier
        self._context_source = context_source
        self._watchlist = frozenset(watchlist)
        self._min_amount_base = min_amount_base
        self._base_denom = base_denom.strip().lower()
        self._decimals_factor = decimals_factor
        self._ledger = ledger if ledger is not None else DedupLedger()
        # Hashes whose group is mid-enrichment in another frame
        self._in_flight: set[str] = set()
        self._non_event_count = 0

    @classmethod
    def from_config(
        cls, config: ZigwatchConfig, notifier: Notifier, context_source: ContextSource
    ) -> TransferMonitor:
        return cls(
            notifier=notifier,
            context_source=context_source,
            watchlist=config.watchlist,
            min_amount_base=config.min_amount_base,
            base_denom=config.monitor.base_denom,
            decimals_factor=config.monitor.decimals_factor,
            ledger=DedupLedger(config.monitor.max_seen_tx_hashes),
        )

    @property
    def ledger(self) -> DedupLedger:
        return self._ledger

    # ------------------------------------------------------------------
    # Frame processing
    # ------------------------------------------------------------------

    async def handle_raw_message(self, raw: str) -> int:
        """Process one frame. Returns the number of alerts dispatched.

        Never raises: a bad frame is logged and dropped.
        """
        try:
            payload = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("non_json_frame_ignored", preview=str(raw)[:80])
            return 0

        try:
            return await self.handle_payload(payload)
        except Exception:
            logger.exception("frame_processing_failed")
            return 0

    async def handle_payload(self, payload: Any) -> int:
        candidates = extract(payload)
        if not candidates:
            self._log_non_event(payload)
            return 0

        groups: dict[str, list[NormalizedTransfer]] = {}
        for candidate in candidates:
            transfer = normalize_transfer(candidate)
            if transfer is None:
                continue
            if not self._ledger.admit(transfer.txhash) or transfer.txhash in self._in_flight:
                continue
            groups.setdefault(transfer.txhash, []).append(transfer)

        sent = 0
        for tx_hash, transfers in groups.items():
            if tx_hash in self._in_flight or not self._ledger.admit(tx_hash):
                continue
            self._in_flight.add(tx_hash)
            try:
                sent += await self._process_group(tx_hash, transfers)
            except Exception:
                # Left unmarked so a retransmission can retry it
                logger.exception("group_processing_failed", tx_hash=tx_hash)
                continue
            finally:
                self._in_flight.discard(tx_hash)
            self._ledger.mark_seen(tx_hash)
        return sent

    async def _process_group(self, tx_hash: str, transfers: list[NormalizedTransfer]) -> int:
        context = await self._context_source.lookup(tx_hash)

        sent = 0
        for transfer in transfers:
            sender_match = transfer.sender in self._watchlist
            recipient_match = transfer.recipient in self._watchlist
            if not sender_match and not recipient_match:
                continue
            if transfer.denom != self._base_denom:
                continue
            if transfer.amount_base < self._min_amount_base:
                continue

            amount_display = format_display_amount(transfer.amount_base, self._decimals_factor)
            if sender_match:
                sent += await self._send_alert(
                    transfer, transfer.sender, Direction.SENT, amount_display, context
                )
            if recipient_match:
                sent += await self._send_alert(
                    transfer, transfer.recipient, Direction.RECEIVED, amount_display, context
                )

            logger.info(
                "large_transfer_detected",
                tx_hash=transfer.txhash,
                sender=transfer.sender,
                recipient=transfer.recipient,
                amount_base=str(transfer.amount_base),
            )
        return sent

    async def _send_alert(
        self,
        transfer: NormalizedTransfer,
        wallet: str,
        direction: Direction,
        amount_display: str,
        context: TxContext | None,
    ) -> int:
        alert = build_alert(transfer, wallet, direction, amount_display, context)
        try:
            await self._notifier.send_large_transfer_alert(alert)
        except Exception as e:
            logger.error(
                "alert_send_failed",
                tx_hash=transfer.txhash,
                direction=direction.value,
                error=str(e),
            )
            return 0
        logger.info("alert_sent", tx_hash=transfer.txhash, direction=direction.value.lower())
        return 1

    # ------------------------------------------------------------------
    # Non-event frames
    # ------------------------------------------------------------------

    def _log_non_event(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            return

        rpc_error = payload.get("error")
        if isinstance(rpc_error, dict):
            logger.error("subscription_rpc_error", error=json.dumps(rpc_error))
            return

        result = payload.get("result")
        if isinstance(result, dict) and isinstance(result.get("query"), str):
            logger.info("subscription_ack_received", query=result["query"])
            return

        self._non_event_count += 1
        if self._non_event_count % NON_EVENT_SAMPLE_EVERY == 0:
            preview = json.dumps(payload)
            if len(preview) > PREVIEW_CHARS:
                preview = f"{preview[:PREVIEW_CHARS]}..."
            logger.info("non_event_payload", count=self._non_event_count, preview=preview)


def build_alert(
    transfer: NormalizedTransfer,
    wallet: str,
    direction: Direction,
    amount_display: str,
    context: TxContext | None,
) -> TransferAlert:
    """Alert record with context fields defaulted when enrichment is missing."""
    return TransferAlert(
        wallet=wallet,
        direction=direction,
        amount_display=amount_display,
        amount_base=str(transfer.amount_base),
        denom=transfer.denom,
        tx_hash=transfer.txhash,
        sender=transfer.sender,
        recipient=transfer.recipient,
        event_type=(context.event_type if context else None) or "wasm",
        contract_address=(context.contract_address if context else None) or transfer.recipient,
        action=context.action if context else None,
        offer_asset=context.offer_asset if context else None,
        ask_asset=context.ask_asset if context else None,
        offer_amount=context.offer_amount if context else None,
        return_amount=context.return_amount if context else None,
    )
