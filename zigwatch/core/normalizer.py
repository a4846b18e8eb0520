"""Transfer extraction from CometBFT websocket payloads.

The node emits tx events in several shapes depending on version and
indexer. Extraction is a cascade of strategies, tried in order; the first
one that yields candidates wins and the rest are skipped:

1. direct scan    : any nested {sender, recipient, amount, denom, txhash}
2. mapped events  : result.events {"transfer.sender": [...], ...}
3. tagged events  : [{"type": "transfer", "attributes": [{key, value}]}]
4. message bodies : MsgExecuteContract funds / MsgSend coins

Each strategy is a pure function payload -> list[TransferCandidate] and
never raises on malformed input.
"""

from __future__ import annotations

import base64
import binascii
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from zigwatch.utils.amounts import parse_base_amount, parse_coins, split_coin
from zigwatch.utils.logger import get_logger

logger = get_logger("normalizer")

MSG_EXECUTE_CONTRACT = "/cosmwasm.wasm.v1.MsgExecuteContract"
MSG_SEND = "/cosmos.bank.v1beta1.MsgSend"

_PLAIN_RE = re.compile(r"^[a-z0-9/._:-]+$")
_BASE64_RE = re.compile(r"^[A-Za-z0-9+/=]+$")
_PRINTABLE_RE = re.compile(r"^[\x20-\x7e]+$")


@dataclass(frozen=True)
class TransferCandidate:
    """Unvalidated transfer as found in a payload."""

    sender: str
    recipient: str
    amount: str
    denom: str
    txhash: str


@dataclass(frozen=True)
class NormalizedTransfer:
    """Validated transfer with the amount in base denomination units."""

    sender: str
    recipient: str
    amount_base: int
    denom: str
    txhash: str


Strategy = Callable[[Any], list[TransferCandidate]]


# ================================================================
# Payload helpers
# ================================================================


def _as_dict(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _text(value: Any) -> str:
    """Coerce a JSON scalar to str; None and empty-ish values become ''."""
    if value is None or value is False or value == "":
        return ""
    return str(value)


def _first_str(value: Any) -> str | None:
    if not isinstance(value, list) or not value:
        return None
    first = value[0]
    return first if isinstance(first, str) else None


def _str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, str)]


def _pick(values: list[str], index: int) -> str:
    """Parallel-array lookup; missing or empty entries fall back to index 0."""
    if index < len(values) and values[index]:
        return values[index]
    return values[0] if values else ""


def _walk(value: Any) -> Iterator[Any]:
    """Depth-first pre-order traversal over dicts and lists."""
    stack = [value]
    while stack:
        node = stack.pop()
        yield node
        if isinstance(node, dict):
            stack.extend(reversed(list(node.values())))
        elif isinstance(node, list):
            stack.extend(reversed(node))


def _tx_result(payload: Any) -> dict[str, Any] | None:
    """result.data.value.TxResult.result"""
    node: Any = _as_dict(payload)
    for key in ("result", "data", "value", "TxResult", "result"):
        node = _as_dict(node.get(key)) if node is not None else None
    return node


def _hash_from_event_map(container: dict[str, Any] | None) -> str | None:
    if container is None:
        return None
    return _first_str(container.get("tx.hash")) or _first_str(container.get("tx.hashes"))


def extract_tx_hash(payload: Any) -> str | None:
    """Locate the single tx hash of a payload.

    Looks at the top-level ``txhash`` field, then the ``tx.hash`` index
    under ``result.events`` (or directly under ``result``), then
    ``result.data.value.TxResult.result.hash``.
    """
    root = _as_dict(payload)
    if root is None:
        return None

    direct = root.get("txhash")
    if isinstance(direct, str) and direct:
        return direct

    result = _as_dict(root.get("result"))
    if result is not None:
        found = _hash_from_event_map(_as_dict(result.get("events"))) or _hash_from_event_map(
            result
        )
        if found:
            return found

    tx_result = _tx_result(payload)
    if tx_result is not None and isinstance(tx_result.get("hash"), str):
        return tx_result["hash"]

    return None


def decode_maybe_base64(raw: str) -> str:
    """Decode an event attribute that may or may not be base64.

    Strings made only of lowercase letters, digits and ``/._:-`` are plain
    (bech32 addresses, denoms, numbers) and returned as-is. Otherwise a
    decode is attempted when the string uses the base64 alphabet and its
    length is a multiple of 4; the decoded text is kept only when it is
    printable ASCII.
    """
    text = raw.strip()
    if not text or _PLAIN_RE.match(text):
        return text

    if not _BASE64_RE.match(text) or len(text) % 4 != 0:
        return text

    try:
        decoded = base64.b64decode(text, validate=True).decode("utf-8", errors="replace").strip()
    except (binascii.Error, ValueError):
        return text

    if decoded and _PRINTABLE_RE.match(decoded):
        return decoded
    return text


# ================================================================
# Strategies
# ================================================================


def _is_amount(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    return isinstance(value, str | int | float)


def _amount_text(value: str | int | float) -> str:
    # JSON numbers like 5e7 arrive as floats; integral ones render as digits
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _is_send_event(obj: dict[str, Any]) -> bool:
    return (
        isinstance(obj.get("sender"), str)
        and isinstance(obj.get("recipient"), str)
        and _is_amount(obj.get("amount"))
        and isinstance(obj.get("denom"), str)
        and isinstance(obj.get("txhash"), str)
    )


def extract_direct(payload: Any) -> list[TransferCandidate]:
    """Collect every nested object already shaped like a transfer."""
    found: list[TransferCandidate] = []
    for node in _walk(payload):
        if isinstance(node, dict) and _is_send_event(node):
            found.append(
                TransferCandidate(
                    sender=node["sender"],
                    recipient=node["recipient"],
                    amount=_amount_text(node["amount"]),
                    denom=node["denom"],
                    txhash=node["txhash"],
                )
            )
    return found


def extract_mapped_events(payload: Any) -> list[TransferCandidate]:
    """Zip the ``transfer.*`` index arrays of a subscription event map."""
    root = _as_dict(payload)
    result = _as_dict(root.get("result")) if root else None
    events = _as_dict(result.get("events")) if result else None
    if events is None:
        return []

    senders = _str_list(events.get("transfer.sender"))
    recipients = _str_list(events.get("transfer.recipient"))
    amounts = _str_list(events.get("transfer.amount"))
    txhash = _hash_from_event_map(events) or _hash_from_event_map(result)

    if not txhash or not senders or not recipients or not amounts:
        return []

    transfers: list[TransferCandidate] = []
    for i in range(max(len(senders), len(recipients), len(amounts))):
        sender = _pick(senders, i).strip()
        recipient = _pick(recipients, i).strip()
        amount = _pick(amounts, i).strip()
        if not sender or not recipient or not amount:
            continue

        coin = split_coin(amount)
        if coin is None:
            continue
        transfers.append(
            TransferCandidate(
                sender=sender,
                recipient=recipient,
                amount=coin[0],
                denom=coin[1],
                txhash=txhash,
            )
        )
    return transfers


def _event_list(payload: Any) -> list[dict[str, Any]]:
    candidates: list[Any] = []
    tx_result = _tx_result(payload)
    if tx_result is not None:
        candidates.append(tx_result.get("events"))
    root = _as_dict(payload)
    result = _as_dict(root.get("result")) if root else None
    if result is not None:
        candidates.append(result.get("events"))

    events: list[dict[str, Any]] = []
    for candidate in candidates:
        if isinstance(candidate, list):
            events.extend(e for e in candidate if isinstance(e, dict))
    return events


def extract_tagged_events(payload: Any) -> list[TransferCandidate]:
    """Read ``transfer`` entries of an events array, decoding base64 attributes."""
    txhash = extract_tx_hash(payload)
    if not txhash:
        return []

    transfers: list[TransferCandidate] = []
    for event in _event_list(payload):
        if _text(event.get("type")).lower() != "transfer":
            continue

        attrs = event.get("attributes")
        senders: list[str] = []
        recipients: list[str] = []
        amounts: list[str] = []
        for attr in attrs if isinstance(attrs, list) else []:
            if not isinstance(attr, dict):
                continue
            key = decode_maybe_base64(_text(attr.get("key")))
            value = decode_maybe_base64(_text(attr.get("value")))
            if key == "sender":
                senders.append(value)
            elif key == "recipient":
                recipients.append(value)
            elif key == "amount":
                amounts.append(value)

        for i in range(max(len(senders), len(recipients), len(amounts))):
            sender = _pick(senders, i).strip()
            recipient = _pick(recipients, i).strip()
            amount = _pick(amounts, i).strip().lower()
            if not sender or not recipient or not amount:
                continue
            for coin_amount, denom in parse_coins(amount):
                transfers.append(
                    TransferCandidate(
                        sender=sender,
                        recipient=recipient,
                        amount=coin_amount,
                        denom=denom,
                        txhash=txhash,
                    )
                )
    return transfers


def _coins(sender: str, recipient: str, coins: list[Any], txhash: str) -> list[TransferCandidate]:
    out: list[TransferCandidate] = []
    for coin in coins:
        if not isinstance(coin, dict):
            continue
        denom = _text(coin.get("denom")).strip().lower()
        amount = _text(coin.get("amount")).strip()
        if not denom or not amount:
            continue
        out.append(
            TransferCandidate(
                sender=sender, recipient=recipient, amount=amount, denom=denom, txhash=txhash
            )
        )
    return out


def extract_message_bodies(payload: Any) -> list[TransferCandidate]:
    """Derive transfers from contract-execution funds and bank sends."""
    txhash = extract_tx_hash(payload)
    if not txhash:
        return []

    transfers: list[TransferCandidate] = []
    for node in _walk(payload):
        if not isinstance(node, dict):
            continue
        msg_type = _text(node.get("@type"))

        if (
            msg_type == MSG_EXECUTE_CONTRACT
            and isinstance(node.get("sender"), str)
            and isinstance(node.get("contract"), str)
            and isinstance(node.get("funds"), list)
        ):
            transfers.extend(_coins(node["sender"], node["contract"], node["funds"], txhash))

        if (
            msg_type == MSG_SEND
            and isinstance(node.get("from_address"), str)
            and isinstance(node.get("to_address"), str)
            and isinstance(node.get("amount"), list)
        ):
            transfers.extend(
                _coins(node["from_address"], node["to_address"], node["amount"], txhash)
            )
    return transfers


STRATEGIES: tuple[Strategy, ...] = (
    extract_direct,
    extract_mapped_events,
    extract_tagged_events,
    extract_message_bodies,
)


def extract(payload: Any, strategies: tuple[Strategy, ...] = STRATEGIES) -> list[TransferCandidate]:
    """Run the strategy cascade; the first non-empty result wins."""
    for strategy in strategies:
        try:
            found = strategy(payload)
        except Exception as e:
            logger.debug("strategy_failed", strategy=strategy.__name__, error=str(e))
            continue
        if found:
            return found
    return []


def normalize_transfer(candidate: TransferCandidate) -> NormalizedTransfer | None:
    """Validate a candidate. Returns None when any field is unusable."""
    sender = candidate.sender.strip()
    recipient = candidate.recipient.strip()
    denom = candidate.denom.strip().lower()
    txhash = candidate.txhash.strip()
    if not sender or not recipient or not denom or not txhash:
        return None

    amount_base = parse_base_amount(candidate.amount, denom)
    if amount_base is None or amount_base <= 0:
        return None

    return NormalizedTransfer(
        sender=sender,
        recipient=recipient,
        amount_base=amount_base,
        denom=denom,
        txhash=txhash,
    )
