"""Alert record and the notifier interface the monitor depends on."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Protocol


class Direction(str, Enum):
    SENT = "Sent"
    RECEIVED = "Received"


@dataclass(frozen=True)
class TransferAlert:
    """Fully populated large-transfer alert for one watched wallet."""

    wallet: str
    direction: Direction
    amount_display: str
    amount_base: str
    denom: str
    tx_hash: str
    sender: str
    recipient: str
    event_type: str = "wasm"
    contract_address: str | None = None
    action: str | None = None
    offer_asset: str | None = None
    ask_asset: str | None = None
    offer_amount: str | None = None
    return_amount: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["direction"] = self.direction.value
        return data


class Notifier(Protocol):
    async def send_large_transfer_alert(self, alert: TransferAlert) -> None: ...
