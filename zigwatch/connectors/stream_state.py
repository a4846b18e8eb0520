"""Connection state machine for the CometBFT websocket stream.

Transitions are plain functions ``(state, event) -> (state, effects)``.
They never touch sockets or timers; the driver in ``stream_client`` turns
the returned effects into I/O. Only logging happens here.

    Idle → Connecting → Open → Closed ─(delay)→ Connecting
                                  └─ intentional close: stays Closed
"""

from __future__ import annotations

import json
import random
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from zigwatch.utils.logger import get_logger

logger = get_logger("stream_state")


class Phase(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


# ================================================================
# Effects
# ================================================================


@dataclass(frozen=True)
class OpenSocket:
    """Dial the stream URL."""


@dataclass(frozen=True)
class CloseSocket:
    """Close the current socket gracefully."""


@dataclass(frozen=True)
class TerminateSocket:
    """Drop the current socket without a close handshake."""


@dataclass(frozen=True)
class SendFrame:
    payload: dict[str, Any]


@dataclass(frozen=True)
class SendPing:
    pass


@dataclass(frozen=True)
class StartHeartbeat:
    interval_s: float


@dataclass(frozen=True)
class StopHeartbeat:
    pass


@dataclass(frozen=True)
class ScheduleReconnect:
    delay_s: float
    attempt: int


@dataclass(frozen=True)
class CancelReconnect:
    pass


Effect = (
    OpenSocket
    | CloseSocket
    | TerminateSocket
    | SendFrame
    | SendPing
    | StartHeartbeat
    | StopHeartbeat
    | ScheduleReconnect
    | CancelReconnect
)


# ================================================================
# State
# ================================================================


@dataclass(frozen=True)
class Timings:
    """Heartbeat and reconnect constants."""

    heartbeat_interval_s: float = 20.0
    pong_timeout_s: float = 60.0
    backoff_base_s: float = 1.0
    backoff_max_s: float = 30.0
    backoff_jitter_s: float = 0.25

    def __post_init__(self) -> None:
        if self.pong_timeout_s <= 2 * self.heartbeat_interval_s:
            raise ValueError("pong_timeout_s must exceed twice heartbeat_interval_s")
        if self.backoff_jitter_s <= 0:
            raise ValueError("backoff_jitter_s must be positive")


@dataclass(frozen=True)
class SubscriptionState:
    """Per-connection subscription progress."""

    queries: tuple[str, ...]
    cursor: int = 0
    last_request_id: int = 0
    confirmed: bool = False

    @property
    def active_query(self) -> str:
        return self.queries[self.cursor]

    @property
    def has_fallback(self) -> bool:
        return self.cursor < len(self.queries) - 1


@dataclass(frozen=True)
class StreamState:
    subscription: SubscriptionState
    phase: Phase = Phase.IDLE
    attempt: int = 0
    intentional_close: bool = False
    last_pong_at: float = 0.0
    # Request ids keep increasing across reconnects
    next_request_id: int = 1
    timings: Timings = field(default_factory=Timings)


def initial_state(queries: list[str] | tuple[str, ...], timings: Timings | None = None) -> StreamState:
    if not queries:
        raise ValueError("at least one subscription query is required")
    return StreamState(
        subscription=SubscriptionState(queries=tuple(queries)),
        timings=timings or Timings(),
    )


# ================================================================
# Helpers
# ================================================================


def backoff_delay(attempt: int, timings: Timings, rng: random.Random | None = None) -> float:
    """min(max, base * 2^attempt) plus jitter in (0, jitter]."""
    rng = rng or random.Random()
    floor = min(timings.backoff_max_s, timings.backoff_base_s * (2**attempt))
    # 1 - random() lies in (0, 1], so the delay always exceeds the floor
    return floor + timings.backoff_jitter_s * (1.0 - rng.random())


def subscribe_request(request_id: int, query: str) -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "subscribe",
        "params": {"query": query},
    }


def _send_subscription(state: StreamState) -> tuple[StreamState, SendFrame]:
    request_id = state.next_request_id
    sub = replace(state.subscription, last_request_id=request_id)
    frame = SendFrame(subscribe_request(request_id, sub.active_query))
    logger.info("subscription_sent", query=sub.active_query, request_id=request_id)
    return replace(state, subscription=sub, next_request_id=request_id + 1), frame


# ================================================================
# Transitions
# ================================================================


def on_connect(state: StreamState) -> tuple[StreamState, list[Effect]]:
    """connect(): idempotent (re)dial; clears any prior intentional close."""
    if state.phase in (Phase.CONNECTING, Phase.OPEN) and not state.intentional_close:
        return state, []
    new = replace(state, phase=Phase.CONNECTING, intentional_close=False)
    return new, [CancelReconnect(), OpenSocket()]


def on_open(state: StreamState, now: float) -> tuple[StreamState, list[Effect]]:
    """Socket established: reset backoff and subscription, subscribe, start heartbeat."""
    new = replace(
        state,
        phase=Phase.OPEN,
        attempt=0,
        last_pong_at=now,
        subscription=SubscriptionState(queries=state.subscription.queries),
    )
    new, frame = _send_subscription(new)
    return new, [frame, StartHeartbeat(state.timings.heartbeat_interval_s)]


def on_frame(state: StreamState, raw: str) -> tuple[StreamState, list[Effect]]:
    """Handle a subscription response; anything else is left alone."""
    try:
        parsed = json.loads(raw)
    except (TypeError, ValueError):
        return state, []
    if not isinstance(parsed, dict):
        return state, []

    msg_id = parsed.get("id")
    sub = state.subscription
    if isinstance(msg_id, bool) or not isinstance(msg_id, int) or msg_id != sub.last_request_id:
        return state, []

    if parsed.get("error") is not None and sub.has_fallback:
        failed = sub.active_query
        sub = replace(sub, cursor=sub.cursor + 1, confirmed=False)
        logger.warning("subscription_rejected", query=failed, next_query=sub.active_query)
        new, frame = _send_subscription(replace(state, subscription=sub))
        return new, [frame]

    if parsed.get("result") is not None and not sub.confirmed:
        logger.info("subscription_active", query=sub.active_query)
        return replace(state, subscription=replace(sub, confirmed=True)), []

    return state, []


def on_pong(state: StreamState, now: float) -> StreamState:
    return replace(state, last_pong_at=now)


def on_heartbeat(state: StreamState, now: float) -> list[Effect]:
    """Heartbeat tick: ping, or drop the socket when pongs went stale."""
    if state.phase is not Phase.OPEN:
        return []
    stale_for = now - state.last_pong_at
    if stale_for > state.timings.pong_timeout_s:
        logger.warning("heartbeat_timeout", stale_for_s=round(stale_for, 1))
        return [TerminateSocket()]
    return [SendPing()]


def on_close(
    state: StreamState, rng: random.Random | None = None
) -> tuple[StreamState, list[Effect]]:
    """Socket gone. Reconnect later unless the close was requested."""
    effects: list[Effect] = [StopHeartbeat()]
    if state.intentional_close:
        return replace(state, phase=Phase.CLOSED), effects

    delay = backoff_delay(state.attempt, state.timings, rng)
    attempt = state.attempt + 1
    effects.append(ScheduleReconnect(delay_s=delay, attempt=attempt))
    return replace(state, phase=Phase.CLOSED, attempt=attempt), effects


def on_close_requested(state: StreamState) -> tuple[StreamState, list[Effect]]:
    """close(): stop timers and shut the socket; suppress reconnection."""
    new = replace(state, intentional_close=True)
    return new, [CancelReconnect(), StopHeartbeat(), CloseSocket()]
