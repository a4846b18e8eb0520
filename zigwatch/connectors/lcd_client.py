"""Cosmos LCD client for tx execution context (enrichment).

Looks up ``GET {lcd}/cosmos/tx/v1beta1/txs/{hash}`` and surfaces the first
``wasm`` event of the tx: contract address, action, and swap fields.

Interface contract:
  - lookup(tx_hash) → TxContext | None   (memoized for the process lifetime)
  - fetch_context(tx_hash) → ContextLookup (uncached, tri-state)

A response without any wasm event is a genuine absence and is memoized.
Exhausted retries are reported as FAILED and not memoized, so a later
frame for the same tx can try again.
"""

from __future__ import annotations

import asyncio
import ssl
from dataclasses import dataclass
from enum import Enum
from typing import Any

import aiohttp
import certifi

from zigwatch.errors import LcdError
from zigwatch.utils.logger import get_logger

logger = get_logger("lcd_client")

TX_PATH = "/cosmos/tx/v1beta1/txs/"
MAX_ATTEMPTS = 3
RETRY_DELAY_S = 1.2
TIMEOUT_S = 8.0


@dataclass(frozen=True)
class TxContext:
    """Smart-contract execution context of a tx. Every field is optional."""

    event_type: str | None = None
    contract_address: str | None = None
    action: str | None = None
    offer_asset: str | None = None
    ask_asset: str | None = None
    offer_amount: str | None = None
    return_amount: str | None = None


class LookupStatus(Enum):
    FOUND = "found"
    ABSENT = "absent"
    FAILED = "failed"


@dataclass(frozen=True)
class ContextLookup:
    """Outcome of one uncached context fetch."""

    status: LookupStatus
    context: TxContext | None = None


# ================================================================
# Response parsing
# ================================================================


def _as_dict(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _attr_str(value: Any) -> str:
    return "" if value is None else str(value).strip()


def context_from_events(events: Any) -> TxContext | None:
    """Build a TxContext from the first ``wasm`` event in an events array."""
    if not isinstance(events, list):
        return None

    for event in events:
        if not isinstance(event, dict) or _attr_str(event.get("type")).lower() != "wasm":
            continue

        values: dict[str, str] = {}
        attrs = event.get("attributes")
        for attr in attrs if isinstance(attrs, list) else []:
            if not isinstance(attr, dict):
                continue
            key = _attr_str(attr.get("key"))
            value = _attr_str(attr.get("value"))
            if key and value:
                values[key] = value

        return TxContext(
            event_type="wasm",
            contract_address=values.get("_contract_address"),
            action=values.get("action"),
            offer_asset=values.get("offer_asset"),
            ask_asset=values.get("ask_asset"),
            offer_amount=values.get("offer_amount"),
            return_amount=values.get("return_amount"),
        )

    return None


def parse_tx_context(payload: Any) -> TxContext | None:
    """Scan tx_response.logs[*].events, then tx_response.events."""
    root = _as_dict(payload)
    if root is None:
        return None
    tx_response = _as_dict(root.get("tx_response")) or {}

    logs = tx_response.get("logs")
    if isinstance(logs, list):
        for log in logs:
            log_dict = _as_dict(log)
            if log_dict is None:
                continue
            ctx = context_from_events(log_dict.get("events"))
            if ctx is not None:
                return ctx

    return context_from_events(tx_response.get("events"))


# ================================================================
# Client
# ================================================================


class LcdClient:
    """Async REST client for tx lookups with retry and a memo cache.

    Args:
        base_url: LCD root URL; trailing slashes are ignored.
        session: Optional shared aiohttp session (not closed by us).
        timeout_s: Total timeout per request.
        max_attempts: Attempts per lookup, including the first.
        retry_delay_s: Fixed delay between attempts.
    """

    def __init__(
        self,
        base_url: str,
        session: aiohttp.ClientSession | None = None,
        timeout_s: float = TIMEOUT_S,
        max_attempts: int = MAX_ATTEMPTS,
        retry_delay_s: float = RETRY_DELAY_S,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None
        self._timeout_s = timeout_s
        self._max_attempts = max(1, max_attempts)
        self._retry_delay_s = retry_delay_s
        self._cache: dict[str, TxContext | None] = {}

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session with certifi SSL context."""
        if self._session is None or self._session.closed:
            ssl_ctx = ssl.create_default_context(cafile=certifi.where())
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._timeout_s),
                headers={"Accept": "application/json"},
                connector=aiohttp.TCPConnector(ssl=ssl_ctx),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the HTTP session if we own it."""
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        logger.info("lcd_client_closed", cached=len(self._cache))

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    def tx_url(self, tx_hash: str) -> str:
        return f"{self._base_url}{TX_PATH}{tx_hash}"

    async def _request(self, url: str) -> Any:
        """GET with a fixed delay between attempts.

        Raises:
            LcdError: When every attempt failed.
        """
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=self._timeout_s)

        last_error: LcdError | None = None
        for attempt in range(1, self._max_attempts + 1):
            try:
                async with session.get(url, timeout=timeout) as resp:
                    if resp.status == 200:
                        return await resp.json(content_type=None)
                    last_error = LcdError(f"HTTP {resp.status}")
            except (aiohttp.ClientError, TimeoutError, ValueError) as e:
                last_error = LcdError(f"Network error: {e}")

            logger.debug("lcd_attempt_failed", url=url, attempt=attempt, error=str(last_error))
            if attempt < self._max_attempts:
                await asyncio.sleep(self._retry_delay_s)

        raise last_error or LcdError("Request failed after retries")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch_context(self, tx_hash: str) -> ContextLookup:
        """Fetch and parse tx context without touching the cache."""
        try:
            payload = await self._request(self.tx_url(tx_hash))
        except LcdError as e:
            logger.warning("lcd_fetch_failed", tx_hash=tx_hash, error=str(e))
            return ContextLookup(status=LookupStatus.FAILED)

        context = parse_tx_context(payload)
        if context is None:
            return ContextLookup(status=LookupStatus.ABSENT)
        return ContextLookup(status=LookupStatus.FOUND, context=context)

    async def lookup(self, tx_hash: str) -> TxContext | None:
        """Memoized context lookup. None means absent or unavailable."""
        if tx_hash in self._cache:
            return self._cache[tx_hash]

        result = await self.fetch_context(tx_hash)
        if result.status is not LookupStatus.FAILED:
            self._cache[tx_hash] = result.context
        return result.context

    def is_cached(self, tx_hash: str) -> bool:
        return tx_hash in self._cache
