"""Telegram bot for large-transfer alerts and destination commands.

Talks to the Bot HTTP API directly with aiohttp. Alerts go to a single
active chat chosen at runtime with commands (long-polled via getUpdates):

- /start       : usage hint
- /subscribe   : send alerts to this chat (persisted)
- /unsubscribe : stop alerts until /subscribe is used again
- /chatid      : show the active chat id and this chat's id
"""

from __future__ import annotations

import asyncio
import re
import ssl
from typing import Any

import aiohttp
import certifi

from zigwatch.alerts.models import TransferAlert
from zigwatch.alerts.subscription_store import ChatSubscriptionStore
from zigwatch.errors import NotifierError, StoreError
from zigwatch.utils.logger import get_logger

logger = get_logger("telegram_bot")

API_BASE = "https://api.telegram.org"
EXPLORER_TX_URL = "https://www.zigscan.org/tx/"
POLL_TIMEOUT_S = 30
POLL_ERROR_DELAY_S = 5.0

_START_RE = re.compile(r"^/start(?:@\w+)?(?:\s|$)")
_SUBSCRIBE_RE = re.compile(r"^/subscribe(?:@\w+)?(?:\s|$)")
_UNSUBSCRIBE_RE = re.compile(r"^/unsubscribe(?:@\w+)?(?:\s|$)")
_CHATID_RE = re.compile(r"^/chatid(?:@\w+)?(?:\s|$)")


def format_alert_text(
    alert: TransferAlert,
    display_symbol: str = "ZIG",
    explorer_tx_url: str = EXPLORER_TX_URL,
) -> str:
    """Plain-text alert body."""
    return "\n".join(
        [
            "Large Transfer Detected",
            "",
            f"Wallet: {alert.wallet}",
            f"Direction: {alert.direction.value}",
            "",
            f"Sender: {alert.sender}",
            f"Recipient: {alert.recipient}",
            f"Contract (To): {alert.contract_address or alert.recipient}",
            "",
            f"Amount: {alert.amount_display} {display_symbol} ({alert.amount_base} {alert.denom})",
            f"Type: {alert.event_type or 'wasm'}",
            f"Action: {alert.action or 'n/a'}",
            "",
            f"Ask Asset (Denom): {alert.ask_asset or alert.denom}",
            f"Offer: {alert.offer_amount or 'n/a'} {alert.offer_asset or 'n/a'}",
            f"Return: {alert.return_amount or 'n/a'}",
            "",
            f"Tx: {explorer_tx_url}{alert.tx_hash}",
        ]
    )


class TelegramNotifier:
    """Async Telegram notifier with subscription commands.

    Args:
        token: Bot token from BotFather.
        chat_id: Initial destination; a stored subscription takes priority.
        store: Persistence for the active destination.
        session: Optional shared aiohttp session (not closed by us).
        display_symbol: Display unit shown next to amounts.
        explorer_tx_url: Prefix for tx links.
    """

    def __init__(
        self,
        token: str,
        chat_id: str | None = None,
        store: ChatSubscriptionStore | None = None,
        session: aiohttp.ClientSession | None = None,
        display_symbol: str = "ZIG",
        explorer_tx_url: str = EXPLORER_TX_URL,
        api_base: str = API_BASE,
        poll_timeout_s: int = POLL_TIMEOUT_S,
    ) -> None:
        self._token = token
        self._active_chat_id = chat_id
        self._store = store or ChatSubscriptionStore()
        self._session = session
        self._owns_session = session is None
        self._display_symbol = display_symbol
        self._explorer_tx_url = explorer_tx_url
        self._api_base = api_base.rstrip("/")
        self._poll_timeout_s = poll_timeout_s
        self._update_offset = 0

    @property
    def active_chat_id(self) -> str | None:
        return self._active_chat_id

    # ------------------------------------------------------------------
    # Session management
    # ------------------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            ssl_ctx = ssl.create_default_context(cafile=certifi.where())
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._poll_timeout_s + 15),
                connector=aiohttp.TCPConnector(ssl=ssl_ctx),
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        logger.info("telegram_bot_stopped")

    def load_stored_chat_id(self) -> None:
        """Prefer the stored destination; otherwise persist the configured one."""
        try:
            stored = self._store.get_chat_id()
            if stored:
                self._active_chat_id = stored
                logger.info("telegram_chat_loaded", chat_id=stored)
                return

            if self._active_chat_id:
                self._store.set_chat_id(self._active_chat_id)
                logger.info("telegram_chat_initialized", chat_id=self._active_chat_id)
        except (OSError, StoreError) as e:
            logger.error("telegram_chat_store_failed", error=str(e))

    # ------------------------------------------------------------------
    # Bot API
    # ------------------------------------------------------------------

    def _method_url(self, method: str) -> str:
        return f"{self._api_base}/bot{self._token}/{method}"

    async def _call(self, method: str, payload: dict[str, Any]) -> Any:
        """POST a Bot API method and return its ``result``.

        Raises:
            NotifierError: On transport errors, non-200 status or ok=false.
        """
        session = await self._get_session()
        try:
            async with session.post(self._method_url(method), json=payload) as resp:
                body = await resp.json(content_type=None)
                if resp.status != 200 or not isinstance(body, dict) or not body.get("ok"):
                    description = body.get("description") if isinstance(body, dict) else None
                    raise NotifierError(
                        f"Telegram {method} failed ({resp.status}): {description or 'no description'}"
                    )
                return body.get("result")
        except (aiohttp.ClientError, TimeoutError, ValueError) as e:
            raise NotifierError(f"Telegram {method} error: {e}") from e

    async def send_message(self, chat_id: str | int, text: str) -> None:
        await self._call(
            "sendMessage",
            {"chat_id": chat_id, "text": text, "disable_web_page_preview": True},
        )

    async def send_large_transfer_alert(self, alert: TransferAlert) -> None:
        """Deliver an alert to the active chat. No chat → warning, nothing sent."""
        chat_id = self._active_chat_id
        if not chat_id:
            logger.warning(
                "telegram_no_subscribed_chat",
                hint="Use /subscribe in your target group.",
            )
            return

        text = format_alert_text(alert, self._display_symbol, self._explorer_tx_url)
        await self.send_message(chat_id, text)

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def run_command_loop(self, stop_event: asyncio.Event) -> None:
        """Long-poll getUpdates until ``stop_event`` is set."""
        logger.info("telegram_command_loop_started")
        while not stop_event.is_set():
            try:
                updates = await self._call(
                    "getUpdates",
                    {"offset": self._update_offset, "timeout": self._poll_timeout_s},
                )
            except NotifierError as e:
                logger.error("telegram_polling_error", error=str(e))
                await asyncio.sleep(POLL_ERROR_DELAY_S)
                continue

            for update in updates or []:
                await self.handle_update(update)

    async def handle_update(self, update: dict[str, Any]) -> None:
        update_id = update.get("update_id")
        if isinstance(update_id, int):
            self._update_offset = max(self._update_offset, update_id + 1)

        message = update.get("message") or update.get("channel_post")
        if not isinstance(message, dict):
            return
        text = message.get("text")
        chat = message.get("chat")
        if not isinstance(text, str) or not isinstance(chat, dict) or "id" not in chat:
            return

        chat_id = str(chat["id"])
        if _START_RE.match(text):
            await self._handle_start(chat_id)
        elif _SUBSCRIBE_RE.match(text):
            await self._handle_subscribe(chat_id)
        elif _UNSUBSCRIBE_RE.match(text):
            await self._handle_unsubscribe(chat_id)
        elif _CHATID_RE.match(text):
            await self._handle_chat_id(chat_id)

    async def _handle_start(self, chat_id: str) -> None:
        try:
            await self.send_message(
                chat_id,
                "\n".join(
                    [
                        "ZigChain monitor is running.",
                        "Use /subscribe in this chat to receive transfer alerts here.",
                        "Use /chatid to view current subscription.",
                    ]
                ),
            )
        except NotifierError as e:
            logger.error("telegram_start_failed", error=str(e))

    async def _handle_subscribe(self, chat_id: str) -> None:
        try:
            self._store.set_chat_id(chat_id)
            self._active_chat_id = chat_id
            await self.send_message(chat_id, f"Subscribed. Alerts will be sent to chat ID {chat_id}.")
            logger.info("telegram_subscribed", chat_id=chat_id)
        except (NotifierError, StoreError, OSError) as e:
            logger.error("telegram_subscribe_failed", error=str(e))

    async def _handle_unsubscribe(self, chat_id: str) -> None:
        try:
            self._store.clear_chat_id()
            self._active_chat_id = None
            await self.send_message(
                chat_id, "Unsubscribed. Alerts are disabled until /subscribe is used."
            )
            logger.info("telegram_unsubscribed")
        except (NotifierError, OSError) as e:
            logger.error("telegram_unsubscribe_failed", error=str(e))

    async def _handle_chat_id(self, chat_id: str) -> None:
        try:
            current = self._active_chat_id or "none"
            await self.send_message(
                chat_id, f"Current alert chat ID: {current}\nThis chat ID: {chat_id}"
            )
        except NotifierError as e:
            logger.error("telegram_chatid_failed", error=str(e))
