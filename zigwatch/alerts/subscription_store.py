"""File-backed store for the active alert destination (Telegram chat id).

Persists ``{"chatId": "<id>"}`` at ``<base_dir>/data/chat-subscription.json``.
"""

from __future__ import annotations

import json
from pathlib import Path

from zigwatch.errors import StoreError
from zigwatch.utils.logger import get_logger

logger = get_logger("subscription_store")

STORE_RELATIVE_PATH = Path("data") / "chat-subscription.json"


class ChatSubscriptionStore:
    """get/set/clear of a single chat id, keyed by working directory."""

    def __init__(self, base_dir: Path | None = None) -> None:
        self._path = (base_dir or Path.cwd()) / STORE_RELATIVE_PATH

    @property
    def path(self) -> Path:
        return self._path

    def get_chat_id(self) -> str | None:
        """Stored chat id, or None if missing or unreadable."""
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("subscription_store_unreadable", path=str(self._path), error=str(e))
            return None

        chat_id = data.get("chatId") if isinstance(data, dict) else None
        if not isinstance(chat_id, str) or not chat_id.strip():
            return None
        return chat_id.strip()

    def set_chat_id(self, chat_id: str) -> None:
        normalized = chat_id.strip()
        if not normalized:
            raise StoreError("chat_id must not be empty")
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps({"chatId": normalized}, indent=2), encoding="utf-8")

    def clear_chat_id(self) -> None:
        self._path.unlink(missing_ok=True)
