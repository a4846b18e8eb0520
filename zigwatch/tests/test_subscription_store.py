"""Tests for the file-backed chat subscription store."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from zigwatch.alerts.subscription_store import ChatSubscriptionStore
from zigwatch.errors import StoreError


class TestChatSubscriptionStore:
    def test_missing_file(self, tmp_path: Path) -> None:
        assert ChatSubscriptionStore(tmp_path).get_chat_id() is None

    def test_set_then_get(self, tmp_path: Path) -> None:
        store = ChatSubscriptionStore(tmp_path)
        store.set_chat_id("  -100123  ")

        assert store.get_chat_id() == "-100123"
        assert store.path == tmp_path / "data" / "chat-subscription.json"
        assert json.loads(store.path.read_text()) == {"chatId": "-100123"}

    def test_empty_id_rejected(self, tmp_path: Path) -> None:
        with pytest.raises(StoreError):
            ChatSubscriptionStore(tmp_path).set_chat_id("   ")

    def test_clear_is_idempotent(self, tmp_path: Path) -> None:
        store = ChatSubscriptionStore(tmp_path)
        store.set_chat_id("1")
        store.clear_chat_id()
        store.clear_chat_id()
        assert store.get_chat_id() is None

    @pytest.mark.parametrize("content", ["not json", '{"chatId": ""}', '{"chatId": 5}', "[]"])
    def test_unusable_content_reads_as_none(self, tmp_path: Path, content: str) -> None:
        store = ChatSubscriptionStore(tmp_path)
        store.path.parent.mkdir(parents=True)
        store.path.write_text(content)
        assert store.get_chat_id() is None
