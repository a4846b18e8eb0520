"""Tests for log secret masking."""

from __future__ import annotations

import io
import json

from zigwatch.utils.logger import _mask_secrets, get_logger, setup_logging

TOKEN = "123456789:AAbbCCddEEffGGhhIIjjKKllMMnnOOppQQ"


class TestMaskSecrets:
    def test_secret_keys_are_masked(self) -> None:
        out = _mask_secrets(None, "info", {"event": "x", "telegram_bot_token": TOKEN})
        assert out["telegram_bot_token"] == "***REDACTED***"

    def test_bot_token_inside_values_is_masked(self) -> None:
        error = f"Cannot connect to https://api.telegram.org/bot{TOKEN}/sendMessage"
        out = _mask_secrets(None, "error", {"event": "telegram_error", "error": error})
        assert TOKEN not in out["error"]
        assert out["error"].endswith("/bot***REDACTED***/sendMessage")

    def test_plain_values_untouched(self) -> None:
        out = _mask_secrets(None, "info", {"event": "alert_sent", "tx_hash": "ABC123", "count": 3})
        assert out == {"event": "alert_sent", "tx_hash": "ABC123", "count": 3}


class TestSetupLogging:
    def test_json_lines_carry_service_and_hide_token(self) -> None:
        buf = io.StringIO()
        setup_logging(log_level="INFO", json_output=True, stream=buf)
        log = get_logger("test_logger")

        try:
            raise RuntimeError(f"POST https://api.telegram.org/bot{TOKEN}/sendMessage failed")
        except RuntimeError:
            log.exception("telegram_send_failed", chat_id="-1")

        record = json.loads(buf.getvalue().strip().splitlines()[-1])
        assert record["event"] == "telegram_send_failed"
        assert record["service"] == "zigwatch"
        assert record["module"] == "test_logger"
        assert record["level"] == "error"
        assert TOKEN not in buf.getvalue()
        assert "RuntimeError" in record["exception"]
