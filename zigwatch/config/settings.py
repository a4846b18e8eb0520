"""Configuration management using Pydantic Settings with YAML overlay.

Loading priority: .env → config/settings.yaml → config/settings.{MODE}.yaml
"""

from __future__ import annotations

import os
import re
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings

from zigwatch.errors import ConfigError
from zigwatch.utils.logger import get_logger

logger = get_logger("settings")

_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
_CONFIG_DIR = _PROJECT_ROOT / "config"

DEFAULT_WS_URL = "wss://zigchain-mainnet.zigscan.net/websocket"
DEFAULT_LCD_URL = "https://public-zigchain-lcd.numia.xyz"
# zigscan exposes the RPC socket on /websocket only
_BROKEN_WS_URL = "wss://zigchain-mainnet.zigscan.net/ws"

MONITORED_WALLETS = [
    "zig1l9l6ztayaeservh407jgy5t0ek32rva5edsajn",
    "zig1r3wdrz2ufjcf80fekd7eeu434c238aekkzemst",
    "zig1zm00h4n9vsfs6m5ld9ha2nwnqkt4gn8v3fe46q",
]

_DIGITS_RE = re.compile(r"^\d+$")


# --- Nested config models ---


class StreamConfig(BaseModel):
    """CometBFT websocket subscription and reconnect parameters."""

    subscription_queries: list[str] = ["tm.event='Tx'"]
    heartbeat_interval_s: float = 20.0
    pong_timeout_s: float = 60.0  # must exceed 2x heartbeat interval
    backoff_base_s: float = 1.0
    backoff_max_s: float = 30.0
    backoff_jitter_s: float = 0.25

    @model_validator(mode="after")
    def _check_timings(self) -> StreamConfig:
        if self.pong_timeout_s <= 2 * self.heartbeat_interval_s:
            raise ValueError("pong_timeout_s must exceed twice heartbeat_interval_s")
        if self.backoff_jitter_s <= 0:
            raise ValueError("backoff_jitter_s must be positive")
        return self


class LcdConfig(BaseModel):
    """Cosmos LCD lookup parameters for tx context enrichment."""

    timeout_s: float = 8.0
    max_attempts: int = 3
    retry_delay_s: float = 1.2


class MonitorConfig(BaseModel):
    """Transfer filtering parameters."""

    watchlist: list[str] = MONITORED_WALLETS
    base_denom: str = "uzig"
    display_symbol: str = "ZIG"
    decimals_factor: int = 1_000_000
    max_seen_tx_hashes: int = 10_000
    explorer_tx_url: str = "https://www.zigscan.org/tx/"


# --- Main config class ---


class ZigwatchConfig(BaseSettings):
    """Main configuration for the ZigChain transfer monitor."""

    # Runtime
    mode: str = Field(default="production", alias="MODE")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Endpoints
    ws_url: str = Field(default=DEFAULT_WS_URL, alias="WS_URL")
    lcd_url: str = Field(default=DEFAULT_LCD_URL, alias="LCD_URL")

    # Telegram
    telegram_bot_token: str = Field(default="", alias="TELEGRAM_BOT_TOKEN")
    telegram_chat_id: str | None = Field(default=None, alias="TELEGRAM_CHAT_ID")

    # Threshold in display units (whole ZIG)
    min_amount_zig: str = Field(default="50000", alias="MIN_AMOUNT_ZIG")

    # Nested config (loaded from YAML)
    stream: StreamConfig = StreamConfig()
    lcd: LcdConfig = LcdConfig()
    monitor: MonitorConfig = MonitorConfig()

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "populate_by_name": True,
    }

    @field_validator("ws_url", mode="before")
    @classmethod
    def _normalize_ws_url(cls, value: Any) -> str:
        raw = str(value or "").strip() or DEFAULT_WS_URL
        if raw == _BROKEN_WS_URL:
            logger.warning("ws_url_rewritten", given=raw, using=DEFAULT_WS_URL)
            return DEFAULT_WS_URL
        return raw

    @field_validator("lcd_url", mode="before")
    @classmethod
    def _normalize_lcd_url(cls, value: Any) -> str:
        return str(value or "").strip() or DEFAULT_LCD_URL

    @field_validator("telegram_bot_token", mode="before")
    @classmethod
    def _strip_token(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator("telegram_chat_id", mode="before")
    @classmethod
    def _optional_chat_id(cls, value: Any) -> str | None:
        text = str(value or "").strip()
        return text or None

    @field_validator("min_amount_zig", mode="before")
    @classmethod
    def _validate_min_amount(cls, value: Any) -> str:
        text = str(value if value is not None else "").strip()
        if not text:
            return "50000"
        if not _DIGITS_RE.match(text):
            raise ValueError("MIN_AMOUNT_ZIG must be an integer string, e.g. 1 or 50000")
        return text

    @property
    def min_amount_base(self) -> int:
        """Alert threshold scaled to base denomination units."""
        return int(self.min_amount_zig) * self.monitor.decimals_factor

    @property
    def watchlist(self) -> frozenset[str]:
        return frozenset(self.monitor.watchlist)


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Deep merge overlay into base dict. Overlay values win."""
    merged = base.copy()
    for key, value in overlay.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path) as f:
        data = yaml.safe_load(f)
    return data if isinstance(data, dict) else {}


def load_config(config_dir: Path = _CONFIG_DIR) -> ZigwatchConfig:
    """Build a validated config from YAML overlays and the environment.

    Raises:
        ConfigError: On malformed values or a missing bot token.
    """
    mode = os.getenv("MODE", "production")

    base_yaml = _load_yaml(config_dir / "settings.yaml")
    mode_yaml = _load_yaml(config_dir / f"settings.{mode}.yaml")
    merged = _deep_merge(base_yaml, mode_yaml)

    try:
        config = ZigwatchConfig(**merged)
    except ValidationError as e:
        raise ConfigError(str(e)) from e

    if not config.telegram_bot_token:
        raise ConfigError("Missing required environment variable: TELEGRAM_BOT_TOKEN")
    return config


@lru_cache(maxsize=1)
def get_config() -> ZigwatchConfig:
    """Load and return the singleton ZigwatchConfig."""
    return load_config()
