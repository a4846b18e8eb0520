"""Service entry point: wires stream → monitor → Telegram.

Entry point: python -m zigwatch [--log-level INFO]

Lifecycle: ``__init__`` -> ``start()`` -> runs until SIGINT/SIGTERM, then
closes the stream intentionally, stops the command loop and closes
HTTP sessions. In-flight frame processing is allowed to finish.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import signal
import sys
from typing import Any

from zigwatch.alerts.subscription_store import ChatSubscriptionStore
from zigwatch.alerts.telegram_bot import TelegramNotifier
from zigwatch.config.settings import ZigwatchConfig, get_config
from zigwatch.connectors.lcd_client import LcdClient
from zigwatch.connectors.stream_client import StreamClient
from zigwatch.connectors.stream_state import Timings
from zigwatch.core.monitor import TransferMonitor
from zigwatch.errors import ConfigError
from zigwatch.utils.logger import get_logger, setup_logging

logger = get_logger("app")


class MonitorService:
    """Owns all components for one process lifetime."""

    def __init__(self, config: ZigwatchConfig) -> None:
        self._config = config
        self._shutdown_event = asyncio.Event()
        self._frame_tasks: set[asyncio.Task[Any]] = set()
        self._command_task: asyncio.Task[None] | None = None

        stream_cfg = config.stream
        self._notifier = TelegramNotifier(
            token=config.telegram_bot_token,
            chat_id=config.telegram_chat_id,
            store=ChatSubscriptionStore(),
            display_symbol=config.monitor.display_symbol,
            explorer_tx_url=config.monitor.explorer_tx_url,
        )
        self._lcd = LcdClient(
            base_url=config.lcd_url,
            timeout_s=config.lcd.timeout_s,
            max_attempts=config.lcd.max_attempts,
            retry_delay_s=config.lcd.retry_delay_s,
        )
        self._monitor = TransferMonitor.from_config(config, self._notifier, self._lcd)
        self._stream = StreamClient(
            url=config.ws_url,
            on_message=self._on_message,
            queries=stream_cfg.subscription_queries,
            timings=Timings(
                heartbeat_interval_s=stream_cfg.heartbeat_interval_s,
                pong_timeout_s=stream_cfg.pong_timeout_s,
                backoff_base_s=stream_cfg.backoff_base_s,
                backoff_max_s=stream_cfg.backoff_max_s,
                backoff_jitter_s=stream_cfg.backoff_jitter_s,
            ),
            on_open=lambda: logger.info("stream_active"),
            on_close=lambda code, reason: logger.info("waiting_for_reconnect", code=code),
            on_error=lambda err: logger.error("stream_error_reported", error=str(err)),
        )

    async def start(self) -> None:
        self._install_signal_handlers()
        self._notifier.load_stored_chat_id()

        self._stream.connect()
        self._command_task = asyncio.create_task(
            self._notifier.run_command_loop(self._shutdown_event)
        )
        logger.info(
            "monitor_started",
            ws_url=self._config.ws_url,
            wallets=len(self._config.watchlist),
            min_amount_zig=self._config.min_amount_zig,
        )

        await self._shutdown_event.wait()
        await self.stop()

    async def stop(self) -> None:
        logger.info("monitor_stopping")
        await self._stream.close()

        if self._command_task is not None and not self._command_task.done():
            self._command_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._command_task

        if self._frame_tasks:
            await asyncio.gather(*self._frame_tasks, return_exceptions=True)

        for name, closable in (("lcd", self._lcd), ("telegram", self._notifier)):
            try:
                await closable.close()
            except Exception as e:
                logger.warning("close_component_error", component=name, error=str(e))
        logger.info("monitor_stopped")

    def _on_message(self, raw: str) -> None:
        task = asyncio.create_task(self._monitor.handle_raw_message(raw))
        self._frame_tasks.add(task)
        task.add_done_callback(self._frame_tasks.discard)

    def _install_signal_handlers(self) -> None:
        """Install SIGINT/SIGTERM handlers to trigger graceful shutdown."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._on_signal, sig)

    def _on_signal(self, sig: signal.Signals) -> None:
        logger.info("shutdown_signal_received", signal=sig.name)
        self._shutdown_event.set()


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="ZigChain large-transfer monitor")
    parser.add_argument("--log-level", default=None)
    args = parser.parse_args(argv)

    setup_logging(log_level=args.log_level or "INFO")
    try:
        config = get_config()
    except ConfigError as e:
        logger.critical("config_invalid", error=str(e))
        sys.exit(1)

    if args.log_level is None and config.log_level.upper() != "INFO":
        setup_logging(log_level=config.log_level)

    async def _run() -> None:
        service = MonitorService(config)
        await service.start()

    asyncio.run(_run())


if __name__ == "__main__":
    main()
