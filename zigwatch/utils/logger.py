"""structlog setup for the monitor.

Production (any MODE but ``dev``) writes one JSON object per line to stdout,
``MODE=dev`` gets the colored console renderer. Every event carries the
service name and mode. Bot tokens are masked in keys, in values and in
rendered tracebacks (aiohttp errors quote the Bot API URL, token included).
"""

from __future__ import annotations

import logging
import os
import re
import sys
from typing import IO, Any

import structlog

SERVICE_NAME = "zigwatch"

_SECRET_KEYS = re.compile(r"(password|token|secret|api[-_]?key|authorization)", re.IGNORECASE)
# Telegram bot token: "<bot id>:<35 char secret>"
_BOT_TOKEN_RE = re.compile(r"(?<!\d)\d{6,}:[A-Za-z0-9_-]{30,}")
_MASK = "***REDACTED***"

_NOISY_LOGGERS = ("aiohttp", "asyncio")


def _mask_secrets(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: dict[str, Any],
) -> dict[str, Any]:
    """Redact secret-looking keys and bot tokens inside string values."""
    for key in list(event_dict.keys()):
        if _SECRET_KEYS.search(key):
            event_dict[key] = _MASK
        elif isinstance(event_dict[key], str):
            event_dict[key] = _BOT_TOKEN_RE.sub(_MASK, event_dict[key])
    return event_dict


def _service_context(mode: str) -> structlog.types.Processor:
    def add(
        logger: structlog.types.WrappedLogger,
        method_name: str,
        event_dict: dict[str, Any],
    ) -> dict[str, Any]:
        event_dict.setdefault("service", SERVICE_NAME)
        event_dict.setdefault("mode", mode)
        return event_dict

    return add


def setup_logging(
    log_level: str = "INFO",
    json_output: bool | None = None,
    stream: IO[str] | None = None,
) -> None:
    """Configure structlog and route stdlib logging through it.

    Safe to call twice; the second call replaces the root handler (used
    when the configured LOG_LEVEL differs from the CLI default).

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_output: Force JSON output. If None, JSON unless MODE=dev.
        stream: Output stream, stdout by default.
    """
    mode = os.getenv("MODE", "production")
    if json_output is None:
        json_output = mode != "dev"

    level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        _service_context(mode),
        structlog.processors.StackInfoRenderer(),
        # Tracebacks are rendered to text first so masking covers them
        structlog.processors.format_exc_info,
        _mask_secrets,
    ]

    renderer: structlog.types.Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            # Records from aiohttp/asyncio get the same treatment
            foreign_pre_chain=shared_processors,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for noisy in _NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))


def get_logger(module: str) -> structlog.stdlib.BoundLogger:
    """Get a bound logger with module context."""
    return structlog.get_logger(module=module)
