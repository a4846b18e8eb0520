"""Exception hierarchy for zigwatch."""

from __future__ import annotations


class ZigwatchError(Exception):
    """Base error for all zigwatch failures."""


class ConfigError(ZigwatchError):
    """Invalid or missing configuration. Fatal at startup."""


class LcdError(ZigwatchError):
    """LCD (REST) lookup failed: bad status, transport error or timeout."""


class NotifierError(ZigwatchError):
    """Alert delivery failed."""


class StoreError(ZigwatchError):
    """Destination store rejected a value."""
