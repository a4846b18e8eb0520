"""Resilient websocket client for the CometBFT event stream.

Owns the socket lifecycle (connect, subscribe, heartbeat, reconnect with
backoff) and pushes every raw text frame to an observer callback. The
decisions live in ``stream_state``; this module only performs the I/O
the transitions ask for.

Socket errors are reported to ``on_error`` but never reconnect by
themselves: only the close path does, and only if the close was not
requested through ``close()``.
"""

from __future__ import annotations

import asyncio
import contextlib
import random
import ssl
import time
from collections.abc import Callable
from typing import Any

import aiohttp
import certifi

from zigwatch.connectors import stream_state as sm
from zigwatch.utils.logger import get_logger

logger = get_logger("stream_client")

MessageCallback = Callable[[str], None]
OpenCallback = Callable[[], None]
CloseCallback = Callable[[int | None, str], None]
ErrorCallback = Callable[[BaseException], None]


class StreamClient:
    """Websocket stream with subscription fallback and auto-reconnect.

    Args:
        url: Websocket endpoint (e.g. ``wss://host/websocket``).
        on_message: Receives every text frame, including subscription acks.
        queries: Subscription queries, tried in order until one is accepted.
        timings: Heartbeat/backoff constants.
        on_open: Called once per established socket.
        on_close: Called with (close code, reason) whenever a socket ends.
        on_error: Called with socket-level errors.
        session: Optional shared aiohttp session (not closed by us).
        rng: Random source for backoff jitter.
        clock: Monotonic clock used for pong staleness.
    """

    def __init__(
        self,
        url: str,
        on_message: MessageCallback,
        queries: list[str] | None = None,
        timings: sm.Timings | None = None,
        on_open: OpenCallback | None = None,
        on_close: CloseCallback | None = None,
        on_error: ErrorCallback | None = None,
        session: aiohttp.ClientSession | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._url = url
        self._on_message = on_message
        self._on_open = on_open
        self._on_close = on_close
        self._on_error = on_error
        self._session = session
        self._owns_session = session is None
        self._rng = rng or random.Random()
        self._clock = clock

        self._state = sm.initial_state(queries or ["tm.event='Tx'"], timings)
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._reader: asyncio.Task[None] | None = None
        self._heartbeat: asyncio.Task[None] | None = None
        self._reconnect: asyncio.TimerHandle | None = None
        self._pending: set[asyncio.Task[Any]] = set()

    @property
    def state(self) -> sm.StreamState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state.phase is sm.Phase.OPEN and self._ws is not None and not self._ws.closed

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def connect(self) -> None:
        """(Re)establish the socket. Must be called from a running loop."""
        self._state, effects = sm.on_connect(self._state)
        self._apply(effects)

    async def close(self) -> None:
        """Intentional shutdown: no reconnect, timers stopped, socket closed."""
        self._state, effects = sm.on_close_requested(self._state)
        self._apply(effects)

        reader = self._reader
        if reader is not None and not reader.done():
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader

        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)

        if self._owns_session and self._session and not self._session.closed:
            await self._session.close()
        logger.info("stream_closed")

    # ------------------------------------------------------------------
    # Effects
    # ------------------------------------------------------------------

    def _apply(self, effects: list[sm.Effect]) -> None:
        for effect in effects:
            if isinstance(effect, sm.OpenSocket):
                self._open_socket()
            elif isinstance(effect, sm.SendFrame):
                self._send_json(effect.payload)
            elif isinstance(effect, sm.SendPing):
                self._send_ping()
            elif isinstance(effect, sm.StartHeartbeat):
                self._start_heartbeat(effect.interval_s)
            elif isinstance(effect, sm.StopHeartbeat):
                self._stop_heartbeat()
            elif isinstance(effect, sm.ScheduleReconnect):
                self._schedule_reconnect(effect.delay_s, effect.attempt)
            elif isinstance(effect, sm.CancelReconnect):
                self._cancel_reconnect()
            elif isinstance(effect, sm.TerminateSocket):
                self._terminate_socket()
            elif isinstance(effect, sm.CloseSocket):
                self._close_socket()

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _open_socket(self) -> None:
        if self._reader is not None and not self._reader.done():
            # Superseded socket; its reader no longer drives the close path
            self._reader.cancel()
        logger.info("stream_connecting", url=self._url)
        self._reader = asyncio.create_task(self._run_socket())

    def _send_json(self, payload: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            return
        self._spawn(self._guarded(ws.send_json(payload), "stream_send_failed"))

    def _send_ping(self) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            return
        self._spawn(self._guarded(ws.ping(), "stream_ping_failed"))

    async def _guarded(self, coro: Any, event: str) -> None:
        try:
            await coro
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
            logger.warning(event, error=str(e))
            self._report_error(e)

    def _start_heartbeat(self, interval_s: float) -> None:
        self._stop_heartbeat()
        self._heartbeat = asyncio.create_task(self._heartbeat_loop(interval_s))

    def _stop_heartbeat(self) -> None:
        if self._heartbeat is not None and not self._heartbeat.done():
            if self._heartbeat is not asyncio.current_task():
                self._heartbeat.cancel()
        self._heartbeat = None

    async def _heartbeat_loop(self, interval_s: float) -> None:
        while True:
            await asyncio.sleep(interval_s)
            if not self.is_open:
                continue
            self._apply(sm.on_heartbeat(self._state, self._clock()))

    def _schedule_reconnect(self, delay_s: float, attempt: int) -> None:
        self._cancel_reconnect()
        logger.info("stream_reconnect_scheduled", delay_s=round(delay_s, 3), attempt=attempt)
        loop = asyncio.get_running_loop()
        self._reconnect = loop.call_later(delay_s, self.connect)

    def _cancel_reconnect(self) -> None:
        if self._reconnect is not None:
            self._reconnect.cancel()
            self._reconnect = None

    def _terminate_socket(self) -> None:
        # Dropping the reader ends the socket and runs the close path
        if self._reader is not None and not self._reader.done():
            self._reader.cancel()

    def _close_socket(self) -> None:
        ws = self._ws
        if ws is not None and not ws.closed:
            self._spawn(ws.close())

    # ------------------------------------------------------------------
    # Socket loop
    # ------------------------------------------------------------------

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            ssl_ctx = ssl.create_default_context(cafile=certifi.where())
            self._session = aiohttp.ClientSession(connector=aiohttp.TCPConnector(ssl=ssl_ctx))
            self._owns_session = True
        return self._session

    async def _run_socket(self) -> None:
        me = asyncio.current_task()
        ws: aiohttp.ClientWebSocketResponse | None = None
        reason = ""
        try:
            session = await self._get_session()
            # Pings/pongs are handled here so pong arrivals can be tracked
            ws = await session.ws_connect(self._url, autoping=False, max_msg_size=0)
            self._ws = ws
            self._handle_open()

            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._handle_text(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    self._handle_text(msg.data.decode("utf-8", errors="replace"))
                elif msg.type == aiohttp.WSMsgType.PING:
                    await ws.pong(msg.data)
                elif msg.type == aiohttp.WSMsgType.PONG:
                    self._state = sm.on_pong(self._state, self._clock())
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    error = ws.exception() or aiohttp.ClientError("websocket error")
                    reason = str(error)
                    self._report_error(error)
        except asyncio.CancelledError:
            reason = "terminated"
            raise
        except (aiohttp.ClientError, OSError, TimeoutError) as e:
            reason = str(e)
            self._report_error(e)
        finally:
            if ws is not None and not ws.closed:
                self._spawn(ws.close())
            if self._reader is me:
                self._ws = None
                self._handle_close(ws.close_code if ws is not None else None, reason)

    def _handle_open(self) -> None:
        self._state, effects = sm.on_open(self._state, self._clock())
        logger.info("stream_connected", url=self._url)
        self._apply(effects)
        if self._on_open is not None:
            self._on_open()

    def _handle_text(self, raw: str) -> None:
        self._state, effects = sm.on_frame(self._state, raw)
        self._apply(effects)
        self._on_message(raw)

    def _handle_close(self, code: int | None, reason: str) -> None:
        logger.warning("stream_disconnected", code=code, reason=reason or "n/a")
        self._state, effects = sm.on_close(self._state, self._rng)
        self._apply(effects)
        if self._on_close is not None:
            self._on_close(code, reason)

    def _report_error(self, error: BaseException) -> None:
        logger.error("stream_error", error=str(error))
        if self._on_error is not None:
            self._on_error(error)
