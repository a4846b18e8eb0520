"""Tests for the websocket stream driver."""

from __future__ import annotations

import asyncio
import json
from typing import Any

from aiohttp import WSMsgType, test_utils, web

from zigwatch.connectors import stream_state as sm
from zigwatch.connectors.stream_client import StreamClient


class FakeWebSocket:
    """Minimal stand-in for aiohttp.ClientWebSocketResponse."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.pings = 0
        self.closed = False

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)

    async def ping(self, message: bytes = b"") -> None:
        self.pings += 1

    async def close(self) -> bool:
        self.closed = True
        return True


def _client(received: list[str], errors: list[BaseException] | None = None) -> StreamClient:
    return StreamClient(
        url="ws://stream.invalid/websocket",
        on_message=received.append,
        queries=["q1", "q2"],
        on_error=(errors.append if errors is not None else None),
    )


class TestSubscriptionFlow:
    async def test_open_sends_first_query(self) -> None:
        received: list[str] = []
        client = _client(received)
        fake = FakeWebSocket()
        client._ws = fake  # type: ignore[assignment]

        client._handle_open()
        await asyncio.sleep(0)

        assert client.state.phase is sm.Phase.OPEN
        assert fake.sent == [
            {"jsonrpc": "2.0", "id": 1, "method": "subscribe", "params": {"query": "q1"}}
        ]
        await client.close()

    async def test_rejection_falls_back_and_frames_pass_through(self) -> None:
        received: list[str] = []
        client = _client(received)
        fake = FakeWebSocket()
        client._ws = fake  # type: ignore[assignment]
        client._handle_open()

        rejection = json.dumps({"jsonrpc": "2.0", "id": 1, "error": {"code": -32603}})
        ack = json.dumps({"jsonrpc": "2.0", "id": 2, "result": {}})
        event = json.dumps({"jsonrpc": "2.0", "id": 2, "result": {"query": "q2", "events": {}}})
        client._handle_text(rejection)
        client._handle_text(ack)
        client._handle_text(event)
        await asyncio.sleep(0)

        assert [f["params"]["query"] for f in fake.sent] == ["q1", "q2"]
        assert client.state.subscription.confirmed is True
        assert received == [rejection, ack, event]
        await client.close()

    async def test_ping_effect_uses_socket(self) -> None:
        client = _client([])
        fake = FakeWebSocket()
        client._ws = fake  # type: ignore[assignment]
        client._apply([sm.SendPing()])
        await asyncio.sleep(0)
        assert fake.pings == 1
        await client.close()


class TestReconnect:
    async def test_unintentional_close_schedules_reconnect(self) -> None:
        client = _client([])
        client._ws = FakeWebSocket()  # type: ignore[assignment]
        client._handle_open()

        client._handle_close(1006, "abnormal")
        assert client._reconnect is not None
        assert client.state.attempt == 1
        assert client._heartbeat is None

        await client.close()
        assert client._reconnect is None

    async def test_intentional_close_does_not_reconnect(self) -> None:
        client = _client([])
        client._ws = FakeWebSocket()  # type: ignore[assignment]
        client._handle_open()

        await client.close()
        client._handle_close(1000, "")
        assert client._reconnect is None
        assert client.state.phase is sm.Phase.CLOSED

    async def test_errors_are_reported_without_reconnect(self) -> None:
        errors: list[BaseException] = []
        client = _client([], errors)
        boom = ConnectionResetError("reset")

        client._report_error(boom)
        assert errors == [boom]
        assert client._reconnect is None
        await client.close()


class TestLiveServer:
    async def test_subscribes_and_receives_frames(self) -> None:
        event = {
            "jsonrpc": "2.0",
            "id": 1,
            "result": {
                "query": "tm.event='Tx'",
                "events": {"tx.hash": ["H1"]},
            },
        }
        requests: list[dict[str, Any]] = []

        async def ws_handler(request: web.Request) -> web.WebSocketResponse:
            ws = web.WebSocketResponse()
            await ws.prepare(request)
            async for msg in ws:
                if msg.type == WSMsgType.TEXT:
                    req = json.loads(msg.data)
                    requests.append(req)
                    await ws.send_json({"jsonrpc": "2.0", "id": req["id"], "result": {}})
                    await ws.send_json(event)
            return ws

        app = web.Application()
        app.router.add_get("/websocket", ws_handler)
        server = test_utils.TestServer(app)
        await server.start_server()

        received: list[str] = []
        got_event = asyncio.Event()
        opened = asyncio.Event()

        def on_message(raw: str) -> None:
            received.append(raw)
            if len(received) >= 2:
                got_event.set()

        client = StreamClient(
            url=str(server.make_url("/websocket")),
            on_message=on_message,
            on_open=opened.set,
        )
        try:
            client.connect()
            await asyncio.wait_for(got_event.wait(), timeout=5)
            assert opened.is_set()
            assert client.is_open
            assert client.state.subscription.confirmed is True
            assert requests[0]["method"] == "subscribe"
            assert json.loads(received[1]) == event
        finally:
            await client.close()
            await server.close()

        assert client.state.phase is sm.Phase.CLOSED
        assert client._reconnect is None

    async def test_missing_pongs_terminate_and_schedule_reconnect(self) -> None:
        async def silent_handler(request: web.Request) -> web.WebSocketResponse:
            # No autoping: client pings are never answered
            ws = web.WebSocketResponse(autoping=False)
            await ws.prepare(request)
            async for _ in ws:
                pass
            return ws

        app = web.Application()
        app.router.add_get("/websocket", silent_handler)
        server = test_utils.TestServer(app)
        await server.start_server()

        opened = asyncio.Event()
        closed = asyncio.Event()
        closes: list[tuple[int | None, str]] = []

        def on_close(code: int | None, reason: str) -> None:
            closes.append((code, reason))
            closed.set()

        client = StreamClient(
            url=str(server.make_url("/websocket")),
            on_message=lambda raw: None,
            timings=sm.Timings(
                heartbeat_interval_s=0.05,
                pong_timeout_s=0.15,
                backoff_base_s=30.0,
                backoff_max_s=30.0,
                backoff_jitter_s=0.01,
            ),
            on_open=opened.set,
            on_close=on_close,
        )
        try:
            client.connect()
            await asyncio.wait_for(opened.wait(), timeout=5)
            await asyncio.wait_for(closed.wait(), timeout=5)

            assert closes[0][1] == "terminated"
            assert client.state.phase is sm.Phase.CLOSED
            assert client.state.attempt == 1
            assert client._reconnect is not None
            assert client._heartbeat is None
        finally:
            await client.close()
            await server.close()

        assert client._reconnect is None
