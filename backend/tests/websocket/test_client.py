# tests/websocket/test_client.py
import asyncio
import json
from typing import List

import pytest
from loguru import logger

from wacommerce.websocket.client import CONNECTED, DISCONNECTED, RealtimeClient

pytestmark = pytest.mark.asyncio


class FakeClientSocket:
    def __init__(self):
        self.sent: List[str] = []
        self.closed = False
        self._inbox: asyncio.Queue = asyncio.Queue()

    async def send(self, frame: str) -> None:
        if self.closed:
            raise OSError("socket closed")
        self.sent.append(frame)

    async def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._inbox.put_nowait(None)

    def push(self, type_: str, data=None) -> None:
        self._inbox.put_nowait(json.dumps({"type": type_, "data": data, "timestamp": "2024-01-01T00:00:00+00:00"}))

    def types(self) -> List[str]:
        return [json.loads(f)["type"] for f in self.sent]

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        item = await self._inbox.get()
        if item is None:
            raise StopAsyncIteration
        return item


class FakeConnector:
    def __init__(self, fail_times: int = 0):
        self.fail_times = fail_times
        self.urls: List[str] = []
        self.sockets: List[FakeClientSocket] = []

    async def __call__(self, url: str) -> FakeClientSocket:
        self.urls.append(url)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise OSError("connection refused")
        socket = FakeClientSocket()
        self.sockets.append(socket)
        return socket


class RecordingSleep:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


async def settle(rounds: int = 20) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def make_client(connector, sleep=None, **kwargs) -> RealtimeClient:
    return RealtimeClient(
        "ws://dashboard.test/ws",
        connect_factory=connector,
        sleep=sleep or RecordingSleep(),
        **kwargs,
    )


async def test_connect_builds_query_and_flushes_offline_queue_in_order():
    connector = FakeConnector()
    client = make_client(connector)
    changes = []
    client.on_connection_change(changes.append)

    await client.send("subscribe", {"room": "merchant_m1"})
    await client.track_user_activity("opened_dashboard")
    assert client.queued_messages == 2

    await client.connect("m1", "tok", user_id="u1", role="merchant")

    assert connector.urls == ["ws://dashboard.test/ws?merchant_id=m1&user_id=u1&token=tok&role=merchant"]
    assert client.state == CONNECTED
    assert client.queued_messages == 0
    assert connector.sockets[0].types() == ["subscribe", "user_activity"]
    assert changes == [True]
    await client.disconnect()


async def test_connect_is_noop_when_already_connected():
    connector = FakeConnector()
    client = make_client(connector)
    await client.connect("m1", "tok")
    await client.connect("m1", "tok")
    assert len(connector.urls) == 1
    await client.disconnect()


async def test_handlers_run_in_order_and_survive_errors():
    connector = FakeConnector()
    client = make_client(connector)
    await client.connect("m1", "tok")
    seen = []

    def broken(data):
        raise RuntimeError("boom")

    client.on("new_order", broken)
    unsubscribe = client.subscribe_to_new_orders(lambda data: seen.append(("first", data["order"]["id"])))
    client.on("new_order", lambda data: seen.append(("second", data["order"]["id"])))

    connector.sockets[0].push("new_order", {"order": {"id": "o1"}})
    await settle()
    assert seen == [("first", "o1"), ("second", "o1")]

    unsubscribe()
    connector.sockets[0].push("new_order", {"order": {"id": "o2"}})
    await settle()
    assert seen[-1] == ("second", "o2")
    assert len(seen) == 3
    await client.disconnect()


async def test_async_handlers_are_scheduled():
    connector = FakeConnector()
    client = make_client(connector)
    await client.connect("m1", "tok")
    seen = []

    async def handler(data):
        seen.append(data["status"])

    client.subscribe_to_orders(handler)
    connector.sockets[0].push("order_status_changed", {"orderId": "o1", "status": "ready"})
    await settle()
    assert seen == ["ready"]
    await client.disconnect()


async def test_failing_async_handler_is_logged():
    connector = FakeConnector()
    client = make_client(connector)
    await client.connect("m1", "tok")
    errors = []
    sink_id = logger.add(lambda message: errors.append(message.record["message"]), level="ERROR")
    seen = []

    async def broken(data):
        raise RuntimeError("boom")

    client.subscribe_to_new_orders(broken)
    client.subscribe_to_new_orders(lambda data: seen.append(data["order"]["id"]))
    try:
        connector.sockets[0].push("new_order", {"order": {"id": "o1"}})
        await settle()
    finally:
        logger.remove(sink_id)

    assert errors == ["Error in handler for new_order"]
    assert seen == ["o1"]
    assert client._background_tasks == set()
    await client.disconnect()


async def test_connection_established_sets_client_id_and_server_ping_gets_pong():
    connector = FakeConnector()
    client = make_client(connector)
    await client.connect("m1", "tok")

    connector.sockets[0].push("connection_established", {"clientId": "client_1_abc", "messageHistory": []})
    connector.sockets[0].push("ping")
    await settle()

    assert client.get_connection_info()["client_id"] == "client_1_abc"
    assert connector.sockets[0].types() == ["pong"]
    await client.disconnect()


async def test_failed_connects_back_off_linearly_then_stop():
    connector = FakeConnector(fail_times=10)
    sleep = RecordingSleep()
    client = make_client(connector, sleep=sleep)

    with pytest.raises(ConnectionError):
        await client.connect("m1", "tok")
    await settle(100)

    assert sleep.delays == [3.0, 6.0, 9.0, 12.0, 15.0]
    assert client.reconnect_attempts == 5
    assert client.state == DISCONNECTED
    assert len(connector.urls) == 6

    # Manual reconnect resets the counter
    connector.fail_times = 0
    await client.reconnect()
    assert client.state == CONNECTED
    assert client.reconnect_attempts == 0
    await client.disconnect()


async def test_server_close_triggers_reconnect():
    connector = FakeConnector()
    sleep = RecordingSleep()
    client = make_client(connector, sleep=sleep)
    changes = []
    client.on_connection_change(changes.append)
    await client.connect("m1", "tok")

    await connector.sockets[0].close()
    await settle(50)

    assert sleep.delays == [3.0]
    assert len(connector.sockets) == 2
    assert client.is_connected
    assert changes == [True, False, True]
    await client.disconnect()


async def test_manual_disconnect_never_reconnects():
    connector = FakeConnector()
    sleep = RecordingSleep()
    client = make_client(connector, sleep=sleep)
    await client.connect("m1", "tok")

    await client.disconnect()
    await settle(50)

    assert client.state == DISCONNECTED
    assert sleep.delays == []
    assert len(connector.urls) == 1
    assert connector.sockets[0].closed


async def test_missing_pong_closes_socket_and_reconnects():
    connector = FakeConnector()
    sleep = RecordingSleep()
    client = make_client(connector, sleep=sleep, heartbeat_interval=0.03, pong_timeout=0.01)
    await client.connect("m1", "tok")

    await asyncio.sleep(0.1)

    first = connector.sockets[0]
    assert first.closed
    assert "ping" in first.types()
    assert sleep.delays[0] == 3.0
    assert len(connector.sockets) >= 2
    await client.disconnect()


async def test_unanswered_deadline_survives_later_pings():
    connector = FakeConnector()
    client = make_client(connector, heartbeat_interval=0.01, pong_timeout=0.025)
    await client.connect("m1", "tok")

    await asyncio.sleep(0.1)

    first = connector.sockets[0]
    assert first.types().count("ping") >= 2
    assert first.closed
    await client.disconnect()


async def test_pong_clears_the_deadline():
    connector = FakeConnector()
    client = make_client(connector, heartbeat_interval=0.02, pong_timeout=0.05)
    await client.connect("m1", "tok")
    socket = connector.sockets[0]

    # Answer faster than the deadline
    for _ in range(6):
        await asyncio.sleep(0.02)
        socket.push("pong")

    assert "ping" in socket.types()

    assert not socket.closed
    await client.disconnect()


async def test_typed_helpers_send_expected_envelopes():
    connector = FakeConnector()
    client = make_client(connector)
    await client.connect("m1", "tok")

    await client.subscribe_to_room("merchant_m1")
    await client.update_order_status("o1", "confirmed", {"eta": 10})
    await client.send_merchant_notification("m1", "Low stock", "warning")
    await client.request_bot_status()

    frames = [json.loads(f) for f in connector.sockets[0].sent]
    assert frames[0]["data"] == {"room": "merchant_m1"}
    assert frames[1]["data"] == {"orderId": "o1", "status": "confirmed", "details": {"eta": 10}}
    assert frames[2]["data"] == {"merchantId": "m1", "notification": "Low stock", "level": "warning"}
    assert frames[3]["type"] == "bot_status_request"
    await client.disconnect()
