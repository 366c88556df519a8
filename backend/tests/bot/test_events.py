# tests/bot/test_events.py
import asyncio
import json
from typing import Any, Dict, List

import httpx
import pytest
import pytest_asyncio

from wacommerce.bot.events import EVENTS_PATH, EventEmitter

pytestmark = pytest.mark.asyncio


class FakeDashboard:
    def __init__(self):
        self.posted: List[Dict[str, Any]] = []
        self.headers: List[httpx.Headers] = []
        self.fail_posts = 0
        self.reachable = True

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            if not self.reachable:
                raise httpx.ConnectError("down", request=request)
            return httpx.Response(200, json={"status": "ok"})
        assert request.url.path == EVENTS_PATH
        if self.fail_posts > 0:
            self.fail_posts -= 1
            return httpx.Response(500, json={"msg": "boom"})
        self.posted.append(json.loads(request.content))
        self.headers.append(request.headers)
        return httpx.Response(202, json={"status": "accepted"})

    def types(self) -> List[str]:
        return [e["type"] for e in self.posted]


@pytest.fixture
def dashboard() -> FakeDashboard:
    return FakeDashboard()


@pytest_asyncio.fixture
async def emitter(dashboard: FakeDashboard):
    bridge = EventEmitter("http://dashboard.test", api_key="secret", max_queue=100, transport=httpx.MockTransport(dashboard.handler))
    yield bridge
    await bridge.stop()


async def settle(rounds: int = 50) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


async def test_events_queue_while_disconnected(emitter, dashboard):
    emitter.message_received("263771", "!menu")
    emitter.command_executed("263771", "menu")

    assert [e.type for e in emitter.queued] == ["bot_message", "command_executed"]
    assert dashboard.posted == []


async def test_queue_is_bounded_and_drops_oldest(emitter):
    for i in range(105):
        emitter.user_activity(f"u{i}", "ping")

    assert len(emitter.queued) == 100
    assert emitter.queued[0].data["userId"] == "u5"
    assert emitter.get_stats()["dropped_events"] == 5


async def test_flush_is_fifo_and_sends_api_key(emitter, dashboard):
    emitter.order_created({"id": "o1", "merchant_id": "m1"})
    emitter.order_status_changed("o1", "pending", "confirmed", merchant_id="m1")
    emitter.merchant_notification("m1", "New order!")

    emitter.set_connected(True)
    await settle()

    assert dashboard.types() == ["new_order", "order_status_changed", "merchant_notification"]
    assert dashboard.posted[1]["data"] == {
        "orderId": "o1", "oldStatus": "pending", "status": "confirmed", "merchantId": "m1", "details": {},
    }
    assert all(h["X-API-Key"] == "secret" for h in dashboard.headers)
    assert emitter.queued == []


async def test_failed_post_keeps_event_and_marks_disconnected(emitter, dashboard):
    dashboard.fail_posts = 1
    emitter.message_received("263771", "hello")
    emitter.message_received("263771", "again")

    emitter.set_connected(True)
    await settle()

    assert emitter.is_connected is False
    assert [e.data["text"] for e in emitter.queued] == ["hello", "again"]
    assert dashboard.posted == []

    # Dashboard is back: the probe restores the bridge and the backlog drains in order
    assert await emitter.probe() is True
    await settle()
    assert [e["data"]["text"] for e in dashboard.posted] == ["hello", "again"]
    assert emitter.queued == []


async def test_probe_reports_unreachable_dashboard(emitter, dashboard):
    dashboard.reachable = False
    assert await emitter.probe() is False
    assert emitter.is_connected is False


async def test_events_sent_immediately_when_connected(emitter, dashboard):
    emitter.set_connected(True)
    await settle()
    emitter.error_occurred("bot.handle_message", ValueError("bad input"))
    await settle()

    assert dashboard.posted[0]["type"] == "error"
    assert dashboard.posted[0]["data"] == {"context": "bot.handle_message", "errorType": "ValueError", "message": "bad input"}


async def test_disabled_bridge_drops_events(emitter):
    emitter.set_enabled(False)
    emitter.bot_connected("263770000000")
    assert emitter.queued == []
    assert emitter.get_stats()["enabled"] is False


async def test_typed_event_shapes(emitter):
    emitter.bot_connected("263770000000", {"platform": "android"})
    emitter.bot_disconnected("logged out")
    emitter.message_sent("263771", "✅ Added 1x Coke", message_id="wamid.1")
    emitter.inventory_updated("p3", 10, 7)

    queued = {e.type + ":" + str(i): e.data for i, e in enumerate(emitter.queued)}
    assert queued["bot_status:0"] == {"event": "connected", "phoneNumber": "263770000000", "deviceInfo": {"platform": "android"}}
    assert queued["bot_status:1"] == {"event": "disconnected", "reason": "logged out"}
    assert queued["bot_message_sent:2"] == {"to": "263771", "text": "✅ Added 1x Coke", "messageId": "wamid.1"}
    assert queued["inventory_updated:3"] == {"productId": "p3", "oldQuantity": 10, "newQuantity": 7}
