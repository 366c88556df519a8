# tests/websocket/test_server.py
import json

import pytest

from wacommerce.models.realtime import ADMIN_ROOM, Envelope

pytestmark = pytest.mark.asyncio


async def connect(server, socket_factory, **query):
    socket = socket_factory()
    connection = server.accept(socket, query)
    return connection, socket


def send(server, connection, type_, **data):
    server.handle_inbound(connection.id, json.dumps({"type": type_, "data": data}))


async def test_accept_greets_with_client_id_and_recent_history(server, socket_factory):
    for i in range(15):
        server.broadcast_bot_message("263770000000", f"msg {i}")

    conn, socket = await connect(server, socket_factory, merchant_id="m1", role="merchant")
    await server.drain()

    greeting = socket.frames()[0]
    assert greeting["type"] == "connection_established"
    assert greeting["data"]["clientId"] == conn.id
    assert conn.id.startswith("client_")
    history = greeting["data"]["messageHistory"]
    assert len(history) == 10
    assert history[-1]["data"]["text"] == "msg 14"
    assert conn.merchant_id == "m1"
    assert conn.role == "merchant"


async def test_unknown_role_falls_back_to_customer(server, socket_factory):
    conn, _ = await connect(server, socket_factory, role="root")
    assert conn.role == "customer"


async def test_ping_is_answered_with_pong(server, socket_factory):
    conn, socket = await connect(server, socket_factory)
    send(server, conn, "ping")
    await server.drain()
    assert socket.types()[-1] == "pong"


async def test_malformed_and_unknown_frames_are_ignored(server, socket_factory):
    conn, socket = await connect(server, socket_factory)
    server.handle_inbound(conn.id, "{not json")
    server.handle_inbound(conn.id, json.dumps({"type": "teleport"}))
    await server.drain()
    assert socket.types() == ["connection_established"]
    assert conn.id in server.connections


async def test_room_broadcast_reaches_members_only_and_honours_exclude(server, socket_factory):
    a, sock_a = await connect(server, socket_factory)
    b, sock_b = await connect(server, socket_factory)
    outsider, sock_out = await connect(server, socket_factory)
    server.subscribe(a.id, "order_o1")
    server.subscribe(b.id, "order_o1")

    delivered = server.broadcast_to_room("order_o1", Envelope(type="bot_message", data={"x": 1}), exclude_id=a.id)
    await server.drain()

    assert delivered == 1
    assert "bot_message" in sock_b.types()
    assert "bot_message" not in sock_a.types()
    assert "bot_message" not in sock_out.types()


async def test_subscribe_confirms_and_announces_to_others(server, socket_factory):
    a, sock_a = await connect(server, socket_factory)
    b, sock_b = await connect(server, socket_factory)

    send(server, a, "subscribe", room="merchant_m1")
    # Legacy clients put the room beside the type
    server.handle_inbound(b.id, json.dumps({"type": "subscribe", "room": "merchant_m1"}))
    await server.drain()

    assert sock_a.of_type("subscription_confirmed")[0]["data"] == {"room": "merchant_m1"}
    joined = sock_a.of_type("user_joined")
    assert len(joined) == 1
    assert joined[0]["data"] == {"clientId": b.id, "roomSize": 2}
    # The joiner does not get its own user_joined
    assert sock_b.of_type("user_joined") == []


async def test_unsubscribe_from_only_room_removes_it(server, socket_factory):
    a, sock_a = await connect(server, socket_factory)
    send(server, a, "subscribe", room="merchant_m1")
    send(server, a, "unsubscribe", room="merchant_m1")
    await server.drain()

    assert "merchant_m1" not in server.rooms
    assert a.subscriptions == set()
    assert sock_a.of_type("unsubscription_confirmed")[0]["data"] == {"room": "merchant_m1"}


async def test_order_status_update_fans_out_to_merchant_room(server, socket_factory):
    a, sock_a = await connect(server, socket_factory, merchant_id="m1", role="merchant")
    b, sock_b = await connect(server, socket_factory, merchant_id="m1", role="dashboard")
    server.subscribe(a.id, "merchant_m1")
    server.subscribe(b.id, "merchant_m1")

    send(server, a, "order_status_update", orderId="o1", status="confirmed", details={})
    await server.drain()

    for socket in (sock_a, sock_b):
        changed = socket.of_type("order_status_changed")
        assert len(changed) == 1
        assert changed[0]["data"]["orderId"] == "o1"
        assert changed[0]["data"]["status"] == "confirmed"
        assert changed[0]["data"]["updatedBy"] == "merchant"

    last = server.history.snapshot()[-1]
    assert last.type == "order_status_changed"
    assert last.to_json() == sock_b.sent[-1]


async def test_null_fields_inside_data_are_kept(server, socket_factory):
    a, sock_a = await connect(server, socket_factory, merchant_id="m1", role="merchant")
    admin, sock_admin = await connect(server, socket_factory, role="super_admin")
    server.subscribe(a.id, "merchant_m1")
    server.subscribe(admin.id, ADMIN_ROOM)

    send(server, a, "order_status_update", orderId="o1", status="ready")
    server.broadcast_new_order({"id": "o2", "merchant_id": "m1", "notes": None})
    await server.drain()

    changed = sock_a.of_type("order_status_changed")[0]
    assert "details" in changed["data"]
    assert changed["data"]["details"] is None
    assert "room" not in changed
    assert sock_admin.of_type("new_order")[0]["data"]["order"] == {"id": "o2", "merchant_id": "m1", "notes": None}


async def test_order_status_update_uses_connection_tenant_not_payload(server, socket_factory):
    a, _ = await connect(server, socket_factory, merchant_id="m1", role="merchant")
    spy, sock_spy = await connect(server, socket_factory, merchant_id="m2", role="merchant")
    server.subscribe(spy.id, "merchant_m2")

    send(server, a, "order_status_update", orderId="o1", status="ready", merchantId="m2")
    await server.drain()
    assert sock_spy.of_type("order_status_changed") == []


async def test_order_status_update_without_status_is_dropped(server, socket_factory):
    a, _ = await connect(server, socket_factory, merchant_id="m1")
    send(server, a, "order_status_update", orderId="o1")
    assert len(server.history) == 0


async def test_merchant_notification_scoping(server, socket_factory):
    admin, _ = await connect(server, socket_factory, role="super_admin")
    merchant, _ = await connect(server, socket_factory, merchant_id="m1", role="merchant")
    customer, _ = await connect(server, socket_factory, role="customer")
    m1, sock_m1 = await connect(server, socket_factory, merchant_id="m1", role="dashboard")
    m2, sock_m2 = await connect(server, socket_factory, merchant_id="m2", role="dashboard")
    server.subscribe(m1.id, "merchant_m1")
    server.subscribe(m2.id, "merchant_m2")

    send(server, admin, "merchant_notification", merchantId="m2", notification="Payout sent")
    # A merchant can only notify its own tenant
    send(server, merchant, "merchant_notification", merchantId="m2", notification="spoof", level="warning")
    send(server, customer, "merchant_notification", merchantId="m1", notification="nope")
    await server.drain()

    assert [f["data"]["notification"] for f in sock_m2.of_type("merchant_notification")] == ["Payout sent"]
    assert [f["data"]["notification"] for f in sock_m1.of_type("merchant_notification")] == ["spoof"]


async def test_user_activity_goes_to_admin_dashboard(server, socket_factory):
    user, _ = await connect(server, socket_factory, user_id="u1")
    dash, sock_dash = await connect(server, socket_factory, role="dashboard")
    server.subscribe(dash.id, ADMIN_ROOM)

    send(server, user, "user_activity", action="viewed_menu", details={"page": 1})
    await server.drain()

    activity = sock_dash.of_type("user_activity")[0]["data"]
    assert activity["userId"] == "u1"
    assert activity["action"] == "viewed_menu"
    assert activity["role"] == "customer"


async def test_bot_status_request_broadcasts_to_everyone(server, socket_factory):
    a, sock_a = await connect(server, socket_factory)
    b, sock_b = await connect(server, socket_factory)
    send(server, a, "bot_status_request")
    await server.drain()

    for socket in (sock_a, sock_b):
        status = socket.of_type("bot_status")[0]["data"]
        assert status == {"connected": True, "connectedClients": 2, "activeRooms": 0}


async def test_broadcast_all_skips_closed_sockets(server, socket_factory):
    a, sock_a = await connect(server, socket_factory)
    b, sock_b = await connect(server, socket_factory)
    await sock_b.close()

    assert server.broadcast_all(Envelope(type="bot_message", data={})) == 1


async def test_disconnect_is_idempotent_and_cleans_rooms(server, socket_factory):
    a, _ = await connect(server, socket_factory)
    server.subscribe(a.id, "merchant_m1")
    server.subscribe(a.id, ADMIN_ROOM)

    assert server.disconnect(a.id) is True
    assert server.disconnect(a.id) is False
    assert len(server.rooms) == 0
    assert a.id not in server.connections


async def test_sweep_pings_live_clients_and_reaps_silent_ones(server, socket_factory):
    a, sock_a = await connect(server, socket_factory)
    b, sock_b = await connect(server, socket_factory)

    assert await server.sweep() == []
    await server.drain()
    assert sock_a.types()[-1] == "ping"

    # Only A answers
    send(server, a, "pong")
    reaped = await server.sweep()

    assert reaped == [b.id]
    assert sock_b.close_code == 1001
    assert b.id not in server.connections
    assert a.id in server.connections


async def test_bridge_events_are_routed_by_type(server, socket_factory):
    dash, sock_dash = await connect(server, socket_factory, role="dashboard")
    merchant, sock_m = await connect(server, socket_factory, merchant_id="m1", role="merchant")
    server.subscribe(dash.id, ADMIN_ROOM)
    server.subscribe(merchant.id, "merchant_m1")

    server.publish_bridge_event(Envelope(type="new_order", data={"order": {"id": "o9", "merchant_id": "m1"}}))
    server.publish_bridge_event(Envelope(type="command_executed", data={"command": "menu"}))
    server.publish_bridge_event(Envelope(type="order_status_changed", data={"orderId": "o9", "status": "paid", "merchantId": "m1"}))
    await server.drain()

    assert sock_dash.of_type("new_order")[0]["data"]["order"]["id"] == "o9"
    assert sock_m.of_type("new_order")[0]["data"]["order"]["id"] == "o9"
    assert len(sock_dash.of_type("command_executed")) == 1
    assert sock_m.of_type("command_executed") == []
    assert sock_m.of_type("order_status_changed")[0]["data"]["status"] == "paid"
    assert [e.type for e in server.history.snapshot()] == ["new_order", "command_executed", "order_status_changed"]


async def test_stats_lists_clients(server, socket_factory):
    a, _ = await connect(server, socket_factory, merchant_id="m1", role="merchant")
    server.subscribe(a.id, "merchant_m1")

    stats = server.get_stats()
    assert stats.connected_clients == 1
    assert stats.active_rooms == 1
    assert stats.clients[0].subscriptions == ["merchant_m1"]
