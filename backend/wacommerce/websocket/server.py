# wacommerce/websocket/server.py

import asyncio
import json
import random
import string
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from loguru import logger
from pydantic import ValidationError

from wacommerce.models.realtime import (
    ADMIN_ROOM, ClientSummary, Envelope, InboundFrame, RealtimeStats,
    merchant_room, normalize_role, order_room,
)
from wacommerce.websocket.history import MessageHistory
from wacommerce.websocket.registry import Connection, ConnectionRegistry, RoomRegistry

_ID_ALPHABET = string.ascii_lowercase + string.digits


class RealtimeServer:
    """
    Terminates realtime sockets, keeps the connection and room registries and
    fans envelopes out to rooms.

    Every registry mutation happens synchronously inside one call, so frames
    from different connections interleave only between mutations. Sends are
    queued per connection (see `Connection`) and never awaited here.
    """

    def __init__(
        self,
        history_size: int = 100,
        replay_size: int = 10,
        heartbeat_interval: float = 30.0,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.connections = ConnectionRegistry()
        self.rooms = RoomRegistry()
        self.history = MessageHistory(history_size)
        self.replay_size = replay_size
        self.heartbeat_interval = heartbeat_interval
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sweep_task: Optional[asyncio.Task] = None
        self._handlers: Dict[str, Callable[[Connection, InboundFrame], None]] = {
            "ping": self._on_ping,
            "pong": self._on_pong,
            "subscribe": self._on_subscribe,
            "unsubscribe": self._on_unsubscribe,
            "bot_status_request": self._on_bot_status_request,
            "order_status_update": self._on_order_status_update,
            "merchant_notification": self._on_merchant_notification,
            "user_activity": self._on_user_activity,
        }

    # --- Envelope helpers ---

    def _envelope(self, type_: str, data: Any = None, room: Optional[str] = None) -> Envelope:
        return Envelope(type=type_, data=data, room=room, timestamp=self._clock().isoformat())

    @staticmethod
    def generate_client_id() -> str:
        suffix = "".join(random.choices(_ID_ALPHABET, k=9))
        return f"client_{int(time.time() * 1000)}_{suffix}"

    # --- Lifecycle ---

    def accept(self, socket: Any, query_params: Mapping[str, str]) -> Connection:
        """Registers an already accepted socket and greets it with recent history."""
        client_id = self.generate_client_id()
        connection = Connection(
            id=client_id,
            socket=socket,
            merchant_id=query_params.get("merchant_id") or None,
            user_id=query_params.get("user_id") or None,
            token=query_params.get("token") or None,
            role=normalize_role(query_params.get("role")),
            connected_at=self._clock(),
        )
        self.connections.register(connection)
        connection.start_writer()

        logger.bind(service="RealtimeServer", client_id=client_id).info(
            f"Client connected ({connection.role} - {connection.merchant_id or connection.user_id})"
        )

        self.send_to_client(client_id, self._envelope("connection_established", {
            "clientId": client_id,
            "messageHistory": [e.to_dict() for e in self.history.recent(self.replay_size)],
        }))
        return connection

    def disconnect(self, connection_id: str) -> bool:
        """Removes the connection from every room, then from the registry. Safe to repeat."""
        connection = self.connections.get(connection_id)
        if connection is None:
            return False
        for room in list(connection.subscriptions):
            self.rooms.remove(room, connection_id)
        connection.subscriptions.clear()
        self.connections.remove(connection_id)
        connection.stop_writer()
        logger.bind(service="RealtimeServer", client_id=connection_id).info("Client disconnected")
        return True

    def handle_error(self, connection_id: str, error: BaseException) -> None:
        logger.bind(service="RealtimeServer", client_id=connection_id).error(f"Socket error: {error}")

    # --- Inbound ---

    def handle_inbound(self, connection_id: str, raw: str | bytes) -> None:
        connection = self.connections.get(connection_id)
        if connection is None:
            return
        log = logger.bind(service="RealtimeServer", client_id=connection_id)
        # Any frame proves the peer is alive
        connection.is_alive = True

        try:
            frame = InboundFrame.model_validate(json.loads(raw))
        except (ValueError, ValidationError) as e:
            log.warning(f"Dropping malformed frame: {e}")
            return

        handler = self._handlers.get(frame.type)
        if handler is None:
            log.info(f"Unknown message type: {frame.type}")
            return
        handler(connection, frame)

    def _on_ping(self, connection: Connection, frame: InboundFrame) -> None:
        self.send_to_client(connection.id, self._envelope("pong"))

    def _on_pong(self, connection: Connection, frame: InboundFrame) -> None:
        connection.is_alive = True

    def _on_subscribe(self, connection: Connection, frame: InboundFrame) -> None:
        self.subscribe(connection.id, frame.field("room"))

    def _on_unsubscribe(self, connection: Connection, frame: InboundFrame) -> None:
        self.unsubscribe(connection.id, frame.field("room"))

    def _on_bot_status_request(self, connection: Connection, frame: InboundFrame) -> None:
        self.broadcast_bot_status()

    def _on_order_status_update(self, connection: Connection, frame: InboundFrame) -> None:
        self.order_status_update(
            connection.id, frame.field("orderId"), frame.field("status"), frame.field("details"),
        )

    def _on_merchant_notification(self, connection: Connection, frame: InboundFrame) -> None:
        self.merchant_notification(
            connection.id, frame.field("merchantId"), frame.field("notification"),
            frame.field("level") or "info",
        )

    def _on_user_activity(self, connection: Connection, frame: InboundFrame) -> None:
        self.user_activity(connection.id, frame.field("action"), frame.field("details"))

    # --- Rooms ---

    def subscribe(self, connection_id: str, room: Optional[str]) -> bool:
        connection = self.connections.get(connection_id)
        if connection is None or not isinstance(room, str) or not room:
            return False

        room_size = self.rooms.add(room, connection_id)
        connection.subscriptions.add(room)
        logger.bind(service="RealtimeServer", client_id=connection_id).debug(f"Subscribed to {room}")

        self.send_to_client(connection_id, self._envelope("subscription_confirmed", {"room": room}, room=room))
        self.broadcast_to_room(room, self._envelope("user_joined", {
            "clientId": connection_id,
            "roomSize": room_size,
        }, room=room), exclude_id=connection_id)
        return True

    def unsubscribe(self, connection_id: str, room: Optional[str]) -> bool:
        connection = self.connections.get(connection_id)
        if connection is None or not isinstance(room, str) or not room:
            return False

        self.rooms.remove(room, connection_id)
        connection.subscriptions.discard(room)
        logger.bind(service="RealtimeServer", client_id=connection_id).debug(f"Unsubscribed from {room}")

        self.send_to_client(connection_id, self._envelope("unsubscription_confirmed", {"room": room}, room=room))
        return True

    # --- Domain events ---

    def order_status_update(self, connection_id: str, order_id: Any, status: Any, details: Any = None) -> Optional[Envelope]:
        connection = self.connections.get(connection_id)
        if connection is None:
            return None
        log = logger.bind(service="RealtimeServer", client_id=connection_id)
        if order_id in (None, "") or status in (None, ""):
            log.warning("order_status_update without orderId/status ignored")
            return None

        envelope = self._envelope("order_status_changed", {
            "orderId": order_id,
            "status": status,
            "details": details,
            "updatedBy": connection.role,
        })
        self.history.append(envelope)

        # Tenant comes from the registered identity, never from the payload
        if connection.merchant_id:
            self.broadcast_to_room(merchant_room(connection.merchant_id), envelope)
        else:
            log.debug("Connection has no merchant id; skipping merchant room fanout")
        self.broadcast_to_room(order_room(order_id), envelope)

        log.info(f"Order {order_id} updated to {status}")
        return envelope

    def merchant_notification(self, connection_id: str, merchant_id: Any, notification: Any, level: str = "info") -> Optional[Envelope]:
        connection = self.connections.get(connection_id)
        if connection is None:
            return None
        log = logger.bind(service="RealtimeServer", client_id=connection_id)

        if connection.role == "merchant":
            if merchant_id and str(merchant_id) != connection.merchant_id:
                log.warning(f"Merchant connection tried to notify merchant {merchant_id}; using its own tenant")
            merchant_id = connection.merchant_id
        elif connection.role == "customer":
            log.warning("Customer connection cannot send merchant notifications")
            return None
        if not merchant_id:
            log.warning("merchant_notification without a target merchant ignored")
            return None

        envelope = self._envelope("merchant_notification", {
            "merchantId": merchant_id,
            "notification": notification,
            "level": level,
            "sentBy": connection.role,
        })
        self.history.append(envelope)
        self.broadcast_to_room(merchant_room(merchant_id), envelope)
        log.info(f"Merchant {merchant_id} notification: {notification}")
        return envelope

    def user_activity(self, connection_id: str, action: Any, details: Any = None) -> Optional[Envelope]:
        connection = self.connections.get(connection_id)
        if connection is None:
            return None

        envelope = self._envelope("user_activity", {
            "userId": connection.user_id,
            "action": action,
            "details": details,
            "role": connection.role,
        })
        self.history.append(envelope)
        self.broadcast_to_room(ADMIN_ROOM, envelope)
        return envelope

    def broadcast_bot_status(self) -> Envelope:
        envelope = self._envelope("bot_status", {
            "connected": True,
            "connectedClients": len(self.connections),
            "activeRooms": len(self.rooms),
        })
        self.history.append(envelope)
        self.broadcast_all(envelope)
        return envelope

    def broadcast_new_order(self, order: Dict[str, Any]) -> Envelope:
        envelope = self._envelope("new_order", {"order": order})
        self.history.append(envelope)
        if order.get("merchant_id"):
            self.broadcast_to_room(merchant_room(order["merchant_id"]), envelope)
        self.broadcast_to_room(ADMIN_ROOM, envelope)
        return envelope

    def broadcast_bot_message(self, sender: str, text: str) -> Envelope:
        envelope = self._envelope("bot_message", {"from": sender, "text": text})
        self.history.append(envelope)
        self.broadcast_all(envelope)
        return envelope

    def publish_bridge_event(self, envelope: Envelope) -> None:
        """Fans out an event posted by the bot process through the HTTP bridge."""
        data = envelope.data if isinstance(envelope.data, dict) else {}
        log = logger.bind(service="RealtimeServer", bridge_event=envelope.type)

        if envelope.type == "new_order":
            order = data.get("order")
            if not isinstance(order, dict):
                log.warning("new_order bridge event without an order object ignored")
                return
            self.broadcast_new_order(order)
            return

        self.history.append(envelope)
        if envelope.type in ("bot_message", "bot_status"):
            self.broadcast_all(envelope)
        elif envelope.type == "order_status_changed":
            if data.get("merchantId"):
                self.broadcast_to_room(merchant_room(data["merchantId"]), envelope)
            if data.get("orderId"):
                self.broadcast_to_room(order_room(data["orderId"]), envelope)
        elif envelope.type == "merchant_notification" and data.get("merchantId"):
            self.broadcast_to_room(merchant_room(data["merchantId"]), envelope)
        else:
            self.broadcast_to_room(ADMIN_ROOM, envelope)
        log.debug("Bridge event published")

    # --- Outbound ---

    def send_to_client(self, connection_id: str, envelope: Envelope) -> bool:
        connection = self.connections.get(connection_id)
        if connection is None:
            return False
        return connection.enqueue(envelope.to_json())

    def broadcast_to_room(self, room: str, envelope: Envelope, exclude_id: Optional[str] = None) -> int:
        frame = envelope.to_json()
        delivered = 0
        for connection_id in self.rooms.members(room):
            if connection_id == exclude_id:
                continue
            connection = self.connections.get(connection_id)
            if connection is not None and connection.enqueue(frame):
                delivered += 1
        return delivered

    def broadcast_all(self, envelope: Envelope, exclude_id: Optional[str] = None) -> int:
        frame = envelope.to_json()
        delivered = 0
        for connection in self.connections.values():
            if connection.id == exclude_id or not connection.is_open:
                continue
            if connection.enqueue(frame):
                delivered += 1
        return delivered

    async def drain(self) -> None:
        """Waits until every queued frame has been handed to its socket."""
        await asyncio.gather(*(c.drain() for c in self.connections.values()))

    # --- Heartbeat ---

    async def sweep(self) -> List[str]:
        """One liveness pass. Returns the ids that were reaped."""
        reaped: List[str] = []
        for connection in self.connections.values():
            if not connection.is_alive:
                logger.bind(service="RealtimeServer", client_id=connection.id).warning("Terminating unresponsive client")
                self.disconnect(connection.id)
                reaped.append(connection.id)
                try:
                    await connection.socket.close(code=1001)
                except Exception as e:
                    logger.bind(service="RealtimeServer", client_id=connection.id).debug(f"Close after reap failed: {e}")
                continue
            connection.is_alive = False
            self.send_to_client(connection.id, self._envelope("ping"))
        return reaped

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            try:
                await self.sweep()
            except Exception:
                logger.exception("Heartbeat sweep failed")

    def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="ws-heartbeat")
            logger.info(f"Realtime heartbeat started (every {self.heartbeat_interval}s)")

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        for connection_id in self.connections.ids():
            self.disconnect(connection_id)
        logger.info("Realtime server stopped")

    # --- Stats ---

    def get_stats(self) -> RealtimeStats:
        return RealtimeStats(
            connected_clients=len(self.connections),
            active_rooms=len(self.rooms),
            message_history_size=len(self.history),
            clients=[
                ClientSummary(
                    id=c.id, role=c.role, merchant_id=c.merchant_id, user_id=c.user_id,
                    connected_at=c.connected_at, subscriptions=sorted(c.subscriptions),
                )
                for c in self.connections.values()
            ],
        )
