# wacommerce/websocket/client.py

import asyncio
import inspect
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from urllib.parse import urlencode

import websockets
from loguru import logger
from pydantic import ValidationError
from websockets.exceptions import ConnectionClosed, WebSocketException

from wacommerce.models.realtime import Envelope

MessageHandler = Callable[[Any], Any]
ConnectionHandler = Callable[[bool], Any]

DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"


class RealtimeClient:
    """
    Application-facing handle to one logical realtime connection.

    Reconnects with linear backoff (`reconnect_delay * attempt`) up to
    `max_reconnect_attempts`, queues outbound envelopes while offline and keeps
    the socket alive with a ping/pong heartbeat. Subscriptions are explicit
    rooms; the server decides what each room receives.
    """

    def __init__(
        self,
        url: str,
        reconnect_delay: float = 3.0,
        max_reconnect_attempts: int = 5,
        heartbeat_interval: float = 30.0,
        pong_timeout: float = 5.0,
        connect_factory: Optional[Callable[[str], Awaitable[Any]]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.url = url
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self.heartbeat_interval = heartbeat_interval
        self.pong_timeout = pong_timeout
        self._connect_factory = connect_factory or websockets.connect
        self._sleep = sleep

        self.state = DISCONNECTED
        self.reconnect_attempts = 0
        self.connected_at: Optional[datetime] = None
        self.client_id: Optional[str] = None
        self.is_manually_disconnected = False

        self.merchant_id = ""
        self.token = ""
        self.user_id = ""
        self.role = "customer"

        self._socket: Any = None
        self._message_handlers: Dict[str, List[MessageHandler]] = {}
        self._connection_handlers: List[ConnectionHandler] = []
        self._queue: List[Envelope] = []
        self._reader_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._pong_timeout_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()

    # --- Connection ---

    @property
    def is_connected(self) -> bool:
        return self.state == CONNECTED and self._socket is not None

    def build_url(self) -> str:
        params = {}
        if self.merchant_id: params["merchant_id"] = self.merchant_id
        if self.user_id: params["user_id"] = self.user_id
        if self.token: params["token"] = self.token
        if self.role: params["role"] = self.role
        return f"{self.url}?{urlencode(params)}" if params else self.url

    async def connect(self, merchant_id: str, token: str, user_id: Optional[str] = None, role: Optional[str] = None) -> None:
        if self.is_connected:
            return
        self.is_manually_disconnected = False
        self.merchant_id = merchant_id or ""
        self.token = token or ""
        self.user_id = user_id or ""
        self.role = role or "customer"
        await self._open()

    async def _open(self) -> None:
        log = logger.bind(service="RealtimeClient", merchant_id=self.merchant_id)
        url = self.build_url()
        self.state = CONNECTING
        log.info(f"Connecting to {self.url}")
        try:
            self._socket = await self._connect_factory(url)
        except (OSError, WebSocketException, asyncio.TimeoutError) as e:
            log.warning(f"Connection failed: {e}")
            self._socket = None
            self._on_closed()
            raise ConnectionError(f"Could not connect to {self.url}: {e}") from e

        self.state = CONNECTED
        self.connected_at = datetime.now(timezone.utc)
        self.reconnect_attempts = 0
        self._reader_task = asyncio.create_task(self._read_loop(self._socket), name="realtime-client-reader")
        self._start_heartbeat()
        await self._flush_queue()
        log.success("Connected")
        self._notify_connection_handlers(True)

    async def disconnect(self) -> None:
        """Manual, terminal disconnect: no reconnect is scheduled afterwards."""
        self.is_manually_disconnected = True
        self._cancel_reconnect()
        self._stop_heartbeat()
        socket, self._socket = self._socket, None
        if socket is not None:
            try:
                await socket.close()
            except (OSError, WebSocketException) as e:
                logger.bind(service="RealtimeClient").debug(f"Error while closing socket: {e}")
        if self._reader_task is not None and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
        self._reader_task = None
        if self.state != DISCONNECTED:
            self.state = DISCONNECTED
            self._notify_connection_handlers(False)

    async def reconnect(self) -> None:
        """Manual retry after the automatic attempts were exhausted."""
        self._cancel_reconnect()
        self.reconnect_attempts = 0
        self.is_manually_disconnected = False
        if not self.is_connected:
            await self._open()

    async def _read_loop(self, socket: Any) -> None:
        log = logger.bind(service="RealtimeClient")
        try:
            async for raw in socket:
                self._handle_raw(raw)
        except ConnectionClosed as e:
            log.info(f"Connection closed: {e}")
        except asyncio.CancelledError:
            raise
        except Exception:
            log.exception("Realtime reader crashed")
        if self._socket is socket:
            self._socket = None
            self._on_closed()

    def _on_closed(self) -> None:
        self.state = DISCONNECTED
        self._stop_heartbeat()
        self._notify_connection_handlers(False)
        log = logger.bind(service="RealtimeClient")

        if self.is_manually_disconnected:
            return
        if self.reconnect_attempts >= self.max_reconnect_attempts:
            log.warning(f"Giving up after {self.reconnect_attempts} reconnect attempts")
            return
        self.reconnect_attempts += 1
        delay = self.reconnect_delay * self.reconnect_attempts
        log.info(f"Reconnecting ({self.reconnect_attempts}/{self.max_reconnect_attempts}) in {delay:.1f}s")
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay), name="realtime-client-reconnect")

    async def _reconnect_after(self, delay: float) -> None:
        await self._sleep(delay)
        self._reconnect_task = None
        if self.is_manually_disconnected or self.is_connected:
            return
        try:
            await self._open()
        except ConnectionError as e:
            # _open already scheduled the next attempt (if any remain)
            logger.bind(service="RealtimeClient").debug(f"Reconnection failed: {e}")

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task is not None and self._reconnect_task is not asyncio.current_task():
            self._reconnect_task.cancel()
        self._reconnect_task = None

    # --- Outbound ---

    async def send(self, type: str, data: Any = None, room: Optional[str] = None) -> None:
        envelope = Envelope(type=type, data=data, room=room)
        if self.is_connected:
            try:
                await self._socket.send(envelope.to_json())
                return
            except (ConnectionClosed, OSError) as e:
                logger.bind(service="RealtimeClient").warning(f"Send failed, queueing '{type}': {e}")
        self._queue.append(envelope)

    async def _flush_queue(self) -> None:
        if self._queue:
            logger.bind(service="RealtimeClient").info(f"Flushing {len(self._queue)} queued messages")
        while self._queue and self.is_connected:
            envelope = self._queue[0]
            try:
                await self._socket.send(envelope.to_json())
            except (ConnectionClosed, OSError) as e:
                logger.bind(service="RealtimeClient").warning(f"Flush interrupted: {e}")
                return
            self._queue.pop(0)

    @property
    def queued_messages(self) -> int:
        return len(self._queue)

    # --- Inbound ---

    def on(self, type: str, handler: MessageHandler) -> Callable[[], None]:
        self._message_handlers.setdefault(type, []).append(handler)
        return lambda: self.off(type, handler)

    def off(self, type: str, handler: MessageHandler) -> None:
        handlers = self._message_handlers.get(type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def on_connection_change(self, handler: ConnectionHandler) -> Callable[[], None]:
        self._connection_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._connection_handlers:
                self._connection_handlers.remove(handler)
        return unsubscribe

    def _handle_raw(self, raw: str | bytes) -> None:
        log = logger.bind(service="RealtimeClient")
        try:
            envelope = Envelope.from_json(raw)
        except (ValueError, ValidationError) as e:
            log.error(f"Failed to parse message: {e}")
            return

        if envelope.type == "pong":
            self._clear_pong_timeout()
        elif envelope.type == "ping":
            # Server heartbeat
            self._spawn(self.send("pong"), "pong reply")
        elif envelope.type == "connection_established" and isinstance(envelope.data, dict):
            self.client_id = envelope.data.get("clientId")
            log.info(f"Connection established with clientId {self.client_id} "
                     f"({len(envelope.data.get('messageHistory') or [])} history messages)")

        handlers = list(self._message_handlers.get(envelope.type, ()))
        if not handlers:
            if envelope.type not in ("pong", "ping"):
                log.debug(f"No handler registered for message type: {envelope.type}")
            return
        for handler in handlers:
            try:
                result = handler(envelope.data)
                if inspect.isawaitable(result):
                    self._spawn(result, f"handler for {envelope.type}")
            except Exception:
                log.exception(f"Error in handler for {envelope.type}")

    def _spawn(self, awaitable: Awaitable[Any], label: str) -> asyncio.Task:
        task = asyncio.ensure_future(awaitable)
        self._background_tasks.add(task)
        task.add_done_callback(lambda t: self._on_background_done(t, label))
        return task

    def _on_background_done(self, task: asyncio.Task, label: str) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.bind(service="RealtimeClient").opt(exception=error).error(f"Error in {label}")

    def _notify_connection_handlers(self, connected: bool) -> None:
        for handler in list(self._connection_handlers):
            try:
                handler(connected)
            except Exception:
                logger.bind(service="RealtimeClient").exception("Error in connection handler")

    # --- Heartbeat ---

    def _start_heartbeat(self) -> None:
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="realtime-client-heartbeat")

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None and self._heartbeat_task is not asyncio.current_task():
            self._heartbeat_task.cancel()
        self._heartbeat_task = None
        self._clear_pong_timeout()

    def _clear_pong_timeout(self) -> None:
        if self._pong_timeout_task is not None and self._pong_timeout_task is not asyncio.current_task():
            self._pong_timeout_task.cancel()
        self._pong_timeout_task = None

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not self.is_connected:
                continue
            await self.send("ping")
            # An unanswered deadline stays armed until a pong arrives
            if self._pong_timeout_task is None:
                self._pong_timeout_task = asyncio.create_task(self._pong_deadline(self._socket))

    async def _pong_deadline(self, socket: Any) -> None:
        await asyncio.sleep(self.pong_timeout)
        logger.bind(service="RealtimeClient").warning("Pong timeout - connection may be dead")
        self._pong_timeout_task = None
        try:
            await socket.close()
        except (OSError, WebSocketException) as e:
            logger.bind(service="RealtimeClient").debug(f"Close after pong timeout failed: {e}")

    # --- Info & typed helpers ---

    def get_connection_info(self) -> Dict[str, Any]:
        return {
            "connected": self.is_connected,
            "state": self.state,
            "connected_at": self.connected_at,
            "client_id": self.client_id,
            "merchant_id": self.merchant_id,
            "user_id": self.user_id,
            "role": self.role,
            "reconnect_attempts": self.reconnect_attempts,
            "queued_messages": len(self._queue),
        }

    async def subscribe_to_room(self, room: str) -> None:
        await self.send("subscribe", {"room": room})

    async def unsubscribe_from_room(self, room: str) -> None:
        await self.send("unsubscribe", {"room": room})

    def subscribe_to_orders(self, handler: MessageHandler) -> Callable[[], None]:
        return self.on("order_status_changed", handler)

    def subscribe_to_new_orders(self, handler: MessageHandler) -> Callable[[], None]:
        return self.on("new_order", handler)

    def subscribe_to_notifications(self, handler: MessageHandler) -> Callable[[], None]:
        return self.on("merchant_notification", handler)

    def subscribe_to_bot_status(self, handler: MessageHandler) -> Callable[[], None]:
        return self.on("bot_status", handler)

    def subscribe_to_bot_messages(self, handler: MessageHandler) -> Callable[[], None]:
        return self.on("bot_message", handler)

    def subscribe_to_user_activity(self, handler: MessageHandler) -> Callable[[], None]:
        return self.on("user_activity", handler)

    async def update_order_status(self, order_id: str, status: str, details: Any = None) -> None:
        await self.send("order_status_update", {"orderId": order_id, "status": status, "details": details})

    async def send_merchant_notification(self, merchant_id: str, notification: str, level: str = "info") -> None:
        await self.send("merchant_notification", {"merchantId": merchant_id, "notification": notification, "level": level})

    async def track_user_activity(self, action: str, details: Any = None) -> None:
        await self.send("user_activity", {"action": action, "details": details})

    async def request_bot_status(self) -> None:
        await self.send("bot_status_request")
