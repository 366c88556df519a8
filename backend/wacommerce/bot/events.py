# wacommerce/bot/events.py

import asyncio
from collections import deque
from typing import Any, Deque, Dict, Optional

import httpx
from loguru import logger

from wacommerce.models.realtime import Envelope

EVENTS_PATH = "/api/v1/events"
HEALTH_PATH = "/"


class EventEmitter:
    """
    Bot -> dashboard bridge.

    Events are queued (bounded, oldest dropped) and posted one at a time, in
    enqueue order, to the dashboard's realtime server. A failed post marks the
    bridge disconnected and leaves the event at the head of the queue; the
    probe loop (see `start`) restores connectivity and resumes the flush.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        max_queue: int = 100,
        timeout: float = 5.0,
        retry_interval: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.enabled = True
        self.is_connected = False
        self.retry_interval = retry_interval
        self.dropped_events = 0
        self._queue: Deque[Envelope] = deque(maxlen=max_queue)
        headers = {"X-API-Key": api_key} if api_key else {}
        self._client = httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=timeout, transport=transport)
        self._flush_task: Optional[asyncio.Task] = None
        self._probe_task: Optional[asyncio.Task] = None

    # --- Typed events ---

    def bot_connected(self, phone_number: str, device_info: Optional[Dict[str, Any]] = None) -> None:
        self.broadcast("bot_status", {"event": "connected", "phoneNumber": phone_number, "deviceInfo": device_info or {}})

    def bot_disconnected(self, reason: str = "unknown") -> None:
        self.broadcast("bot_status", {"event": "disconnected", "reason": reason})

    def message_received(self, sender: str, text: str, has_media: bool = False) -> None:
        self.broadcast("bot_message", {"from": sender, "text": text, "hasMedia": has_media})

    def message_sent(self, recipient: str, text: str, message_id: Optional[str] = None) -> None:
        self.broadcast("bot_message_sent", {"to": recipient, "text": text, "messageId": message_id})

    def command_executed(self, sender: str, command: str, args: Optional[list] = None, status: str = "success") -> None:
        self.broadcast("command_executed", {"from": sender, "command": command, "args": args or [], "status": status})

    def order_created(self, order: Dict[str, Any]) -> None:
        self.broadcast("new_order", {"order": order})

    def order_status_changed(self, order_id: str, old_status: Optional[str], new_status: str,
                             merchant_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None) -> None:
        self.broadcast("order_status_changed", {
            "orderId": order_id, "oldStatus": old_status, "status": new_status,
            "merchantId": merchant_id, "details": details or {},
        })

    def user_activity(self, user_id: str, action: str, details: Optional[Dict[str, Any]] = None) -> None:
        self.broadcast("user_activity", {"userId": user_id, "action": action, "details": details or {}})

    def merchant_notification(self, merchant_id: str, notification: str, level: str = "info") -> None:
        self.broadcast("merchant_notification", {"merchantId": merchant_id, "notification": notification, "level": level})

    def inventory_updated(self, product_id: str, old_quantity: int, new_quantity: int) -> None:
        self.broadcast("inventory_updated", {"productId": product_id, "oldQuantity": old_quantity, "newQuantity": new_quantity})

    def error_occurred(self, context: str, error: BaseException) -> None:
        # Type and message only; tracebacks stay in the bot's own logs
        self.broadcast("error", {"context": context, "errorType": type(error).__name__, "message": str(error)})

    # --- Queue ---

    def broadcast(self, type: str, data: Any = None) -> None:
        if not self.enabled:
            return
        if len(self._queue) == self._queue.maxlen:
            self.dropped_events += 1
            logger.bind(service="EventEmitter").warning(f"Event queue full, dropping oldest event ({self._queue[0].type})")
        self._queue.append(Envelope(type=type, data=data))
        if self.is_connected:
            self._schedule_flush()

    def _schedule_flush(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            return
        try:
            self._flush_task = asyncio.get_running_loop().create_task(self.flush_queue(), name="event-bridge-flush")
        except RuntimeError:
            # No loop (sync caller); the next connectivity signal flushes
            logger.bind(service="EventEmitter").debug("No running loop; flush deferred")

    async def flush_queue(self) -> int:
        """Posts queued events in order until the queue is empty or a post fails."""
        sent = 0
        if self._queue:
            logger.bind(service="EventEmitter").info(f"Flushing {len(self._queue)} queued events")
        while self._queue and self.is_connected:
            event = self._queue[0]
            if not await self._send(event):
                self.is_connected = False
                break
            # Head may have been evicted by an overflow while we were awaiting
            if self._queue and self._queue[0] is event:
                self._queue.popleft()
            sent += 1
        return sent

    async def _send(self, event: Envelope) -> bool:
        log = logger.bind(service="EventEmitter", event_type=event.type)
        try:
            response = await self._client.post(EVENTS_PATH, json=event.to_dict())
            response.raise_for_status()
            return True
        except httpx.HTTPStatusError as e:
            log.error(f"Dashboard rejected event: HTTP {e.response.status_code}")
        except httpx.RequestError as e:
            log.error(f"Failed to send event to server: {e}")
        return False

    # --- Connectivity ---

    def set_connected(self, connected: bool) -> None:
        self.is_connected = connected
        if connected:
            self._schedule_flush()

    def set_enabled(self, enabled: bool) -> None:
        self.enabled = enabled

    async def probe(self) -> bool:
        """Checks the dashboard is reachable; on success restores the bridge."""
        try:
            response = await self._client.get(HEALTH_PATH)
            reachable = response.status_code < 500
        except httpx.RequestError:
            reachable = False
        if reachable and not self.is_connected:
            logger.bind(service="EventEmitter").info("Dashboard reachable again")
            self.set_connected(True)
        return reachable

    async def _probe_loop(self) -> None:
        while True:
            if not self.is_connected:
                await self.probe()
            await asyncio.sleep(self.retry_interval)

    def start(self) -> None:
        if self._probe_task is None:
            self._probe_task = asyncio.create_task(self._probe_loop(), name="event-bridge-probe")

    async def stop(self) -> None:
        for task in (self._probe_task, self._flush_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._probe_task = None
        self._flush_task = None
        await self._client.aclose()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "connected": self.is_connected,
            "queued_events": len(self._queue),
            "dropped_events": self.dropped_events,
        }

    @property
    def queued(self) -> list:
        return list(self._queue)
