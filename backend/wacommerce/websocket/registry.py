# wacommerce/websocket/registry.py

import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Set

from loguru import logger
from starlette.websockets import WebSocketState


class Connection:
    """One accepted socket plus the identity parsed from its query string.

    Outbound frames are queued and written by a dedicated task so that a slow
    peer never stalls a fanout loop.
    """

    def __init__(
        self,
        id: str,
        socket: Any,
        merchant_id: Optional[str] = None,
        user_id: Optional[str] = None,
        token: Optional[str] = None,
        role: str = "customer",
        connected_at: Optional[datetime] = None,
    ):
        self.id = id
        self.socket = socket
        self.merchant_id = merchant_id
        self.user_id = user_id
        self.token = token
        self.role = role
        self.connected_at = connected_at or datetime.now(timezone.utc)
        self.is_alive = True
        # Room names only; the RoomRegistry owns membership
        self.subscriptions: Set[str] = set()
        self._outbox: asyncio.Queue[str] = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None

    @property
    def is_open(self) -> bool:
        return (
            getattr(self.socket, "application_state", None) == WebSocketState.CONNECTED
            and getattr(self.socket, "client_state", WebSocketState.CONNECTED) == WebSocketState.CONNECTED
        )

    def start_writer(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop(), name=f"ws-writer-{self.id}")

    def stop_writer(self) -> None:
        if self._writer is not None:
            self._writer.cancel()
            self._writer = None
        # Unblock drain() waiters
        while not self._outbox.empty():
            self._outbox.get_nowait()
            self._outbox.task_done()

    def enqueue(self, frame: str) -> bool:
        if not self.is_open:
            return False
        self._outbox.put_nowait(frame)
        return True

    async def drain(self) -> None:
        await self._outbox.join()

    async def _write_loop(self) -> None:
        log = logger.bind(service="RealtimeServer", client_id=self.id)
        while True:
            frame = await self._outbox.get()
            try:
                if self.is_open:
                    await self.socket.send_text(frame)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                # Closed/broken socket: drop the frame, close handling does the cleanup
                log.warning(f"Failed to write frame: {e}")
            finally:
                self._outbox.task_done()


class ConnectionRegistry:
    """connection id -> Connection."""

    def __init__(self):
        self._connections: Dict[str, Connection] = {}

    def register(self, connection: Connection) -> None:
        self._connections[connection.id] = connection

    def get(self, connection_id: str) -> Optional[Connection]:
        return self._connections.get(connection_id)

    def remove(self, connection_id: str) -> Optional[Connection]:
        return self._connections.pop(connection_id, None)

    def ids(self) -> List[str]:
        return list(self._connections.keys())

    def values(self) -> List[Connection]:
        return list(self._connections.values())

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def __len__(self) -> int:
        return len(self._connections)

    def __iter__(self) -> Iterator[Connection]:
        return iter(self.values())


class RoomRegistry:
    """room name -> set of connection ids. Rooms exist only while non-empty."""

    def __init__(self):
        self._rooms: Dict[str, Set[str]] = {}

    def add(self, room: str, connection_id: str) -> int:
        members = self._rooms.setdefault(room, set())
        members.add(connection_id)
        return len(members)

    def remove(self, room: str, connection_id: str) -> bool:
        members = self._rooms.get(room)
        if members is None:
            return False
        members.discard(connection_id)
        if not members:
            del self._rooms[room]
        return True

    def members(self, room: str) -> List[str]:
        # Copy: callers may mutate the registry while iterating
        return list(self._rooms.get(room, ()))

    def size(self, room: str) -> int:
        return len(self._rooms.get(room, ()))

    def rooms(self) -> List[str]:
        return list(self._rooms.keys())

    def __contains__(self, room: object) -> bool:
        return room in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)
