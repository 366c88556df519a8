# wacommerce/websocket/history.py

from collections import deque
from typing import Deque, List

from wacommerce.models.realtime import Envelope


class MessageHistory:
    """Last `max_size` broadcast envelopes, oldest evicted first.

    Only used to give late joiners some context; not a durability mechanism.
    """

    def __init__(self, max_size: int = 100):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self._items: Deque[Envelope] = deque(maxlen=max_size)

    def append(self, envelope: Envelope) -> None:
        self._items.append(envelope)

    def recent(self, count: int) -> List[Envelope]:
        if count <= 0:
            return []
        return list(self._items)[-count:]

    def snapshot(self) -> List[Envelope]:
        return list(self._items)

    def __len__(self) -> int:
        return len(self._items)
