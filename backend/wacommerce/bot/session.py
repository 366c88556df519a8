# wacommerce/bot/session.py

import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Tuple

from loguru import logger

from wacommerce.models.bot import ConversationState


class SessionCache:
    """
    phone -> last conversational context, bounded (LRU) and expiring (TTL).

    Only used to resolve follow-up replies such as "2" after a numbered list.
    Carts and orders live in the commerce API; losing this cache on restart
    only loses that disambiguation.
    """

    def __init__(self, ttl_seconds: float = 1800.0, max_entries: int = 10_000, clock: Callable[[], float] = time.monotonic):
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, Tuple[float, ConversationState]]" = OrderedDict()

    def get(self, phone: str) -> Optional[ConversationState]:
        entry = self._entries.get(phone)
        if entry is None:
            return None
        stored_at, state = entry
        if self._clock() - stored_at > self.ttl_seconds:
            del self._entries[phone]
            return None
        self._entries.move_to_end(phone)
        return state

    def set(self, phone: str, step: str, context: Optional[Dict[str, Any]] = None, **fields: Any) -> ConversationState:
        state = ConversationState(step=step, context=context or {}, **fields)
        self._entries[phone] = (self._clock(), state)
        self._entries.move_to_end(phone)
        if len(self._entries) > self.max_entries:
            self.purge_expired()
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.bind(service="SessionCache").debug(f"Evicted session for {evicted}")
        return state

    def clear(self, phone: str) -> None:
        self._entries.pop(phone, None)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [p for p, (stored_at, _) in self._entries.items() if now - stored_at > self.ttl_seconds]
        for phone in expired:
            del self._entries[phone]
        return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, phone: object) -> bool:
        return phone in self._entries
