# wacommerce/models/realtime.py

from pydantic import BaseModel, Field, ConfigDict
from typing import Any, Dict, List, Optional
from datetime import datetime, timezone
import json

ROLES = ("customer", "merchant", "super_admin", "dashboard")
DEFAULT_ROLE = "customer"

ADMIN_ROOM = "admin_dashboard"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def merchant_room(merchant_id: Any) -> str:
    return f"merchant_{merchant_id}"


def order_room(order_id: Any) -> str:
    return f"order_{order_id}"


def normalize_role(role: Optional[str]) -> str:
    return role if role in ROLES else DEFAULT_ROLE


class Envelope(BaseModel):
    """Typed JSON unit exchanged over the realtime connection."""
    type: str = Field(..., min_length=1, description="Routing tag, matched exactly.")
    data: Optional[Any] = None
    room: Optional[str] = None
    timestamp: str = Field(default_factory=utc_now_iso)

    model_config = ConfigDict(extra="ignore")

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    def to_dict(self) -> Dict[str, Any]:
        # Only absent top-level keys are omitted; nulls inside `data` are kept
        return {k: v for k, v in self.model_dump(mode="json").items() if v is not None}

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Envelope":
        return cls.model_validate(json.loads(raw))


class InboundFrame(BaseModel):
    """Raw inbound frame. Keeps unknown top-level keys so legacy clients that put
    fields beside `type` (instead of inside `data`) still route."""
    type: str
    data: Optional[Any] = None
    room: Optional[str] = None
    timestamp: Optional[str] = None

    model_config = ConfigDict(extra="allow")

    def field(self, name: str, default: Any = None) -> Any:
        if isinstance(self.data, dict) and name in self.data:
            return self.data[name]
        if name == "room" and self.room is not None:
            return self.room
        extras = self.model_extra or {}
        return extras.get(name, default)


class ClientSummary(BaseModel):
    id: str
    role: str
    merchant_id: Optional[str] = None
    user_id: Optional[str] = None
    connected_at: datetime
    subscriptions: List[str]


class RealtimeStats(BaseModel):
    connected_clients: int
    active_rooms: int
    message_history_size: int
    clients: List[ClientSummary]


class BridgeEventAccepted(BaseModel):
    status: str = "accepted"
    type: str
