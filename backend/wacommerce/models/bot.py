# wacommerce/models/bot.py

from pydantic import BaseModel, Field, ConfigDict
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime, timezone


class BotButton(BaseModel):
    id: str
    label: str


class BotListItem(BaseModel):
    id: str
    title: str
    description: Optional[str] = None


class BotMessage(BaseModel):
    """One outbound chat message produced by a conversation turn."""
    type: Literal["text", "buttons", "list"] = "text"
    content: str
    buttons: Optional[List[BotButton]] = None
    list_items: Optional[List[BotListItem]] = Field(None, alias="listItems")

    model_config = ConfigDict(populate_by_name=True)


class ConversationState(BaseModel):
    """Ephemeral multi-turn context for one phone number."""
    step: str
    context: Dict[str, Any] = Field(default_factory=dict)
    merchant_id: Optional[str] = None
    user_role: Optional[str] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# --- API payloads ---

class BotTurnRequest(BaseModel):
    """Payload for POST /bot/messages."""
    phone: str = Field(..., min_length=3, description="Sender phone number / WA id.")
    text: str = Field(..., description="Raw inbound chat text.")
    merchant_id: str = Field(..., min_length=1, description="Tenant the conversation belongs to.")

    model_config = ConfigDict(json_schema_extra={"example": {"phone": "263771234567", "text": "!menu", "merchant_id": "m1"}})


class BotTurnResponse(BaseModel):
    messages: List[BotMessage]
