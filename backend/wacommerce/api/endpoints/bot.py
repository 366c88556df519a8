# wacommerce/api/endpoints/bot.py

from fastapi import APIRouter, Depends
from loguru import logger

from wacommerce.api.deps import get_bot_dispatcher, get_event_emitter
from wacommerce.bot.dispatcher import BotDispatcher
from wacommerce.bot.events import EventEmitter
from wacommerce.core.logging_config import trace_id_var
from wacommerce.models.bot import BotTurnRequest, BotTurnResponse

router = APIRouter()


@router.post(
    "/messages",
    response_model=BotTurnResponse,
    tags=["Bot"],
    summary="Run one conversation turn for an inbound chat message",
)
async def handle_bot_message(
    turn: BotTurnRequest,
    dispatcher: BotDispatcher = Depends(get_bot_dispatcher),
    events: EventEmitter = Depends(get_event_emitter),
):
    """
    Classifies the text (command or natural-language intent), runs it against
    the commerce API and returns the replies for the messaging adapter to send.
    Business failures come back as chat messages, never as HTTP errors.
    """
    log = logger.bind(trace_id=trace_id_var.get(), api_endpoint="/bot/messages POST", merchant_id=turn.merchant_id)
    log.info(f"Bot turn received ({len(turn.text)} chars)")

    messages = await dispatcher.handle_message(turn.phone, turn.text, turn.merchant_id)
    for message in messages:
        events.message_sent(turn.phone, message.content)

    log.info(f"Bot turn produced {len(messages)} message(s)")
    return BotTurnResponse(messages=messages)
