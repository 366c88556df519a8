# wacommerce/api/endpoints/events.py

from fastapi import APIRouter, Depends, status
from loguru import logger

from wacommerce.api.deps import get_realtime_server, verify_events_api_key
from wacommerce.core.logging_config import trace_id_var
from wacommerce.models.realtime import BridgeEventAccepted, Envelope, RealtimeStats
from wacommerce.websocket.server import RealtimeServer

router = APIRouter()


@router.post(
    "/events",
    response_model=BridgeEventAccepted,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(verify_events_api_key)],
    tags=["Realtime"],
    summary="Ingest an event posted by the bot process",
)
async def ingest_bridge_event(
    event: Envelope,
    server: RealtimeServer = Depends(get_realtime_server),
):
    log = logger.bind(trace_id=trace_id_var.get(), api_endpoint="/events POST", event_type=event.type)
    log.debug("Bridge event received")
    server.publish_bridge_event(event)
    return BridgeEventAccepted(type=event.type)


@router.get(
    "/realtime/stats",
    response_model=RealtimeStats,
    tags=["Realtime"],
    summary="Connected clients, rooms and history size",
)
async def get_realtime_stats(server: RealtimeServer = Depends(get_realtime_server)):
    return server.get_stats()
