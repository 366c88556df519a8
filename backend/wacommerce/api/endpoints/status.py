# wacommerce/api/endpoints/status.py
from fastapi import APIRouter, Depends, Response, status as http_status
from loguru import logger
import time as process_time
from datetime import datetime, timezone
from typing import Dict, Literal, Optional
from pydantic import BaseModel, Field

from wacommerce.core.logging_config import trace_id_var
from wacommerce.api.deps import get_commerce_client, get_event_emitter, get_realtime_server
from wacommerce.bot.commerce import CommerceAPIClient
from wacommerce.bot.events import EventEmitter
from wacommerce.websocket.server import RealtimeServer


class ComponentStatus(BaseModel):
    status: Literal["ok", "error", "unavailable"] = "ok"
    message: Optional[str] = None


class HealthCheckResponse(BaseModel):
    overall_status: Literal["ok", "error"] = "ok"
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    uptime_seconds: float = Field(..., description="Process uptime in seconds")
    components: Dict[str, ComponentStatus]


PROCESS_START_TIME = process_time.monotonic()

router = APIRouter()


@router.get(
    "/healthcheck",
    response_model=HealthCheckResponse,
    tags=["Status & Health"],
    summary="Application Health and Component Status Check"
)
async def get_application_health(
    commerce: CommerceAPIClient = Depends(get_commerce_client),
    server: RealtimeServer = Depends(get_realtime_server),
    events: EventEmitter = Depends(get_event_emitter),
):
    log = logger.bind(trace_id=trace_id_var.get(), api_endpoint="/healthcheck GET")
    log.info("Performing application health check...")

    component_statuses: Dict[str, ComponentStatus] = {}
    critical_ok = True

    try:
        stats = server.get_stats()
        component_statuses["realtime_server"] = ComponentStatus(
            status="ok", message=f"{stats.connected_clients} client(s), {stats.active_rooms} room(s)"
        )
    except Exception as e:
        err_msg = f"Realtime server check failed: {e}"
        log.error(err_msg)
        component_statuses["realtime_server"] = ComponentStatus(status="error", message=err_msg)
        critical_ok = False

    # Bridge and commerce API are optional: degraded, not failed
    bridge = events.get_stats()
    if not bridge["enabled"]:
        component_statuses["event_bridge"] = ComponentStatus(status="unavailable", message="Disabled")
    elif bridge["connected"]:
        component_statuses["event_bridge"] = ComponentStatus(status="ok", message=f"{bridge['queued_events']} queued")
    else:
        component_statuses["event_bridge"] = ComponentStatus(
            status="unavailable", message=f"Dashboard unreachable, {bridge['queued_events']} queued"
        )

    if commerce.configured:
        component_statuses["commerce_api"] = ComponentStatus(status="ok")
    else:
        component_statuses["commerce_api"] = ComponentStatus(status="unavailable", message="COMMERCE_API_URL not set")

    uptime_seconds = process_time.monotonic() - PROCESS_START_TIME
    overall_status: Literal["ok", "error"] = "ok" if critical_ok else "error"

    response_payload = HealthCheckResponse(
        overall_status=overall_status,
        uptime_seconds=uptime_seconds,
        components=component_statuses
    )

    status_code = http_status.HTTP_200_OK if critical_ok else http_status.HTTP_503_SERVICE_UNAVAILABLE
    return Response(
        content=response_payload.model_dump_json(exclude_none=True),
        status_code=status_code,
        media_type="application/json"
    )
