# wacommerce/api/deps.py

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, status
from loguru import logger
from starlette.requests import HTTPConnection

from wacommerce.bot.commerce import CommerceAPIClient
from wacommerce.bot.dispatcher import BotDispatcher
from wacommerce.bot.events import EventEmitter
from wacommerce.core.config import Settings
from wacommerce.websocket.server import RealtimeServer

# Service instances are built by the app lifespan and live on app.state


def get_app_settings(conn: HTTPConnection) -> Settings:
    return conn.app.state.settings


def get_realtime_server(conn: HTTPConnection) -> RealtimeServer:
    return conn.app.state.realtime


def get_event_emitter(conn: HTTPConnection) -> EventEmitter:
    return conn.app.state.events


def get_bot_dispatcher(conn: HTTPConnection) -> BotDispatcher:
    return conn.app.state.dispatcher


def get_commerce_client(conn: HTTPConnection) -> CommerceAPIClient:
    return conn.app.state.commerce


async def verify_events_api_key(
    settings: Settings = Depends(get_app_settings),
    x_api_key: Optional[str] = Header(None, alias="X-API-Key"),
) -> None:
    """Shared-secret check for the bot -> dashboard bridge."""
    log = logger.bind(service="BridgeAuth")
    expected = settings.EVENTS_API_KEY
    if not expected:
        log.critical("EVENTS_API_KEY is not configured; refusing bridge events.")
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Event ingestion not configured")

    if not x_api_key or not hmac.compare_digest(x_api_key, expected):
        log.warning("Bridge event rejected: invalid or missing API key.")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API Key")
