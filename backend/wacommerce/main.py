# wacommerce/main.py

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from starlette.exceptions import HTTPException as StarletteHTTPException

from wacommerce.api.endpoints.websocket import websocket_endpoint
from wacommerce.api.v1 import api_v1_router
from wacommerce.bot.commerce import CommerceAPIClient
from wacommerce.bot.dispatcher import BotDispatcher
from wacommerce.bot.events import EventEmitter
from wacommerce.bot.intents import IntentMatcher
from wacommerce.bot.parser import CommandParser
from wacommerce.bot.session import SessionCache
from wacommerce.core.config import Settings, get_settings
from wacommerce.core.logging_config import add_trace_id_middleware, setup_logging, trace_id_var
from wacommerce.models.api_common import ErrorDetail, RootStatus
from wacommerce.websocket.server import RealtimeServer

SHUTDOWN_DRAIN_TIMEOUT_SECONDS = 5.0


async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    log = logger.bind(trace_id=trace_id_var.get())
    log.warning(f"HTTP Exception Caught: {exc.detail}")
    return JSONResponse(status_code=exc.status_code, content=ErrorDetail(msg=str(exc.detail), type="http_exception").model_dump())


async def validation_exception_handler(request: Request, exc: RequestValidationError):
    log = logger.bind(trace_id=trace_id_var.get())
    log.warning(f"Validation Error: {exc.errors()}")
    first = exc.errors()[0] if exc.errors() else {}
    return JSONResponse(
        status_code=422,
        content=ErrorDetail(msg="Validation Error", type="validation_error", loc=list(first.get("loc", [])) or None).model_dump(),
    )


async def generic_exception_handler(request: Request, exc: Exception):
    log = logger.bind(trace_id=trace_id_var.get())
    log.exception(f"Unhandled Exception: {exc}")
    return JSONResponse(status_code=500, content=ErrorDetail(msg="Internal error", type="unhandled_exception").model_dump())


def create_app(
    settings: Optional[Settings] = None,
    commerce_transport: Optional[httpx.AsyncBaseTransport] = None,
    events_transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    """
    Builds the dashboard realtime server and the bot HTTP surface.

    Transports are only passed in tests, to fake the commerce API and the
    dashboard the bridge posts to.
    """
    settings = settings or get_settings()
    setup_logging(settings.LOG_LEVEL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {settings.PROJECT_NAME}...")
        realtime = RealtimeServer(
            history_size=settings.WS_HISTORY_SIZE,
            replay_size=settings.WS_HISTORY_REPLAY_SIZE,
            heartbeat_interval=settings.WS_HEARTBEAT_INTERVAL_SECONDS,
        )
        commerce = CommerceAPIClient(
            settings.COMMERCE_API_URL,
            api_key=settings.COMMERCE_API_KEY,
            timeout=settings.COMMERCE_API_TIMEOUT_SECONDS,
            transport=commerce_transport,
        )
        events = EventEmitter(
            settings.DASHBOARD_URL,
            api_key=settings.EVENTS_API_KEY,
            max_queue=settings.EVENT_QUEUE_SIZE,
            timeout=settings.EVENT_POST_TIMEOUT_SECONDS,
            retry_interval=settings.EVENT_RETRY_INTERVAL_SECONDS,
            transport=events_transport,
        )
        dispatcher = BotDispatcher(
            commerce,
            parser=CommandParser(settings.BOT_COMMAND_PREFIX, IntentMatcher()),
            sessions=SessionCache(settings.SESSION_TTL_SECONDS, settings.SESSION_MAX_ENTRIES),
            events=events,
        )

        app.state.realtime = realtime
        app.state.commerce = commerce
        app.state.events = events
        app.state.dispatcher = dispatcher

        realtime.start()
        events.start()
        logger.success("Realtime server and event bridge started.")
        yield

        logger.info("Shutting down...")
        try:
            await asyncio.wait_for(realtime.drain(), timeout=SHUTDOWN_DRAIN_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            logger.warning("Timed out draining outbound frames on shutdown.")
        await realtime.stop()
        await events.stop()
        await commerce.aclose()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        openapi_url=f"{settings.API_V1_STR}/openapi.json",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
        exception_handlers={
            StarletteHTTPException: http_exception_handler,
            RequestValidationError: validation_exception_handler,
            Exception: generic_exception_handler,
        },
    )
    app.state.settings = settings

    app.middleware("http")(add_trace_id_middleware)

    if settings.CORS_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.CORS_ORIGINS.split(",") if settings.CORS_ORIGINS != "*" else ["*"],
            allow_credentials=True, allow_methods=["*"], allow_headers=["*"],
        )

    app.include_router(api_v1_router, prefix=settings.API_V1_STR)
    app.add_api_websocket_route(settings.WS_PATH, websocket_endpoint, name="realtime_ws")

    @app.get("/", response_model=RootStatus, tags=["Health Check"], include_in_schema=False)
    async def read_root():
        return RootStatus(status="ok", project=settings.PROJECT_NAME, timestamp=datetime.now(timezone.utc))

    return app


app = create_app()
