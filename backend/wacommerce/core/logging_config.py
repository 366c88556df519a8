# wacommerce/core/logging_config.py

import sys
import logging
from loguru import logger
from wacommerce.core.config import settings
import uuid
import contextvars
from datetime import datetime, timezone

# Trace id for the current request, socket or conversation turn
trace_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("trace_id", default="unset")

logger.configure(extra={"trace_id": "unset"})


class InterceptHandler(logging.Handler):
    """Routes stdlib logging records (uvicorn, httpx, websockets) into Loguru."""

    def emit(self, record: logging.LogRecord):
        try: level = logger.level(record.levelname).name
        except ValueError: level = record.levelno

        # Find the caller outside the logging module
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        if frame is None: frame = logging.currentframe(); depth = 0

        logger.opt(depth=depth, exception=record.exc_info).bind(
            trace_id=trace_id_var.get()
        ).log(level, record.getMessage())


def setup_logging(log_level: str | None = None):
    """Configures Loguru as the main sink and intercepts stdlib logging."""
    logger.remove()

    log_level = (log_level or settings.LOG_LEVEL).upper()
    diagnose_flag = log_level == "DEBUG"

    logger.add(
        sys.stderr,
        level=log_level,
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}Z</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{name}:{function}:{line}</cyan> | "
            "<magenta>TID:{extra[trace_id]: >12.12}</magenta> | "
            "<level>{message}</level>"
        ),
        enqueue=True,
        backtrace=True,
        diagnose=diagnose_flag,
        colorize=True
    )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.INFO)

    logger.success(f"Loguru configured. Console log level: {log_level}")


def new_trace_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


async def add_trace_id_middleware(request, call_next):
    """Generates/propagates a trace id through contextvars for each HTTP request."""
    request_trace_id = request.headers.get("X-Trace-ID") or new_trace_id("req")
    token = trace_id_var.set(request_trace_id)

    with logger.contextualize(trace_id=request_trace_id):
        client_host = request.client.host if request.client else "unknown_host"
        logger.info(f"Request START: {request.method} {request.url.path} from {client_host}")
        start_time = datetime.now(timezone.utc)
        try:
            response = await call_next(request)
            response.headers["X-Trace-ID"] = request_trace_id
            duration_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
            logger.info(f"Request END: {request.method} {request.url.path} Status: {response.status_code} Duration: {duration_ms:.2f}ms")
            return response
        except Exception:
            duration_ms = (datetime.now(timezone.utc) - start_time).total_seconds() * 1000
            logger.exception(f"Unhandled exception during request {request.method} {request.url.path}. Duration: {duration_ms:.2f}ms")
            raise
        finally:
            trace_id_var.reset(token)
