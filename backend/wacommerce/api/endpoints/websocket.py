# wacommerce/api/endpoints/websocket.py

from fastapi import Depends, WebSocket, WebSocketDisconnect
from loguru import logger

from wacommerce.api.deps import get_realtime_server
from wacommerce.core.logging_config import new_trace_id, trace_id_var
from wacommerce.websocket.server import RealtimeServer


async def websocket_endpoint(
    websocket: WebSocket,
    server: RealtimeServer = Depends(get_realtime_server),
):
    """
    Realtime endpoint. Identity comes from the query string:
    `merchant_id`, `user_id`, `token`, `role` (default `customer`).
    """
    trace_id = new_trace_id("ws")
    trace_id_var.set(trace_id)
    log = logger.bind(trace_id=trace_id, websocket_client=f"{websocket.client.host}:{websocket.client.port}" if websocket.client else "unknown")

    await websocket.accept()
    connection = server.accept(websocket, websocket.query_params)
    log = log.bind(client_id=connection.id)

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                log.info(f"WebSocket disconnected (code: {message.get('code')}).")
                break
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes")
            if raw is not None:
                server.handle_inbound(connection.id, raw)
    except WebSocketDisconnect as e:
        log.info(f"WebSocket disconnected cleanly (code: {e.code}).")
    except Exception as e:
        server.handle_error(connection.id, e)
    finally:
        server.disconnect(connection.id)
        log.debug("WebSocket cleanup complete.")
