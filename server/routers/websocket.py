"""WebSocket router for local clients.

Local clients (the add-on UI and other LAN consumers) connect to /ws and get:
- connection_status on connect and on every hub connect/disconnect
- state_changed broadcasts for every hub state change
- request/response calls: call_service, get_states, ping

A client-supplied "id" is echoed on the reply. Errors are reported as
{"type": "error", "error": ..., "id": ...} and never close the connection.
"""

import asyncio
from typing import Dict, Any, Callable, Awaitable, Optional, Set

import orjson
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from constants import LOCAL_WS_PATH
from core.container import container
from core.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["websocket"])


# Type for message handlers
MessageHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]

# Queued in place of a frame that carried no text
_NON_TEXT_FRAME = object()


class MissingFieldError(ValueError):
    """A required message field was absent or empty."""


def ws_handler(*required_fields: str):
    """Decorator for WebSocket handlers. Validates required fields."""
    def decorator(func: MessageHandler) -> MessageHandler:
        async def wrapper(data: Dict[str, Any]) -> Dict[str, Any]:
            missing = [field for field in required_fields if not data.get(field)]
            if missing:
                raise MissingFieldError(f"{' and '.join(missing)} required")
            return await func(data)
        return wrapper
    return decorator


# ============================================================================
# Message Handlers
# ============================================================================

@ws_handler("domain", "service")
async def handle_call_service(data: Dict[str, Any]) -> Dict[str, Any]:
    """Call a hub service and return its result."""
    result = await container.hub_client().call_service(
        data["domain"],
        data["service"],
        data.get("data"),
        data.get("target"),
    )
    return {"type": "service_result", "success": True, "result": result}


@ws_handler()
async def handle_get_states(data: Dict[str, Any]) -> Dict[str, Any]:
    states = await container.hub_client().get_states()
    return {"type": "states", "data": states}


@ws_handler()
async def handle_ping(data: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": "pong"}


MESSAGE_HANDLERS: Dict[str, MessageHandler] = {
    "call_service": handle_call_service,
    "get_states": handle_get_states,
    "ping": handle_ping,
}


async def _execute_handler(
    handler: MessageHandler,
    data: Dict[str, Any],
    websocket: WebSocket,
    msg_type: str,
    request_id: Optional[Any]
):
    """Run one handler and send its reply (or its error) to the caller."""
    broadcaster = container.broadcaster()
    try:
        result = await handler(data)
    except asyncio.CancelledError:
        logger.debug(f"[WebSocket] Handler cancelled: {msg_type}")
        raise
    except Exception as e:
        logger.error("[WebSocket] Handler error", msg_type=msg_type, error=str(e))
        await broadcaster.send_error(websocket, str(e), request_id)
        return
    await broadcaster.send(websocket, result, request_id)


def _parse_message(text: str) -> Optional[Dict[str, Any]]:
    try:
        data = orjson.loads(text)
    except orjson.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


async def _serve_client(websocket: WebSocket):
    """Decoupled receive/process loops for one local client.

    The receive task never blocks on hub calls, so a slow get_states does not
    hold up a ping sent after it.
    """
    broadcaster = container.broadcaster()
    await broadcaster.connect(websocket)

    message_queue: asyncio.Queue = asyncio.Queue()
    handler_tasks: Set[asyncio.Task] = set()

    async def receive_loop():
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000))
                text = message.get("text")
                await message_queue.put(_NON_TEXT_FRAME if text is None else text)
        except WebSocketDisconnect:
            await message_queue.put(None)
        except asyncio.CancelledError:
            await message_queue.put(None)
            raise
        except Exception as e:
            logger.error(f"[WebSocket] Receive error: {e}")
            await message_queue.put(None)

    async def process_loop():
        while True:
            text = await message_queue.get()
            if text is None:
                break

            if text is _NON_TEXT_FRAME:
                await broadcaster.send_error(websocket, "Invalid message")
                continue

            data = _parse_message(text)
            if data is None:
                await broadcaster.send_error(websocket, "Invalid JSON")
                continue

            msg_type = data.get("type", "")
            request_id = data.get("id")
            logger.debug("[WebSocket] Message received", msg_type=msg_type, has_id=request_id is not None)

            handler = MESSAGE_HANDLERS.get(msg_type)
            if handler:
                task = asyncio.create_task(
                    _execute_handler(handler, data, websocket, msg_type, request_id)
                )
                handler_tasks.add(task)
                task.add_done_callback(handler_tasks.discard)
            else:
                logger.warning("[WebSocket] Unknown message type", msg_type=msg_type)
                await broadcaster.send_error(websocket, f"Unknown message type: {msg_type}", request_id)

    try:
        async with asyncio.TaskGroup() as tg:
            tg.create_task(receive_loop())
            tg.create_task(process_loop())
    except* WebSocketDisconnect:
        pass
    except* Exception as eg:
        for exc in eg.exceptions:
            logger.error(f"[WebSocket] TaskGroup error: {exc}")
    finally:
        for task in list(handler_tasks):
            if not task.done():
                task.cancel()
        if handler_tasks:
            await asyncio.gather(*handler_tasks, return_exceptions=True)
        await broadcaster.disconnect(websocket)


@router.websocket(LOCAL_WS_PATH)
async def websocket_endpoint(websocket: WebSocket):
    """Local client endpoint."""
    await _serve_client(websocket)


@router.websocket("/api/hassio_ingress/{ingress_token}" + LOCAL_WS_PATH)
async def websocket_ingress_endpoint(websocket: WebSocket, ingress_token: str):
    """Same endpoint reached through the Supervisor ingress prefix."""
    await _serve_client(websocket)
