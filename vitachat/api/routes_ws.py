"""
WebSocket 入口：一个 socket 对应一个 Connection，收到的文本帧交给 ChatSocketHandler。
"""

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from config.settings import settings
from vitachat.api.deps import get_services
from vitachat.log import get_logger
from vitachat.realtime.connection import Connection

logger = get_logger(__name__)

router = APIRouter(tags=["realtime"])


async def _receive_frame(websocket: WebSocket) -> str:
    """文本帧原样返回；二进制帧按 UTF-8 解码后同样交给 handler 校验。"""
    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
    text = message.get("text")
    if text is not None:
        return text
    return (message.get("bytes") or b"").decode("utf-8", errors="replace")


@router.websocket(settings.realtime.ws_path)
async def chat_socket(websocket: WebSocket) -> None:
    services = get_services(websocket)
    await websocket.accept()
    conn = Connection(websocket)
    conn.start()
    logger.info("[ws] connection %s opened", conn.id)

    try:
        while conn.is_open:
            raw = await _receive_frame(websocket)
            await services.socket_handler.handle_text(conn, raw)
    except WebSocketDisconnect as e:
        logger.info("[ws] connection %s disconnected (code=%s)", conn.id, e.code)
    except RuntimeError as e:
        # receive after the server already closed the socket
        logger.debug("[ws] connection %s receive loop ended: %s", conn.id, e)
    finally:
        services.registry.connection_closed(conn)
