"""
zcoder.api.collab_ws
~~~~~~~~~~~~~~~~~~~~

WebSocket 实时协作接口。

提供 ``/ws/collab`` 端点。连接建立后处于未绑定状态，客户端发送
``join-room{roomId, userId}`` 绑定到房间，之后的代码、光标、聊天事件
都经由该房间的会话串行处理并广播。

帧格式（上下行一致）::

    {"event": "<事件名>", "data": {...}}
"""
from __future__ import annotations

import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from zcoder.core.logging import get_logger, request_id_ctx_var
from zcoder.services.binder import ConnectionBinder
from zcoder.services.connection import LiveConnection
from zcoder.services.dispatcher import CollabDispatcher

logger = get_logger(__name__)

router: APIRouter = APIRouter()


@router.websocket("/ws/collab")
async def websocket_collab_endpoint(websocket: WebSocket) -> None:
    """WebSocket 协作端点。

    接收循环逐帧交给 ``CollabDispatcher``；连接断开（正常或异常）时
    同步解绑，断开后的连接不再被任何房间接受。

    Args:
        websocket: FastAPI WebSocket 连接对象。
    """
    ws_req_id = f"ws-{uuid.uuid4().hex[:8]}"
    token = request_id_ctx_var.set(ws_req_id)

    binder: ConnectionBinder = websocket.app.state.binder
    dispatcher: CollabDispatcher = websocket.app.state.dispatcher
    connection = LiveConnection(websocket)

    await websocket.accept()
    logger.info("协作连接已建立 | conn=%s", connection.connection_id)
    try:
        while True:
            raw = await websocket.receive_text()
            await dispatcher.handle_text(connection, raw)
    except WebSocketDisconnect:
        pass  # 正常断开
    except Exception as e:
        logger.error("WebSocket 接收异常: %s | conn=%s", e, connection.connection_id, exc_info=True)
    finally:
        room_id = connection.room_id
        await binder.unbind(connection, closing=True)
        dispatcher.forget(connection)
        logger.info("协作连接已断开 | conn=%s | room=%s", connection.connection_id, room_id)
        request_id_ctx_var.reset(token)
