"""
zcoder.services.dispatcher
~~~~~~~~~~~~~~~~~~~~~~~~~~

上行事件分发 —— 解析 WebSocket 上行帧，路由到绑定器或房间会话。

业务错误、参数错误只回给发起连接一条 ``error{message}``，连接保持打开。
"""
from __future__ import annotations

import json
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from zcoder.core.errors import RoomError
from zcoder.core.logging import get_logger
from zcoder.core.rate_limit import WebSocketRateLimiter
from zcoder.schemas.protocol import (
    CHAT_MESSAGE,
    CODE_CHANGE,
    CURSOR_CHANGE,
    JOIN_ROOM,
    LEAVE_ROOM,
    ChatMessagePayload,
    ClientFrame,
    CodeChangePayload,
    CursorChangePayload,
    JoinRoomPayload,
    LeaveRoomPayload,
)
from zcoder.services.binder import ConnectionBinder
from zcoder.services.connection import LiveConnection

logger = get_logger(__name__)

_Handler = Callable[[LiveConnection, dict[str, Any]], Awaitable[None]]


def _describe(exc: PydanticValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"参数错误: {location} {first.get('msg', '')}".strip()


class CollabDispatcher:
    """上行事件分发器（全局一个，连接无关）。

    Attributes:
        binder: 连接绑定器。
        chat_limiter: 聊天消息限流器。
    """

    def __init__(self, binder: ConnectionBinder, chat_limiter: WebSocketRateLimiter) -> None:
        self.binder = binder
        self.chat_limiter = chat_limiter
        self._handlers: dict[str, _Handler] = {
            JOIN_ROOM: self._on_join,
            LEAVE_ROOM: self._on_leave,
            CODE_CHANGE: self._on_code_change,
            CURSOR_CHANGE: self._on_cursor_change,
            CHAT_MESSAGE: self._on_chat_message,
        }

    async def handle_text(self, connection: LiveConnection, raw: str) -> None:
        """处理一条上行文本帧。"""
        try:
            frame = ClientFrame.model_validate(json.loads(raw))
        except (json.JSONDecodeError, PydanticValidationError):
            await connection.send_error("无效的消息格式")
            return

        handler = self._handlers.get(frame.event)
        if handler is None:
            await connection.send_error(f"未知事件: {frame.event}")
            return

        try:
            await handler(connection, frame.data)
        except PydanticValidationError as e:
            await connection.send_error(_describe(e))
        except RoomError as e:
            logger.info("事件被拒绝 | conn=%s | event=%s | %s: %s", connection.connection_id, frame.event, e.code, e.message)
            await connection.send_error(e.message)
        except Exception:
            logger.exception("事件处理异常 | conn=%s | event=%s", connection.connection_id, frame.event)
            await connection.send_error("服务器内部错误")

    def forget(self, connection: LiveConnection) -> None:
        """连接关闭后清理分发器里的连接记录。"""
        self.chat_limiter.remove_client(connection.connection_id)

    # ── 事件处理 ──────────────────────────────────────────────────────

    async def _on_join(self, connection: LiveConnection, data: dict[str, Any]) -> None:
        payload = JoinRoomPayload.model_validate(data)
        await self.binder.bind(connection, payload.room_id, payload.user_id)

    async def _on_leave(self, connection: LiveConnection, data: dict[str, Any]) -> None:
        payload = LeaveRoomPayload.model_validate(data)
        if connection.room_id != payload.room_id:
            logger.debug("忽略 leave-room：未绑定该房间 | conn=%s | room=%s", connection.connection_id, payload.room_id)
            return
        await self.binder.unbind(connection)

    async def _on_code_change(self, connection: LiveConnection, data: dict[str, Any]) -> None:
        payload = CodeChangePayload.model_validate(data)
        session = self.binder.session_for(connection, payload.room_id)
        await session.apply_document_update(
            payload.code,
            payload.language,
            connection.user,
            sender_id=connection.connection_id,
            cursor_position=payload.cursor_position,
        )

    async def _on_cursor_change(self, connection: LiveConnection, data: dict[str, Any]) -> None:
        payload = CursorChangePayload.model_validate(data)
        session = self.binder.session_for(connection, payload.room_id)
        await session.apply_cursor_update(
            payload.cursor_position, connection.user, sender_id=connection.connection_id,
        )

    async def _on_chat_message(self, connection: LiveConnection, data: dict[str, Any]) -> None:
        payload = ChatMessagePayload.model_validate(data)
        session = self.binder.session_for(connection, payload.room_id)
        if not self.chat_limiter.is_allowed(connection.connection_id):
            await connection.send_error("发送过快，请稍后再试")
            return
        await session.append_chat(payload.message, payload.type, connection.user)
