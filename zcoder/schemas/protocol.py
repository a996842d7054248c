"""
zcoder.schemas.protocol
~~~~~~~~~~~~~~~~~~~~~~~

实时协作 WebSocket 协议模型。

每一帧都是 JSON 对象 ``{"event": <事件名>, "data": {...}}``，上下行一致。

上行事件:
  - ``join-room{roomId, userId}``
  - ``leave-room{roomId}``
  - ``code-change{roomId, code, language, cursorPosition}``
  - ``cursor-change{roomId, cursorPosition}``
  - ``chat-message{roomId, message, type}``

下行事件:
  - ``room-joined{room, sharedCode, chatHistory}``
  - ``user-joined{user}`` / ``user-left{user}``
  - ``active-users[list]``
  - ``code-update{code, language, cursorPosition, version, user}``
  - ``cursor-update{cursorPosition, user}``
  - ``chat-message{message, type, timestamp, user}``
  - ``error{message}``
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from zcoder.schemas.rooms import CamelModel

# ── 事件名 ────────────────────────────────────────────────────────────

JOIN_ROOM = "join-room"
LEAVE_ROOM = "leave-room"
CODE_CHANGE = "code-change"
CURSOR_CHANGE = "cursor-change"
CHAT_MESSAGE = "chat-message"

ROOM_JOINED = "room-joined"
USER_JOINED = "user-joined"
USER_LEFT = "user-left"
ACTIVE_USERS = "active-users"
CODE_UPDATE = "code-update"
CURSOR_UPDATE = "cursor-update"
ERROR = "error"


class ClientFrame(BaseModel):
    """上行帧外壳。"""

    event: str = Field(..., min_length=1)
    data: dict[str, Any] = Field(default_factory=dict)


class JoinRoomPayload(CamelModel):
    room_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)


class LeaveRoomPayload(CamelModel):
    room_id: str = Field(..., min_length=1)


class CodeChangePayload(CamelModel):
    room_id: str = Field(..., min_length=1)
    code: str
    language: str | None = Field(default=None, max_length=32)
    cursor_position: Any = None


class CursorChangePayload(CamelModel):
    room_id: str = Field(..., min_length=1)
    cursor_position: Any = None


class ChatMessagePayload(CamelModel):
    room_id: str = Field(..., min_length=1)
    message: str = Field(..., min_length=1, max_length=2000)
    # 取值校验放在 RoomSession 中，这里只保证是字符串
    type: str = "text"


def server_frame(event: str, data: Any) -> dict[str, Any]:
    """构造下行帧。"""
    return {"event": event, "data": data}
