"""
zcoder.services.connection
~~~~~~~~~~~~~~~~~~~~~~~~~~

实时连接句柄 —— 包装一个 WebSocket，记录它的绑定状态。

状态机: ``UNBOUND → BOUND → UNBOUND``，传输关闭后进入终态 ``CLOSED``。
一个连接同一时刻最多绑定一个 (房间, 用户)。
"""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from fastapi import WebSocket

from zcoder.core.errors import TransportError
from zcoder.core.logging import get_logger
from zcoder.core.settings import settings
from zcoder.schemas.protocol import ERROR, server_frame
from zcoder.schemas.rooms import UserInfo, utcnow

if TYPE_CHECKING:
    from zcoder.services.room_session import RoomSession

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    UNBOUND = "unbound"
    BOUND = "bound"
    CLOSED = "closed"


class LiveConnection:
    """一个实时连接。

    Attributes:
        connection_id: 连接唯一标识。
        websocket: 底层 WebSocket。
        state: 当前绑定状态。
        room_id: 已绑定的房间（未绑定时为 None）。
        user: 已绑定的用户。
        session: 已绑定房间的会话。
        bound_at: 绑定时间。
        failed: 服务端已因发送失败关闭该连接，后续广播与在线名单都跳过它。
    """

    def __init__(self, websocket: WebSocket, connection_id: str | None = None) -> None:
        self.connection_id: str = connection_id or uuid.uuid4().hex
        self.websocket = websocket
        self.state: ConnectionState = ConnectionState.UNBOUND
        self.room_id: str | None = None
        self.user: UserInfo | None = None
        self.session: RoomSession | None = None
        self.bound_at: datetime | None = None
        self.failed = False
        self._send_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"<LiveConnection {self.connection_id[:8]} {self.state.value} room={self.room_id}>"

    @property
    def is_bound(self) -> bool:
        return self.state is ConnectionState.BOUND

    @property
    def closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    # ── 状态迁移 ──────────────────────────────────────────────────────

    def mark_bound(self, room_id: str, user: UserInfo, session: RoomSession) -> None:
        self.state = ConnectionState.BOUND
        self.room_id = room_id
        self.user = user
        self.session = session
        self.bound_at = utcnow()

    def mark_unbound(self) -> None:
        if self.state is not ConnectionState.CLOSED:
            self.state = ConnectionState.UNBOUND
        self.room_id = None
        self.user = None
        self.session = None
        self.bound_at = None

    def mark_closed(self) -> None:
        self.mark_unbound()
        self.state = ConnectionState.CLOSED

    # ── 下行发送 ──────────────────────────────────────────────────────

    async def send(self, event: str, data: Any) -> None:
        """发送一帧下行事件。

        同一连接上的发送串行进行，避免多个房间协程交错写同一个 socket。

        Raises:
            TransportError: 连接已关闭、发送超时或底层发送失败。
        """
        if self.closed or self.failed:
            raise TransportError("连接已关闭")
        try:
            async with self._send_lock:
                await asyncio.wait_for(
                    self.websocket.send_json(server_frame(event, data)),
                    timeout=settings.WS_SEND_TIMEOUT,
                )
        except asyncio.TimeoutError as e:
            raise TransportError("发送超时") from e
        except Exception as e:
            raise TransportError(f"发送失败: {e}") from e

    async def send_error(self, message: str) -> None:
        """向本连接发送 ``error`` 事件；连接已不可用时静默放弃。"""
        try:
            await self.send(ERROR, {"message": message})
        except TransportError as e:
            logger.debug("错误提示发送失败 | conn=%s | %s", self.connection_id, e.message)

    async def close(self, code: int = 1011) -> None:
        """服务端主动关闭底层 WebSocket。

        关闭后本连接的接收循环会退出，并由它自己完成解绑。
        """
        self.failed = True
        try:
            await asyncio.wait_for(self.websocket.close(code=code), timeout=settings.WS_SEND_TIMEOUT)
        except Exception as e:
            logger.debug("关闭连接失败 | conn=%s | %s", self.connection_id, e)
