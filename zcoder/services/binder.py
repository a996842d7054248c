"""
zcoder.services.binder
~~~~~~~~~~~~~~~~~~~~~~

连接绑定器 —— 把一个实时连接与 (房间, 用户) 绑定 / 解绑。

绑定前依次校验：连接可用 → 未绑定 → 房间存在 → 用户存在 → 是持久成员。
任何一步失败都只向该连接报错，不改动房间状态。
"""
from __future__ import annotations

from zcoder.core.errors import (
    AlreadyBound,
    NotFound,
    TransportError,
    Unauthorized,
)
from zcoder.core.logging import get_logger
from zcoder.services.connection import LiveConnection
from zcoder.services.persistence import PersistenceGateway
from zcoder.services.registry import RoomRegistry
from zcoder.services.room_session import RoomSession

logger = get_logger(__name__)


class ConnectionBinder:
    """连接绑定器。

    Attributes:
        gateway: 持久化网关（查询房间和用户）。
        registry: 房间会话注册表。
    """

    def __init__(self, gateway: PersistenceGateway, registry: RoomRegistry) -> None:
        self.gateway = gateway
        self.registry = registry

    async def bind(self, connection: LiveConnection, room_id: str, user_id: str) -> RoomSession:
        """把连接绑定到房间。成功后连接会收到 ``room-joined`` 快照。

        Raises:
            TransportError: 连接已关闭。
            AlreadyBound: 连接已绑定到某个房间。
            NotFound: 房间或用户不存在。
            Unauthorized: 用户不是房间的持久成员。
            PersistenceError: 存储不可用。
        """
        if connection.closed:
            raise TransportError("连接已关闭")
        if connection.is_bound:
            raise AlreadyBound("已在房间中，请先离开当前房间")

        room = await self.gateway.get_room(room_id)
        if room is None:
            raise NotFound("房间不存在")
        user = await self.gateway.get_user(user_id)
        if user is None:
            raise NotFound("用户不存在")
        if not room.is_participant(user_id):
            raise Unauthorized("你不是该房间的成员")

        async with self.registry.checkout(room_id) as session:
            # 加载会话期间连接可能已断开或已被其他请求绑定
            if connection.closed:
                raise TransportError("连接已关闭")
            if connection.is_bound:
                raise AlreadyBound("已在房间中，请先离开当前房间")
            connection.mark_bound(room_id, user, session)
            try:
                await session.bind(connection, user, room)
            except BaseException:
                connection.mark_unbound()
                raise
        return session

    async def unbind(self, connection: LiveConnection, *, closing: bool = False) -> bool:
        """解绑连接。未绑定时什么也不做并返回 False。

        Args:
            connection: 要解绑的连接。
            closing: 传输已关闭时为 True，连接进入终态。
        """
        session = connection.session
        room_id = connection.room_id
        user = connection.user
        if closing:
            connection.mark_closed()
        else:
            connection.mark_unbound()
        if session is None or room_id is None:
            return False

        try:
            await session.unbind(connection.connection_id)
        except TransportError as e:
            # 会话已关闭，在线表随会话一起回收
            logger.debug("解绑时会话已关闭 | room=%s | conn=%s | %s", room_id, connection.connection_id, e.message)
        logger.debug(
            "连接已离开房间 | room=%s | user=%s | closing=%s",
            room_id, user.id if user else "-", closing,
        )
        self.registry.evict_if_idle(room_id)
        return True

    def session_for(self, connection: LiveConnection, room_id: str) -> RoomSession:
        """取得连接当前绑定的房间会话，要求与请求中的房间一致。

        Raises:
            Unauthorized: 连接未绑定，或绑定的不是该房间。
        """
        if not connection.is_bound or connection.room_id != room_id or connection.session is None:
            raise Unauthorized("无权操作该房间")
        return connection.session
