"""
zcoder.services.room_broadcaster
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间广播器 —— 维护某个房间的在线连接表，并把事件扇出给它们。

只在所属 ``RoomSession`` 的串行化点内被调用，本身不加锁。
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from zcoder.core.logging import get_logger
from zcoder.schemas.rooms import UserInfo, utcnow
from zcoder.services.connection import LiveConnection

logger = get_logger(__name__)


@dataclass
class LiveBinding:
    """在线连接表中的一项。"""

    connection: LiveConnection
    user: UserInfo
    bound_at: datetime


class RoomBroadcaster:
    """房间广播器。

    每个 ``RoomSession`` 持有一个独立的 ``RoomBroadcaster`` 实例。
    同一用户的多个连接各自独立投递；在线名单按用户去重。

    Attributes:
        room_id: 所属房间。
        bindings: 连接 ID → 绑定信息（按绑定先后有序）。
    """

    def __init__(self, room_id: str) -> None:
        self.room_id = room_id
        self.bindings: dict[str, LiveBinding] = {}

    def add(self, connection: LiveConnection, user: UserInfo) -> LiveBinding:
        """登记一个在线连接。"""
        binding = LiveBinding(connection=connection, user=user, bound_at=utcnow())
        self.bindings[connection.connection_id] = binding
        return binding

    def remove(self, connection_id: str) -> LiveBinding | None:
        """移除在线连接，不存在时返回 None。"""
        return self.bindings.pop(connection_id, None)

    def has_user(self, user_id: str) -> bool:
        """该用户是否还有任一可用的在线连接（发送失败的连接不计）。"""
        return any(b.user.id == user_id and not b.connection.failed for b in self.bindings.values())

    def active_users(self) -> list[UserInfo]:
        """在线用户（按用户 ID 去重，按首个连接的绑定先后排序）。"""
        users: dict[str, UserInfo] = {}
        for binding in self.bindings.values():
            if binding.connection.failed:
                continue
            users.setdefault(binding.user.id, binding.user)
        return list(users.values())

    @property
    def online_count(self) -> int:
        """当前在线连接数。"""
        return len(self.bindings)

    async def broadcast(
        self, event: str, data: Any, exclude: str | None = None,
    ) -> list[LiveConnection]:
        """向本房间在线连接广播事件。

        Args:
            event: 下行事件名。
            data: 事件数据（JSON 兼容）。
            exclude: 需要跳过的连接 ID（通常是发送者）。

        Returns:
            发送失败的连接列表。这些连接会被主动关闭，由各自的处理协程完成解绑。
            在解绑前它们仍留在连接表中，但不再参与广播与在线名单。
        """
        targets = [
            b.connection for cid, b in self.bindings.items()
            if cid != exclude and not (b.connection.closed or b.connection.failed)
        ]
        if not targets:
            return []

        results = await asyncio.gather(
            *(connection.send(event, data) for connection in targets),
            return_exceptions=True,
        )
        failed: list[LiveConnection] = []
        for connection, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(
                    "广播失败，关闭异常连接 | room=%s | conn=%s | event=%s | %s",
                    self.room_id, connection.connection_id, event, result,
                )
                failed.append(connection)
        for connection in failed:
            await connection.close()
        return failed
