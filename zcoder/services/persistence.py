"""
zcoder.services.persistence
~~~~~~~~~~~~~~~~~~~~~~~~~~~

持久化网关 —— 实时协作引擎访问持久存储的唯一入口。

把房间、聊天、用户目录、用户动态四个仓库收拢在一起，并把存储层异常
统一转换成 ``PersistenceError``，引擎内部只需要处理这一种失败。
"""
from __future__ import annotations

from dataclasses import dataclass, field

from pymongo.errors import PyMongoError

from zcoder.core.errors import NotFound, PersistenceError
from zcoder.core.logging import get_logger
from zcoder.db.activity_repository import ActivityRepository
from zcoder.db.chat_repository import ChatRepository
from zcoder.db.room_repository import RoomRepository
from zcoder.db.user_repository import UserRepository
from zcoder.schemas.rooms import ActivityType, ChatEntry, Room, SharedDocument, UserInfo

logger = get_logger(__name__)


@dataclass
class SessionState:
    """房间会话创建时需要的持久化状态。"""

    room: Room
    chat_tail: list[ChatEntry] = field(default_factory=list)
    next_seq: int = 0


class PersistenceGateway:
    """实时协作引擎的持久化网关。

    Attributes:
        rooms: 房间记录仓库。
        chats: 聊天记录仓库。
        activities: 用户动态仓库。
        users: 用户目录仓库。
    """

    def __init__(
        self,
        rooms: RoomRepository,
        chats: ChatRepository,
        activities: ActivityRepository,
        users: UserRepository,
    ) -> None:
        self.rooms = rooms
        self.chats = chats
        self.activities = activities
        self.users = users

    async def get_room(self, room_id: str) -> Room | None:
        try:
            return await self.rooms.get(room_id)
        except PyMongoError as e:
            raise PersistenceError("读取房间失败") from e

    async def get_user(self, user_id: str) -> UserInfo | None:
        try:
            return await self.users.get(user_id)
        except PyMongoError as e:
            raise PersistenceError("读取用户失败") from e

    async def load_session_state(self, room_id: str, tail_size: int) -> SessionState:
        """加载房间当前共享文档与最近的聊天尾部。

        Args:
            room_id: 房间唯一标识。
            tail_size: 需要带回的聊天条数（可以为 0）。

        Raises:
            NotFound: 房间不存在。
            PersistenceError: 存储不可用。
        """
        try:
            room = await self.rooms.get(room_id)
            if room is None:
                raise NotFound("房间不存在")
            # 至少取 1 条，用来确定下一条消息的序号
            tail = await self.chats.get_tail(room_id, max(tail_size, 1))
        except PyMongoError as e:
            raise PersistenceError("加载房间状态失败") from e

        next_seq = tail[-1].seq + 1 if tail else 0
        return SessionState(
            room=room,
            chat_tail=tail[-tail_size:] if tail_size > 0 else [],
            next_seq=next_seq,
        )

    async def save_document(self, room_id: str, document: SharedDocument) -> None:
        """覆盖写入共享文档快照。"""
        try:
            matched = await self.rooms.update_shared_document(room_id, document)
        except PyMongoError as e:
            raise PersistenceError("共享文档保存失败") from e
        if not matched:
            # 房间已被删除：会话里的文档随会话回收，无需再写
            logger.warning("房间已不存在，丢弃文档快照 | room=%s | version=%d", room_id, document.version)

    async def append_chat(self, room_id: str, entry: ChatEntry) -> None:
        """追加一条聊天消息。"""
        try:
            await self.chats.append(room_id, entry)
        except PyMongoError as e:
            raise PersistenceError("消息保存失败") from e

    async def record_activity(
        self,
        user_id: str,
        type: ActivityType,
        message: str,
        resource_type: ActivityType | None = None,
        resource_id: str | None = None,
    ) -> None:
        """记录用户动态（失败只记日志）。"""
        await self.activities.record(user_id, type, message, resource_type, resource_id)
