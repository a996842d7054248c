"""
zcoder.db.chat_repository
~~~~~~~~~~~~~~~~~~~~~~~~~

房间聊天记录持久化仓库 —— 封装 MongoDB ``chat_messages`` 集合的增查操作。

每条消息一个文档（扁平设计），避免 16MB 文档限制且便于分页查询。
``seq`` 由房间会话在串行化点按到达顺序分配，排序只依赖 ``seq``，
因此持久化顺序与广播顺序一致。记录只追加，正常流程中从不修改或截断。
"""
from __future__ import annotations

from typing import Any

from motor.motor_asyncio import AsyncIOMotorDatabase

from zcoder.core.logging import get_logger
from zcoder.schemas.rooms import ChatEntry

logger = get_logger(__name__)

# 集合名称
_COLLECTION_NAME = "chat_messages"

_PROJECTION: dict[str, int] = {
    "_id": 0, "seq": 1, "user_id": 1, "message": 1, "type": 1, "timestamp": 1,
}


def _to_entry(doc: dict[str, Any]) -> ChatEntry:
    return ChatEntry.model_validate(doc)


class ChatRepository:
    """聊天消息持久化仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        # 复合唯一索引：按房间分区 + 按到达序号排序
        await self._collection.create_index(
            [("room_id", 1), ("seq", 1)],
            name="idx_room_seq",
            unique=True,
        )
        self._indexes_created = True
        logger.debug("chat_messages 索引已就绪")

    async def append(self, room_id: str, entry: ChatEntry) -> None:
        """追加一条聊天消息。

        Args:
            room_id: 房间唯一标识。
            entry: 已分配 ``seq`` 的消息。
        """
        await self._ensure_indexes()
        doc = entry.model_dump()
        doc["room_id"] = room_id
        await self._collection.insert_one(doc)

    async def get_tail(self, room_id: str, limit: int = 50) -> list[ChatEntry]:
        """获取指定房间最近 N 条消息（按到达顺序正序）。

        用于房间会话创建时恢复聊天尾部。
        """
        if limit <= 0:
            return []
        await self._ensure_indexes()

        # 先按序号倒序取最近 N 条，再反转为正序
        cursor = (
            self._collection
            .find({"room_id": room_id}, _PROJECTION)
            .sort("seq", -1)
            .limit(limit)
        )
        docs = await cursor.to_list(length=limit)
        docs.reverse()
        return [_to_entry(doc) for doc in docs]

    async def get_all_messages(
        self,
        room_id: str,
        skip: int = 0,
        limit: int = 100,
    ) -> list[ChatEntry]:
        """获取指定房间的全部消息（分页，用于历史回看）。"""
        await self._ensure_indexes()
        cursor = (
            self._collection
            .find({"room_id": room_id}, _PROJECTION)
            .sort("seq", 1)
            .skip(skip)
            .limit(limit)
        )
        docs = await cursor.to_list(length=limit)
        return [_to_entry(doc) for doc in docs]

    async def count_messages(self, room_id: str) -> int:
        """获取指定房间的消息总数。"""
        await self._ensure_indexes()
        return await self._collection.count_documents({"room_id": room_id})

    async def delete_room(self, room_id: str) -> int:
        """删除房间的全部聊天记录（仅在房间记录被删除时调用）。"""
        result = await self._collection.delete_many({"room_id": room_id})
        return result.deleted_count
