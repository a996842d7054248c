"""
zcoder.db.room_repository
~~~~~~~~~~~~~~~~~~~~~~~~~

房间记录持久化仓库 —— 封装 MongoDB ``rooms`` 集合。

成员 / 房间资料变更与共享文档写入走两条互不覆盖的路径:

- ``save_membership()`` 只 ``$set`` 成员与房主可编辑的资料字段（不含共享文档），
  并以 ``revision`` 做乐观并发控制（条件更新，失败由调用方重试）；
- ``update_shared_document()`` 只 ``$set`` shared_document。

这样在线会话异步落库的文档不会被成员或资料变更用旧副本覆盖，反之亦然。
"""
from __future__ import annotations

from typing import Any

from motor.motor_asyncio import AsyncIOMotorDatabase

from zcoder.core.logging import get_logger
from zcoder.schemas.rooms import Room, SharedDocument, utcnow

logger = get_logger(__name__)

_COLLECTION_NAME = "rooms"


def _to_document(room: Room) -> dict[str, Any]:
    doc = room.model_dump(exclude={"id"})
    doc["_id"] = room.id
    return doc


def _to_room(doc: dict[str, Any]) -> Room:
    doc = dict(doc)
    doc["id"] = str(doc.pop("_id"))
    return Room.model_validate(doc)


class RoomRepository:
    """房间记录仓库。

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
        await self._collection.create_index(
            [("owner", 1), ("is_active", 1)], name="idx_owner_active",
        )
        await self._collection.create_index(
            [("participants.user_id", 1)], name="idx_participant",
        )
        self._indexes_created = True
        logger.debug("rooms 索引已就绪")

    async def insert(self, room: Room) -> None:
        """写入一条新房间记录。"""
        await self._ensure_indexes()
        await self._collection.insert_one(_to_document(room))

    async def get(self, room_id: str) -> Room | None:
        """按 ID 读取房间，不存在返回 None。"""
        doc = await self._collection.find_one({"_id": room_id})
        return _to_room(doc) if doc else None

    async def list_for_user(self, user_id: str, limit: int = 100) -> list[Room]:
        """列出用户作为持久成员所在的全部房间（按创建时间倒序）。"""
        await self._ensure_indexes()
        cursor = (
            self._collection
            .find({"participants.user_id": user_id})
            .sort("created_at", -1)
            .limit(limit)
        )
        return [_to_room(doc) for doc in await cursor.to_list(length=limit)]

    async def save_membership(self, room: Room, expected_revision: int) -> bool:
        """条件写入成员与房间资料字段。

        Args:
            room: 已修改好成员、资料与 revision 的房间对象。
            expected_revision: 读取时的 revision，库中不一致则放弃写入。

        Returns:
            是否写入成功；False 表示发生并发冲突（或房间已被删除）。
        """
        result = await self._collection.update_one(
            {"_id": room.id, "revision": expected_revision},
            {
                "$set": {
                    "owner": room.owner,
                    "participants": [p.model_dump() for p in room.participants],
                    "name": room.name,
                    "description": room.description,
                    "type": room.type,
                    "max_participants": room.max_participants,
                    "settings": room.settings.model_dump(),
                    "is_private": room.is_private,
                    "password_hash": room.password_hash,
                    "revision": room.revision,
                    "updated_at": room.updated_at,
                },
            },
        )
        return result.matched_count == 1

    async def update_shared_document(self, room_id: str, document: SharedDocument) -> bool:
        """覆盖共享文档快照。房间已不存在时返回 False。"""
        result = await self._collection.update_one(
            {"_id": room_id},
            {"$set": {"shared_document": document.model_dump(), "updated_at": utcnow()}},
        )
        return result.matched_count == 1

    async def delete(self, room_id: str, expected_revision: int | None = None) -> bool:
        """删除房间记录。

        给出 ``expected_revision`` 时为条件删除，库中 revision 不一致则放弃。
        """
        query: dict[str, Any] = {"_id": room_id}
        if expected_revision is not None:
            query["revision"] = expected_revision
        result = await self._collection.delete_one(query)
        return result.deleted_count == 1
