"""
zcoder.db.user_repository
~~~~~~~~~~~~~~~~~~~~~~~~~

用户目录（只读）—— ``users`` 集合由账号服务维护，这里只按 ID 查询公开资料。
"""
from __future__ import annotations

from typing import Any

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from zcoder.schemas.rooms import UserInfo

_COLLECTION_NAME = "users"
_PROJECTION: dict[str, int] = {"username": 1, "profile": 1}


class UserRepository:
    """用户目录仓库。"""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]

    async def get(self, user_id: str) -> UserInfo | None:
        """按 ID 查询用户。兼容字符串 ID 与 ObjectId 形式的 ID。"""
        candidates: list[Any] = [user_id]
        if ObjectId.is_valid(user_id):
            candidates.append(ObjectId(user_id))
        doc = await self._collection.find_one({"_id": {"$in": candidates}}, _PROJECTION)
        if doc is None:
            return None
        return UserInfo(
            id=str(doc["_id"]),
            username=doc.get("username") or str(doc["_id"]),
            profile=doc.get("profile") or {},
        )
