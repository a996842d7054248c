"""
zcoder.db.activity_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

用户动态仓库 —— ``activities`` 集合。

动态只是旁路记录：写入失败只记日志，绝不影响触发它的业务操作。
"""
from __future__ import annotations

from motor.motor_asyncio import AsyncIOMotorDatabase

from zcoder.core.logging import get_logger
from zcoder.schemas.rooms import ActivityRecord, ActivityType

logger = get_logger(__name__)

_COLLECTION_NAME = "activities"


class ActivityRepository:
    """用户动态仓库。"""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        if self._indexes_created:
            return
        await self._collection.create_index(
            [("user_id", 1), ("created_at", -1)], name="idx_user_time",
        )
        self._indexes_created = True

    async def record(
        self,
        user_id: str,
        type: ActivityType,
        message: str,
        resource_type: ActivityType | None = None,
        resource_id: str | None = None,
    ) -> None:
        """记录一条用户动态。"""
        record = ActivityRecord(
            user_id=user_id,
            type=type,
            message=message,
            resource_type=resource_type,
            resource_id=resource_id,
        )
        try:
            await self._ensure_indexes()
            await self._collection.insert_one(record.model_dump())
        except Exception as e:
            logger.warning("动态记录失败: %s | user=%s", e, user_id, exc_info=True)

    async def list_recent(self, user_id: str, limit: int = 20) -> list[ActivityRecord]:
        """获取用户最近的动态（新的在前）。"""
        await self._ensure_indexes()
        cursor = (
            self._collection
            .find({"user_id": user_id}, {"_id": 0})
            .sort("created_at", -1)
            .limit(limit)
        )
        return [ActivityRecord.model_validate(doc) for doc in await cursor.to_list(length=limit)]
