"""
zcoder.api.users
~~~~~~~~~~~~~~~~

用户动态接口。
"""
from typing import Any

from fastapi import APIRouter, Depends, Request
from pymongo.errors import PyMongoError

from zcoder.api.deps import get_activity_repository, get_current_user_id
from zcoder.core.errors import PersistenceError
from zcoder.core.rate_limit import limiter
from zcoder.db.activity_repository import ActivityRepository
from zcoder.schemas.api_response import ApiResponse

router: APIRouter = APIRouter()


@router.get("/users/me/activity", summary="我的最近动态", response_model=ApiResponse[list[dict[str, Any]]])
@limiter.limit("10/second")
async def my_activity(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    activities: ActivityRepository = Depends(get_activity_repository),
):
    """返回最近 20 条动态（新的在前）。"""
    try:
        records = await activities.list_recent(user_id, limit=20)
    except PyMongoError as e:
        raise PersistenceError("读取动态失败") from e
    return ApiResponse.ok(data=[record.to_wire() for record in records])
