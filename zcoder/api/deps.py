"""
zcoder.api.deps
~~~~~~~~~~~~~~~

FastAPI 依赖 —— 从 ``app.state`` 取出 lifespan 中创建的服务对象。
"""
from __future__ import annotations

from fastapi import Header, Request

from zcoder.core.errors import Unauthorized
from zcoder.db.activity_repository import ActivityRepository
from zcoder.db.chat_repository import ChatRepository
from zcoder.services.membership import MembershipManager
from zcoder.services.registry import RoomRegistry


def get_membership(request: Request) -> MembershipManager:
    return request.app.state.membership


def get_registry(request: Request) -> RoomRegistry:
    return request.app.state.registry


def get_chat_repository(request: Request) -> ChatRepository:
    return request.app.state.chat_repo


def get_activity_repository(request: Request) -> ActivityRepository:
    return request.app.state.activity_repo


def get_current_user_id(x_user_id: str | None = Header(default=None)) -> str:
    """当前调用者的用户 ID。

    身份校验由上游鉴权网关完成，网关把校验通过的用户 ID 写入 ``X-User-Id``。
    """
    if not x_user_id or not x_user_id.strip():
        raise Unauthorized("缺少用户身份", status_code=401)
    return x_user_id.strip()
