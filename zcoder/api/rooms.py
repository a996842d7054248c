"""
zcoder.api.rooms
~~~~~~~~~~~~~~~~

协作房间 REST 接口 —— 持久成员管理 + 聊天历史 + 在线会话列表。

端点:
  - ``POST   /rooms``                → 创建房间
  - ``GET    /rooms/mine``           → 我所在的房间
  - ``GET    /rooms/{room_id}``      → 房间详情
  - ``POST   /rooms/{room_id}/join`` → 持久加入
  - ``POST   /rooms/{room_id}/leave``→ 持久离开（房主转移 / 删除）
  - ``PUT    /rooms/{room_id}``      → 房主修改房间资料与设置
  - ``DELETE /rooms/{room_id}``      → 房主删除房间
  - ``GET    /rooms/{room_id}/chat`` → 聊天历史（分页，仅成员）
  - ``GET    /live/rooms``           → 在线房间会话摘要
"""
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pymongo.errors import PyMongoError

from zcoder.api.deps import (
    get_chat_repository,
    get_current_user_id,
    get_membership,
    get_registry,
)
from zcoder.core.errors import PersistenceError, Unauthorized
from zcoder.core.rate_limit import limiter
from zcoder.db.chat_repository import ChatRepository
from zcoder.schemas.api_response import ApiResponse
from zcoder.schemas.rooms import ChatHistoryData, RoomCreateRequest, RoomJoinRequest, RoomUpdateRequest
from zcoder.services.membership import MembershipManager
from zcoder.services.registry import RoomRegistry

router: APIRouter = APIRouter()


# ── 房间管理端点 ──────────────────────────────────────────────────────


@router.post("/rooms", summary="创建房间", response_model=ApiResponse[dict[str, Any]])
@limiter.limit("5/minute")
async def create_room(
    request: Request,
    body: RoomCreateRequest,
    user_id: str = Depends(get_current_user_id),
    membership: MembershipManager = Depends(get_membership),
):
    """创建房间，调用者成为房主。"""
    room = await membership.create(user_id, body)
    return ApiResponse.ok(data=room.to_public(), msg="房间已创建")


@router.get("/rooms/mine", summary="我所在的房间", response_model=ApiResponse[list[dict[str, Any]]])
@limiter.limit("10/second")
async def my_rooms(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    membership: MembershipManager = Depends(get_membership),
):
    rooms = await membership.list_for_user(user_id)
    return ApiResponse.ok(data=[room.to_public() for room in rooms])


@router.get("/rooms/{room_id}", summary="获取房间详情", response_model=ApiResponse[dict[str, Any]])
@limiter.limit("10/second")
async def room_detail(
    request: Request,
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    membership: MembershipManager = Depends(get_membership),
):
    """返回房间详情。私有房间仅成员可见。"""
    room = await membership.get(room_id, user_id)
    return ApiResponse.ok(data=room.to_public())


@router.post("/rooms/{room_id}/join", summary="加入房间", response_model=ApiResponse[dict[str, Any]])
@limiter.limit("5/second")
async def join_room(
    request: Request,
    room_id: str,
    body: RoomJoinRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    membership: MembershipManager = Depends(get_membership),
):
    """持久加入房间。加入后才能通过实时通道绑定该房间。"""
    password = body.password if body else None
    room = await membership.join(room_id, user_id, password)
    return ApiResponse.ok(data=room.to_public(), msg="已加入房间")


@router.post("/rooms/{room_id}/leave", summary="离开房间", response_model=ApiResponse[dict[str, Any] | None])
@limiter.limit("5/second")
async def leave_room(
    request: Request,
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    membership: MembershipManager = Depends(get_membership),
):
    """持久离开房间。最后一名成员离开时房间被删除，``data`` 为 null。"""
    room = await membership.leave(room_id, user_id)
    if room is None:
        return ApiResponse.ok(data=None, msg="房间已删除")
    return ApiResponse.ok(data=room.to_public(), msg="已离开房间")


@router.put("/rooms/{room_id}", summary="修改房间", response_model=ApiResponse[dict[str, Any]])
@limiter.limit("5/second")
async def update_room(
    request: Request,
    room_id: str,
    body: RoomUpdateRequest,
    user_id: str = Depends(get_current_user_id),
    membership: MembershipManager = Depends(get_membership),
):
    """房主修改房间资料与设置。未给出的字段保持不变。"""
    room = await membership.update(room_id, user_id, body)
    return ApiResponse.ok(data=room.to_public(), msg="房间已更新")


@router.delete("/rooms/{room_id}", summary="删除房间", response_model=ApiResponse[None])
@limiter.limit("5/second")
async def delete_room(
    request: Request,
    room_id: str,
    user_id: str = Depends(get_current_user_id),
    membership: MembershipManager = Depends(get_membership),
):
    await membership.delete(room_id, user_id)
    return ApiResponse.ok(data=None, msg="房间已删除")


# ── 历史回看端点 ──────────────────────────────────────────────────────


@router.get("/rooms/{room_id}/chat", summary="获取聊天历史", response_model=ApiResponse[dict[str, Any]])
@limiter.limit("5/second")
async def chat_history(
    request: Request,
    room_id: str,
    skip: int = Query(0, ge=0, description="跳过条数"),
    limit: int = Query(50, ge=1, le=200, description="返回条数"),
    user_id: str = Depends(get_current_user_id),
    membership: MembershipManager = Depends(get_membership),
    chats: ChatRepository = Depends(get_chat_repository),
):
    """分页获取房间聊天历史（按到达顺序），仅房间成员可查看。

    Args:
        room_id: 房间唯一标识。
        skip: 分页偏移量。
        limit: 每页条数。
    """
    room = await membership.get(room_id, user_id)
    if not room.is_participant(user_id):
        raise Unauthorized("你不是该房间的成员")
    try:
        messages = await chats.get_all_messages(room_id, skip=skip, limit=limit)
        total = await chats.count_messages(room_id)
    except PyMongoError as e:
        raise PersistenceError("读取聊天历史失败") from e
    data = ChatHistoryData(room_id=room_id, messages=messages, total=total)
    return ApiResponse.ok(data=data.to_wire())


# ── 在线会话端点 ──────────────────────────────────────────────────────


@router.get("/live/rooms", summary="在线房间会话列表", response_model=ApiResponse[list[dict[str, Any]]])
@limiter.limit("10/second")
async def live_rooms(request: Request, registry: RoomRegistry = Depends(get_registry)):
    """返回当前所有在线房间会话的摘要（在线连接数、在线用户、文档版本）。"""
    return ApiResponse.ok(data=[info.to_wire() for info in registry.list_sessions()])
