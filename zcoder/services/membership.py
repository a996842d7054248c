"""
zcoder.services.membership
~~~~~~~~~~~~~~~~~~~~~~~~~~

持久成员管理 —— 创建 / 加入 / 离开 / 修改 / 删除房间，以及房主转移。

只通过 REST 调用，不经过实时通道。所有写入都走
``RoomRepository.save_membership()`` 的条件更新：读到的 revision
与库中不一致时重新读取并重试，避免并发加入突破人数上限或丢失成员。
"""
from __future__ import annotations

import uuid
from collections.abc import Callable
from typing import TYPE_CHECKING, cast

from pymongo.errors import PyMongoError

from zcoder.core.errors import (
    AlreadyMember,
    CapacityExceeded,
    NotFound,
    PersistenceError,
    RoomError,
    Unauthorized,
    ValidationError,
)
from zcoder.core.logging import get_logger
from zcoder.core.security import hash_room_password, verify_room_password
from zcoder.core.settings import settings
from zcoder.schemas.rooms import (
    Participant,
    Room,
    RoomCreateRequest,
    RoomUpdateRequest,
    SharedDocument,
    utcnow,
)
from zcoder.services.persistence import PersistenceGateway

if TYPE_CHECKING:
    from zcoder.services.registry import RoomRegistry

logger = get_logger(__name__)


class _Deleted:
    """``_mutate`` 的回调返回它表示删除房间。"""


DELETED = _Deleted()


class MembershipManager:
    """持久成员管理器。

    Attributes:
        gateway: 持久化网关。
        registry: 在线会话注册表；房间设置变更时用来刷新在线会话。
    """

    def __init__(self, gateway: PersistenceGateway, registry: RoomRegistry | None = None) -> None:
        self.gateway = gateway
        self.registry = registry

    # ── 查询 ──────────────────────────────────────────────────────────

    async def _load(self, room_id: str) -> Room:
        room = await self.gateway.get_room(room_id)
        if room is None:
            raise NotFound("房间不存在")
        return room

    async def get(self, room_id: str, user_id: str) -> Room:
        """读取房间。私有房间只对成员可见。"""
        room = await self._load(room_id)
        if room.is_private and not room.is_participant(user_id):
            raise Unauthorized("私有房间仅成员可见")
        return room

    async def list_for_user(self, user_id: str) -> list[Room]:
        """列出用户所在的全部房间。"""
        try:
            return await self.gateway.rooms.list_for_user(user_id)
        except PyMongoError as e:
            raise PersistenceError("读取房间列表失败") from e

    # ── 写操作 ────────────────────────────────────────────────────────

    async def create(self, owner_id: str, request: RoomCreateRequest) -> Room:
        """创建房间，创建者成为唯一的房主成员。"""
        now = utcnow()
        room = Room(
            id=uuid.uuid4().hex,
            name=request.name,
            description=request.description,
            type=request.type,
            owner=owner_id,
            participants=[Participant(user_id=owner_id, role="owner", joined_at=now)],
            max_participants=request.max_participants,
            shared_document=SharedDocument(language=request.language),
            settings=request.settings,
            is_private=request.is_private,
            password_hash=hash_room_password(request.password) if request.is_private and request.password else None,
            created_at=now,
            updated_at=now,
        )
        try:
            await self.gateway.rooms.insert(room)
        except PyMongoError as e:
            raise PersistenceError("创建房间失败") from e

        logger.info("房间已创建 | room=%s | owner=%s | private=%s", room.id, owner_id, room.is_private)
        await self.gateway.record_activity(owner_id, "room", "Created room", "room", room.id)
        return room

    async def join(self, room_id: str, user_id: str, password: str | None = None) -> Room:
        """持久加入房间。

        Raises:
            NotFound: 房间不存在。
            CapacityExceeded: 成员已满。
            AlreadyMember: 已经是成员。
            Unauthorized: 私有房间密码不匹配（HTTP 401）。
        """

        def apply(room: Room) -> Room:
            if room.is_full:
                raise CapacityExceeded("房间已满")
            if room.is_participant(user_id):
                raise AlreadyMember("你已经是该房间的成员")
            if room.is_private and not verify_room_password(password or "", room.password_hash):
                raise Unauthorized("房间密码错误", status_code=401)
            room.participants.append(Participant(user_id=user_id, role="participant", joined_at=utcnow()))
            return room

        room = cast(Room, await self._mutate(room_id, apply))
        logger.info(
            "成员已加入 | room=%s | user=%s | 成员: %d/%d",
            room_id, user_id, len(room.participants), room.max_participants,
        )
        await self.gateway.record_activity(user_id, "room", f'Joined room: "{room.name}"', "room", room_id)
        return room

    async def leave(self, room_id: str, user_id: str) -> Room | None:
        """持久离开房间。

        房主离开时，若还有其他成员则把最早加入的成员提升为房主，
        否则删除房间及其聊天记录。

        Returns:
            更新后的房间；房间被删除时返回 None。

        Raises:
            NotFound: 房间不存在，或用户不是成员。
        """
        room_name = ""
        promoted: list[str] = []

        def apply(room: Room) -> Room | _Deleted:
            nonlocal room_name
            room_name = room.name
            member = room.participant(user_id)
            if member is None:
                raise NotFound("你不是该房间的成员")
            room.participants.remove(member)
            promoted.clear()
            if room.owner != user_id:
                return room
            if not room.participants:
                return DELETED
            # 稳定排序：joined_at 相同按原列表顺序
            successor = min(room.participants, key=lambda p: p.joined_at)
            successor.role = "owner"
            room.owner = successor.user_id
            promoted.append(successor.user_id)
            return room

        result = await self._mutate(room_id, apply)
        await self.gateway.record_activity(user_id, "room", f'Left room: "{room_name}"', "room", room_id)

        if result is DELETED:
            await self._purge_chat(room_id)
            logger.info("最后一名成员离开，房间已删除 | room=%s | user=%s", room_id, user_id)
            return None

        result = cast(Room, result)
        if promoted:
            logger.info("房主已转移 | room=%s | from=%s | to=%s", room_id, user_id, promoted[0])
        logger.info("成员已离开 | room=%s | user=%s | 剩余成员: %d", room_id, user_id, len(result.participants))
        return result

    async def update(self, room_id: str, user_id: str, request: RoomUpdateRequest) -> Room:
        """房主修改房间资料与设置。未给出的字段保持不变。

        房间在线时，新的功能开关会立即同步到在线会话。

        Raises:
            NotFound: 房间不存在。
            Unauthorized: 调用者不是房主。
            ValidationError: 成员上限低于当前成员数，或设为私有却没有密码。
        """
        new_hash = hash_room_password(request.password) if request.password else None

        def apply(room: Room) -> Room:
            if room.owner != user_id:
                raise Unauthorized("只有房主可以修改房间")
            if request.max_participants is not None and request.max_participants < len(room.participants):
                raise ValidationError(f"成员上限不能低于当前成员数 ({len(room.participants)})")
            for field in ("name", "description", "type", "max_participants", "is_private"):
                value = getattr(request, field)
                if value is not None:
                    setattr(room, field, value)
            if request.settings is not None:
                room.settings = request.settings.model_copy()
            if not room.is_private:
                room.password_hash = None
            elif new_hash is not None:
                room.password_hash = new_hash
            elif room.password_hash is None:
                raise ValidationError("私有房间必须设置密码")
            return room

        room = cast(Room, await self._mutate(room_id, apply))
        logger.info(
            "房间已更新 | room=%s | owner=%s | 字段: %s",
            room_id, user_id, ",".join(sorted(request.model_fields_set)),
        )
        if request.settings is not None:
            await self._refresh_live_settings(room)
        return room

    async def delete(self, room_id: str, user_id: str) -> None:
        """房主显式删除房间及其聊天记录。"""

        def apply(room: Room) -> _Deleted:
            if room.owner != user_id:
                raise Unauthorized("只有房主可以删除房间")
            return DELETED

        await self._mutate(room_id, apply)
        await self._purge_chat(room_id)
        logger.info("房间已被房主删除 | room=%s | owner=%s", room_id, user_id)
        await self.gateway.record_activity(user_id, "room", "Deleted room", "room", room_id)

    # ── 内部 ──────────────────────────────────────────────────────────

    async def _mutate(
        self, room_id: str, apply: Callable[[Room], Room | _Deleted],
    ) -> Room | _Deleted:
        """读取 → 修改 → 条件写入，revision 冲突时重试。"""
        attempts = settings.MEMBERSHIP_WRITE_RETRIES
        for attempt in range(1, attempts + 1):
            room = await self._load(room_id)
            expected = room.revision
            result = apply(room)
            try:
                if result is DELETED:
                    written = await self.gateway.rooms.delete(room_id, expected_revision=expected)
                else:
                    room.revision = expected + 1
                    room.updated_at = utcnow()
                    written = await self.gateway.rooms.save_membership(room, expected)
            except PyMongoError as e:
                raise PersistenceError("房间成员写入失败") from e
            if written:
                return result
            logger.warning(
                "成员写入冲突，重试 | room=%s | revision=%d | 第 %d/%d 次",
                room_id, expected, attempt, attempts,
            )
        raise PersistenceError("房间正忙，请稍后重试")

    async def _refresh_live_settings(self, room: Room) -> None:
        session = self.registry.get(room.id) if self.registry is not None else None
        if session is None:
            return
        try:
            await session.update_settings(room.settings)
        except RoomError as e:
            # 会话正在关闭；下次创建时会从库中读到新设置
            logger.debug("在线会话设置未刷新 | room=%s | %s", room.id, e.message)

    async def _purge_chat(self, room_id: str) -> None:
        try:
            await self.gateway.chats.delete_room(room_id)
        except PyMongoError:
            logger.error("删除房间聊天记录失败 | room=%s", room_id, exc_info=True)
