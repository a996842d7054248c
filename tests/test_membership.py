"""
tests.test_membership
~~~~~~~~~~~~~~~~~~~~~

MembershipManager 单元测试 —— 持久加入 / 离开 / 房主转移 / 修改 / 删除。
"""
from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from pymongo.errors import PyMongoError

from tests.fakes import make_room
from zcoder.core.errors import (
    AlreadyMember,
    CapacityExceeded,
    NotFound,
    PersistenceError,
    Unauthorized,
    ValidationError,
)
from zcoder.core.security import hash_room_password, verify_room_password
from zcoder.schemas.rooms import ChatEntry, Participant, RoomCreateRequest, RoomSettings, RoomUpdateRequest
from zcoder.services.membership import MembershipManager
from zcoder.services.registry import RoomRegistry


@pytest.fixture()
def membership(gateway) -> MembershipManager:
    return MembershipManager(gateway)


class TestCreate:

    @pytest.mark.asyncio
    async def test_creator_is_sole_owner(self, membership, room_repo, activity_repo) -> None:
        room = await membership.create("alice", RoomCreateRequest(name="  Algo Club  ", language="python"))

        stored = room_repo.rooms[room.id]
        assert stored.name == "Algo Club"
        assert stored.owner == "alice"
        assert [(p.user_id, p.role) for p in stored.participants] == [("alice", "owner")]
        assert stored.shared_document.language == "python"
        assert stored.password_hash is None
        assert activity_repo.messages("alice") == ["Created room"]

    @pytest.mark.asyncio
    async def test_private_room_password_is_hashed(self, membership, room_repo) -> None:
        room = await membership.create(
            "alice", RoomCreateRequest(name="Secret", is_private=True, password="hunter22"),
        )

        stored = room_repo.rooms[room.id]
        assert stored.password_hash.startswith("pbkdf2_sha256$")
        assert "hunter22" not in stored.password_hash
        assert "passwordHash" not in room.to_public()

    def test_private_room_requires_password(self) -> None:
        with pytest.raises(ValueError):
            RoomCreateRequest(name="Secret", is_private=True)


class TestJoin:

    @pytest.mark.asyncio
    async def test_join_appends_participant(self, membership, room_repo, activity_repo) -> None:
        room_repo.put(make_room(name="Graphs"))

        room = await membership.join("room-1", "bob")

        assert [p.user_id for p in room.participants] == ["alice", "bob"]
        assert room.participants[-1].role == "participant"
        assert room_repo.rooms["room-1"].revision == 1
        assert activity_repo.messages("bob") == ['Joined room: "Graphs"']

    @pytest.mark.asyncio
    async def test_missing_room(self, membership) -> None:
        with pytest.raises(NotFound):
            await membership.join("ghost", "bob")

    @pytest.mark.asyncio
    async def test_capacity_exceeded_leaves_participants_unchanged(self, membership, room_repo) -> None:
        room_repo.put(make_room(members=("bob",), max_participants=2))

        with pytest.raises(CapacityExceeded):
            await membership.join("room-1", "carol")

        assert [p.user_id for p in room_repo.rooms["room-1"].participants] == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_already_member(self, membership, room_repo) -> None:
        room_repo.put(make_room(members=("bob",)))
        with pytest.raises(AlreadyMember):
            await membership.join("room-1", "bob")
        assert room_repo.rooms["room-1"].revision == 0

    @pytest.mark.asyncio
    async def test_capacity_checked_before_membership(self, membership, room_repo) -> None:
        room_repo.put(make_room(members=("bob",), max_participants=2))
        with pytest.raises(CapacityExceeded):
            await membership.join("room-1", "bob")

    @pytest.mark.asyncio
    async def test_private_room_password(self, membership, room_repo) -> None:
        room_repo.put(make_room(is_private=True, password_hash=hash_room_password("open-sesame")))

        with pytest.raises(Unauthorized) as exc_info:
            await membership.join("room-1", "bob", "wrong")
        assert exc_info.value.status_code == 401
        with pytest.raises(Unauthorized):
            await membership.join("room-1", "bob")

        room = await membership.join("room-1", "bob", "open-sesame")
        assert room.is_participant("bob")

    @pytest.mark.asyncio
    async def test_retries_on_revision_conflict(self, membership, room_repo) -> None:
        room_repo.put(make_room())
        room_repo.forced_conflicts = 2

        room = await membership.join("room-1", "bob")

        assert room.is_participant("bob")
        assert room_repo.rooms["room-1"].is_participant("bob")

    @pytest.mark.asyncio
    async def test_gives_up_after_repeated_conflicts(self, membership, room_repo) -> None:
        room_repo.put(make_room())
        room_repo.forced_conflicts = 10

        with pytest.raises(PersistenceError):
            await membership.join("room-1", "bob")

        assert not room_repo.rooms["room-1"].is_participant("bob")

    @pytest.mark.asyncio
    async def test_storage_failure_is_persistence_error(self, membership, room_repo) -> None:
        room_repo.put(make_room())
        room_repo.save_membership = AsyncMock(side_effect=PyMongoError("down"))

        with pytest.raises(PersistenceError):
            await membership.join("room-1", "bob")


class TestLeave:

    @pytest.mark.asyncio
    async def test_owner_leaving_promotes_earliest_joined(self, membership, room_repo, activity_repo) -> None:
        """房主 O 离开，成员按 [O, A, B] 顺序加入 → A 成为新房主。"""
        room_repo.put(make_room(owner="olga", members=("alice", "bob")))

        room = await membership.leave("room-1", "olga")

        assert room.owner == "alice"
        stored = room_repo.rooms["room-1"]
        assert stored.owner == "alice"
        assert [(p.user_id, p.role) for p in stored.participants] == [("alice", "owner"), ("bob", "participant")]
        assert activity_repo.messages("olga") == ['Left room: "Study Room"']

    @pytest.mark.asyncio
    async def test_promotion_tie_breaks_by_list_order(self, membership, room_repo) -> None:
        room = make_room(owner="olga")
        same_time = room.participants[0].joined_at + timedelta(seconds=5)
        room.participants += [
            Participant(user_id="zed", joined_at=same_time),
            Participant(user_id="amy", joined_at=same_time),
        ]
        room_repo.put(room)

        updated = await membership.leave("room-1", "olga")

        assert updated.owner == "zed"

    @pytest.mark.asyncio
    async def test_member_leaving_keeps_owner(self, membership, room_repo) -> None:
        room_repo.put(make_room(members=("bob",)))

        room = await membership.leave("room-1", "bob")

        assert room.owner == "alice"
        assert [p.user_id for p in room.participants] == ["alice"]

    @pytest.mark.asyncio
    async def test_last_participant_leaving_deletes_room(self, membership, room_repo, chat_repo) -> None:
        room_repo.put(make_room())
        await chat_repo.append("room-1", ChatEntry(seq=0, user_id="alice", message="bye"))

        assert await membership.leave("room-1", "alice") is None

        assert "room-1" not in room_repo.rooms
        assert "room-1" not in chat_repo.entries
        with pytest.raises(NotFound):
            await membership.get("room-1", "alice")

    @pytest.mark.asyncio
    async def test_non_participant_leave(self, membership, room_repo) -> None:
        room_repo.put(make_room())
        with pytest.raises(NotFound):
            await membership.leave("room-1", "bob")
        assert len(room_repo.rooms["room-1"].participants) == 1


class TestQueryAndDelete:

    @pytest.mark.asyncio
    async def test_private_room_visible_to_participants_only(self, membership, room_repo) -> None:
        room_repo.put(make_room(members=("bob",), is_private=True, password_hash=hash_room_password("pw12")))

        assert (await membership.get("room-1", "bob")).id == "room-1"
        with pytest.raises(Unauthorized):
            await membership.get("room-1", "carol")

    @pytest.mark.asyncio
    async def test_list_for_user(self, membership, room_repo) -> None:
        room_repo.put(make_room("r1", members=("bob",)))
        room_repo.put(make_room("r2"))

        rooms = await membership.list_for_user("bob")

        assert [r.id for r in rooms] == ["r1"]

    @pytest.mark.asyncio
    async def test_only_owner_can_delete(self, membership, room_repo, chat_repo) -> None:
        room_repo.put(make_room(members=("bob",)))
        await chat_repo.append("room-1", ChatEntry(seq=0, user_id="bob", message="hi"))

        with pytest.raises(Unauthorized):
            await membership.delete("room-1", "bob")
        assert "room-1" in room_repo.rooms

        await membership.delete("room-1", "alice")
        assert "room-1" not in room_repo.rooms
        assert "room-1" not in chat_repo.entries


class TestUpdate:

    @pytest.mark.asyncio
    async def test_owner_updates_profile(self, membership, room_repo) -> None:
        room_repo.put(make_room(members=("bob",)))

        room = await membership.update(
            "room-1", "alice",
            RoomUpdateRequest(name="  Graphs  ", description="BFS / DFS", type="interview-prep", max_participants=4),
        )

        stored = room_repo.rooms["room-1"]
        assert room.name == stored.name == "Graphs"
        assert stored.description == "BFS / DFS"
        assert stored.type == "interview-prep"
        assert stored.max_participants == 4
        assert stored.revision == 1
        # 未给出的字段保持不变
        assert stored.settings.allow_chat is True
        assert [p.user_id for p in stored.participants] == ["alice", "bob"]

    @pytest.mark.asyncio
    async def test_only_owner_can_update(self, membership, room_repo) -> None:
        room_repo.put(make_room(members=("bob",)))

        with pytest.raises(Unauthorized):
            await membership.update("room-1", "bob", RoomUpdateRequest(name="Hijacked"))

        assert room_repo.rooms["room-1"].name == "Study Room"
        assert room_repo.rooms["room-1"].revision == 0

    @pytest.mark.asyncio
    async def test_missing_room(self, membership) -> None:
        with pytest.raises(NotFound):
            await membership.update("ghost", "alice", RoomUpdateRequest(name="x"))

    @pytest.mark.asyncio
    async def test_capacity_cannot_drop_below_participants(self, membership, room_repo) -> None:
        room_repo.put(make_room(members=("bob", "carol")))

        with pytest.raises(ValidationError):
            await membership.update("room-1", "alice", RoomUpdateRequest(max_participants=2))
        assert room_repo.rooms["room-1"].max_participants == 10

        room = await membership.update("room-1", "alice", RoomUpdateRequest(max_participants=3))
        assert room.max_participants == 3
        assert room.is_full

    @pytest.mark.asyncio
    async def test_private_toggle_and_password(self, membership, room_repo) -> None:
        room_repo.put(make_room(members=("bob",)))

        with pytest.raises(ValidationError):
            await membership.update("room-1", "alice", RoomUpdateRequest(is_private=True))

        await membership.update("room-1", "alice", RoomUpdateRequest(is_private=True, password="swordfish"))
        stored = room_repo.rooms["room-1"]
        assert stored.is_private
        assert verify_room_password("swordfish", stored.password_hash)

        await membership.update("room-1", "alice", RoomUpdateRequest(is_private=False))
        assert room_repo.rooms["room-1"].password_hash is None

    @pytest.mark.asyncio
    async def test_settings_refresh_live_session(self, gateway, room_repo, user_repo) -> None:
        """在线会话在设置修改后立即按新开关校验。"""
        room_repo.put(make_room(members=("bob",)))
        registry = RoomRegistry(gateway, idle_grace=60)
        manager = MembershipManager(gateway, registry)

        async with registry.checkout("room-1") as session:
            await session.apply_document_update("v1", None, user_repo.users["alice"])

            await manager.update(
                "room-1", "alice", RoomUpdateRequest(settings=RoomSettings(allow_code_sharing=False)),
            )

            assert session.room_settings.allow_code_sharing is False
            with pytest.raises(Unauthorized):
                await session.apply_document_update("v2", None, user_repo.users["alice"])
        await registry.close()

        stored = room_repo.rooms["room-1"]
        assert stored.settings.allow_code_sharing is False
        # 资料写入不会覆盖在线会话落库的共享文档
        assert stored.shared_document.content == "v1"
