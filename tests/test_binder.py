"""
tests.test_binder
~~~~~~~~~~~~~~~~~

ConnectionBinder 单元测试 —— 绑定校验顺序、状态迁移、解绑与端到端场景。
"""
from __future__ import annotations

import json

import pytest

from tests.fakes import FakeWebSocket, make_room, presence_ids
from zcoder.core.errors import AlreadyBound, NotFound, TransportError, Unauthorized
from zcoder.core.rate_limit import WebSocketRateLimiter
from zcoder.schemas.rooms import RoomCreateRequest
from zcoder.services.binder import ConnectionBinder
from zcoder.services.connection import ConnectionState, LiveConnection
from zcoder.services.dispatcher import CollabDispatcher
from zcoder.services.membership import MembershipManager
from zcoder.services.registry import RoomRegistry


@pytest.fixture()
def registry(gateway) -> RoomRegistry:
    return RoomRegistry(gateway, idle_grace=0)


@pytest.fixture()
def binder(gateway, registry) -> ConnectionBinder:
    return ConnectionBinder(gateway, registry)


def connect(connection_id: str) -> tuple[LiveConnection, FakeWebSocket]:
    ws = FakeWebSocket()
    return LiveConnection(ws, connection_id=connection_id), ws


class TestBind:

    @pytest.mark.asyncio
    async def test_bind_participant(self, binder, registry, room_repo) -> None:
        room_repo.put(make_room())
        conn, ws = connect("c1")

        session = await binder.bind(conn, "room-1", "alice")

        assert conn.state is ConnectionState.BOUND
        assert conn.room_id == "room-1"
        assert conn.user.id == "alice"
        assert conn.session is session
        assert registry.get("room-1") is session
        assert ws.events() == ["room-joined", "active-users"]
        await registry.close()

    @pytest.mark.asyncio
    async def test_missing_room(self, binder, registry) -> None:
        conn, ws = connect("c1")
        with pytest.raises(NotFound, match="房间不存在"):
            await binder.bind(conn, "ghost", "alice")
        assert conn.state is ConnectionState.UNBOUND
        assert len(registry) == 0
        assert ws.sent == []

    @pytest.mark.asyncio
    async def test_missing_user(self, binder, registry, room_repo) -> None:
        room_repo.put(make_room())
        conn, _ = connect("c1")
        with pytest.raises(NotFound, match="用户不存在"):
            await binder.bind(conn, "room-1", "nobody")
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_non_participant_is_unauthorized(self, binder, registry, room_repo) -> None:
        """必须先通过 REST 持久加入，才能绑定实时连接。"""
        room_repo.put(make_room())
        conn, _ = connect("c1")
        with pytest.raises(Unauthorized):
            await binder.bind(conn, "room-1", "bob")
        assert conn.state is ConnectionState.UNBOUND
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_already_bound(self, binder, registry, room_repo) -> None:
        room_repo.put(make_room())
        room_repo.put(make_room("room-2"))
        conn, _ = connect("c1")
        await binder.bind(conn, "room-1", "alice")

        with pytest.raises(AlreadyBound):
            await binder.bind(conn, "room-2", "alice")

        assert conn.room_id == "room-1"
        assert registry.get("room-2") is None
        await registry.close()

    @pytest.mark.asyncio
    async def test_closed_connection_rejected(self, binder, room_repo) -> None:
        room_repo.put(make_room())
        conn, _ = connect("c1")
        conn.mark_closed()
        with pytest.raises(TransportError):
            await binder.bind(conn, "room-1", "alice")

    @pytest.mark.asyncio
    async def test_rebind_after_leave(self, binder, registry, room_repo) -> None:
        room_repo.put(make_room())
        room_repo.put(make_room("room-2"))
        conn, ws = connect("c1")
        await binder.bind(conn, "room-1", "alice")

        assert await binder.unbind(conn) is True
        assert conn.state is ConnectionState.UNBOUND
        await binder.bind(conn, "room-2", "alice")

        assert conn.room_id == "room-2"
        assert len(ws.events("room-joined")) == 2
        await registry.close()


class TestUnbind:

    @pytest.mark.asyncio
    async def test_unbind_unbound_connection(self, binder) -> None:
        conn, _ = connect("c1")
        assert await binder.unbind(conn) is False
        assert await binder.unbind(conn, closing=True) is False
        assert conn.state is ConnectionState.CLOSED

    @pytest.mark.asyncio
    async def test_unbind_does_not_touch_membership(self, binder, registry, room_repo) -> None:
        room_repo.put(make_room(members=("bob",)))
        conn, _ = connect("c1")
        await binder.bind(conn, "room-1", "bob")

        await binder.unbind(conn, closing=True)

        assert room_repo.rooms["room-1"].is_participant("bob")
        assert conn.closed
        await registry.close()

    @pytest.mark.asyncio
    async def test_last_unbind_evicts_session(self, binder, registry, room_repo) -> None:
        room_repo.put(make_room())
        conn, _ = connect("c1")
        session = await binder.bind(conn, "room-1", "alice")

        await binder.unbind(conn, closing=True)
        await registry._evictions["room-1"]

        assert registry.get("room-1") is None
        assert session.closed

    @pytest.mark.asyncio
    async def test_session_for_requires_matching_room(self, binder, registry, room_repo) -> None:
        room_repo.put(make_room())
        conn, _ = connect("c1")

        with pytest.raises(Unauthorized):
            binder.session_for(conn, "room-1")

        session = await binder.bind(conn, "room-1", "alice")
        assert binder.session_for(conn, "room-1") is session
        with pytest.raises(Unauthorized):
            binder.session_for(conn, "room-2")
        await registry.close()


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_two_users_share_code_and_presence(self, gateway, binder, registry) -> None:
        """A 建房并绑定，B 加入并绑定，A 改代码 B 收到，B 掉线后 A 看到在线名单更新。"""
        membership = MembershipManager(gateway)
        dispatcher = CollabDispatcher(binder, WebSocketRateLimiter(interval_seconds=0))

        room = await membership.create("alice", RoomCreateRequest(name="Pair", max_participants=2))
        c1, ws1 = connect("c1")
        await dispatcher.handle_text(c1, json.dumps({"event": "join-room", "data": {"roomId": room.id, "userId": "alice"}}))
        assert presence_ids(ws1.events("active-users")[-1]) == ["alice"]

        await membership.join(room.id, "bob")
        c2, ws2 = connect("c2")
        await dispatcher.handle_text(c2, json.dumps({"event": "join-room", "data": {"roomId": room.id, "userId": "bob"}}))
        assert presence_ids(ws1.events("active-users")[-1]) == ["alice", "bob"]
        assert presence_ids(ws2.events("active-users")[-1]) == ["alice", "bob"]

        await dispatcher.handle_text(c1, json.dumps({
            "event": "code-change",
            "data": {"roomId": room.id, "code": "print(1)", "language": "python"},
        }))
        update = ws2.events("code-update")[-1]
        assert update["code"] == "print(1)"
        assert update["language"] == "python"
        assert update["user"]["id"] == "alice"
        assert ws1.events("code-update") == []

        # B 的连接异常断开
        ws1.clear()
        await binder.unbind(c2, closing=True)
        assert presence_ids(ws1.events("active-users")[-1]) == ["alice"]
        assert ws1.events("user-left")[0]["user"]["id"] == "bob"
        assert ws2.events("error") == []

        await binder.unbind(c1, closing=True)
        await registry.close()
