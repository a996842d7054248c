"""
tests.test_registry
~~~~~~~~~~~~~~~~~~~

RoomRegistry 单元测试 —— 懒创建、空闲回收、宽限期内复用与关闭冲刷。
"""
from __future__ import annotations

import asyncio

import pytest

from tests.fakes import FakeWebSocket, make_room
from zcoder.core.errors import NotFound, TransportError
from zcoder.services.connection import LiveConnection
from zcoder.services.registry import RoomRegistry


class TestRoomRegistry:

    @pytest.mark.asyncio
    async def test_get_or_create_is_lazy_and_shared(self, gateway, room_repo) -> None:
        """同一房间并发获取只创建一个会话。"""
        room_repo.put(make_room())
        registry = RoomRegistry(gateway, idle_grace=0)

        first, second = await asyncio.gather(
            registry.get_or_create("room-1"), registry.get_or_create("room-1"),
        )

        assert first is second
        assert len(registry) == 1
        first.release()
        second.release()
        await registry.close()

    @pytest.mark.asyncio
    async def test_missing_room_is_not_registered(self, gateway) -> None:
        registry = RoomRegistry(gateway, idle_grace=0)

        with pytest.raises(NotFound):
            async with registry.checkout("ghost"):
                pass

        assert registry.get("ghost") is None
        assert len(registry) == 0

    @pytest.mark.asyncio
    async def test_idle_session_is_evicted_and_flushed(self, gateway, room_repo, user_repo) -> None:
        room_repo.put(make_room())
        registry = RoomRegistry(gateway, idle_grace=0)

        async with registry.checkout("room-1") as session:
            await session.apply_document_update("saved on evict", None, user_repo.users["alice"])
        await registry._evictions["room-1"]

        assert registry.get("room-1") is None
        assert session.closed
        assert room_repo.rooms["room-1"].shared_document.content == "saved on evict"

    @pytest.mark.asyncio
    async def test_rebind_within_grace_keeps_session(self, gateway, room_repo) -> None:
        room_repo.put(make_room())
        registry = RoomRegistry(gateway, idle_grace=10)

        async with registry.checkout("room-1") as first:
            pass
        pending = registry._evictions["room-1"]

        async with registry.checkout("room-1") as second:
            assert second is first
        await asyncio.gather(pending, return_exceptions=True)

        assert pending.done()
        assert registry.get("room-1") is first
        assert not first.closed
        await registry.close()
        assert first.closed

    @pytest.mark.asyncio
    async def test_session_with_connections_is_not_evicted(self, gateway, room_repo, user_repo) -> None:
        room = make_room()
        room_repo.put(room)
        registry = RoomRegistry(gateway, idle_grace=0)

        async with registry.checkout("room-1") as session:
            await session.bind(LiveConnection(FakeWebSocket(), "c1"), user_repo.users["alice"], room)

        assert registry.evict_if_idle("room-1") is None
        assert "room-1" not in registry._evictions
        assert registry.get("room-1") is session
        await registry.close()

    @pytest.mark.asyncio
    async def test_recreated_session_reads_latest_document(self, gateway, room_repo, user_repo) -> None:
        """回收后重新创建的会话从持久层读取最新文档。"""
        room_repo.put(make_room())
        registry = RoomRegistry(gateway, idle_grace=0)

        async with registry.checkout("room-1") as old:
            await old.apply_document_update("v1", None, user_repo.users["alice"])
        await registry._evictions["room-1"]

        async with registry.checkout("room-1") as new:
            assert new is not old
            assert new.document.content == "v1"
            assert new.document.version == 1
        await registry.close()

    @pytest.mark.asyncio
    async def test_list_sessions(self, gateway, room_repo, user_repo) -> None:
        room = make_room()
        room_repo.put(room)
        registry = RoomRegistry(gateway, idle_grace=0)

        async with registry.checkout("room-1") as session:
            await session.bind(LiveConnection(FakeWebSocket(), "c1"), user_repo.users["alice"], room)

        infos = registry.list_sessions()
        assert len(infos) == 1
        assert infos[0].room_id == "room-1"
        assert infos[0].online_count == 1
        assert infos[0].active_users == ["alice"]
        assert infos[0].to_wire()["documentVersion"] == 0
        await registry.close()

    @pytest.mark.asyncio
    async def test_close_flushes_every_session(self, gateway, room_repo, user_repo) -> None:
        for room_id in ("r1", "r2"):
            room_repo.put(make_room(room_id))
        registry = RoomRegistry(gateway, idle_grace=60)

        for room_id in ("r1", "r2"):
            async with registry.checkout(room_id) as session:
                await session.apply_document_update(f"code of {room_id}", None, user_repo.users["alice"])

        await registry.close()

        assert len(registry) == 0
        assert room_repo.rooms["r1"].shared_document.content == "code of r1"
        assert room_repo.rooms["r2"].shared_document.content == "code of r2"

    @pytest.mark.asyncio
    async def test_no_new_session_after_close(self, gateway, room_repo) -> None:
        """注册表关闭后不再创建会话，避免出现没人冲刷的新会话。"""
        room_repo.put(make_room())
        registry = RoomRegistry(gateway, idle_grace=0)
        await registry.close()

        with pytest.raises(TransportError):
            async with registry.checkout("room-1"):
                pass

        assert registry.get("room-1") is None
        assert len(registry) == 0
