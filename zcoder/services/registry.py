"""
zcoder.services.registry
~~~~~~~~~~~~~~~~~~~~~~~~

房间会话注册表 —— 管理所有在线房间会话的生命周期。

- 同一房间同一时刻最多一个 ``RoomSession``；
- 会话在第一次绑定时懒创建（从持久层恢复文档与聊天尾部）；
- 最后一个连接离开后经过一段宽限期回收，回收前冲刷未落库的文档；
- 回收中的房间再次被访问时，会等旧会话关闭完再创建新会话，
  保证新会话读到的是最新落库的文档。

注册表挂载在 ``app.state`` 上，由 FastAPI lifespan 创建和关闭。
"""
from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from zcoder.core.errors import TransportError
from zcoder.core.logging import get_logger
from zcoder.core.settings import settings
from zcoder.schemas.rooms import LiveRoomInfo
from zcoder.services.persistence import PersistenceGateway
from zcoder.services.room_session import RoomSession

logger = get_logger(__name__)


class RoomRegistry:
    """房间会话注册表。

    - ``checkout(room_id)``   → 取得（必要时创建）会话，期间不会被回收
    - ``get(room_id)``        → 只查询已存在的会话
    - ``evict_if_idle(room_id)`` → 会话空闲时安排回收
    - ``list_sessions()``     → 列出所有在线会话摘要

    Attributes:
        gateway: 持久化网关。
        idle_grace: 空闲会话的回收宽限秒数。
    """

    def __init__(self, gateway: PersistenceGateway, idle_grace: float | None = None) -> None:
        self.gateway = gateway
        self.idle_grace = settings.SESSION_IDLE_GRACE_SECONDS if idle_grace is None else idle_grace
        self._sessions: dict[str, RoomSession] = {}
        self._evictions: dict[str, asyncio.Task[None]] = {}
        self._closing: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()
        self._closed = False

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, room_id: str) -> RoomSession | None:
        return self._sessions.get(room_id)

    async def get_or_create(self, room_id: str) -> RoomSession:
        """取得房间会话并占用一次（调用方负责 ``release()``）。

        Raises:
            NotFound: 房间不存在。
            PersistenceError: 存储不可用。
            TransportError: 注册表已关闭。
        """
        while True:
            async with self._lock:
                if self._closed:
                    raise TransportError("服务正在关闭，请稍后重连")
                closing = self._closing.get(room_id)
                if closing is None:
                    pending = self._evictions.pop(room_id, None)
                    if pending is not None:
                        pending.cancel()
                    session = self._sessions.get(room_id)
                    if session is None:
                        session = RoomSession(room_id, self.gateway)
                        self._sessions[room_id] = session
                    session.reserve()
                    break
            # 旧会话正在关闭，等它冲刷完再重建
            await asyncio.shield(closing)

        try:
            await session.start()
        except BaseException:
            session.release()
            async with self._lock:
                if self._sessions.get(room_id) is session and session.is_idle:
                    del self._sessions[room_id]
            raise
        return session

    @asynccontextmanager
    async def checkout(self, room_id: str) -> AsyncIterator[RoomSession]:
        """占用房间会话，退出时释放并在空闲时安排回收。"""
        session = await self.get_or_create(room_id)
        try:
            yield session
        finally:
            session.release()
            self.evict_if_idle(room_id)

    def evict_if_idle(self, room_id: str) -> asyncio.Task[None] | None:
        """会话空闲时安排回收，返回回收任务（没有安排时返回 None）。"""
        session = self._sessions.get(room_id)
        if session is None or not session.is_idle or room_id in self._evictions:
            return None
        task = asyncio.create_task(self._evict_after_grace(room_id, session))
        self._evictions[room_id] = task
        return task

    async def _evict_after_grace(self, room_id: str, session: RoomSession) -> None:
        try:
            await asyncio.sleep(self.idle_grace)
        except asyncio.CancelledError:
            return
        async with self._lock:
            if self._evictions.get(room_id) is asyncio.current_task():
                del self._evictions[room_id]
            if self._sessions.get(room_id) is not session or not session.is_idle:
                return
            del self._sessions[room_id]
            closing = asyncio.create_task(session.close())
            self._closing[room_id] = closing
        try:
            await closing
            logger.info("空闲房间会话已回收 | room=%s | 剩余会话: %d", room_id, len(self._sessions))
        except Exception:
            logger.error("房间会话关闭异常 | room=%s", room_id, exc_info=True)
        finally:
            async with self._lock:
                if self._closing.get(room_id) is closing:
                    del self._closing[room_id]

    def list_sessions(self) -> list[LiveRoomInfo]:
        """列出所有在线房间会话的摘要信息。"""
        return [session.info() for session in self._sessions.values() if not session.closed]

    async def close(self) -> None:
        """关闭全部会话（服务停止时调用），冲刷所有未落库的共享文档。"""
        if self._closed:
            return
        self._closed = True
        for task in self._evictions.values():
            task.cancel()
        await asyncio.gather(*self._evictions.values(), return_exceptions=True)
        self._evictions.clear()

        async with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        results = await asyncio.gather(
            *(session.close() for session in sessions),
            *self._closing.values(),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.error("关闭房间会话失败: %s", result)
        logger.info("房间会话注册表已关闭 | 关闭会话: %d", len(sessions))
