"""
zcoder.services.room_session
~~~~~~~~~~~~~~~~~~~~~~~~~~~~

房间会话 —— 单个在线房间的内存 Actor。

每个 ``RoomSession`` 持有该房间的在线连接（``RoomBroadcaster``）、
共享文档缓存和聊天追加点。所有会改动房间状态的操作（绑定 / 解绑、
文档更新、光标、聊天、在线名单）都投递到同一个消息队列，由唯一的
工作协程按到达顺序逐个执行，因此同一房间内的操作永不交错。

会话存活期间，内存中的共享文档就是在线客户端的唯一权威来源，
不会再回读数据库：

- 文档更新：最后写入者胜出，版本号 +1，异步落库（不阻塞串行化点，
  失败按指数退避重试，只合并写入最新版本）；
- 聊天消息：先在限定时间内落库，成功后才广播；失败只告知发送者。
"""
from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from zcoder.core.errors import PersistenceError, TransportError, Unauthorized, ValidationError
from zcoder.core.logging import get_logger
from zcoder.core.settings import settings
from zcoder.schemas.protocol import (
    ACTIVE_USERS,
    CHAT_MESSAGE,
    CODE_UPDATE,
    CURSOR_UPDATE,
    ROOM_JOINED,
    USER_JOINED,
    USER_LEFT,
)
from zcoder.schemas.rooms import (
    CHAT_TYPES,
    ChatEntry,
    LiveRoomInfo,
    Room,
    RoomSettings,
    SharedDocument,
    UserInfo,
    utcnow,
)
from zcoder.services.connection import LiveConnection
from zcoder.services.persistence import PersistenceGateway
from zcoder.services.room_broadcaster import RoomBroadcaster

logger = get_logger(__name__)

T = TypeVar("T")

_Command = tuple[Callable[[], Awaitable[Any]], "asyncio.Future[Any]"]


class RoomSession:
    """一个在线房间的会话 Actor。

    Attributes:
        room_id: 房间唯一标识。
        broadcaster: 本房间的在线连接表与广播器。
        document: 共享文档缓存（会话内的权威状态）。
        room_settings: 房间功能开关（加载时的快照）。
        chat_tail: 最近的聊天消息，用于入房快照。
    """

    def __init__(self, room_id: str, gateway: PersistenceGateway) -> None:
        self.room_id = room_id
        self.broadcaster = RoomBroadcaster(room_id)
        self.document = SharedDocument()
        self.room_settings = RoomSettings()
        self.chat_tail: deque[ChatEntry] = deque(maxlen=settings.CHAT_HISTORY_LIMIT)
        self.created_at = utcnow()

        self._gateway = gateway
        self._next_seq = 0
        self._mailbox: asyncio.Queue[_Command | None] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._load_task: asyncio.Task[None] | None = None
        self._flush_task: asyncio.Task[None] | None = None
        self._document_dirty = False
        self._reservations = 0
        self._closed = False

    def __repr__(self) -> str:
        return f"<RoomSession {self.room_id} online={self.online_count} v={self.document.version}>"

    # ── 生命周期 ──────────────────────────────────────────────────────

    async def start(self) -> None:
        """加载持久化状态并启动工作协程。可重复调用，只会加载一次。

        Raises:
            NotFound: 房间记录不存在。
            PersistenceError: 存储不可用。
        """
        if self._closed:
            raise TransportError("房间会话已关闭")
        if self._load_task is None:
            self._load_task = asyncio.create_task(self._load())
        await asyncio.shield(self._load_task)

    async def _load(self) -> None:
        state = await self._gateway.load_session_state(self.room_id, settings.CHAT_HISTORY_LIMIT)
        self.document = state.room.shared_document.model_copy()
        self.room_settings = state.room.settings.model_copy()
        self.chat_tail.extend(state.chat_tail)
        self._next_seq = state.next_seq
        self._worker = asyncio.create_task(self._run(), name=f"room-session:{self.room_id}")
        logger.info(
            "房间会话已创建 | room=%s | 文档版本=%d | 恢复 %d 条聊天",
            self.room_id, self.document.version, len(state.chat_tail),
        )

    async def close(self) -> None:
        """停止会话：先执行完已入队的操作，再冲刷未落库的共享文档。"""
        if self._closed:
            return
        self._closed = True
        if self._worker is not None:
            self._mailbox.put_nowait(None)
            await self._worker
        elif self._load_task is not None and not self._load_task.done():
            self._load_task.cancel()
            await asyncio.gather(self._load_task, return_exceptions=True)
        flushed = await self.flush()
        logger.info(
            "房间会话已关闭 | room=%s | 文档版本=%d | 已落库=%s",
            self.room_id, self.document.version, flushed,
        )

    @property
    def closed(self) -> bool:
        return self._closed

    # ── 注册表用的占用计数 ─────────────────────────────────────────────

    def reserve(self) -> None:
        """标记有一个绑定正在进行，期间会话不会被回收。"""
        self._reservations += 1

    def release(self) -> None:
        self._reservations = max(0, self._reservations - 1)

    @property
    def is_idle(self) -> bool:
        """没有在线连接，也没有进行中的绑定。"""
        return self.broadcaster.online_count == 0 and self._reservations == 0

    @property
    def online_count(self) -> int:
        return self.broadcaster.online_count

    # ── 串行化点 ──────────────────────────────────────────────────────

    async def _submit(self, operation: Callable[[], Awaitable[T]]) -> T:
        """把操作投递到本房间队列，等待它按顺序执行完毕。

        调用方被取消时，已入队的操作仍会被执行。
        """
        if self._closed:
            raise TransportError("房间会话已关闭")
        if self._worker is None:
            raise TransportError("房间会话尚未启动")
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        self._mailbox.put_nowait((operation, future))
        return await future

    async def _run(self) -> None:
        while True:
            command = await self._mailbox.get()
            if command is None:
                break
            operation, future = command
            try:
                result = await operation()
            except Exception as exc:
                if future.done():
                    logger.warning("操作失败且调用方已离开 | room=%s | %s", self.room_id, exc)
                else:
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)

    # ── 绑定 / 解绑 ───────────────────────────────────────────────────

    async def bind(self, connection: LiveConnection, user: UserInfo, room: Room) -> dict[str, Any]:
        """登记连接，向它发送入房快照，并广播在线名单。

        Returns:
            入房快照 ``{room, sharedCode, chatHistory}``。
        """

        async def operation() -> dict[str, Any]:
            first_connection = not self.broadcaster.has_user(user.id)
            self.broadcaster.add(connection, user)

            public_room = room.to_public()
            public_room["sharedDocument"] = self.document.to_wire()
            snapshot = {
                "room": public_room,
                "sharedCode": self.document.to_wire(),
                "chatHistory": [entry.to_wire() for entry in self.chat_tail],
            }
            try:
                await connection.send(ROOM_JOINED, snapshot)
            except TransportError as e:
                logger.warning("入房快照发送失败 | room=%s | conn=%s | %s", self.room_id, connection.connection_id, e.message)

            if first_connection:
                await self.broadcaster.broadcast(
                    USER_JOINED, {"user": user.to_wire()}, exclude=connection.connection_id,
                )
            await self._broadcast_presence()
            logger.info(
                "连接已绑定 | room=%s | user=%s | conn=%s | 在线: %d",
                self.room_id, user.id, connection.connection_id, self.online_count,
            )
            return snapshot

        return await self._submit(operation)

    async def unbind(self, connection_id: str) -> bool:
        """移除在线连接并广播在线名单。连接不在表中时返回 False。"""

        async def operation() -> bool:
            binding = self.broadcaster.remove(connection_id)
            if binding is None:
                return False
            if not self.broadcaster.has_user(binding.user.id):
                await self.broadcaster.broadcast(USER_LEFT, {"user": binding.user.to_wire()})
            await self._broadcast_presence()
            logger.info(
                "连接已解绑 | room=%s | user=%s | conn=%s | 在线: %d",
                self.room_id, binding.user.id, connection_id, self.online_count,
            )
            return True

        return await self._submit(operation)

    # ── 房间操作 ──────────────────────────────────────────────────────

    async def apply_document_update(
        self,
        content: str,
        language: str | None,
        author: UserInfo,
        *,
        sender_id: str | None = None,
        cursor_position: Any = None,
    ) -> SharedDocument:
        """覆盖共享文档（最后写入者胜出），版本号 +1，并通知其他连接。"""

        async def operation() -> SharedDocument:
            if not self.room_settings.allow_code_sharing:
                raise Unauthorized("该房间已关闭代码共享")
            self.document = SharedDocument(
                content=content,
                language=language or self.document.language,
                version=self.document.version + 1,
                last_modified_by=author.id,
                last_modified_at=utcnow(),
            )
            self._schedule_document_persist()
            await self.broadcaster.broadcast(
                CODE_UPDATE,
                {
                    "code": self.document.content,
                    "language": self.document.language,
                    "cursorPosition": cursor_position,
                    "version": self.document.version,
                    "user": author.brief(),
                },
                exclude=sender_id,
            )
            return self.document

        return await self._submit(operation)

    async def apply_cursor_update(
        self, position: Any, author: UserInfo, *, sender_id: str | None = None,
    ) -> None:
        """转发光标位置，不改动任何持久状态。"""

        async def operation() -> None:
            await self.broadcaster.broadcast(
                CURSOR_UPDATE,
                {"cursorPosition": position, "user": author.brief()},
                exclude=sender_id,
            )

        await self._submit(operation)

    async def append_chat(self, message: str, type: str, author: UserInfo) -> ChatEntry:
        """追加一条聊天消息：先落库，成功后再广播给全房间（含发送者）。

        Raises:
            ValidationError: 消息类型不合法。
            Unauthorized: 房间已关闭聊天。
            PersistenceError: 落库失败或超时，此时不会广播。
        """

        async def operation() -> ChatEntry:
            if type not in CHAT_TYPES:
                raise ValidationError(f"不支持的消息类型: {type}")
            if not self.room_settings.allow_chat:
                raise Unauthorized("该房间已关闭聊天")

            entry = ChatEntry(seq=self._next_seq, user_id=author.id, message=message, type=type)
            self._next_seq += 1
            try:
                await asyncio.wait_for(
                    self._gateway.append_chat(self.room_id, entry),
                    timeout=settings.CHAT_PERSIST_TIMEOUT,
                )
            except asyncio.TimeoutError as e:
                logger.error("聊天落库超时 | room=%s | seq=%d", self.room_id, entry.seq)
                raise PersistenceError("消息保存超时，请重试") from e
            except PersistenceError:
                logger.error("聊天落库失败 | room=%s | seq=%d", self.room_id, entry.seq, exc_info=True)
                raise

            self.chat_tail.append(entry)
            wire = entry.to_wire()
            await self.broadcaster.broadcast(
                CHAT_MESSAGE,
                {
                    "message": entry.message,
                    "type": entry.type,
                    "timestamp": wire["timestamp"],
                    "user": author.to_wire(),
                },
            )
            return entry

        return await self._submit(operation)

    async def update_settings(self, room_settings: RoomSettings) -> None:
        """房主修改房间设置后刷新本会话的功能开关快照。

        在串行化点上执行，之后到达的代码 / 聊天操作按新开关校验。
        """
        await self.start()

        async def operation() -> None:
            self.room_settings = room_settings.model_copy()
            logger.info(
                "房间设置已刷新 | room=%s | code=%s | chat=%s",
                self.room_id, room_settings.allow_code_sharing, room_settings.allow_chat,
            )

        await self._submit(operation)

    async def recompute_presence(self) -> list[str]:
        """重新计算并广播在线名单，返回去重后的用户 ID。"""

        async def operation() -> list[str]:
            return await self._broadcast_presence()

        return await self._submit(operation)

    async def _broadcast_presence(self) -> list[str]:
        users = self.broadcaster.active_users()
        await self.broadcaster.broadcast(ACTIVE_USERS, [user.to_wire() for user in users])
        return [user.id for user in users]

    # ── 共享文档异步落库 ───────────────────────────────────────────────

    def _schedule_document_persist(self) -> None:
        self._document_dirty = True
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.create_task(self._persist_document_loop())

    async def _persist_document_loop(self) -> None:
        # 每轮只写当前最新版本，中间版本自然被合并
        while self._document_dirty:
            self._document_dirty = False
            snapshot = self.document
            if not await self._persist_document(snapshot):
                self._document_dirty = True
                return

    async def _persist_document(self, snapshot: SharedDocument) -> bool:
        attempts = settings.DOCUMENT_PERSIST_RETRIES
        for attempt in range(1, attempts + 1):
            try:
                await self._gateway.save_document(self.room_id, snapshot)
                return True
            except Exception as e:
                logger.warning(
                    "共享文档落库失败 | room=%s | version=%d | 第 %d/%d 次 | %s",
                    self.room_id, snapshot.version, attempt, attempts, e,
                )
                if attempt < attempts:
                    await asyncio.sleep(settings.DOCUMENT_PERSIST_BACKOFF * 2 ** (attempt - 1))
        logger.error(
            "共享文档落库放弃，等待下次更新或会话关闭时重试 | room=%s | version=%d",
            self.room_id, snapshot.version,
        )
        return False

    async def flush(self) -> bool:
        """等待进行中的文档落库，并补写仍未落库的版本。

        Returns:
            共享文档是否已全部落库。
        """
        if self._flush_task is not None and not self._flush_task.done():
            await self._flush_task
        if self._document_dirty:
            await self._persist_document_loop()
        return not self._document_dirty

    # ── 摘要 ──────────────────────────────────────────────────────────

    def info(self) -> LiveRoomInfo:
        """返回在线会话摘要信息。"""
        return LiveRoomInfo(
            room_id=self.room_id,
            online_count=self.online_count,
            active_users=[user.id for user in self.broadcaster.active_users()],
            document_version=self.document.version,
        )
