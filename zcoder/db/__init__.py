"""
zcoder.db
~~~~~~~~~

协作引擎的 MongoDB 存储层。

进程内只保留一个 ``AsyncIOMotorClient``，由 lifespan 负责开关：
启动时 ``connect_mongo()``，关闭时在房间会话全部冲刷之后 ``close_mongo()``。

集合划分（每个集合由对应的仓库类独占读写）:

- ``rooms``          → ``RoomRepository``：房间记录、持久成员与共享文档快照；
- ``chat_messages``  → ``ChatRepository``：按 ``(room_id, seq)`` 追加的聊天记录；
- ``activities``     → ``ActivityRepository``：用户动态；
- ``users``          → ``UserRepository``：账号服务维护的用户目录（只读）。

客户端开启 ``tz_aware``，读回的时间都带 UTC 时区，与模型里的 ``utcnow()`` 一致。
"""
from __future__ import annotations

from urllib.parse import urlparse, urlunparse

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError

from zcoder.core.logging import get_logger
from zcoder.core.settings import settings

logger = get_logger(__name__)

COLLECTIONS = ("rooms", "chat_messages", "activities", "users")

_client: AsyncIOMotorClient | None = None


def _mask_uri(uri: str) -> str:
    """日志里只输出去掉密码的连接串。"""
    parsed = urlparse(uri)
    if not parsed.password:
        return uri
    netloc = f"{parsed.username}:***@{parsed.hostname}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))


async def connect_mongo() -> None:
    """建立连接并对目标库 ping 一次；失败直接抛出，让服务启动失败。"""
    global _client
    _client = AsyncIOMotorClient(settings.MONGO_URI, tz_aware=True)
    try:
        await _client[settings.MONGO_DB_NAME].command("ping")
    except PyMongoError as e:
        logger.error("MongoDB 连接失败 | uri=%s | %s", _mask_uri(settings.MONGO_URI), e, exc_info=True)
        _client.close()
        _client = None
        raise
    logger.info(
        "MongoDB 已连接 | uri=%s | db=%s | 集合: %s",
        _mask_uri(settings.MONGO_URI), settings.MONGO_DB_NAME, ", ".join(COLLECTIONS),
    )


async def ping_mongo() -> bool:
    """健康检查用：存储是否可达。未连接时返回 False。"""
    if _client is None:
        return False
    try:
        await _client[settings.MONGO_DB_NAME].command("ping")
    except PyMongoError as e:
        logger.warning("MongoDB ping 失败 | %s", e)
        return False
    return True


async def close_mongo() -> None:
    global _client
    if _client is None:
        return
    _client.close()
    _client = None
    logger.info("MongoDB 连接已关闭")


def get_database() -> AsyncIOMotorDatabase:
    """返回协作引擎使用的数据库。

    Raises:
        RuntimeError: ``connect_mongo()`` 尚未调用。
    """
    if _client is None:
        raise RuntimeError("MongoDB 尚未初始化，请先调用 connect_mongo()")
    return _client[settings.MONGO_DB_NAME]
