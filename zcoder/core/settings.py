"""
zcoder.core.settings
~~~~~~~~~~~~~~~~~~~~

集中式配置管理，基于 pydantic-settings 自动从 ``.env`` 文件加载。

支持多环境配置（dev / test / prod），加载顺序为:
  1. 环境变量（最高优先级）
  2. ``.env.{ENVIRONMENT}`` 环境专属文件
  3. ``.env`` 基础文件
  4. 字段默认值（最低优先级）
"""
from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# 项目根目录（zcoder/core/settings.py 向上三级）
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent

# 读取当前环境标识（在 Settings 类定义之前，用于决定加载哪个 .env 文件）
_CURRENT_ENV: str = os.getenv("ENVIRONMENT", "dev")


class Settings(BaseSettings):
    """全局配置对象，字段值按如下优先级加载：环境变量 > .env.{env} > .env > 默认值。"""

    # ── 基础 ──────────────────────────────────────────────────────────
    PROJECT_NAME: str = Field(default="ZCoder Collab Backend", description="项目名称")
    VERSION: str = Field(default="0.1.0", description="版本号")
    ENVIRONMENT: Literal["dev", "test", "prod"] = Field(
        default="dev",
        description="运行环境：dev / test / prod",
    )

    # ── 服务 ──────────────────────────────────────────────────────────
    HOST: str = Field(default="0.0.0.0", description="服务监听地址")
    PORT: int = Field(default=5000, description="服务监听端口")
    LOG_LEVEL: str = Field(default="INFO", description="日志级别（可被环境属性覆盖）")
    CLIENT_URL: str = Field(
        default="http://localhost:3000",
        description="prod 环境允许的前端来源（CORS）",
    )

    # ── MongoDB ───────────────────────────────────────────────────────
    MONGO_URI: str = Field(
        default="mongodb://localhost:27017",
        description="MongoDB 连接串",
    )
    MONGO_DB_NAME: str = Field(default="zcoder", description="数据库名称")

    # ── 协作房间 ──────────────────────────────────────────────────────
    CHAT_HISTORY_LIMIT: int = Field(
        default=50,
        ge=0,
        description="会话加载 / 入房快照携带的最近聊天条数",
    )
    CHAT_PERSIST_TIMEOUT: float = Field(
        default=5.0,
        gt=0,
        description="聊天消息落库的最长等待秒数（超时视为持久化失败）",
    )
    DOCUMENT_PERSIST_RETRIES: int = Field(
        default=3,
        ge=1,
        description="共享文档异步落库的最大尝试次数",
    )
    DOCUMENT_PERSIST_BACKOFF: float = Field(
        default=0.5,
        ge=0,
        description="共享文档落库重试的基础退避秒数（指数增长）",
    )
    SESSION_IDLE_GRACE_SECONDS: float = Field(
        default=15.0,
        ge=0,
        description="房间会话无连接后保留多久再回收（容忍断线重连）",
    )
    MEMBERSHIP_WRITE_RETRIES: int = Field(
        default=3,
        ge=1,
        description="成员变更遇到并发冲突时的重试次数",
    )
    ROOM_PASSWORD_ITERATIONS: int = Field(
        default=200_000,
        ge=1,
        description="私有房间密码 PBKDF2 迭代次数",
    )

    # ── WebSocket ─────────────────────────────────────────────────────
    WS_SEND_TIMEOUT: float = Field(
        default=5.0,
        gt=0,
        description="单帧下行发送超时秒数",
    )
    WS_RATE_LIMIT_INTERVAL: float = Field(
        default=0.25,
        ge=0,
        description="同一连接两条聊天消息之间的最小间隔秒数（0 表示不限流）",
    )
    RATE_LIMIT_ENABLED: bool = Field(
        default=True,
        description="是否启用 REST 接口限流",
    )

    # ── Pydantic Settings ─────────────────────────────────────────────
    # 先加载 .env.{env} 再加载 .env，前者优先级更高
    model_config = SettingsConfigDict(
        env_file=(f".env.{_CURRENT_ENV}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── 环境判断 ──────────────────────────────────────────────────────

    @property
    def is_prod(self) -> bool:
        """当前是否为生产环境。"""
        return self.ENVIRONMENT == "prod"

    @property
    def is_test(self) -> bool:
        """当前是否为测试环境。"""
        return self.ENVIRONMENT == "test"

    @property
    def is_dev(self) -> bool:
        """当前是否为开发环境。"""
        return self.ENVIRONMENT == "dev"

    # ── 环境差异化行为 ────────────────────────────────────────────────

    @property
    def debug(self) -> bool:
        """是否开启 debug 模式。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def reload(self) -> bool:
        """是否开启热重载。仅 dev 环境开启。"""
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """根据环境自动推断日志级别。

        - dev  → INFO
        - test → DEBUG（方便排查测试失败）
        - prod → WARNING（减少噪音）

        如果环境变量中显式设置了 LOG_LEVEL，会覆盖此默认推断。
        """
        env_log = os.getenv("LOG_LEVEL")
        if env_log:
            return env_log
        return {
            "dev": "INFO",
            "test": "DEBUG",
            "prod": "WARNING",
        }.get(self.ENVIRONMENT, "INFO")

    @property
    def allow_cors_all_origins(self) -> bool:
        """是否允许所有 CORS 来源。非 prod 环境允许，方便本地调试。"""
        return not self.is_prod


@lru_cache
def get_settings() -> Settings:
    """获取全局 Settings 单例（带缓存，避免重复解析 .env）。"""
    return Settings()


settings: Settings = get_settings()
