"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用内存实现替换 MongoDB 仓库，
使单元测试无需数据库即可快速运行。
"""
from __future__ import annotations

import os

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置
os.environ.setdefault("WS_RATE_LIMIT_INTERVAL", "0")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("DOCUMENT_PERSIST_BACKOFF", "0")
os.environ.setdefault("ROOM_PASSWORD_ITERATIONS", "1000")

from tests.fakes import (  # noqa: E402
    FakeActivityRepository,
    FakeChatRepository,
    FakeRoomRepository,
    FakeUserRepository,
)
from zcoder.services.persistence import PersistenceGateway  # noqa: E402


@pytest.fixture()
def room_repo() -> FakeRoomRepository:
    return FakeRoomRepository()


@pytest.fixture()
def chat_repo() -> FakeChatRepository:
    return FakeChatRepository()


@pytest.fixture()
def activity_repo() -> FakeActivityRepository:
    return FakeActivityRepository()


@pytest.fixture()
def user_repo() -> FakeUserRepository:
    repo = FakeUserRepository()
    for name in ("alice", "bob", "carol", "dave"):
        repo.add(name, name.capitalize())
    return repo


@pytest.fixture()
def gateway(
    room_repo: FakeRoomRepository,
    chat_repo: FakeChatRepository,
    activity_repo: FakeActivityRepository,
    user_repo: FakeUserRepository,
) -> PersistenceGateway:
    return PersistenceGateway(room_repo, chat_repo, activity_repo, user_repo)
