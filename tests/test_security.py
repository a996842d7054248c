"""
tests.test_security
~~~~~~~~~~~~~~~~~~~

房间密码哈希与 WebSocket 限流器单元测试。
"""
from __future__ import annotations

import time

from zcoder.core.rate_limit import WebSocketRateLimiter
from zcoder.core.security import hash_room_password, verify_room_password


def test_hash_and_verify() -> None:
    encoded = hash_room_password("open-sesame", iterations=1000)

    assert encoded.startswith("pbkdf2_sha256$1000$")
    assert verify_room_password("open-sesame", encoded)
    assert not verify_room_password("open-sesam", encoded)


def test_salt_is_random() -> None:
    assert hash_room_password("same", iterations=1000) != hash_room_password("same", iterations=1000)


def test_malformed_or_missing_hash_rejected() -> None:
    assert not verify_room_password("pw", None)
    assert not verify_room_password("", hash_room_password("pw", iterations=1000))
    assert not verify_room_password("pw", "plaintext")
    assert not verify_room_password("pw", "md5$1$00$00")
    assert not verify_room_password("pw", "pbkdf2_sha256$many$zz$00")


def test_websocket_rate_limiter() -> None:
    """测试 WebSocket 内存限流器的基础逻辑"""
    limiter = WebSocketRateLimiter(interval_seconds=0.2)

    # 第一次发消息应该允许
    assert limiter.is_allowed("c1") is True
    # 立刻发第二次应该被拦截
    assert limiter.is_allowed("c1") is False
    # 其他连接不受影响
    assert limiter.is_allowed("c2") is True

    # 等待超过间隔时间后应该放行
    time.sleep(0.25)
    assert limiter.is_allowed("c1") is True

    # 最后清理记录
    limiter.remove_client("c1")
    assert "c1" not in limiter._last_message_time


def test_websocket_rate_limiter_disabled() -> None:
    limiter = WebSocketRateLimiter(interval_seconds=0)
    assert all(limiter.is_allowed("c1") for _ in range(5))
