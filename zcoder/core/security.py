"""
zcoder.core.security
~~~~~~~~~~~~~~~~~~~~

私有房间密码的哈希与校验。

存储格式 ``pbkdf2_sha256$<iterations>$<salt>$<hash>``，盐和哈希均为 hex。
数据库里永远不保存明文密码。
"""
from __future__ import annotations

import hashlib
import hmac
import secrets

from zcoder.core.settings import settings

_ALGORITHM = "pbkdf2_sha256"
_SALT_BYTES = 16


def _derive(password: str, salt: str, iterations: int) -> str:
    return hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), bytes.fromhex(salt), iterations,
    ).hex()


def hash_room_password(password: str, iterations: int | None = None) -> str:
    """生成带随机盐的密码哈希。

    Args:
        password: 明文密码。
        iterations: PBKDF2 迭代次数，默认读取 ``settings.ROOM_PASSWORD_ITERATIONS``。

    Returns:
        可直接入库的编码字符串。
    """
    rounds = iterations or settings.ROOM_PASSWORD_ITERATIONS
    salt = secrets.token_hex(_SALT_BYTES)
    return f"{_ALGORITHM}${rounds}${salt}${_derive(password, salt, rounds)}"


def verify_room_password(password: str | None, encoded: str | None) -> bool:
    """常数时间比较明文密码与已存储的哈希。格式不合法时一律返回 False。"""
    if not password or not encoded:
        return False
    try:
        algorithm, rounds, salt, expected = encoded.split("$", 3)
        if algorithm != _ALGORITHM:
            return False
        actual = _derive(password, salt, int(rounds))
    except ValueError:
        return False
    return hmac.compare_digest(actual, expected)
