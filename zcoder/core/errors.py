"""
zcoder.core.errors
~~~~~~~~~~~~~~~~~~

协作房间的错误分类。

REST 层通过异常处理器把 ``RoomError`` 转成统一的 ``ApiResponse.fail()``，
WebSocket 层把它转成只发给发起连接的 ``error{message}`` 事件。
两种出口都不会改动房间状态，也不会触发广播。
"""
from __future__ import annotations


class RoomError(Exception):
    """所有可预期业务错误的基类。

    Attributes:
        message: 返回给调用方的可读信息。
        code: 稳定的错误码，便于客户端分支处理。
        status_code: 对应的 HTTP 状态码。
    """

    code: str = "room_error"
    status_code: int = 400

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(RoomError):
    """请求参数不合法，或引用的房间 / 用户不存在。"""

    code = "validation_error"
    status_code = 400


class NotFound(ValidationError):
    """房间或用户不存在，或用户不是该房间的成员。"""

    code = "not_found"
    status_code = 404


class Unauthorized(RoomError):
    """不是房间的持久成员，或私有房间密码不匹配。"""

    code = "unauthorized"
    status_code = 403


class CapacityExceeded(RoomError):
    """房间成员已达上限。"""

    code = "capacity_exceeded"
    status_code = 409


class AlreadyMember(RoomError):
    """重复加入：用户已经是房间成员（幂等的无操作）。"""

    code = "already_member"
    status_code = 409


class AlreadyBound(RoomError):
    """连接已绑定到某个房间，需先解绑。"""

    code = "already_bound"
    status_code = 409


class PersistenceError(RoomError):
    """持久化写入失败或超时。"""

    code = "persistence_error"
    status_code = 503


class TransportError(RoomError):
    """连接层故障（发送失败、连接已关闭）。"""

    code = "transport_error"
    status_code = 500
