"""
zcoder.api.errors
~~~~~~~~~~~~~~~~~

全局异常处理器 —— 所有错误都以统一的 ``ApiResponse.fail()`` 格式返回。
"""
from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from zcoder.core.errors import RoomError
from zcoder.core.logging import get_logger
from zcoder.core.settings import settings
from zcoder.schemas.api_response import ApiResponse

logger = get_logger(__name__)


async def room_error_handler(request: Request, exc: RoomError) -> JSONResponse:
    """业务错误：按错误类型映射 HTTP 状态码。"""
    logger.info("请求被拒绝: %s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    response = ApiResponse.fail(msg=exc.message, code=exc.status_code, error=exc.code)
    return JSONResponse(status_code=exc.status_code, content=response.model_dump())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """请求体 / 参数校验失败。"""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    msg = f"参数错误: {location} {first.get('msg', '')}".strip()
    response = ApiResponse.fail(msg=msg, code=422, error="validation_error")
    return JSONResponse(status_code=422, content=response.model_dump())


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "服务器内部错误"
    response = ApiResponse.fail(msg=detail, code=500, data=None)
    return JSONResponse(status_code=500, content=response.model_dump())


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RoomError, room_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(Exception, global_exception_handler)
