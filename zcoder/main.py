"""
zcoder.main
~~~~~~~~~~~

FastAPI 应用入口 —— 注册路由、挂载中间件、定义生命周期。
"""
from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from zcoder.api import collab_ws, rooms, users
from zcoder.api.errors import install_exception_handlers
from zcoder.core.logging import get_logger, request_id_ctx_var, setup_logging
from zcoder.core.rate_limit import WebSocketRateLimiter, limiter
from zcoder.core.settings import settings
from zcoder.db import close_mongo, connect_mongo, get_database, ping_mongo
from zcoder.db.activity_repository import ActivityRepository
from zcoder.db.chat_repository import ChatRepository
from zcoder.db.room_repository import RoomRepository
from zcoder.db.user_repository import UserRepository
from zcoder.services.binder import ConnectionBinder
from zcoder.services.dispatcher import CollabDispatcher
from zcoder.services.membership import MembershipManager
from zcoder.services.persistence import PersistenceGateway
from zcoder.services.registry import RoomRegistry

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


def init_app_state(
    app: FastAPI,
    *,
    rooms: Any,
    chats: Any,
    activities: Any,
    users: Any,
    idle_grace: float | None = None,
) -> RoomRegistry:
    """组装服务对象并挂载到 ``app.state``。返回房间会话注册表。"""
    gateway = PersistenceGateway(rooms, chats, activities, users)
    registry = RoomRegistry(gateway, idle_grace=idle_grace)
    binder = ConnectionBinder(gateway, registry)

    app.state.gateway = gateway
    app.state.registry = registry
    app.state.binder = binder
    app.state.membership = MembershipManager(gateway, registry)
    app.state.dispatcher = CollabDispatcher(
        binder, WebSocketRateLimiter(interval_seconds=settings.WS_RATE_LIMIT_INTERVAL),
    )
    app.state.chat_repo = chats
    app.state.activity_repo = activities
    return registry


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    await connect_mongo()
    db = get_database()
    registry = init_app_state(
        app,
        rooms=RoomRepository(db),
        chats=ChatRepository(db),
        activities=ActivityRepository(db),
        users=UserRepository(db),
    )
    logger.info(
        "🚀 应用已启动 | env=%s | debug=%s | log_level=%s",
        settings.ENVIRONMENT,
        settings.debug,
        settings.effective_log_level,
    )
    yield
    # ── 关闭 ──
    # 先关闭所有房间会话，冲刷未落库的共享文档，再断开数据库
    await registry.close()
    await close_mongo()
    logger.info("👋 应用已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

def create_app(lifespan_handler: Callable[[FastAPI], Any] | None = lifespan) -> FastAPI:
    """创建应用。测试中传入 ``None`` 并自行调用 ``init_app_state()``。"""
    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="ZCoder 实时协作房间后端 API",
        version=settings.VERSION,
        debug=settings.debug,
        lifespan=lifespan_handler,
    )

    if settings.allow_cors_all_origins:
        # dev / test 环境：允许所有来源，方便本地调试
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    else:
        # prod 环境：仅允许前端来源
        app.add_middleware(
            CORSMiddleware,
            allow_origins=[settings.CLIENT_URL],
            allow_credentials=True,
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["*"],
        )

    @app.middleware("http")
    async def request_id_middleware(
        request: Request, call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        """为每个 HTTP 请求分配 request id，写入日志上下文与响应头。"""
        req_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex[:12]
        token = request_id_ctx_var.set(req_id)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        response.headers["X-Request-Id"] = req_id
        return response

    # ── 限流 & 异常处理 ──
    app.state.limiter = limiter
    install_exception_handlers(app)

    # ── 路由挂载 ──
    app.include_router(rooms.router, prefix="/api", tags=["Rooms"])
    app.include_router(users.router, prefix="/api", tags=["Users"])
    app.include_router(collab_ws.router, tags=["WebSocket Collab"])

    @app.get("/health", tags=["System"])
    async def health_check() -> JSONResponse:
        """验证服务是否正常运行，并报告存储是否可达。"""
        registry: RoomRegistry | None = getattr(app.state, "registry", None)
        mongo_ok = await ping_mongo()
        return JSONResponse(
            content={
                "status": "ok",
                "environment": settings.ENVIRONMENT,
                "debug": settings.debug,
                "log_level": settings.effective_log_level,
                "live_sessions": len(registry) if registry is not None else 0,
                "storage": "ok" if mongo_ok else "unavailable",
            },
        )

    return app


app: FastAPI = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "zcoder.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )
