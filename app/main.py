"""
app.main
~~~~~~~~

FastAPI 应用入口：注册路由、挂载中间件、定义生命周期。

房间注册表、消息路由和房间回收器都在 lifespan 中创建并挂载到 ``app.state``，
全部就绪之前 ``/health`` 返回 503（starting）。
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from app.api import rooms, signaling_ws
from app.core.logging import get_logger, setup_logging
from app.core.rate_limit import limiter
from app.core.settings import settings
from app.schemas import ApiResponse
from app.services.message_router import MessageRouter
from app.services.reaper import RoomReaper
from app.services.registry import RoomRegistry

# 初始化日志系统（必须在其他模块之前）
setup_logging()
logger = get_logger(__name__)


# ── 生命周期 ──────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期钩子，仅在 worker 启动/关闭时各执行一次。"""
    # ── 启动 ──
    app.state.ready = False
    registry = RoomRegistry(default_listener_name=settings.DEFAULT_LISTENER_NAME)
    message_router = MessageRouter(registry)
    reaper = RoomReaper(
        registry,
        interval=settings.CLEANUP_INTERVAL,
        persistence_timeout=settings.ROOM_PERSISTENCE_TIMEOUT,
        max_age=settings.ROOM_MAX_AGE,
        on_expired=message_router.close_expired_room,
    )
    app.state.registry = registry
    app.state.message_router = message_router
    app.state.reaper = reaper
    reaper.start()
    app.state.ready = True
    logger.info(
        "🚀 信令服务已启动 | env=%s | 房间保留: %d 分钟 | log_level=%s",
        settings.ENVIRONMENT,
        settings.ROOM_PERSISTENCE_TIMEOUT // 60,
        settings.effective_log_level,
    )
    yield
    # ── 关闭 ──
    app.state.ready = False
    await reaper.stop()
    logger.info("👋 信令服务已关闭")


# ── 创建 FastAPI 实例 ─────────────────────────────────────────────────

app: FastAPI = FastAPI(
    title=settings.PROJECT_NAME,
    description="一对多音频分享的 WebRTC 信令中继",
    version=settings.VERSION,
    debug=settings.debug,
    lifespan=lifespan,
)
app.state.ready = False
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ── CORS 中间件 ───────────────────────────────────────────────────────
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
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[],
        allow_methods=["GET"],
        allow_headers=["*"],
    )

# ── 路由挂载 ──────────────────────────────────────────────────────────
app.include_router(rooms.router, prefix="/api", tags=["Rooms"])
app.include_router(signaling_ws.router, tags=["Signaling"])


# ── 全局异常处理器 ────────────────────────────────────────────────────

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """捕获所有未处理异常，返回统一的 ApiResponse.fail() 格式。"""
    logger.error("未捕获异常: %s %s -> %s", request.method, request.url, exc, exc_info=True)
    # 非 prod 环境返回详细错误信息，prod 环境隐藏内部细节
    detail = str(exc) if not settings.is_prod else "服务器内部错误"
    response = ApiResponse.fail(msg=detail, code=500, data=None)
    return JSONResponse(
        status_code=500,
        content=response.model_dump(),
    )


@app.get("/health", tags=["System"])
async def health_check(request: Request) -> JSONResponse:
    """存活探针。

    Returns:
        注册表与回收器就绪后返回 200 ``{"status": "ok"}``，否则 503 ``{"status": "starting"}``。
    """
    if not request.app.state.ready:
        return JSONResponse(status_code=503, content={"status": "starting"})
    return JSONResponse(
        content={
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "rooms": request.app.state.registry.room_count,
        },
    )


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,  # 仅 dev 环境开启热重载
        log_level=settings.effective_log_level.lower(),
    )
