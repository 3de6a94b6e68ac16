"""
组件数据服务
独立 FastAPI 应用程序入口

启动方式:
    uvicorn widget_data_service.main:app --host 0.0.0.0 --port 8002
    python -m widget_data_service.main
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from widget_data_service import __version__
from widget_data_service.config import settings
from widget_data_service.routers import cache, components, executions, health
from widget_data_service.services.component_data_service import build_component_data_service

# ── 日志配置 ──────────────────────────────────────────────
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# ── 生命周期管理 ──────────────────────────────────────────
@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用启动/关闭生命周期钩子"""
    logger.info("=" * 60)
    logger.info(f"🚀 Widget DataService v{__version__} 启动中")
    logger.info(f"   内部 API  : {settings.HTTP_BASE_URL}")
    logger.info(f"   缓存过期  : {settings.WAREHOUSE_DEFAULT_EXPIRY}s / 上限 {settings.WAREHOUSE_MAX_MEMORY_MB}MB")
    logger.info("=" * 60)

    svc = build_component_data_service()
    svc.warehouse.start_cleanup()
    app.state.component_data_service = svc
    logger.info("✅ 数据仓库与执行链就绪")

    yield

    logger.info("🔄 组件数据服务正在关闭...")
    await svc.close()
    app.state.component_data_service = None
    logger.info("✅ 组件数据服务已关闭")


# ── 应用实例 ──────────────────────────────────────────────
app = FastAPI(
    title="组件数据服务",
    description=(
        "可视化组件的数据源执行服务，提供以下功能：\n"
        "- 🔌 多类型数据项（JSON / HTTP / WebSocket / 脚本）\n"
        "- 🔗 HTTP 参数绑定组件属性\n"
        "- 🧩 多数据源合并（object / array / select / script）\n"
        "- 🗄️ 带版本控制的组件数据仓库\n\n"
        "**分层架构**\n"
        "```\n"
        "Acquisition Layer  ← 按类型获取数据项原始数据\n"
        "Processing Layer   ← 路径过滤、脚本处理、默认值\n"
        "Merging Layer      ← 数据项合并为数据源\n"
        "Integration Layer  ← 数据源整合为组件数据\n"
        "Cache Layer        ← 组件数据仓库\n"
        "```"
    ),
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── CORS 中间件 ───────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── 请求计时中间件 ─────────────────────────────────────────
@app.middleware("http")
async def add_process_time(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    response.headers["X-Process-Time"] = f"{(time.time() - start) * 1000:.1f}ms"
    return response


# ── 全局异常处理 ──────────────────────────────────────────
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"未处理的异常: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": "内部服务错误", "message": str(exc)},
    )


# ── 注册路由 ──────────────────────────────────────────────
app.include_router(health.router)
app.include_router(executions.router)
app.include_router(components.router)
app.include_router(cache.router)


# ── 根路由 ───────────────────────────────────────────────
@app.get("/", include_in_schema=False)
async def root():
    return {
        "service": "Widget DataService",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# ── 直接运行入口 ──────────────────────────────────────────
if __name__ == "__main__":
    uvicorn.run(
        "widget_data_service.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        log_level=settings.LOG_LEVEL.lower(),
    )
