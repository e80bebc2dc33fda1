"""
聚合支付网关应用入口：FastAPI 应用实例、路由注册、生命周期。
"""

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI

load_dotenv()

# 日志配置
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    force=True,
)

logger = logging.getLogger(__name__)


# ── Lifespan ──────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期：启动时初始化数据库，丢弃旧的配置快照。"""
    from app.database import init_db
    from app.plugins.registry import list_plugins
    from app.services.platform_config import invalidate_snapshot

    init_db()
    invalidate_snapshot()
    logger.info("数据库初始化完成，已注册支付插件: %s", ", ".join(list_plugins()))
    yield


app = FastAPI(title="AggPay Gateway", description="聚合支付网关", lifespan=lifespan)

# ── CORS 中间件（开发环境跨域） ────────────────────────────

if os.environ.get("CORS_ENABLED", "0") == "1":
    from fastapi.middleware.cors import CORSMiddleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=os.environ.get("CORS_ORIGINS", "http://localhost:5173").split(","),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

# ── 路由注册 ──────────────────────────────────────────────

from app.routes.payment import legacy_router as payment_legacy_router
from app.routes.payment import router as payment_router
from app.routes.query import legacy_router as query_legacy_router
from app.routes.query import router as query_router
from app.routes.notify import router as notify_router
from app.routes.admin import router as admin_router

app.include_router(payment_router)
app.include_router(payment_legacy_router)
app.include_router(query_router)
app.include_router(query_legacy_router)
app.include_router(notify_router)
app.include_router(admin_router)


# ── 健康检查 ──────────────────────────────────────────────

@app.get("/health")
async def health_check():
    return {"status": "ok"}
