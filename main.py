import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.exc import OperationalError

from chatcore.api import chat_api, internal_api
from chatcore.core.config import settings
from chatcore.core.database import SessionLocal, engine
from chatcore.core.errors import ChatError, Transient, chat_error_handler
from chatcore.core.metrics import add_metrics_middleware
from chatcore.core.monitoring import HealthChecker, LoggingConfig
from chatcore.core.ratelimit import RateLimitMiddleware
from chatcore.core.security import SecurityHeaders
from chatcore.models.base import Base
from chatcore.services.runtime import ChatRuntime

# 设置日志
LoggingConfig.setup_logging()

logger = logging.getLogger(__name__)


async def operational_error_handler(request: Request, exc: OperationalError) -> JSONResponse:
    logger.error("store unavailable: %s", exc)
    return await chat_error_handler(request, Transient("store unavailable"))


def create_app(runtime: Optional[ChatRuntime] = None) -> FastAPI:
    runtime = runtime or ChatRuntime(settings, SessionLocal)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # 创建表
        if settings.DEV_AUTO_CREATE_TABLES:
            Base.metadata.create_all(bind=engine)
        await runtime.start()
        try:
            yield
        finally:
            # 优雅关闭
            logger.info("Shutting down chat service...")
            await runtime.stop()
            logger.info("Chat service stopped.")

    app = FastAPI(
        title="chatcore",
        version=settings.VERSION,
        description="Chat delivery core: watermark receipts and real-time fan-out",
        docs_url="/docs" if settings.LOG_LEVEL == "DEBUG" else None,
        redoc_url="/redoc" if settings.LOG_LEVEL == "DEBUG" else None,
        lifespan=lifespan,
    )
    app.state.runtime = runtime
    health_checker = HealthChecker(runtime.session_factory, runtime.broker)

    app.add_exception_handler(ChatError, chat_error_handler)
    app.add_exception_handler(OperationalError, operational_error_handler)

    # 中间件顺序很重要！
    # 1. 安全头中间件
    app.add_middleware(SecurityHeaders)

    # 2. CORS中间件
    if settings.ENABLE_CORS:
        origins = [origin.strip() for origin in settings.ALLOWED_ORIGINS.split(",")]
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "X-API-Key"],
        )

    # 3. 速率限制和指标中间件
    app.add_middleware(RateLimitMiddleware)
    if settings.ENABLE_METRICS:
        add_metrics_middleware(app)

    # 健康检查端点
    @app.get("/health")
    def health():
        """增强版健康检查"""
        return health_checker.comprehensive_health_check()

    # 简单健康检查
    @app.get("/healthz")
    async def simple_health_check():
        """简单健康检查（K8s风格）"""
        return {"status": "ok"}

    # 准备就绪检查
    @app.get("/ready")
    def readiness_check():
        """准备就绪检查"""
        db_status = health_checker.check_database()
        if db_status["status"] != "healthy":
            return Response(status_code=503, content="Database not ready")
        if not runtime.broker.connected:
            return Response(status_code=503, content="Broker not ready")
        return {"status": "ready"}

    # Prometheus指标端点
    @app.get("/metrics")
    async def metrics():
        """Prometheus指标端点"""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # API路由
    app.include_router(chat_api.router, prefix="/api/chat", tags=["chat"])
    app.include_router(internal_api.router, prefix="/api/chat/internal", tags=["internal"])

    # 根路径
    @app.get("/")
    def root():
        """根路径信息"""
        return {
            "service": "chatcore",
            "instance": settings.INSTANCE_ID,
            "version": settings.VERSION,
            "status": "running",
        }

    return app


app = create_app()
