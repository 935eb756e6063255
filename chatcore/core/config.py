from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # 基础配置
    DATABASE_URL: str = "sqlite:///./chat.db"
    REDIS_URL: str | None = None

    # 认证配置
    JWT_SECRET: str = "change_me"  # 生产环境必须修改
    JWT_ALGORITHM: str = "HS256"

    # 服务配置
    INSTANCE_ID: str = "chat-instance-1"
    RATE_LIMIT_PER_SEC: int = 10
    DEV_AUTO_CREATE_TABLES: bool = False

    # 安全配置
    API_KEY: str | None = None
    ENABLE_CORS: bool = False
    ALLOWED_ORIGINS: str = "*"

    # 监控配置
    ENABLE_METRICS: bool = True
    LOG_LEVEL: str = "INFO"
    LOG_DIR: str | None = None

    # 应用版本
    VERSION: str = "1.0.0"

    # Broker / fan-out
    TOPIC_PREFIX: str = "chat/v1"
    RECEIPTS_INGRESS_TOPIC: str = "chat/v1/receipts"
    BROKER_CONNECT_TIMEOUT_SEC: float = 30.0
    BROKER_RECONNECT_PERIOD_SEC: float = 5.0
    PUBLISH_READY_TIMEOUT_SEC: float = 2.0
    FANOUT_LANES: int = 4

    # Push sink
    PUSH_WEBHOOK_URL: str | None = None
    PUSH_TIMEOUT_SEC: float = 5.0

    # History paging
    HISTORY_DEFAULT_LIMIT: int = 20
    HISTORY_MAX_LIMIT: int = 50

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
