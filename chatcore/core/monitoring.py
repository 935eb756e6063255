"""监控和健康检查"""

import logging
import logging.config
import os
import time
from typing import Any, Callable, Dict, Optional

import psutil
from prometheus_client import Gauge
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .pubsub import BasePubSub

# System metrics
SYSTEM_CPU_USAGE = Gauge('chat_system_cpu_usage_percent', 'System CPU usage percentage')
SYSTEM_MEMORY_USAGE = Gauge('chat_system_memory_usage_percent', 'System memory usage percentage')
SYSTEM_DISK_USAGE = Gauge('chat_system_disk_usage_percent', 'System disk usage percentage')

logger = logging.getLogger(__name__)


class HealthChecker:
    """健康检查器"""

    def __init__(self, session_factory: Callable[[], Session], broker: Optional[BasePubSub] = None):
        self.session_factory = session_factory
        self.broker = broker

    def check_database(self) -> Dict[str, Any]:
        """检查数据库连接"""
        db = self.session_factory()
        try:
            start_time = time.time()

            # 执行简单查询
            result = db.execute(text("SELECT 1")).fetchone()

            duration = time.time() - start_time

            return {
                "status": "healthy" if result else "unhealthy",
                "response_time": duration,
                "details": "Database connection successful" if result else "Database query failed"
            }
        except SQLAlchemyError as e:
            return {
                "status": "unhealthy",
                "response_time": None,
                "details": f"Database connection failed: {str(e)}"
            }
        finally:
            db.close()

    def check_broker(self) -> Dict[str, Any]:
        """检查消息代理连接"""
        if self.broker is None:
            return {
                "status": "disabled",
                "details": "Broker not configured"
            }
        return {
            "status": "healthy" if self.broker.connected else "unhealthy",
            "state": self.broker.state.value,
            "backend": type(self.broker).__name__,
            "subscriptions": len(self.broker.topics),
        }

    @staticmethod
    def check_system_resources() -> Dict[str, Any]:
        """检查系统资源"""
        try:
            # CPU使用率
            cpu_percent = psutil.cpu_percent(interval=0.1)

            # 内存使用率
            memory = psutil.virtual_memory()
            memory_percent = memory.percent

            # 磁盘使用率
            disk = psutil.disk_usage('/')
            disk_percent = (disk.used / disk.total) * 100

            # 更新Prometheus metrics
            SYSTEM_CPU_USAGE.set(cpu_percent)
            SYSTEM_MEMORY_USAGE.set(memory_percent)
            SYSTEM_DISK_USAGE.set(disk_percent)

            return {
                "cpu_usage": cpu_percent,
                "memory_usage": memory_percent,
                "disk_usage": disk_percent,
                "status": "healthy" if all([
                    cpu_percent < 90,
                    memory_percent < 90,
                    disk_percent < 90
                ]) else "warning"
            }
        except (psutil.Error, OSError) as e:
            return {
                "status": "unhealthy",
                "details": f"System resource check failed: {str(e)}"
            }

    def comprehensive_health_check(self) -> Dict[str, Any]:
        """综合健康检查"""
        checks = {
            "database": self.check_database(),
            "broker": self.check_broker(),
            "system": self.check_system_resources()
        }

        # 确定整体状态
        overall_status = "healthy"
        for service, check in checks.items():
            if check["status"] == "unhealthy":
                overall_status = "unhealthy"
                break
            elif check["status"] == "warning":
                overall_status = "warning"

        return {
            "status": overall_status,
            "timestamp": time.time(),
            "checks": checks,
            "version": settings.VERSION
        }


class LoggingConfig:
    """日志配置"""

    @staticmethod
    def build_config(level: str = "INFO", log_dir: Optional[str] = None) -> Dict[str, Any]:
        handlers: Dict[str, Any] = {
            'console': {
                'class': 'logging.StreamHandler',
                'level': level,
                'formatter': 'simple',
                'stream': 'ext://sys.stdout'
            }
        }
        if log_dir:
            handlers['file'] = {
                'class': 'logging.handlers.RotatingFileHandler',
                'level': 'DEBUG',
                'formatter': 'detailed',
                'filename': os.path.join(log_dir, 'chat.log'),
                'maxBytes': 10485760,  # 10MB
                'backupCount': 5
            }
            handlers['error_file'] = {
                'class': 'logging.handlers.RotatingFileHandler',
                'level': 'ERROR',
                'formatter': 'json',
                'filename': os.path.join(log_dir, 'error.log'),
                'maxBytes': 10485760,  # 10MB
                'backupCount': 10
            }

        return {
            'version': 1,
            'disable_existing_loggers': False,
            'formatters': {
                'detailed': {
                    'format': '%(asctime)s [%(levelname)s] %(name)s: %(message)s (%(filename)s:%(lineno)d)'
                },
                'simple': {
                    'format': '%(asctime)s %(levelname)s %(name)s: %(message)s'
                },
                'json': {
                    'format': '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", "message": "%(message)s", "module": "%(module)s", "line": %(lineno)d}'
                }
            },
            'handlers': handlers,
            'root': {
                'level': level,
                'handlers': list(handlers)
            },
            'loggers': {
                'chatcore': {
                    'level': 'DEBUG' if log_dir else level,
                    'propagate': True
                }
            }
        }

    @staticmethod
    def setup_logging(level: Optional[str] = None, log_dir: Optional[str] = None):
        """设置日志"""
        log_dir = log_dir or settings.LOG_DIR
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        logging.config.dictConfig(
            LoggingConfig.build_config((level or settings.LOG_LEVEL).upper(), log_dir)
        )
