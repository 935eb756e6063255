"""安全相关工具和中间件"""

import hmac
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

from .config import settings
from .errors import Unauthenticated


class SecurityHeaders(BaseHTTPMiddleware):
    """添加安全头中间件"""

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)

        # 安全头
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        # HTTPS相关 (生产环境)
        if request.url.scheme == "https":
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains"
            )

        return response


class APIKeyAuth:
    """API密钥认证 (用于服务间调用)"""

    def __init__(self, api_key: Optional[str] = None):
        self._api_key = api_key

    @property
    def api_key(self) -> Optional[str]:
        return self._api_key or settings.API_KEY

    def verify_api_key(self, provided_key: str) -> bool:
        """验证API密钥"""
        if not self.api_key:
            return False

        # 使用恒定时间比较防止时序攻击
        return hmac.compare_digest(self.api_key, provided_key)

    def __call__(self, request: Request) -> bool:
        """从请求中验证API密钥"""
        api_key = request.headers.get("X-API-Key")
        if not api_key:
            raise Unauthenticated("API key required")

        if not self.verify_api_key(api_key):
            raise Unauthenticated("Invalid API key")

        return True
