from __future__ import annotations

import logging
import time

from fastapi import Request, Response
from redis import asyncio as aioredis
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware

from .config import settings

logger = logging.getLogger(__name__)

SKIP_PREFIXES = ("/health", "/healthz", "/ready", "/metrics")


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, rate_per_sec: int = 0, redis_url: str | None = None):
        super().__init__(app)
        self._rate = max(1, int(rate_per_sec or settings.RATE_LIMIT_PER_SEC))
        self._redis = None
        redis_url = redis_url if redis_url is not None else settings.REDIS_URL
        if redis_url:
            self._redis = aioredis.from_url(redis_url)
        self._bucket = {}
        self._bucket_second = 0

    async def dispatch(self, request: Request, call_next):
        # 跳过健康/指标
        path = request.url.path
        if path.startswith(SKIP_PREFIXES):
            return await call_next(request)

        client = request.client.host if request.client else "unknown"
        identifier = request.headers.get("Authorization") or client
        now = int(time.time())
        key = f"rate:{identifier}:{now}"
        allowed = True

        if self._redis is not None:
            try:
                c = await self._redis.incr(key)
                if c == 1:
                    await self._redis.expire(key, 1)
                if c > self._rate:
                    allowed = False
            except (RedisError, OSError) as e:
                # redis 不可用时放行
                logger.warning("rate limit check skipped: %s", e)
        else:
            if now != self._bucket_second:
                self._bucket.clear()
                self._bucket_second = now
            cnt = self._bucket.get(key, 0) + 1
            self._bucket[key] = cnt
            if cnt > self._rate:
                allowed = False

        if not allowed:
            return Response(status_code=429, content="rate limit exceeded")

        return await call_next(request)
