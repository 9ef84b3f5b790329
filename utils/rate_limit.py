import json
import logging
from time import time
from typing import Dict, Optional, Tuple

import redis
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from config import settings

logger = logging.getLogger(__name__)


def _connect_redis() -> Optional[redis.Redis]:
    """Redis client for shared buckets, or None to use per-process buckets."""
    if not settings.redis_url:
        logger.info("REDIS_URL not set. Using in-memory rate limiting.")
        return None
    try:
        client = redis.from_url(settings.redis_url, decode_responses=True)
        client.ping()
        logger.info("Redis connected successfully for rate limiting")
        return client
    except redis.RedisError as e:
        logger.warning(f"Redis connection failed: {e}. Falling back to in-memory rate limiting.")
        return None


class RateLimiterMiddleware(BaseHTTPMiddleware):
    """
    Distributed rate limiter using Redis (with fallback to in-memory).
    Uses Token Bucket Algorithm, keyed by client IP.
    Capacity defaults to RATE_LIMIT_PER_MINUTE requests per 60 seconds.
    """

    def __init__(self, app, requests_per_minute: Optional[int] = None, redis_client: Optional[redis.Redis] = None):
        super().__init__(app)
        self.capacity = requests_per_minute or settings.rate_limit_per_minute
        self.refill_time_window = 60.0
        # Fallback: in-memory storage (ip -> (tokens, last_refill_ts))
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._redis = redis_client if redis_client is not None else _connect_redis()

    def _get_client_ip(self, request: Request) -> str:
        xff = request.headers.get("x-forwarded-for")
        if xff:
            # Take first IP in the list
            return xff.split(",")[0].strip()
        client = request.client
        return client.host if client else "unknown"

    def _refill(self, tokens: float, last_refill: float, now: float) -> float:
        elapsed = max(0.0, now - last_refill)
        refill = (elapsed / self.refill_time_window) * self.capacity
        return min(self.capacity, tokens + refill)

    def _check_rate_limit_redis(self, ip: str) -> Optional[bool]:
        """
        Check rate limit using Redis.
        Returns True if allowed, False if limited, None if Redis failed.
        """
        key = f"rate_limit:{ip}"
        now = time()
        try:
            bucket_data = self._redis.get(key)
            if bucket_data:
                data = json.loads(bucket_data)
                tokens = float(data.get("tokens", 0))
                last_refill = float(data.get("last_refill", now))
            else:
                tokens = float(self.capacity)
                last_refill = now

            tokens = self._refill(tokens, last_refill, now)
            if tokens < 1.0:
                return False

            # Store updated state with TTL just past the refill window
            self._redis.setex(
                key,
                int(self.refill_time_window) + 10,
                json.dumps({"tokens": tokens - 1.0, "last_refill": now}),
            )
            return True
        except (redis.RedisError, ValueError) as e:
            logger.warning(f"Redis rate limit check failed: {e}. Falling back to in-memory.")
            return None

    def _check_rate_limit_memory(self, ip: str) -> bool:
        now = time()
        tokens, last_refill = self._buckets.get(ip, (self.capacity, now))
        tokens = self._refill(tokens, last_refill, now)
        if tokens < 1.0:
            return False

        self._buckets[ip] = (tokens - 1.0, now)
        return True

    async def dispatch(self, request: Request, call_next) -> Response:
        ip = self._get_client_ip(request)

        allowed = None
        if self._redis is not None:
            allowed = self._check_rate_limit_redis(ip)
        if allowed is None:
            allowed = self._check_rate_limit_memory(ip)

        if not allowed:
            return JSONResponse(
                status_code=429,
                content={
                    "ok": False,
                    "data": {},
                    "error": "rate_limited",
                    "message": "Rate limit exceeded. Try again shortly.",
                },
            )

        return await call_next(request)
