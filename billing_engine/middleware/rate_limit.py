"""Redis-backed sliding window rate limiter for billing write endpoints.

Counters live in Redis so every worker and instance shares one window per
client. When Redis cannot be reached requests are let through.
"""
from __future__ import annotations

import logging
import time

import redis as redis_lib
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from billing_engine.config import settings
from billing_engine.errors import error_payload

logger = logging.getLogger(__name__)

# Path prefixes and their limits: (max_requests, window_seconds)
_RATE_LIMIT_PATHS: dict[str, tuple[int, int]] = {
    "/billing/checkout": (10, 60),
    "/billing/portal": (10, 60),
    "/billing/subscription": (20, 60),
    "/billing/usage": (600, 60),
    "/admin/billing/invoices": (30, 60),
}
_LIMITED_METHODS = {"POST", "PATCH"}


def _get_client_ip(request: Request) -> str:
    """Extract client IP, respecting X-Forwarded-For behind a proxy."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    client = request.client
    return client.host if client else "unknown"


def _match_limit(clean_path: str) -> tuple[str, tuple[int, int]] | None:
    for prefix, config in _RATE_LIMIT_PATHS.items():
        if clean_path == prefix or clean_path.startswith(prefix + "/"):
            return prefix, config
    return None


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding window rate limiter for billing mutations."""

    def __init__(self, app: object, redis_client: object | None = None) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._redis = redis_client

    def _ensure_redis(self) -> object:
        if self._redis is None:
            self._redis = redis_lib.Redis.from_url(
                settings.redis_url, decode_responses=True, socket_timeout=1
            )
        return self._redis

    def _too_many_requests_response(self, retry_after: int) -> JSONResponse:
        return JSONResponse(
            status_code=429,
            content=error_payload(
                "rate_limit_exceeded", "Too many requests. Please try again later."
            ),
            headers={"Retry-After": str(retry_after)},
        )

    async def dispatch(self, request: Request, call_next: object) -> Response:
        if not settings.rate_limit_enabled or request.method not in _LIMITED_METHODS:
            return await call_next(request)  # type: ignore[call-arg]

        path = request.url.path
        clean_path = path.replace("/api/v1", "", 1) if path.startswith("/api/v1") else path
        matched = _match_limit(clean_path)
        if matched is None:
            return await call_next(request)  # type: ignore[call-arg]

        prefix, (max_requests, window_seconds) = matched
        client = _get_client_ip(request)
        now = time.time()
        key = f"rate_limit:{prefix}:{client}"

        try:
            pipe = self._ensure_redis().pipeline()  # type: ignore[attr-defined]
            pipe.zremrangebyscore(key, 0, now - window_seconds)
            pipe.zcard(key)
            pipe.zadd(key, {str(now): now})
            pipe.expire(key, window_seconds)
            results = pipe.execute()
            current_count = results[1]
        except redis_lib.RedisError as exc:
            logger.warning(
                "Rate limiter: Redis error (%s), allowing request",
                exc.__class__.__name__,
            )
            return await call_next(request)  # type: ignore[call-arg]

        if current_count >= max_requests:
            logger.warning(
                "Rate limit exceeded: %s on %s (%d/%d)",
                client,
                prefix,
                current_count,
                max_requests,
            )
            return self._too_many_requests_response(window_seconds)

        response: Response = await call_next(request)  # type: ignore[call-arg]

        remaining = max(0, max_requests - current_count - 1)
        response.headers["X-RateLimit-Limit"] = str(max_requests)
        response.headers["X-RateLimit-Remaining"] = str(remaining)
        response.headers["X-RateLimit-Reset"] = str(int(now + window_seconds))
        return response
