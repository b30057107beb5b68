"""Rate limiting middleware for the imagelab API

Every generate/edit request costs a model call, so requests are limited per
client IP.  Health checks, the image proxy and locally served images (each hit once
per gallery thumbnail) are exempt.
"""

from __future__ import annotations

import ipaddress
import time
from collections.abc import Callable
from typing import Any

from cachetools import TTLCache
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from imagelab.config import IMAGES_URL_PREFIX, RATE_LIMIT_MAX_IPS, RATE_LIMIT_RPH, RATE_LIMIT_RPM
from imagelab.observability.telemetry import log_event

EXEMPT_PATHS = ("/health", "/", "/api/image-proxy")
EXEMPT_PREFIXES = (IMAGES_URL_PREFIX,)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Sliding-window request limits per client IP.

    Buckets live in TTLCaches so idle IPs are evicted automatically.
    """

    def __init__(
        self,
        app: Any,
        requests_per_minute: int = RATE_LIMIT_RPM,
        requests_per_hour: int = RATE_LIMIT_RPH,
    ) -> None:
        super().__init__(app)
        self.requests_per_minute = requests_per_minute
        self.requests_per_hour = requests_per_hour
        self.minute_buckets: TTLCache[str, list[float]] = TTLCache(maxsize=RATE_LIMIT_MAX_IPS, ttl=120)
        self.hour_buckets: TTLCache[str, list[float]] = TTLCache(maxsize=RATE_LIMIT_MAX_IPS, ttl=7200)

    @staticmethod
    def _is_valid_ip(ip_str: str) -> bool:
        try:
            ipaddress.ip_address(ip_str)
            return True
        except ValueError:
            return False

    def _get_client_ip(self, request: Request) -> str:
        """First valid X-Forwarded-For entry, else the socket address."""
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            ip = forwarded.split(",")[0].strip()
            if self._is_valid_ip(ip):
                return ip
        return request.client.host if request.client else "unknown"

    @staticmethod
    def _recent(bucket: list[float], max_age_seconds: int, now: float) -> list[float]:
        return [ts for ts in bucket if now - ts < max_age_seconds]

    def _limited(self, limit: str, client_ip: str, count: int, allowed: int, retry_after: int) -> JSONResponse:
        log_event("api.rate_limit.request_exceeded", ip=client_ip, limit=limit, count=count)
        return JSONResponse(
            status_code=429,
            content={
                "success": False,
                "data": None,
                "error": {
                    "code": "RATE_LIMIT_EXCEEDED",
                    "message": f"Rate limit exceeded. Maximum {allowed} requests per {limit}.",
                },
            },
            headers={"Retry-After": str(retry_after)},
        )

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if path in EXEMPT_PATHS or path.startswith(EXEMPT_PREFIXES) or request.method == "OPTIONS":
            return await call_next(request)

        client_ip = self._get_client_ip(request)
        now = time.time()

        minute_bucket = self._recent(self.minute_buckets.get(client_ip, []), 60, now)
        hour_bucket = self._recent(self.hour_buckets.get(client_ip, []), 3600, now)

        if len(minute_bucket) >= self.requests_per_minute:
            return self._limited("minute", client_ip, len(minute_bucket), self.requests_per_minute, 60)
        if len(hour_bucket) >= self.requests_per_hour:
            return self._limited("hour", client_ip, len(hour_bucket), self.requests_per_hour, 3600)

        minute_bucket.append(now)
        hour_bucket.append(now)
        self.minute_buckets[client_ip] = minute_bucket
        self.hour_buckets[client_ip] = hour_bucket

        response = await call_next(request)

        response.headers["X-RateLimit-Limit-Minute"] = str(self.requests_per_minute)
        response.headers["X-RateLimit-Remaining-Minute"] = str(self.requests_per_minute - len(minute_bucket))
        return response
