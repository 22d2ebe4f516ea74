"""Sliding-window rate limiting for the webhook ingress endpoints.

With ``REDIS_URL`` configured the window lives in a Redis sorted set per key,
shared by every worker. Without it an in-process window is used, which only
limits per process and is meant for local development and tests.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from collections import deque
from typing import Any, Callable, Optional, Protocol, Union
from uuid import uuid4

import redis
from fastapi import Request

from talentforge.app.errors import RateLimitExceeded
from talentforge.app.settings import Settings

logger = logging.getLogger("talentforge.rate_limit")

WINDOW_SECONDS = 60
PRUNE_EVERY = 256
REDIS_KEY_PREFIX = "talentforge:ratelimit:"


class RateLimiter(Protocol):
    def check(self, key: str) -> Optional[int]: ...


class SlidingWindowRateLimiter:
    """In-process sliding window limiter keyed by an arbitrary string."""

    def __init__(
        self,
        limit: int,
        window_seconds: int = WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        prune_every: int = PRUNE_EVERY,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self.prune_every = max(1, prune_every)
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: dict[str, deque[float]] = {}
        self._checks = 0

    @property
    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def check(self, key: str) -> Optional[int]:
        """Record a hit. Returns None when allowed, else the seconds until a slot frees."""
        now = self._clock()
        window_start = now - self.window_seconds
        with self._lock:
            self._checks += 1
            if self._checks % self.prune_every == 0:
                self._prune(window_start)
            hits = self._hits.setdefault(key, deque())
            while hits and hits[0] <= window_start:
                hits.popleft()
            if len(hits) >= self.limit:
                return max(1, math.ceil(hits[0] + self.window_seconds - now))
            hits.append(now)
            return None

    def _prune(self, window_start: float) -> None:
        idle = [key for key, hits in self._hits.items() if not hits or hits[-1] <= window_start]
        for key in idle:
            del self._hits[key]


class RedisSlidingWindowRateLimiter:
    """Sliding window over a Redis sorted set, one member per request."""

    def __init__(
        self,
        client: Any,
        limit: int,
        window_seconds: int = WINDOW_SECONDS,
        clock: Callable[[], float] = time.time,
        key_prefix: str = REDIS_KEY_PREFIX,
    ) -> None:
        self.client = client
        self.limit = limit
        self.window_seconds = window_seconds
        self.key_prefix = key_prefix
        self._clock = clock

    def check(self, key: str) -> Optional[int]:
        redis_key = f"{self.key_prefix}{key}"
        now = self._clock()
        member = f"{now:.6f}:{uuid4().hex[:8]}"
        try:
            pipe = self.client.pipeline()
            pipe.zremrangebyscore(redis_key, 0, now - self.window_seconds)
            pipe.zadd(redis_key, {member: now})
            pipe.zcard(redis_key)
            pipe.zrange(redis_key, 0, 0, withscores=True)
            pipe.expire(redis_key, self.window_seconds + 1)
            results = pipe.execute()
            count = results[2]
            if count <= self.limit:
                return None
            # Rejected requests do not occupy the window.
            self.client.zrem(redis_key, member)
        except redis.RedisError as exc:
            logger.warning("rate_limit_backend_error key=%s error=%s allowing=true", key, exc)
            return None
        oldest = results[3]
        oldest_score = oldest[0][1] if oldest else now
        return max(1, math.ceil(oldest_score + self.window_seconds - now))


def build_rate_limiter(
    settings: Settings,
) -> Union[SlidingWindowRateLimiter, RedisSlidingWindowRateLimiter]:
    limit = settings.webhook_rate_limit_per_minute
    if settings.redis_url:
        client = redis.Redis.from_url(settings.redis_url, decode_responses=True)
        return RedisSlidingWindowRateLimiter(client, limit)
    if settings.is_production:
        logger.warning("rate_limit_in_memory reason=no_redis_url scope=per_process")
    return SlidingWindowRateLimiter(limit)


def _client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def rate_limited(scope: str) -> Callable[[Request], None]:
    """FastAPI dependency enforcing the app's limiter for one ingress endpoint."""

    def dependency(request: Request) -> None:
        limiter: RateLimiter = request.app.state.rate_limiter
        client_ip = _client_ip(request)
        retry_after = limiter.check(f"{scope}:{client_ip}")
        if retry_after is not None:
            logger.warning(
                "rate_limit_exceeded scope=%s client_ip=%s retry_after=%s",
                scope,
                client_ip,
                retry_after,
            )
            raise RateLimitExceeded(scope=scope, retry_after=retry_after)

    return dependency
