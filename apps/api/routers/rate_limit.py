"""Per-participant request quotas backed by Redis.

Falls back to in-process counters when Redis cannot be reached, so a Redis
outage degrades to per-worker limits instead of failing requests.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Optional, Tuple

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials
import redis.asyncio as redis
from redis.exceptions import RedisError

from config import settings
from routers.auth_scope import auth_scheme, participant_from_credentials


logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _client_identifier(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count, reset_at = 0, now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> bool:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        current = await client.incr(key)
        if current == 1:
            await client.expire(key, window_seconds)
    finally:
        await client.aclose()
    return int(current) <= limit


def rate_limit(prefix: str, limit: Optional[int] = None, window_seconds: int = 60) -> Callable:
    """Return a FastAPI dependency limiting requests per participant (or client IP)."""

    async def _dependency(
        request: Request,
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
    ) -> None:
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        max_requests = int(limit if limit is not None else settings.PLACEMENT_RATE_LIMIT_PER_MINUTE)
        if max_requests <= 0:
            return

        identity = participant_from_credentials(credentials) or _client_identifier(request)
        key = f"canvas:rate:{prefix}:{identity}"
        try:
            allowed = await _consume_redis_quota(key, max_requests, window_seconds)
        except (RedisError, OSError) as exc:
            logger.debug("Rate limit falling back to local counters: %s", exc)
            allowed = await _consume_local_quota(key, max_requests, window_seconds)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
                headers={"Retry-After": str(window_seconds)},
            )

    return _dependency
