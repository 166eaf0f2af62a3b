from __future__ import annotations

from collections.abc import Generator

import redis
from fastapi import Depends

from deskbridge.config import get_settings
from deskbridge.infra.redis_client import create_redis
from deskbridge.registry import Clock, SessionRegistry, utc_now


def get_redis() -> Generator[redis.Redis, None, None]:
    client = create_redis()
    try:
        yield client
    finally:
        try:
            client.close()
        except Exception:
            # Some redis client versions don't require explicit close.
            pass


def get_clock() -> Clock:
    return utc_now


def build_registry(*, r: redis.Redis, clock: Clock = utc_now) -> SessionRegistry:
    settings = get_settings()
    return SessionRegistry(
        r=r,
        clock=clock,
        ttl_seconds=settings.session_ttl_seconds,
        sweep_interval_seconds=settings.sweep_interval_seconds,
        code_length=settings.code_length,
        max_code_attempts=settings.code_max_attempts,
    )


def get_registry(r: redis.Redis = Depends(get_redis), clock: Clock = Depends(get_clock)) -> SessionRegistry:
    return build_registry(r=r, clock=clock)
