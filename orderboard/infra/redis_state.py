from __future__ import annotations

from functools import lru_cache

from redis import Redis

from orderboard.infra.settings import LOCK_BACKEND, REDIS_URL


@lru_cache(maxsize=1)
def get_redis() -> Redis:
    return Redis.from_url(REDIS_URL, decode_responses=True)


def redis_required() -> bool:
    return LOCK_BACKEND == "redis"


def check_redis_ready() -> bool:
    if not redis_required():
        return True
    try:
        return bool(get_redis().ping())
    except Exception:
        return False
