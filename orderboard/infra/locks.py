"""Per-board single-writer locks.

``LocalLockProvider`` serializes writers inside one process. When several
worker processes share a database, ``RedisLockProvider`` moves the lock into
redis; each holder gets a random token and a TTL so a crashed process cannot
keep a board locked.
"""

from __future__ import annotations

import threading
import time
from typing import Protocol
from uuid import uuid4

from redis import Redis

from orderboard.infra import redis_state
from orderboard.infra.settings import EngineSettings

LOCK_KEY_PREFIX = "orderboard:lock:"

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class BoardLock(Protocol):
    def acquire(self, timeout: float = 0) -> bool: ...

    def release(self) -> None: ...


class LockProvider(Protocol):
    def lock_for(self, board_id: str) -> BoardLock: ...


class _LocalBoardLock:
    def __init__(self, lock: threading.Lock) -> None:
        self._lock = lock

    def acquire(self, timeout: float = 0) -> bool:
        if timeout <= 0:
            return self._lock.acquire(blocking=False)
        return self._lock.acquire(timeout=timeout)

    def release(self) -> None:
        self._lock.release()


class LocalLockProvider:
    def __init__(self) -> None:
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def lock_for(self, board_id: str) -> BoardLock:
        with self._guard:
            lock = self._locks.setdefault(board_id, threading.Lock())
        return _LocalBoardLock(lock)


class RedisBoardLock:
    def __init__(
        self,
        redis: Redis,
        board_id: str,
        *,
        ttl_seconds: float,
        retry_interval: float = 0.05,
    ) -> None:
        self._redis = redis
        self._key = f"{LOCK_KEY_PREFIX}{board_id}"
        self._token = str(uuid4())
        self._ttl_ms = max(1, int(ttl_seconds * 1000))
        self._retry_interval = retry_interval

    def acquire(self, timeout: float = 0) -> bool:
        deadline = time.monotonic() + max(timeout, 0)
        while True:
            if self._redis.set(self._key, self._token, nx=True, px=self._ttl_ms):
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(self._retry_interval, remaining))

    def release(self) -> None:
        self._redis.eval(_RELEASE_SCRIPT, 1, self._key, self._token)


class RedisLockProvider:
    def __init__(self, *, ttl_seconds: float, redis: Redis | None = None) -> None:
        self._ttl_seconds = ttl_seconds
        self._redis = redis

    def lock_for(self, board_id: str) -> BoardLock:
        client = self._redis if self._redis is not None else redis_state.get_redis()
        return RedisBoardLock(client, board_id, ttl_seconds=self._ttl_seconds)


def build_lock_provider(settings: EngineSettings) -> LockProvider:
    if settings.lock_backend == "redis":
        return RedisLockProvider(ttl_seconds=settings.lock_ttl_seconds)
    if settings.lock_backend == "local":
        return LocalLockProvider()
    raise ValueError(f"unknown lock backend: {settings.lock_backend}")
