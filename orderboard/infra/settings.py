from __future__ import annotations

import os
from dataclasses import dataclass

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "postgresql+psycopg://orderboard:orderboard@db:5432/orderboard",
)
REDIS_URL = os.getenv("REDIS_URL", "redis://redis:6379/0")
LOCK_BACKEND = os.getenv("ORDERBOARD_LOCK_BACKEND", "local")
LOCK_WAIT_SECONDS = float(os.getenv("ORDERBOARD_LOCK_WAIT_SECONDS", "0"))
LOCK_TTL_SECONDS = float(os.getenv("ORDERBOARD_LOCK_TTL_SECONDS", "30"))
STORE_TIMEOUT_SECONDS = float(os.getenv("ORDERBOARD_STORE_TIMEOUT_SECONDS", "5"))
LOG_LEVEL = os.getenv("ORDERBOARD_LOG_LEVEL", "INFO")


@dataclass(frozen=True)
class EngineSettings:
    lock_backend: str = LOCK_BACKEND
    lock_wait_seconds: float = LOCK_WAIT_SECONDS
    lock_ttl_seconds: float = LOCK_TTL_SECONDS
    store_timeout_seconds: float = STORE_TIMEOUT_SECONDS


def get_settings() -> EngineSettings:
    return EngineSettings()
