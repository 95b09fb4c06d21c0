from __future__ import annotations

from fastapi import FastAPI, HTTPException

from orderboard.api.routers import boards
from orderboard.infra.db import check_db_ready
from orderboard.infra.logging_setup import configure_logging
from orderboard.infra.redis_state import check_redis_ready

configure_logging()

app = FastAPI(
    title="orderboard",
    description="Ordered-board reconciliation engine: batched, single-writer reordering of board items.",
    version="0.1.0",
)

app.include_router(boards.router, prefix="/api/boards", tags=["boards"])


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
def readyz() -> dict[str, object]:
    db_ok = check_db_ready()
    redis_ok = check_redis_ready()
    checks = {
        "db": "ok" if db_ok else "fail",
        "redis": "ok" if redis_ok else "fail",
    }
    if not (db_ok and redis_ok):
        raise HTTPException(
            status_code=503,
            detail={"status": "not_ready", "checks": checks},
        )
    return {"status": "ready", "checks": checks}
