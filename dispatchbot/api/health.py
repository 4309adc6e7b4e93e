"""
Health and diagnostics API for the dispatch bot engine.

Lightweight endpoints for operational monitoring; no secrets are exposed.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import inspect

from dispatchbot.core.config import settings
from dispatchbot.core.database import check_connection, get_engine
from dispatchbot.features.executor_plans.service import get_redis_conn

logger = logging.getLogger("dispatchbot")

router = APIRouter(prefix="/api/health", tags=["health"])
root_router = APIRouter(tags=["health"])

REQUIRED_TABLES = ["executor_plans", "executor_blocks"]


class DBHealth(BaseModel):
    connected: bool
    latency_ms: Optional[float] = None  # None when ``now`` is pinned in tests


class RedisHealth(BaseModel):
    configured: bool
    connected: bool = False


class HealthResponse(BaseModel):
    ok: bool
    db: DBHealth
    redis: RedisHealth
    reminders_enabled: bool
    computed_at: str  # UTC ISO format


def _redis_health() -> RedisHealth:
    conn = get_redis_conn(settings)
    if conn is None:
        return RedisHealth(configured=False)
    try:
        return RedisHealth(configured=True, connected=bool(conn.ping()))
    except Exception as e:
        logger.warning(f"[health] redis ping failed: {e}")
        return RedisHealth(configured=True, connected=False)
    finally:
        conn.close()


@root_router.get("/healthz")
def healthz():
    """Lightweight liveness check (no deps)."""
    return {"status": "ok"}


@root_router.get("/readyz")
def readyz():
    """Readiness check: DB connectivity, required tables and redis when configured."""
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")

        inspector = inspect(engine)
        missing = [t for t in REQUIRED_TABLES if not inspector.has_table(t)]
        if missing:
            detail = f"missing tables: {', '.join(missing)}"
            logger.warning(f"[readyz] {detail}")
            return JSONResponse(status_code=503, content={"status": "error", "detail": detail})
    except Exception as e:
        logger.error(f"[readyz] readiness check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "error", "detail": "database unreachable"})

    redis_health = _redis_health()
    if redis_health.configured and not redis_health.connected:
        return JSONResponse(status_code=503, content={"status": "error", "detail": "redis unreachable"})

    return {"status": "ok"}


@router.get("", response_model=HealthResponse)
def health(now: Optional[str] = Query(None)):
    """
    Database and redis status plus whether reminder delivery is active.

    Args:
        now: Optional ISO timestamp for deterministic testing (overrides system time)
    """
    start = time.perf_counter()
    is_connected = check_connection()
    latency_ms = (time.perf_counter() - start) * 1000

    redis_health = _redis_health()
    ok = is_connected and (not redis_health.configured or redis_health.connected)

    return HealthResponse(
        ok=ok,
        db=DBHealth(connected=is_connected, latency_ms=None if now else latency_ms),
        redis=redis_health,
        reminders_enabled=redis_health.configured,
        computed_at=now or datetime.now(timezone.utc).isoformat(),
    )
