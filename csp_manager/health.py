"""Health and readiness endpoints."""

from __future__ import annotations

import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from csp_manager.config.policy_cache import get_policy_cache
from csp_manager.store import postgres as pg_store
from csp_manager.store import redis as redis_store

logger = structlog.get_logger()
router = APIRouter()


async def _check_postgres() -> bool:
    pool = pg_store.get_pool()
    if pool is None:
        return False
    try:
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")
        return True
    except Exception:
        return False


@router.get("/health")
async def health():
    """Health check: status of the service and its dependencies."""
    postgres_ok = await _check_postgres()
    redis_ok = await redis_store.ping()
    snapshot = get_policy_cache().snapshot

    return {
        "status": "healthy" if (postgres_ok and redis_ok) else "degraded",
        "service": "up",
        "postgres": "up" if postgres_ok else "down",
        "redis": "up" if redis_ok else "down",
        "policies": len(snapshot.policies),
    }


@router.get("/ready")
async def ready():
    """Readiness: 200 once PostgreSQL answers. Redis only gates rate limiting."""
    postgres_ok = await _check_postgres()
    if postgres_ok:
        return {"status": "ready"}

    return JSONResponse(
        status_code=503,
        content={"status": "not_ready", "postgres": "down"},
    )
