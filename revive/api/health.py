"""
Health check endpoints - used by load balancers and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness (DB + Redis) plus worker heartbeats and the
                      dead-letter count, the key queue health signal
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from revive.database import get_db
from revive.utils.dead_letter import dead_letter_count

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """Readiness check - verifies database and Redis connectivity."""
    checks = {"database": False, "redis": False}
    dead_letters = None
    workers = {}

    try:
        await db.execute(text("SELECT 1"))
        checks["database"] = True
        dead_letters = await dead_letter_count(db)
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))

    try:
        from revive.utils.redis import get_redis, read_heartbeats
        redis = await get_redis()
        await redis.ping()
        checks["redis"] = True
        workers = await read_heartbeats()
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))

    all_healthy = all(checks.values())
    return {
        "status": "ready" if all_healthy else "degraded",
        "checks": checks,
        "dead_letter": dead_letters,
        "workers": workers,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
