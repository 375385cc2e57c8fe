"""
Redis connection for worker heartbeats.
The queue and the consent ledger live in the database; Redis only carries
liveness signals, so every failure here is logged and swallowed.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

_redis_client = None

HEARTBEAT_PREFIX = "revive:worker_health:"
WORKER_NAMES = ("send_worker", "autopilot", "followup_scheduler")


async def get_redis():
    """Get or create Redis connection."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        from revive.config import get_settings
        _redis_client = aioredis.from_url(
            get_settings().redis_url,
            decode_responses=True,
        )
    return _redis_client


async def write_heartbeat(name: str, ttl_seconds: int = 300) -> None:
    """Store heartbeat timestamp in Redis."""
    try:
        redis = await get_redis()
        await redis.set(
            f"{HEARTBEAT_PREFIX}{name}",
            datetime.now(timezone.utc).isoformat(),
            ex=ttl_seconds,
        )
    except Exception as e:
        logger.debug("Heartbeat write failed for %s: %s", name, str(e))


async def read_heartbeats() -> dict[str, Optional[str]]:
    """Last heartbeat per worker (None = missing or expired)."""
    redis = await get_redis()
    beats = {}
    for name in WORKER_NAMES:
        beats[name] = await redis.get(f"{HEARTBEAT_PREFIX}{name}")
    return beats
