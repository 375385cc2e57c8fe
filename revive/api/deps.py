"""
Shared FastAPI dependencies: the engine instance and cron authentication.
Tests override get_engine with an Engine bound to the test database.
"""
import logging
import secrets
from functools import lru_cache

from fastapi import Header, HTTPException

from revive.config import get_settings
from revive.engine import Engine

logger = logging.getLogger(__name__)


@lru_cache()
def get_engine() -> Engine:
    from revive.database import get_session_factory
    from revive.services.sms import TwilioProvider

    settings = get_settings()
    return Engine(get_session_factory(), TwilioProvider(settings), settings=settings)


async def require_cron_secret(x_cron_secret: str = Header(default="")) -> None:
    """Reject internal calls without the shared X-Cron-Secret."""
    expected = get_settings().cron_secret
    if not expected:
        logger.error("CRON_SECRET not configured - rejecting internal call")
        raise HTTPException(status_code=503, detail="Cron secret not configured")
    if not x_cron_secret or not secrets.compare_digest(x_cron_secret, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")
