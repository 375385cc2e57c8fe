"""
Autopilot worker - runs an autopilot tick for every enabled account.
Only used when workers run in-process; in production the cron endpoint
POST /api/v1/internal/autopilot/tick/{account_id} triggers the same code.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from revive.config import Settings, get_settings
from revive.models.account import Account
from revive.services.autopilot import AutopilotResult, run_tick
from revive.utils.logging import generate_correlation_id, set_correlation_id
from revive.utils.redis import write_heartbeat
from revive.utils.timezone import utcnow

logger = logging.getLogger(__name__)


async def tick_account(
    session_factory: async_sessionmaker[AsyncSession],
    account_id,
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utcnow,
) -> AutopilotResult:
    """Run one autopilot tick for one account in its own transaction."""
    async with session_factory() as db:
        account = await db.get(Account, account_id)
        if account is None:
            return AutopilotResult(ran=False, reason="account_not_found")
        result = await run_tick(db, account, clock(), settings)
        await db.commit()
        return result


async def tick_all_accounts(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utcnow,
) -> dict:
    async with session_factory() as db:
        result = await db.execute(
            select(Account.id).where(
                Account.autopilot_enabled.is_(True),
                Account.kill_switch.is_(False),
            )
        )
        account_ids = list(result.scalars().all())

    results = {}
    for account_id in account_ids:
        try:
            results[str(account_id)] = await tick_account(session_factory, account_id, settings, clock)
        except Exception as e:
            logger.error("Autopilot tick failed for account %s: %s", str(account_id)[:8], str(e))
    return results


async def run_autopilot_worker(session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
    """Main loop - tick every enabled account each poll interval."""
    from revive.database import get_session_factory

    settings = get_settings()
    session_factory = session_factory or get_session_factory()
    logger.info("Autopilot worker started (poll every %ds)", settings.autopilot_poll_interval_seconds)

    while True:
        set_correlation_id(generate_correlation_id())
        try:
            await tick_all_accounts(session_factory, settings)
        except Exception as e:
            logger.error("Autopilot worker error: %s", str(e))

        await write_heartbeat("autopilot")
        await asyncio.sleep(settings.autopilot_poll_interval_seconds)
