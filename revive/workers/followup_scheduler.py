"""
Follow-up scheduler worker - enrolls died conversations and runs due cursors.
Compliance check before every enqueue happens inside run_due_followups.
"""
import asyncio
import logging
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from revive.config import Settings, get_settings
from revive.models.account import Account
from revive.services.followups import (
    FollowupDrafter,
    FollowupTickResult,
    enroll_died_conversations,
    run_due_followups,
)
from revive.utils.logging import generate_correlation_id, set_correlation_id
from revive.utils.redis import write_heartbeat
from revive.utils.timezone import utcnow

logger = logging.getLogger(__name__)


async def _account_ids(session_factory, only_unpaused: bool = True) -> list:
    async with session_factory() as db:
        query = select(Account.id)
        if only_unpaused:
            query = query.where(Account.outbound_paused.is_(False))
        result = await db.execute(query)
        return list(result.scalars().all())


async def enroll_all_accounts(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utcnow,
) -> dict:
    """Enroll died conversations for every account with outbound enabled."""
    settings = settings or get_settings()
    account_ids = await _account_ids(session_factory)

    enrolled = 0
    for account_id in account_ids:
        try:
            async with session_factory() as db:
                account = await db.get(Account, account_id)
                if account is None:
                    continue
                enrolled += await enroll_died_conversations(db, account, clock(), settings)
                await db.commit()
        except Exception as e:
            logger.error("Follow-up enrollment failed for account %s: %s", str(account_id)[:8], str(e))

    return {"enrolled": enrolled, "accounts": len(account_ids)}


async def run_all_due_followups(
    session_factory: async_sessionmaker[AsyncSession],
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utcnow,
    drafter: Optional[FollowupDrafter] = None,
) -> FollowupTickResult:
    settings = settings or get_settings()
    total = FollowupTickResult()

    for account_id in await _account_ids(session_factory):
        try:
            async with session_factory() as db:
                account = await db.get(Account, account_id)
                if account is None:
                    continue
                tick = await run_due_followups(db, account, clock(), settings, drafter)
                await db.commit()
        except Exception as e:
            logger.error("Follow-up tick failed for account %s: %s", str(account_id)[:8], str(e))
            continue

        total.due += tick.due
        total.enqueued += tick.enqueued
        total.deferred += tick.deferred
        total.stopped += tick.stopped
        total.skipped += tick.skipped

    if total.due:
        logger.info(
            "Follow-up tick: due=%d enqueued=%d deferred=%d stopped=%d",
            total.due, total.enqueued, total.deferred, total.stopped,
        )
    return total


async def run_followup_scheduler(session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
    """Main loop - enroll, then process due cursors, every poll interval."""
    from revive.database import get_session_factory

    settings = get_settings()
    session_factory = session_factory or get_session_factory()
    logger.info("Follow-up scheduler started (poll every %ds)", settings.followup_poll_interval_seconds)

    while True:
        set_correlation_id(generate_correlation_id())
        try:
            await enroll_all_accounts(session_factory, settings)
            await run_all_due_followups(session_factory, settings)
        except Exception as e:
            logger.error("Follow-up scheduler error: %s", str(e))

        await write_heartbeat("followup_scheduler")
        await asyncio.sleep(settings.followup_poll_interval_seconds)
