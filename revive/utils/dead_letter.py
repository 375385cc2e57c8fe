"""
Dead letter queue - messages the worker gave up on.
A dead-lettered row never retries on its own; an operator inspects it and
requeues it manually. The dead-letter count is the key health signal.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from revive.models.outbound import DEAD_LETTER, QUEUED, OutboundMessage
from revive.utils.timezone import as_utc

logger = logging.getLogger(__name__)


async def dead_letter_count(db: AsyncSession, account_id: Optional[uuid.UUID] = None) -> int:
    query = select(func.count()).select_from(OutboundMessage).where(OutboundMessage.status == DEAD_LETTER)
    if account_id is not None:
        query = query.where(OutboundMessage.account_id == account_id)
    result = await db.execute(query)
    return result.scalar_one()


async def list_dead_letters(
    db: AsyncSession,
    account_id: Optional[uuid.UUID] = None,
    limit: int = 50,
) -> list[OutboundMessage]:
    query = (
        select(OutboundMessage)
        .where(OutboundMessage.status == DEAD_LETTER)
        .order_by(OutboundMessage.failed_at.desc())
        .limit(limit)
    )
    if account_id is not None:
        query = query.where(OutboundMessage.account_id == account_id)
    result = await db.execute(query)
    return list(result.scalars().all())


async def requeue_dead_letter(db: AsyncSession, item_id: uuid.UUID, now: datetime) -> bool:
    """
    Manually return a dead-lettered message to the queue with a fresh attempt budget.
    Returns False if the row does not exist or is not dead-lettered.
    The consent re-check at claim time still applies to requeued rows.
    """
    now = as_utc(now)
    result = await db.execute(
        update(OutboundMessage)
        .where(OutboundMessage.id == item_id, OutboundMessage.status == DEAD_LETTER)
        .values(
            status=QUEUED,
            attempt=0,
            run_after=now,
            error_code=None,
            failed_at=None,
            updated_at=now,
        )
    )
    if result.rowcount == 0:
        return False

    logger.info("Dead-lettered message %s requeued", str(item_id)[:8], extra={"queue_item_id": str(item_id)})
    return True
