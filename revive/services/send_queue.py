"""
Send queue - durable outbound queue backed by the messages_out table.

Rows are claimed with a single conditional UPDATE (status queued → processing);
a claim that touches zero rows lost the race and is skipped silently. No
locks are held across the provider call.

Retry policy: attempt += 1 on every failure, backoff min(2^attempt * 5s, 900s),
dead_letter at max_attempts or on a permanent provider error. Dead-lettered
rows only leave that state through a manual requeue.
A row suppressed at send time (recipient opted out, follow-up cursor gone)
moves to failed without consuming an attempt.
"""
import logging
import uuid
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from revive.config import Settings, get_settings
from revive.models.outbound import (
    DEAD_LETTER,
    DELIVERED,
    FAILED,
    PROCESSING,
    QUEUED,
    SENT,
    OutboundMessage,
)
from revive.utils.timezone import as_utc, utcnow

logger = logging.getLogger(__name__)

# Provider status vocabulary → our delivery status
PROVIDER_STATUS_MAP = {
    "accepted": QUEUED,
    "queued": QUEUED,
    "scheduled": QUEUED,
    "sending": SENT,
    "sent": SENT,
    "delivered": DELIVERED,
    "read": DELIVERED,
    "undelivered": FAILED,
    "failed": FAILED,
}

# Delivery status only ever moves up this ranking
STATUS_RANK = {
    QUEUED: 1,
    PROCESSING: 1,
    SENT: 2,
    FAILED: 3,
    DELIVERED: 4,
}


def compute_backoff_seconds(attempt: int, base_seconds: int = 5, cap_seconds: int = 900) -> int:
    """Exponential backoff after the given (already incremented) attempt count."""
    if attempt >= 20:
        return cap_seconds
    return min((2 ** attempt) * base_seconds, cap_seconds)


def normalize_provider_status(raw_status: Optional[str]) -> Optional[str]:
    return PROVIDER_STATUS_MAP.get((raw_status or "").strip().lower())


async def _find_by_dedup_key(db: AsyncSession, dedup_key: str) -> Optional[uuid.UUID]:
    result = await db.execute(
        select(OutboundMessage.id).where(OutboundMessage.dedup_key == dedup_key)
    )
    return result.scalar_one_or_none()


async def enqueue_item(
    db: AsyncSession,
    account_id: uuid.UUID,
    lead_id: uuid.UUID,
    body: str,
    category: str = "manual",
    dedup_key: Optional[str] = None,
    sent_by: str = "ai",
    operator_id: Optional[str] = None,
    followup_cursor_id: Optional[uuid.UUID] = None,
    followup_attempt: Optional[int] = None,
    has_footer: bool = False,
    run_after: Optional[datetime] = None,
    max_attempts: Optional[int] = None,
    now: Optional[datetime] = None,
    settings: Optional[Settings] = None,
) -> tuple[uuid.UUID, bool]:
    """
    Insert a queued message. Returns (item_id, created).
    A duplicate dedup_key is a no-op success that returns the existing row's id.
    """
    settings = settings or get_settings()
    now = as_utc(now) or utcnow()

    if dedup_key:
        existing_id = await _find_by_dedup_key(db, dedup_key)
        if existing_id is not None:
            logger.debug("Enqueue dedup hit: %s", dedup_key)
            return existing_id, False

    item = OutboundMessage(
        account_id=account_id,
        lead_id=lead_id,
        body=body,
        category=category,
        dedup_key=dedup_key,
        sent_by=sent_by,
        operator_id=operator_id,
        followup_cursor_id=followup_cursor_id,
        followup_attempt=followup_attempt,
        has_footer=has_footer,
        status=QUEUED,
        attempt=0,
        max_attempts=max_attempts or settings.queue_max_attempts,
        run_after=as_utc(run_after) or now,
        created_at=now,
        updated_at=now,
    )
    try:
        async with db.begin_nested():
            db.add(item)
            await db.flush()
    except IntegrityError:
        if not dedup_key:
            raise
        existing_id = await _find_by_dedup_key(db, dedup_key)
        if existing_id is None:
            raise
        logger.debug("Enqueue dedup hit (concurrent): %s", dedup_key)
        return existing_id, False

    logger.info(
        "Queued %s message %s for lead %s",
        category, str(item.id)[:8], str(lead_id)[:8],
        extra={"queue_item_id": str(item.id), "lead_id": str(lead_id)},
    )
    return item.id, True


async def enqueue(
    db: AsyncSession,
    account_id: uuid.UUID,
    lead_id: uuid.UUID,
    body: str,
    category: str = "manual",
    **kwargs,
) -> uuid.UUID:
    item_id, _ = await enqueue_item(db, account_id, lead_id, body, category, **kwargs)
    return item_id


async def select_ready_ids(db: AsyncSession, now: datetime, batch_size: int) -> list[uuid.UUID]:
    result = await db.execute(
        select(OutboundMessage.id)
        .where(
            OutboundMessage.status == QUEUED,
            OutboundMessage.run_after <= as_utc(now),
        )
        .order_by(OutboundMessage.run_after)
        .limit(batch_size)
    )
    return list(result.scalars().all())


async def claim_item(db: AsyncSession, item_id: uuid.UUID, now: datetime) -> bool:
    """Atomically move one row from queued to processing. False means another worker won."""
    result = await db.execute(
        update(OutboundMessage)
        .where(OutboundMessage.id == item_id, OutboundMessage.status == QUEUED)
        .values(status=PROCESSING, updated_at=as_utc(now))
    )
    return result.rowcount == 1


async def release_stale_claims(db: AsyncSession, now: datetime, stale_after_minutes: int) -> int:
    """Return rows stuck in processing (worker died mid-send) to the queue."""
    cutoff = as_utc(now) - timedelta(minutes=stale_after_minutes)
    result = await db.execute(
        update(OutboundMessage)
        .where(OutboundMessage.status == PROCESSING, OutboundMessage.updated_at < cutoff)
        .values(status=QUEUED, run_after=as_utc(now), updated_at=as_utc(now))
    )
    released = result.rowcount or 0
    if released:
        logger.warning("Released %d stale processing claims", released)
    return released


def reschedule_disabled(item: OutboundMessage, now: datetime, settings: Settings) -> None:
    """Account disabled at send time: back to queued later, attempt unchanged."""
    now = as_utc(now)
    item.status = QUEUED
    item.run_after = now + timedelta(minutes=settings.queue_disabled_reschedule_minutes)
    item.updated_at = now
    logger.info(
        "Account disabled, deferred message %s by %d min",
        str(item.id)[:8], settings.queue_disabled_reschedule_minutes,
        extra={"queue_item_id": str(item.id), "reason": "account_disabled"},
    )


def mark_sent(item: OutboundMessage, provider_ref: str, provider: str, to_phone: str, now: datetime) -> None:
    now = as_utc(now)
    item.status = SENT
    item.provider_ref = provider_ref
    item.provider = provider
    item.to_phone = to_phone
    item.sent_at = now
    item.updated_at = now
    item.last_error = None
    item.error_code = None


def mark_dead_letter(item: OutboundMessage, error_code: Optional[str], message: str, now: datetime) -> None:
    now = as_utc(now)
    item.status = DEAD_LETTER
    item.error_code = error_code
    item.last_error = message[:1000]
    item.failed_at = now
    item.updated_at = now
    logger.error(
        "Message %s dead-lettered after %d/%d attempts: %s",
        str(item.id)[:8], item.attempt, item.max_attempts, message[:100],
        extra={"queue_item_id": str(item.id), "error_code": error_code},
    )


def mark_suppressed(
    item: OutboundMessage,
    error_code: str,
    message: str,
    now: datetime,
    release_dedup_key: bool = False,
) -> None:
    """
    Retire a claimed row without sending it. Not a delivery failure: the
    attempt count is unchanged and the row never reaches the dead-letter queue.
    Releasing the dedup key lets the same logical message be queued again later.
    """
    now = as_utc(now)
    item.status = FAILED
    item.error_code = error_code
    item.last_error = message[:1000]
    item.failed_at = now
    item.updated_at = now
    if release_dedup_key:
        item.dedup_key = None
    logger.info(
        "Message %s suppressed before send: %s",
        str(item.id)[:8], error_code,
        extra={"queue_item_id": str(item.id), "reason": error_code},
    )


def record_failure(
    item: OutboundMessage,
    error_code: Optional[str],
    message: str,
    retryable: bool,
    now: datetime,
    settings: Settings,
) -> str:
    """Apply the retry policy to a failed send. Returns the row's new status."""
    now = as_utc(now)
    item.attempt = item.attempt + 1

    if not retryable or item.attempt >= item.max_attempts:
        mark_dead_letter(item, error_code, message, now)
        return DEAD_LETTER

    backoff = compute_backoff_seconds(
        item.attempt, settings.queue_backoff_base_seconds, settings.queue_backoff_cap_seconds,
    )
    item.status = QUEUED
    item.run_after = now + timedelta(seconds=backoff)
    item.error_code = error_code
    item.last_error = message[:1000]
    item.updated_at = now
    logger.warning(
        "Message %s retry %d/%d in %ds: %s",
        str(item.id)[:8], item.attempt, item.max_attempts, backoff, error_code or message[:100],
        extra={"queue_item_id": str(item.id), "error_code": error_code},
    )
    return QUEUED


async def apply_delivery_status(
    db: AsyncSession,
    provider_ref: str,
    raw_status: str,
    error_code: Optional[str] = None,
    now: Optional[datetime] = None,
) -> bool:
    """
    Apply a provider delivery callback. Status only moves forward
    (queued < sent < failed < delivered); unknown refs and downgrades are ignored.
    A carrier-level opt-out (21610) is recorded on the consent ledger.
    """
    now = as_utc(now) or utcnow()
    status = normalize_provider_status(raw_status)
    if status is None:
        logger.debug("Ignoring unknown provider status %r", raw_status)
        return False

    result = await db.execute(
        select(OutboundMessage).where(OutboundMessage.provider_ref == provider_ref)
    )
    item = result.scalar_one_or_none()
    if item is None:
        logger.debug("Status callback for unknown provider ref %s", provider_ref)
        return False

    if error_code and str(error_code) == "21610":
        from revive.services import consent
        if item.to_phone:
            await consent.record_event(db, item.account_id, item.to_phone, consent.REVOKED, "carrier", now=now)

    current_rank = STATUS_RANK.get(item.status, 0)
    if STATUS_RANK[status] <= current_rank:
        return False

    item.status = status
    item.updated_at = now
    if status == DELIVERED:
        item.delivered_at = now
    elif status == FAILED:
        item.failed_at = now
        item.error_code = str(error_code) if error_code else item.error_code
    await db.flush()

    logger.info(
        "Delivery status %s for message %s",
        status, str(item.id)[:8],
        extra={"queue_item_id": str(item.id), "error_code": error_code},
    )
    return True


async def queue_stats(db: AsyncSession, account_id: Optional[uuid.UUID] = None) -> dict[str, int]:
    query = select(OutboundMessage.status, func.count()).group_by(OutboundMessage.status)
    if account_id is not None:
        query = query.where(OutboundMessage.account_id == account_id)
    result = await db.execute(query)
    return {status: count for status, count in result.all()}
