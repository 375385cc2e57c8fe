"""
Follow-up cursors - re-engagement cadence for leads whose conversation died.

State machine:
    active → completed   (attempt reaches max_attempts)
    active → stopped     (consent revoked, lead replied, manual)
    active → paused      (soft PAUSE keyword, manual)
    active → active      (send succeeded, next_at moves forward)

Enrollment is idempotent: a partial unique index allows one live
(active/paused) cursor per lead, and a second enrollment returns the
existing cursor instead of raising.

Sends go through the queue. The cursor only advances when the worker reports
a successful send, and the advance is conditional on the attempt the send
was drafted for, so a replayed success cannot double-advance.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Protocol, Sequence

from sqlalchemy import and_, exists, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from revive.config import Settings, get_settings
from revive.models.account import Account
from revive.models.followup import (
    ACTIVE,
    COMPLETED,
    LIVE_STATUSES,
    PAUSED,
    STOPPED,
    FollowupCursor,
)
from revive.models.lead import Lead
from revive.schemas.account_policy import AccountPolicy
from revive.services import compliance, send_queue
from revive.services.consent import REVOKED
from revive.utils.logging import mask_phone
from revive.utils.templates import followup_template, render_template
from revive.utils.timezone import as_utc, get_zoneinfo, next_allowed_time

logger = logging.getLogger(__name__)


class FollowupDrafter(Protocol):
    """Produces the text for a follow-up attempt. Returning None falls back to templates."""

    async def draft(self, lead: Lead, policy: AccountPolicy, attempt: int) -> Optional[str]:
        ...


class TemplateFollowupDrafter:
    """Default drafter: rotates through the built-in follow-up templates."""

    async def draft(self, lead: Lead, policy: AccountPolicy, attempt: int) -> Optional[str]:
        return render_template(
            followup_template(attempt),
            name=lead.first_name,
            brand=policy.brand,
            booking_link=policy.booking_link,
        )


@dataclass
class FollowupTickResult:
    due: int = 0
    enqueued: int = 0
    deferred: int = 0
    stopped: int = 0
    skipped: int = 0


def cadence_offset(cadence_hours: Sequence[int], index: int) -> int:
    """Cadence offset for an attempt index, clamped to the last entry."""
    if not cadence_hours:
        return 24
    return int(cadence_hours[min(max(index, 0), len(cadence_hours) - 1)])


def compute_next_send_time(now: datetime, offset_hours: float, policy: AccountPolicy) -> datetime:
    """Add the cadence offset, then shift forward into the next allowed send window."""
    target = as_utc(now) + timedelta(hours=offset_hours)
    return next_allowed_time(
        target, get_zoneinfo(policy.timezone), policy.quiet_start, policy.quiet_end,
    )


async def get_live_cursor(db: AsyncSession, lead_id: uuid.UUID) -> Optional[FollowupCursor]:
    result = await db.execute(
        select(FollowupCursor).where(
            FollowupCursor.lead_id == lead_id,
            FollowupCursor.status.in_(LIVE_STATUSES),
        )
    )
    return result.scalars().first()


async def enroll(
    db: AsyncSession, lead: Lead, policy: AccountPolicy, now: datetime,
) -> tuple[FollowupCursor, bool]:
    """
    Enroll a lead in the account's follow-up cadence.
    Returns (cursor, created). A lead with a live cursor gets that cursor back
    with created=False; racing enrollments resolve the same way.
    """
    now = as_utc(now)
    existing = await get_live_cursor(db, lead.id)
    if existing is not None:
        return existing, False

    cadence = list(policy.cadence_hours)
    cursor = FollowupCursor(
        lead_id=lead.id,
        account_id=lead.account_id,
        status=ACTIVE,
        attempt=0,
        max_attempts=policy.followup_max_attempts,
        cadence_hours=cadence,
        next_at=compute_next_send_time(now, cadence_offset(cadence, 0), policy),
        created_at=now,
        updated_at=now,
    )
    try:
        async with db.begin_nested():
            db.add(cursor)
            await db.flush()
    except IntegrityError:
        existing = await get_live_cursor(db, lead.id)
        if existing is None:
            raise
        logger.debug("Lead %s already enrolled (concurrent)", str(lead.id)[:8])
        return existing, False

    lead.followup_cursor_id = cursor.id
    logger.info(
        "Enrolled lead %s in follow-ups: %d attempts, first at %s",
        str(lead.id)[:8], cursor.max_attempts, cursor.next_at.isoformat(),
    )
    return cursor, True


async def find_died_conversations(
    db: AsyncSession, policy: AccountPolicy, now: datetime, limit: int = 100,
) -> list[Lead]:
    """
    Leads whose last message was ours, sent more than conversation_died_hours ago,
    with no cursor since their last reply (or ever) and consent intact.
    """
    cutoff = as_utc(now) - timedelta(hours=policy.conversation_died_hours)

    cursor_since_reply = exists().where(
        FollowupCursor.lead_id == Lead.id,
        or_(
            FollowupCursor.status.in_(LIVE_STATUSES),
            Lead.last_inbound_at.is_(None),
            FollowupCursor.created_at > Lead.last_inbound_at,
        ),
    )

    result = await db.execute(
        select(Lead)
        .where(
            Lead.account_id == policy.account_id,
            Lead.consent_state != REVOKED,
            Lead.last_outbound_at.is_not(None),
            Lead.last_outbound_at <= cutoff,
            or_(
                Lead.last_inbound_at.is_(None),
                Lead.last_inbound_at < Lead.last_outbound_at,
            ),
            ~cursor_since_reply,
        )
        .order_by(Lead.last_outbound_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def enroll_died_conversations(
    db: AsyncSession,
    account: Account,
    now: datetime,
    settings: Optional[Settings] = None,
) -> int:
    """Enroll every died conversation for one account. Returns the number of new cursors."""
    settings = settings or get_settings()
    if account.outbound_paused:
        return 0

    policy = AccountPolicy.from_account(account, settings)
    leads = await find_died_conversations(db, policy, now, limit=settings.followup_batch_size * 4)

    enrolled = 0
    for lead in leads:
        _, created = await enroll(db, lead, policy, now)
        if created:
            enrolled += 1

    if enrolled:
        logger.info("Enrolled %d died conversations for account %s", enrolled, str(account.id)[:8])
    return enrolled


def awaits_attempt(cursor: Optional[FollowupCursor], attempt_no: int) -> bool:
    """True while the cursor is active and still waiting on follow-up number attempt_no."""
    return cursor is not None and cursor.status == ACTIVE and cursor.attempt == attempt_no - 1


async def advance_cursor(
    db: AsyncSession,
    cursor_id: uuid.UUID,
    expected_attempt: int,
    policy: AccountPolicy,
    now: datetime,
) -> bool:
    """
    Record a successful follow-up send. `expected_attempt` is the cursor attempt
    the message was drafted against; a stale or replayed success returns False.
    """
    now = as_utc(now)
    cursor = await db.get(FollowupCursor, cursor_id)
    if not awaits_attempt(cursor, expected_attempt + 1):
        return False

    new_attempt = expected_attempt + 1
    if new_attempt >= cursor.max_attempts:
        values = {"attempt": new_attempt, "status": COMPLETED, "next_at": None}
    else:
        offset = cadence_offset(cursor.cadence_hours, new_attempt)
        values = {
            "attempt": new_attempt,
            "status": ACTIVE,
            "next_at": compute_next_send_time(now, offset, policy),
        }

    result = await db.execute(
        update(FollowupCursor)
        .where(
            FollowupCursor.id == cursor.id,
            FollowupCursor.status == ACTIVE,
            FollowupCursor.attempt == expected_attempt,
        )
        .values(last_sent_at=now, updated_at=now, **values)
    )
    if result.rowcount == 0:
        return False

    logger.info(
        "Follow-up cursor %s advanced to %d/%d (%s)",
        str(cursor_id)[:8], new_attempt, cursor.max_attempts, values["status"],
    )
    return True


async def _set_status_for_leads(
    db: AsyncSession,
    lead_ids: Sequence[uuid.UUID],
    from_statuses: Sequence[str],
    values: dict,
) -> int:
    if not lead_ids:
        return 0
    result = await db.execute(
        update(FollowupCursor)
        .where(
            FollowupCursor.lead_id.in_(list(lead_ids)),
            FollowupCursor.status.in_(list(from_statuses)),
        )
        .values(**values)
    )
    return result.rowcount or 0


async def stop_cursors_for_leads(
    db: AsyncSession, lead_ids: Sequence[uuid.UUID], reason: str, now: datetime,
) -> int:
    now = as_utc(now)
    return await _set_status_for_leads(
        db, lead_ids, LIVE_STATUSES,
        {"status": STOPPED, "stop_reason": reason, "next_at": None, "updated_at": now},
    )


async def stop_cursor(db: AsyncSession, lead_id: uuid.UUID, reason: str, now: datetime) -> bool:
    return await stop_cursors_for_leads(db, [lead_id], reason, now) > 0


async def pause_cursors_for_leads(db: AsyncSession, lead_ids: Sequence[uuid.UUID], now: datetime) -> int:
    return await _set_status_for_leads(
        db, lead_ids, (ACTIVE,), {"status": PAUSED, "updated_at": as_utc(now)},
    )


async def pause_cursor(db: AsyncSession, lead_id: uuid.UUID, now: datetime) -> bool:
    return await pause_cursors_for_leads(db, [lead_id], now) > 0


async def resume_cursors_for_leads(db: AsyncSession, lead_ids: Sequence[uuid.UUID], now: datetime) -> int:
    """Explicit lead request only; paused cursors never resume on their own."""
    now = as_utc(now)
    return await _set_status_for_leads(
        db, lead_ids, (PAUSED,), {"status": ACTIVE, "next_at": now, "updated_at": now},
    )


def _defer_until(reason, now: datetime, policy: AccountPolicy) -> datetime:
    """Earliest time a blocked follow-up is worth re-evaluating."""
    if reason.code == "quiet_hours" and reason.next_allowed_at is not None:
        return as_utc(reason.next_allowed_at)
    if reason.code == "min_gap":
        retry_at = as_utc(reason.last_sent_at) + timedelta(minutes=reason.min_gap_minutes)
        return compute_next_send_time(max(retry_at, as_utc(now)), 0, policy)
    return compute_next_send_time(now, 24, policy)


async def run_due_followups(
    db: AsyncSession,
    account: Account,
    now: datetime,
    settings: Optional[Settings] = None,
    drafter: Optional[FollowupDrafter] = None,
) -> FollowupTickResult:
    """
    Evaluate every due cursor of one account and enqueue the next follow-up.

    Quiet hours, min gap and caps defer the cursor; an opted-out lead stops it.
    """
    settings = settings or get_settings()
    drafter = drafter or TemplateFollowupDrafter()
    now = as_utc(now)
    tick = FollowupTickResult()

    policy = AccountPolicy.from_account(account, settings)
    if not policy.sending_enabled:
        return tick

    result = await db.execute(
        select(FollowupCursor)
        .where(
            FollowupCursor.account_id == account.id,
            FollowupCursor.status == ACTIVE,
            FollowupCursor.next_at <= now,
        )
        .order_by(FollowupCursor.next_at)
        .limit(settings.followup_batch_size)
    )
    cursors = list(result.scalars().all())
    tick.due = len(cursors)

    for cursor in cursors:
        lead = await db.get(Lead, cursor.lead_id)
        if lead is None:
            await stop_cursor(db, cursor.lead_id, "lead_missing", now)
            tick.stopped += 1
            continue

        gate = await compliance.evaluate(db, lead, policy, now)
        await compliance.record_evaluation(db, lead, gate, "followup", now)

        if not gate:
            if gate.rule == "opted_out":
                await stop_cursor(db, lead.id, "opted_out", now)
                tick.stopped += 1
            else:
                cursor.next_at = _defer_until(gate.reason, now, policy)
                cursor.updated_at = now
                tick.deferred += 1
            continue

        attempt_no = cursor.attempt + 1
        body = await drafter.draft(lead, policy, attempt_no)
        if not body:
            body = await TemplateFollowupDrafter().draft(lead, policy, attempt_no)
        if gate.needs_footer:
            body = compliance.ensure_footer(body, policy.footer_text)

        _, created = await send_queue.enqueue_item(
            db,
            account_id=account.id,
            lead_id=lead.id,
            body=body,
            category="followup",
            dedup_key=f"followup:{cursor.id}:{attempt_no}",
            followup_cursor_id=cursor.id,
            followup_attempt=attempt_no,
            has_footer=compliance.has_footer(body, policy.footer_text),
            now=now,
            settings=settings,
        )

        # Hold the cursor until the worker reports the send
        cursor.next_at = compute_next_send_time(
            now, cadence_offset(cursor.cadence_hours, attempt_no), policy,
        )
        cursor.updated_at = now

        if created:
            tick.enqueued += 1
            logger.info(
                "Follow-up %d/%d queued for %s",
                attempt_no, cursor.max_attempts, mask_phone(lead.phone),
            )
        else:
            tick.skipped += 1

    await db.flush()
    return tick
