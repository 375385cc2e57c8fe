"""
First-touch intro - one welcome message for a newly added lead.

A lead gets at most one intro, only while it is younger than the account's
intro window and only if nothing has been sent to it yet. The intro goes
through the compliance gate and the send queue like any automated message;
the dedup key intro:<lead> makes a second call a no-op. A queued intro
stands in for the autopilot opener.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from revive.config import Settings, get_settings
from revive.models.lead import Lead
from revive.models.outbound import DELIVERED, PROCESSING, QUEUED, SENT, OutboundMessage
from revive.schemas.account_policy import AccountPolicy
from revive.services import compliance, send_queue
from revive.utils.logging import mask_phone
from revive.utils.templates import INTRO_TEMPLATE, render_template, trim_body
from revive.utils.timezone import as_utc

logger = logging.getLogger(__name__)

INTRO_MAX_CHARS = 320

LIVE_STATUSES = (QUEUED, PROCESSING, SENT, DELIVERED)


@dataclass
class IntroResult:
    queued: bool
    reason: Optional[str] = None
    item_id: Optional[uuid.UUID] = None


async def has_intro(db: AsyncSession, lead_id: uuid.UUID) -> bool:
    result = await db.execute(
        select(func.count()).select_from(OutboundMessage).where(
            OutboundMessage.lead_id == lead_id,
            OutboundMessage.category == "intro",
            OutboundMessage.status.in_(LIVE_STATUSES),
        )
    )
    return result.scalar_one() > 0


def skip_reason(lead: Lead, policy: AccountPolicy, now: datetime) -> Optional[str]:
    """Reason this lead is not eligible for an intro, or None."""
    if not lead.phone:
        return "no_phone"
    if not policy.sending_enabled:
        return "outbound_paused"
    if lead.intro_sent_at is not None:
        return "intro_sent"
    if policy.intro_window_days <= 0:
        return "intro_disabled"
    created_at = as_utc(lead.created_at)
    if created_at is not None and created_at < as_utc(now) - timedelta(days=policy.intro_window_days):
        return "outside_intro_window"
    if lead.last_outbound_at is not None or lead.step > 0:
        return "already_contacted"
    return None


async def queue_intro(
    db: AsyncSession,
    lead: Lead,
    policy: AccountPolicy,
    now: datetime,
    settings: Optional[Settings] = None,
    body: Optional[str] = None,
) -> IntroResult:
    """
    Queue the intro for a lead. Outside quiet hours the gate defers the
    message to the next allowed time instead of dropping it; any other
    block is returned as the reason.
    """
    settings = settings or get_settings()
    now = as_utc(now)

    reason = skip_reason(lead, policy, now)
    if reason is None and await has_intro(db, lead.id):
        reason = "intro_queued"
    if reason:
        logger.debug("Intro skipped for %s: %s", mask_phone(lead.phone), reason)
        return IntroResult(queued=False, reason=reason)

    run_after = now
    gate = await compliance.evaluate(db, lead, policy, now)
    await compliance.record_evaluation(db, lead, gate, "intro", now)
    if not gate:
        if gate.rule != "quiet_hours" or gate.reason.next_allowed_at is None:
            return IntroResult(queued=False, reason=gate.rule)
        run_after = as_utc(gate.reason.next_allowed_at)

    if not body:
        body = render_template(
            policy.template_opener or INTRO_TEMPLATE,
            name=lead.first_name,
            brand=policy.brand,
            booking_link=policy.booking_link,
        )
    body = compliance.ensure_footer(trim_body(body, INTRO_MAX_CHARS), policy.footer_text)

    item_id, created = await send_queue.enqueue_item(
        db,
        account_id=lead.account_id,
        lead_id=lead.id,
        body=body,
        category="intro",
        dedup_key=f"intro:{lead.id}",
        has_footer=True,
        run_after=run_after,
        now=now,
        settings=settings,
    )
    if not created:
        return IntroResult(queued=False, reason="intro_queued", item_id=item_id)

    lead.step = max(lead.step, 1)
    lead.last_step_at = now
    await db.flush()

    logger.info(
        "Intro queued for %s",
        mask_phone(lead.phone),
        extra={"lead_id": str(lead.id), "queue_item_id": str(item_id)},
    )
    return IntroResult(queued=True, item_id=item_id)
