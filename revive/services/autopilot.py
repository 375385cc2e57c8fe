"""
Autopilot - stepped outreach (opener → nudge → reslot) for an account's leads.

A tick is a no-op with an explicit reason when the kill switch is on,
autopilot is disabled, consent attestation is missing or the account is
outside its send window. Otherwise it picks up to the remaining daily
budget of eligible leads, gate-checks each, enqueues the step's message and
only then advances lead.step.

Enqueue-then-advance: if the process dies between the two, the next tick
re-enqueues the same step and the dedup key autopilot:<lead>:<step> turns
that into a no-op before the step is advanced.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from revive.config import Settings, get_settings
from revive.models.account import Account
from revive.models.lead import Lead
from revive.models.outbound import OutboundMessage
from revive.schemas.account_policy import AccountPolicy
from revive.services import compliance, send_queue
from revive.services.consent import REVOKED
from revive.utils.logging import mask_phone
from revive.utils.templates import render_template, step_template, trim_body
from revive.utils.timezone import as_utc

logger = logging.getLogger(__name__)

# Hours that must pass since the previous step before the next one is eligible
STEP_DELAY_HOURS = {1: 24, 2: 48}


@dataclass
class AutopilotResult:
    ran: bool
    reason: Optional[str] = None
    enqueued: int = 0
    skipped: int = 0
    blocked: dict[str, int] = field(default_factory=dict)
    remaining: int = 0


def preflight(policy: AccountPolicy, now: datetime) -> Optional[str]:
    """Machine-readable reason the account cannot run autopilot now, or None."""
    if policy.kill_switch:
        return "kill_switch"
    if not policy.autopilot_enabled:
        return "autopilot_disabled"
    if not policy.consent_attested:
        return "consent_not_attested"
    if not policy.sending_enabled:
        return "outbound_paused"
    if not compliance.check_quiet_hours(now, policy):
        return "outside_quiet_hours"
    return None


async def sent_today(db: AsyncSession, account_id, now: datetime) -> int:
    """Autopilot messages queued for this account in the trailing 24h."""
    result = await db.execute(
        select(func.count()).select_from(OutboundMessage).where(
            OutboundMessage.account_id == account_id,
            OutboundMessage.category == "autopilot",
            OutboundMessage.created_at > as_utc(now) - timedelta(hours=24),
        )
    )
    return result.scalar_one()


async def find_candidates(
    db: AsyncSession,
    policy: AccountPolicy,
    now: datetime,
    limit: int,
    max_steps: int = 3,
) -> list[Lead]:
    """Leads due for their next step: consent intact, no reply since the last step."""
    now = as_utc(now)
    step_due = [Lead.step == 0]
    for step, hours in STEP_DELAY_HOURS.items():
        if step < max_steps:
            step_due.append(
                and_(Lead.step == step, Lead.last_step_at <= now - timedelta(hours=hours))
            )

    result = await db.execute(
        select(Lead)
        .where(
            Lead.account_id == policy.account_id,
            Lead.consent_state != REVOKED,
            Lead.step < max_steps,
            or_(*step_due),
            or_(
                Lead.last_inbound_at.is_(None),
                and_(Lead.last_step_at.is_not(None), Lead.last_inbound_at < Lead.last_step_at),
            ),
        )
        .order_by(Lead.step, Lead.created_at)
        .limit(limit)
    )
    return list(result.scalars().all())


async def run_tick(
    db: AsyncSession,
    account: Account,
    now: datetime,
    settings: Optional[Settings] = None,
) -> AutopilotResult:
    settings = settings or get_settings()
    now = as_utc(now)
    policy = AccountPolicy.from_account(account, settings)

    reason = preflight(policy, now)
    if reason:
        logger.info("Autopilot skipped for account %s: %s", str(account.id)[:8], reason)
        return AutopilotResult(ran=False, reason=reason)

    remaining = max(0, policy.autopilot_daily_cap - await sent_today(db, account.id, now))
    if remaining == 0:
        return AutopilotResult(ran=False, reason="daily_cap_reached")

    leads = await find_candidates(db, policy, now, remaining, settings.autopilot_max_steps)
    if not leads:
        return AutopilotResult(ran=False, reason="no_eligible_leads", remaining=remaining)

    overrides = {
        "opener": policy.template_opener,
        "nudge": policy.template_nudge,
        "reslot": policy.template_reslot,
    }
    result = AutopilotResult(ran=True, remaining=remaining)

    for lead in leads:
        step = lead.step
        template = step_template(step, overrides)
        if not template:
            result.skipped += 1
            continue

        gate = await compliance.evaluate(db, lead, policy, now)
        await compliance.record_evaluation(db, lead, gate, "autopilot", now)
        if not gate:
            result.blocked[gate.rule] = result.blocked.get(gate.rule, 0) + 1
            continue

        body = render_template(
            template,
            name=lead.first_name,
            brand=policy.brand,
            booking_link=policy.booking_link,
        )
        body = compliance.ensure_footer(trim_body(body, settings.max_body_chars), policy.footer_text)

        _, created = await send_queue.enqueue_item(
            db,
            account_id=account.id,
            lead_id=lead.id,
            body=body,
            category="autopilot",
            dedup_key=f"autopilot:{lead.id}:{step}",
            has_footer=True,
            now=now,
            settings=settings,
        )

        await db.execute(
            update(Lead)
            .where(Lead.id == lead.id, Lead.step == step)
            .values(step=step + 1, last_step_at=now)
        )

        if created:
            result.enqueued += 1
            logger.info("Autopilot step %d queued for %s", step, mask_phone(lead.phone))
        else:
            result.skipped += 1

    result.remaining = max(0, remaining - result.enqueued)
    await db.flush()
    return result
