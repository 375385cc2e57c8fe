"""
Compliance gate - THE GATEKEEPER.
Every automated outbound SMS MUST pass through this before it is enqueued.

Checks performed, in order (first failure wins):
1. Consent: lead revoked or phone on the consent ledger's revoked list
2. Quiet hours: local time inside the account's allowed send window
3. Minimum gap since the last outbound to this lead
4. Frequency caps: automated sends in the trailing 24h and 7 days

Footer need is computed independently of the decision: a footer is required
unless one was already sent to this recipient within footer_refresh_days.

All windows are trailing from `now`, never calendar days. The gate only reads;
recording an evaluation is a separate, explicit call.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from revive.models.gate_evaluation import GateEvaluation
from revive.models.lead import Lead
from revive.models.outbound import OutboundMessage
from revive.schemas.account_policy import AccountPolicy
from revive.schemas.block_reasons import (
    CapExceeded,
    MinGap,
    OptedOut,
    QuietHours,
    dump_block_reason,
)
from revive.services import consent
from revive.utils.logging import mask_phone
from revive.utils.timezone import (
    as_utc,
    format_minutes,
    get_zoneinfo,
    is_within_window,
    minute_of_day,
    next_allowed_time,
)

logger = logging.getLogger(__name__)

ALLOW = "ALLOW"
BLOCK = "BLOCK"


class ComplianceResult:
    """Result of a compliance check."""

    def __init__(self, allowed: bool, reason=None, needs_footer: bool = False):
        self.allowed = allowed
        self.reason = reason
        self.needs_footer = needs_footer

    def __bool__(self) -> bool:
        return self.allowed

    @property
    def decision(self) -> str:
        return ALLOW if self.allowed else BLOCK

    @property
    def rule(self) -> str:
        return self.reason.code if self.reason is not None else ""

    def __repr__(self) -> str:
        status = "ALLOWED" if self.allowed else "BLOCKED"
        detail = self.reason.message if self.reason is not None else "ok"
        return f"<ComplianceResult {status}: {detail}>"


@dataclass(frozen=True)
class SendHistory:
    """Snapshot of a lead's outbound history, as needed by the gate."""
    last_outbound_at: Optional[datetime] = None
    automated_sent_at: tuple[datetime, ...] = field(default_factory=tuple)
    last_footer_at: Optional[datetime] = None


def has_footer(body: str, footer_text: str) -> bool:
    if not body or not footer_text:
        return False
    return footer_text.strip().lower() in body.lower()


def ensure_footer(body: str, footer_text: str) -> str:
    """Append the opt-out footer unless the body already carries it."""
    if has_footer(body, footer_text):
        return body
    return f"{body.rstrip()}\n{footer_text.strip()}"


def check_consent(consent_state: Optional[str], ledger_blocked: bool = False) -> ComplianceResult:
    """A revoked lead or a revoked phone on the ledger is absolute."""
    if consent_state == consent.REVOKED:
        return ComplianceResult(False, OptedOut(source="lead"))
    if ledger_blocked:
        return ComplianceResult(False, OptedOut(source="ledger"))
    return ComplianceResult(True)


def check_quiet_hours(now: datetime, policy: AccountPolicy) -> ComplianceResult:
    """Check the account-local minute of day against the allowed window (end inclusive)."""
    tz = get_zoneinfo(policy.timezone)
    local = as_utc(now).astimezone(tz)
    minute = minute_of_day(local)

    if is_within_window(minute, policy.quiet_start, policy.quiet_end):
        return ComplianceResult(True)

    return ComplianceResult(
        False,
        QuietHours(
            local_time=format_minutes(minute),
            window_start=format_minutes(policy.quiet_start),
            window_end=format_minutes(policy.quiet_end),
            next_allowed_at=next_allowed_time(now, tz, policy.quiet_start, policy.quiet_end),
        ),
    )


def check_min_gap(last_outbound_at: Optional[datetime], now: datetime, min_gap_minutes: int) -> ComplianceResult:
    last = as_utc(last_outbound_at)
    if last is None or min_gap_minutes <= 0:
        return ComplianceResult(True)
    if as_utc(now) - last < timedelta(minutes=min_gap_minutes):
        return ComplianceResult(False, MinGap(min_gap_minutes=min_gap_minutes, last_sent_at=last))
    return ComplianceResult(True)


def check_caps(
    automated_sent_at: tuple[datetime, ...] | list[datetime],
    now: datetime,
    daily_cap: int,
    weekly_cap: int,
) -> ComplianceResult:
    """Count automated sends in the trailing 24h and 7d; reaching the cap blocks."""
    now = as_utc(now)
    day_cutoff = now - timedelta(hours=24)
    week_cutoff = now - timedelta(days=7)
    sent = [as_utc(ts) for ts in automated_sent_at if ts is not None]

    day_count = sum(1 for ts in sent if ts > day_cutoff)
    if day_count >= daily_cap:
        return ComplianceResult(False, CapExceeded.for_window("day", day_count, daily_cap))

    week_count = sum(1 for ts in sent if ts > week_cutoff)
    if week_count >= weekly_cap:
        return ComplianceResult(False, CapExceeded.for_window("week", week_count, weekly_cap))

    return ComplianceResult(True)


def compute_needs_footer(last_footer_at: Optional[datetime], now: datetime, refresh_days: int) -> bool:
    last = as_utc(last_footer_at)
    if last is None:
        return True
    return as_utc(now) - last > timedelta(days=refresh_days)


def full_compliance_check(
    consent_state: Optional[str],
    ledger_blocked: bool,
    policy: AccountPolicy,
    history: SendHistory,
    now: datetime,
) -> ComplianceResult:
    """
    Run all compliance checks over a history snapshot. Returns the first failure.
    needs_footer is set on every result, allowed or not.
    """
    needs_footer = compute_needs_footer(history.last_footer_at, now, policy.footer_refresh_days)

    checks = [
        lambda: check_consent(consent_state, ledger_blocked),
        lambda: check_quiet_hours(now, policy),
        lambda: check_min_gap(history.last_outbound_at, now, policy.min_gap_minutes),
        lambda: check_caps(history.automated_sent_at, now, policy.daily_cap, policy.weekly_cap),
    ]

    for check in checks:
        result = check()
        if not result:
            result.needs_footer = needs_footer
            return result

    return ComplianceResult(True, needs_footer=needs_footer)


async def load_send_history(
    db: AsyncSession, lead: Lead, policy: AccountPolicy, now: datetime,
) -> SendHistory:
    """Read the outbound history the gate needs for one lead."""
    now = as_utc(now)
    week_cutoff = now - timedelta(days=7)
    footer_cutoff = now - timedelta(days=policy.footer_refresh_days)

    last_sent = await db.execute(
        select(func.max(OutboundMessage.sent_at)).where(
            OutboundMessage.lead_id == lead.id,
            OutboundMessage.sent_at.is_not(None),
        )
    )
    last_outbound_at = as_utc(last_sent.scalar_one_or_none())
    lead_last = as_utc(lead.last_outbound_at)
    if lead_last is not None and (last_outbound_at is None or lead_last > last_outbound_at):
        last_outbound_at = lead_last

    automated = await db.execute(
        select(OutboundMessage.sent_at).where(
            OutboundMessage.lead_id == lead.id,
            OutboundMessage.sent_at > week_cutoff,
            or_(OutboundMessage.sent_by == "ai", OutboundMessage.operator_id == "auto"),
        )
    )

    footer_text = policy.footer_text.strip()
    footer = await db.execute(
        select(func.max(OutboundMessage.sent_at)).where(
            or_(OutboundMessage.to_phone == lead.phone, OutboundMessage.lead_id == lead.id),
            OutboundMessage.sent_at >= footer_cutoff,
            or_(
                OutboundMessage.has_footer.is_(True),
                func.lower(OutboundMessage.body).contains(footer_text.lower()),
            ),
        )
    )

    return SendHistory(
        last_outbound_at=last_outbound_at,
        automated_sent_at=tuple(as_utc(ts) for ts in automated.scalars().all()),
        last_footer_at=as_utc(footer.scalar_one_or_none()),
    )


async def evaluate(
    db: AsyncSession, lead: Lead, policy: AccountPolicy, now: datetime,
) -> ComplianceResult:
    """Evaluate whether an automated message may be sent to this lead now."""
    now = as_utc(now)
    ledger_blocked = await consent.is_blocked(db, lead.account_id, lead.phone)
    history = await load_send_history(db, lead, policy, now)
    result = full_compliance_check(lead.consent_state, ledger_blocked, policy, history, now)

    if not result:
        logger.info(
            "Compliance BLOCKED for %s: %s",
            mask_phone(lead.phone), result.reason.message,
            extra={"lead_id": str(lead.id), "reason": result.rule},
        )
    return result


async def record_evaluation(
    db: AsyncSession,
    lead: Lead,
    result: ComplianceResult,
    context: str,
    now: datetime,
) -> GateEvaluation:
    evaluation = GateEvaluation(
        lead_id=lead.id,
        account_id=lead.account_id,
        decision=result.decision,
        reason_code=result.rule or None,
        reason=dump_block_reason(result.reason),
        needs_footer=result.needs_footer,
        context=context,
        evaluated_at=as_utc(now),
    )
    db.add(evaluation)
    await db.flush()
    return evaluation


async def last_evaluation(db: AsyncSession, lead_id: uuid.UUID) -> Optional[GateEvaluation]:
    """The most recent gate decision for a lead ("why didn't lead X get a message")."""
    result = await db.execute(
        select(GateEvaluation)
        .where(GateEvaluation.lead_id == lead_id)
        .order_by(GateEvaluation.evaluated_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()
