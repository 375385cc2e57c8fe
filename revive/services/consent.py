"""
Consent ledger - the append-only opt-in/opt-out record per (account, phone).

Every inbound SMS passes through handle_inbound BEFORE any other processing.
A revocation is visible to the compliance gate on the very next evaluation:
state is always read from the store, never cached.

Keyword matching is exact on the whole message after normalization
(uppercase, alphanumerics only), with repeated-letter collapse so that
"STOPPPP" still counts as STOP. Longer sentences are regular replies.
"""
import enum
import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from revive.config import Settings, get_settings
from revive.models.consent import ConsentEvent
from revive.models.lead import Lead
from revive.schemas.webhook_payloads import InboundMessage
from revive.utils.logging import mask_phone
from revive.utils.phone import normalize_phone_e164
from revive.utils.timezone import as_utc, utcnow

logger = logging.getLogger(__name__)

GRANTED = "granted"
REVOKED = "revoked"
HELP = "help"

STATE_EVENTS = (GRANTED, REVOKED)


class KeywordAction(str, enum.Enum):
    REVOKE = "revoke"
    GRANT = "grant"
    HELP = "help"
    PAUSE = "pause"
    RESUME = "resume"


@dataclass
class InboundResult:
    action: Optional[KeywordAction]
    reply: Optional[str] = None
    lead_ids: list[uuid.UUID] = field(default_factory=list)


def normalize_keyword_text(text: Optional[str]) -> str:
    """Uppercase and strip everything that is not a letter or digit."""
    if not text:
        return ""
    return re.sub(r"[^A-Z0-9]", "", text.upper())


def classify_keyword(text: Optional[str], settings: Optional[Settings] = None) -> Optional[KeywordAction]:
    """Map an inbound message to a consent keyword action, or None for a regular reply."""
    settings = settings or get_settings()
    normalized = normalize_keyword_text(text)
    if not normalized:
        return None

    candidates = [normalized]
    collapsed = re.sub(r"(.)\1{2,}", r"\1", normalized)
    if collapsed != normalized:
        candidates.append(collapsed)

    for word in candidates:
        if word in settings.stop_keyword_set:
            return KeywordAction.REVOKE
        if word in settings.pause_keyword_set:
            return KeywordAction.PAUSE
        if word in settings.start_keyword_set:
            return KeywordAction.GRANT
        if word in settings.resume_keyword_set:
            return KeywordAction.RESUME
        if word in settings.help_keyword_set:
            return KeywordAction.HELP
    return None


def _normalize(phone: str) -> str:
    return normalize_phone_e164(phone) or (phone or "").strip()


async def current_state(db: AsyncSession, account_id: uuid.UUID, phone: str) -> Optional[str]:
    """Most recent granted/revoked event for this phone, or None if it has no history."""
    result = await db.execute(
        select(ConsentEvent.event_type)
        .where(
            ConsentEvent.account_id == account_id,
            ConsentEvent.phone == _normalize(phone),
            ConsentEvent.event_type.in_(STATE_EVENTS),
        )
        .order_by(ConsentEvent.created_at.desc(), ConsentEvent.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def is_blocked(db: AsyncSession, account_id: uuid.UUID, phone: str) -> bool:
    return await current_state(db, account_id, phone) == REVOKED


async def record_event(
    db: AsyncSession,
    account_id: uuid.UUID,
    phone: str,
    event_type: str,
    source: str,
    keyword: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ConsentEvent:
    """
    Append a consent event and apply its effect to matching leads.

    Always appends. Re-recording the state a phone is already in writes a
    second log row but changes nothing else.
    """
    if event_type not in (GRANTED, REVOKED, HELP):
        raise ValueError(f"Unknown consent event type: {event_type}")

    now = as_utc(now) or utcnow()
    phone = _normalize(phone)

    event = ConsentEvent(
        account_id=account_id,
        phone=phone,
        event_type=event_type,
        source=source,
        keyword=keyword,
        created_at=now,
    )
    db.add(event)
    await db.flush()

    if event_type == REVOKED:
        lead_ids = await _set_lead_consent(db, account_id, phone, REVOKED)
        if lead_ids:
            from revive.services.followups import stop_cursors_for_leads
            await stop_cursors_for_leads(db, lead_ids, "opted_out", now)
        logger.info(
            "Consent revoked for %s via %s (%d leads)",
            mask_phone(phone), source, len(lead_ids),
            extra={"account_id": str(account_id), "reason": "opted_out"},
        )
    elif event_type == GRANTED:
        await _set_lead_consent(db, account_id, phone, GRANTED)
        logger.info("Consent granted for %s via %s", mask_phone(phone), source)

    return event


async def _set_lead_consent(
    db: AsyncSession, account_id: uuid.UUID, phone: str, state: str,
) -> list[uuid.UUID]:
    result = await db.execute(
        select(Lead.id).where(Lead.account_id == account_id, Lead.phone == phone)
    )
    lead_ids = list(result.scalars().all())
    if lead_ids:
        await db.execute(
            update(Lead).where(Lead.id.in_(lead_ids)).values(consent_state=state)
        )
    return lead_ids


async def handle_inbound(
    db: AsyncSession,
    message: InboundMessage,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
) -> InboundResult:
    """
    Process an inbound SMS for consent keywords.

    Runs before the reply pipeline. A regular (non-keyword) message means the
    lead replied, so any live follow-up cursor is stopped.
    """
    from revive.services.followups import (
        pause_cursors_for_leads,
        resume_cursors_for_leads,
        stop_cursors_for_leads,
    )

    settings = settings or get_settings()
    now = as_utc(now) or as_utc(message.received_at) or utcnow()
    phone = _normalize(message.from_phone)
    account_id = message.account_id

    result = await db.execute(
        select(Lead).where(Lead.account_id == account_id, Lead.phone == phone)
    )
    leads = list(result.scalars().all())
    lead_ids = [lead.id for lead in leads]
    for lead in leads:
        lead.last_inbound_at = now

    action = classify_keyword(message.body, settings)
    keyword = normalize_keyword_text(message.body)[:30] or None

    if action == KeywordAction.PAUSE and settings.pause_is_opt_out:
        action_effect = KeywordAction.REVOKE
    else:
        action_effect = action

    reply = None
    if action_effect == KeywordAction.REVOKE:
        await record_event(db, account_id, phone, REVOKED, "sms_keyword", keyword, now)
        reply = settings.stop_confirmation_text
    elif action_effect == KeywordAction.PAUSE:
        await pause_cursors_for_leads(db, lead_ids, now)
        reply = settings.pause_confirmation_text
    elif action_effect in (KeywordAction.GRANT, KeywordAction.RESUME):
        await record_event(db, account_id, phone, GRANTED, "sms_keyword", keyword, now)
        if action_effect == KeywordAction.RESUME and not settings.pause_is_opt_out:
            await resume_cursors_for_leads(db, lead_ids, now)
        reply = settings.start_confirmation_text
    elif action_effect == KeywordAction.HELP:
        await record_event(db, account_id, phone, HELP, "sms_keyword", keyword, now)
        reply = settings.help_reply_text
    elif lead_ids:
        stopped = await stop_cursors_for_leads(db, lead_ids, "replied", now)
        if stopped:
            logger.info("Lead %s replied, stopped %d follow-up cursor(s)", mask_phone(phone), stopped)

    await db.flush()
    if action is not None:
        logger.info(
            "Inbound keyword %s from %s (account %s)",
            action.value, mask_phone(phone), str(account_id)[:8],
        )
    return InboundResult(action=action, reply=reply, lead_ids=lead_ids)
