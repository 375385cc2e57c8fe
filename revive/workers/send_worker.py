"""
Send worker - drains the outbound queue through the SMS provider.

Each tick:
1. Return stale processing claims to the queue
2. Select up to batch_size ready rows (queued, run_after <= now)
3. Claim each row with a conditional UPDATE; a lost claim is skipped
4. Process every claimed row in its own session, sequentially or through a
   bounded pool. Completion order is not guaranteed.

Per item: account re-validation, consent re-check, follow-up cursor re-check,
provider send with a timeout, then success bookkeeping or the retry/dead-letter
policy. Suppressed rows (opted out, cursor no longer waiting) become failed
without being sent or counted as a delivery attempt.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from revive.config import Settings, get_settings
from revive.models.account import Account
from revive.models.followup import FollowupCursor
from revive.models.lead import Lead
from revive.models.outbound import DEAD_LETTER, PROCESSING, OutboundMessage
from revive.schemas.account_policy import AccountPolicy
from revive.services import consent, followups, send_queue
from revive.services.sms import ProviderError, ProviderTimeout, SmsProvider
from revive.utils.logging import generate_correlation_id, mask_phone, set_correlation_id
from revive.utils.redis import write_heartbeat
from revive.utils.timezone import as_utc, utcnow

logger = logging.getLogger(__name__)

SENT = "sent"
RETRIED = "retried"
DEAD_LETTERED = "dead_lettered"
DEFERRED = "deferred"
SUPPRESSED = "suppressed"
SKIPPED = "skipped"


@dataclass
class WorkerTickResult:
    picked: int = 0
    claimed: int = 0
    sent: int = 0
    retried: int = 0
    dead_lettered: int = 0
    deferred: int = 0
    suppressed: int = 0


async def process_item(
    session_factory: async_sessionmaker[AsyncSession],
    item_id: uuid.UUID,
    provider: SmsProvider,
    settings: Settings,
    clock: Callable[[], datetime] = utcnow,
) -> str:
    """Send one claimed row. Returns the outcome label."""
    async with session_factory() as db:
        item = await db.get(OutboundMessage, item_id)
        if item is None or item.status != PROCESSING:
            return SKIPPED

        now = as_utc(clock())
        account = await db.get(Account, item.account_id)
        if account is None or not account.is_sending_enabled:
            send_queue.reschedule_disabled(item, now, settings)
            await db.commit()
            return DEFERRED

        lead = await db.get(Lead, item.lead_id)
        if lead is None or not lead.phone:
            send_queue.record_failure(item, "no_address", "Lead has no phone number", False, now, settings)
            await db.commit()
            return DEAD_LETTERED

        if lead.consent_state == consent.REVOKED or await consent.is_blocked(db, lead.account_id, lead.phone):
            send_queue.mark_suppressed(item, "opted_out", "Recipient opted out before send", now)
            if item.followup_cursor_id is not None:
                await followups.stop_cursor(db, lead.id, "opted_out", now)
            await db.commit()
            return SUPPRESSED

        cursor = None
        if item.followup_cursor_id is not None:
            cursor = await db.get(FollowupCursor, item.followup_cursor_id)
            if not followups.awaits_attempt(cursor, item.followup_attempt or 0):
                send_queue.mark_suppressed(
                    item, "cursor_inactive", "Follow-up cursor no longer waiting on this attempt", now,
                    release_dedup_key=True,
                )
                await db.commit()
                return SUPPRESSED

        error: Optional[ProviderError] = None
        try:
            result = await asyncio.wait_for(
                provider.send(lead.phone, item.body),
                timeout=settings.provider_timeout_seconds,
            )
        except asyncio.TimeoutError:
            error = ProviderTimeout()
        except ProviderError as e:
            error = e
        except Exception as e:
            logger.exception("Unexpected provider failure for message %s", str(item.id)[:8])
            error = ProviderError(str(e), retryable=True)

        # The send may have taken a while
        now = as_utc(clock())

        if error is None:
            send_queue.mark_sent(item, result.provider_ref, result.provider, lead.phone, now)
            lead.last_outbound_at = now
            if item.category == "intro" and lead.intro_sent_at is None:
                lead.intro_sent_at = now
            if cursor is not None:
                policy = AccountPolicy.from_account(account, settings)
                await followups.advance_cursor(db, cursor.id, item.followup_attempt - 1, policy, now)
            await db.commit()
            logger.info(
                "Message %s sent to %s (%s)",
                str(item.id)[:8], mask_phone(lead.phone), result.provider_ref,
                extra={"queue_item_id": str(item.id), "provider": result.provider},
            )
            return SENT

        status = send_queue.record_failure(
            item, error.error_code, str(error), error.retryable, now, settings,
        )
        if error.is_opt_out:
            await consent.record_event(
                db, lead.account_id, lead.phone, consent.REVOKED, "carrier", now=now,
            )
        elif status == DEAD_LETTER and cursor is not None:
            await followups.stop_cursor(db, lead.id, "delivery_failed", now)
        await db.commit()
        return DEAD_LETTERED if status == DEAD_LETTER else RETRIED


async def run_worker_tick(
    session_factory: async_sessionmaker[AsyncSession],
    provider: SmsProvider,
    batch_size: Optional[int] = None,
    settings: Optional[Settings] = None,
    clock: Callable[[], datetime] = utcnow,
) -> WorkerTickResult:
    """One pass over the ready queue."""
    settings = settings or get_settings()
    batch_size = batch_size or settings.queue_batch_size
    now = as_utc(clock())
    tick = WorkerTickResult()

    async with session_factory() as db:
        await send_queue.release_stale_claims(db, now, settings.queue_stale_claim_minutes)
        ready = await send_queue.select_ready_ids(db, now, batch_size)
        await db.commit()
    tick.picked = len(ready)

    claimed = []
    for item_id in ready:
        async with session_factory() as db:
            won = await send_queue.claim_item(db, item_id, now)
            await db.commit()
        if won:
            claimed.append(item_id)
        else:
            logger.debug("Claim lost for message %s", str(item_id)[:8])
    tick.claimed = len(claimed)

    if settings.queue_concurrency > 1:
        semaphore = asyncio.Semaphore(settings.queue_concurrency)

        async def _bounded(item_id: uuid.UUID) -> str:
            async with semaphore:
                return await _safe_process(session_factory, item_id, provider, settings, clock)

        outcomes = await asyncio.gather(*(_bounded(item_id) for item_id in claimed))
    else:
        outcomes = []
        for item_id in claimed:
            outcomes.append(await _safe_process(session_factory, item_id, provider, settings, clock))

    for outcome in outcomes:
        if outcome == SENT:
            tick.sent += 1
        elif outcome == RETRIED:
            tick.retried += 1
        elif outcome == DEAD_LETTERED:
            tick.dead_lettered += 1
        elif outcome == DEFERRED:
            tick.deferred += 1
        elif outcome == SUPPRESSED:
            tick.suppressed += 1

    if tick.picked:
        logger.info(
            "Send worker tick: picked=%d claimed=%d sent=%d retried=%d dead=%d deferred=%d suppressed=%d",
            tick.picked, tick.claimed, tick.sent, tick.retried, tick.dead_lettered, tick.deferred,
            tick.suppressed,
        )
    return tick


async def _safe_process(session_factory, item_id, provider, settings, clock) -> str:
    """A failure on one item must not abort the rest of the batch."""
    try:
        return await process_item(session_factory, item_id, provider, settings, clock)
    except Exception as e:
        logger.error("Send worker failed on message %s: %s", str(item_id)[:8], str(e))
        return SKIPPED


async def run_send_worker(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    provider: Optional[SmsProvider] = None,
):
    """Main loop - drain the queue every poll interval."""
    from revive.database import get_session_factory
    from revive.services.sms import TwilioProvider

    settings = get_settings()
    session_factory = session_factory or get_session_factory()
    provider = provider or TwilioProvider(settings)
    logger.info("Send worker started (poll every %ds)", settings.worker_poll_interval_seconds)

    while True:
        set_correlation_id(generate_correlation_id())
        try:
            await run_worker_tick(session_factory, provider, settings=settings)
        except Exception as e:
            logger.error("Send worker cycle error: %s", str(e))

        await write_heartbeat("send_worker")
        await asyncio.sleep(settings.worker_poll_interval_seconds)
