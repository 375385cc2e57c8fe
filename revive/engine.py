"""
Engine - single entry point wiring the consent ledger, compliance gate,
follow-up cursors, send queue and autopilot to one store, one provider and
one clock. Every method opens its own session and is safe to call repeatedly.
"""
import logging
import uuid
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from revive.config import Settings, get_settings
from revive.models.account import Account
from revive.models.lead import Lead
from revive.schemas.account_policy import AccountPolicy
from revive.schemas.webhook_payloads import InboundMessage
from revive.services import compliance, consent, send_queue
from revive.services.autopilot import AutopilotResult
from revive.services.compliance import ComplianceResult
from revive.services.consent import InboundResult
from revive.services.followups import FollowupDrafter, FollowupTickResult
from revive.services.intro import IntroResult, queue_intro
from revive.services.sms import SmsProvider
from revive.utils.timezone import as_utc, utcnow
from revive.workers import autopilot as autopilot_worker
from revive.workers import followup_scheduler
from revive.workers.send_worker import WorkerTickResult, run_worker_tick

logger = logging.getLogger(__name__)


class LeadNotFound(LookupError):
    pass


class Engine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        provider: SmsProvider,
        clock: Callable[[], datetime] = utcnow,
        settings: Optional[Settings] = None,
        drafter: Optional[FollowupDrafter] = None,
    ):
        self.session_factory = session_factory
        self.provider = provider
        self.clock = clock
        self.settings = settings or get_settings()
        self.drafter = drafter

    def now(self) -> datetime:
        return as_utc(self.clock())

    async def evaluate(
        self, lead_id: uuid.UUID, context: str = "manual", record: bool = True,
    ) -> ComplianceResult:
        """Gate decision for a lead right now, recorded for the operator view by default."""
        async with self.session_factory() as db:
            lead = await db.get(Lead, lead_id)
            if lead is None:
                raise LeadNotFound(str(lead_id))
            account = await db.get(Account, lead.account_id)
            policy = AccountPolicy.from_account(account, self.settings)
            now = self.now()
            result = await compliance.evaluate(db, lead, policy, now)
            if record:
                await compliance.record_evaluation(db, lead, result, context, now)
                await db.commit()
            return result

    async def enqueue(
        self,
        account_id: uuid.UUID,
        lead_id: uuid.UUID,
        body: str,
        category: str = "manual",
        dedup_key: Optional[str] = None,
        **kwargs,
    ) -> uuid.UUID:
        async with self.session_factory() as db:
            item_id = await send_queue.enqueue(
                db, account_id, lead_id, body, category,
                dedup_key=dedup_key, now=self.now(), settings=self.settings, **kwargs,
            )
            await db.commit()
            return item_id

    async def queue_intro(self, lead_id: uuid.UUID, body: Optional[str] = None) -> IntroResult:
        async with self.session_factory() as db:
            lead = await db.get(Lead, lead_id)
            if lead is None:
                raise LeadNotFound(str(lead_id))
            account = await db.get(Account, lead.account_id)
            policy = AccountPolicy.from_account(account, self.settings)
            result = await queue_intro(db, lead, policy, self.now(), self.settings, body)
            await db.commit()
            return result

    async def run_worker(self, batch_size: Optional[int] = None) -> WorkerTickResult:
        return await run_worker_tick(
            self.session_factory, self.provider, batch_size, self.settings, self.clock,
        )

    async def tick(self, account_id: uuid.UUID) -> AutopilotResult:
        return await autopilot_worker.tick_account(
            self.session_factory, account_id, self.settings, self.clock,
        )

    async def enroll_followups(self) -> dict:
        return await followup_scheduler.enroll_all_accounts(
            self.session_factory, self.settings, self.clock,
        )

    async def run_followups(self) -> FollowupTickResult:
        return await followup_scheduler.run_all_due_followups(
            self.session_factory, self.settings, self.clock, self.drafter,
        )

    async def handle_inbound(self, message: InboundMessage) -> InboundResult:
        async with self.session_factory() as db:
            result = await consent.handle_inbound(db, message, self.settings, self.now())
            await db.commit()
            return result

    async def handle_status(
        self, provider_ref: str, status: str, error_code: Optional[str] = None,
    ) -> bool:
        async with self.session_factory() as db:
            updated = await send_queue.apply_delivery_status(
                db, provider_ref, status, error_code, self.now(),
            )
            await db.commit()
            return updated

    async def record_consent(
        self, account_id: uuid.UUID, phone: str, event_type: str, source: str = "manual",
    ) -> None:
        async with self.session_factory() as db:
            await consent.record_event(db, account_id, phone, event_type, source, now=self.now())
            await db.commit()

    async def is_blocked(self, account_id: uuid.UUID, phone: str) -> bool:
        async with self.session_factory() as db:
            return await consent.is_blocked(db, account_id, phone)
