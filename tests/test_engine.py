"""
End-to-end tests through the Engine facade: one store, one provider, one clock.
"""
import uuid
from datetime import timedelta

import pytest

from revive.engine import Engine, LeadNotFound
from revive.models.followup import FollowupCursor
from revive.models.outbound import DEAD_LETTER, DELIVERED, SENT, OutboundMessage
from revive.schemas.webhook_payloads import InboundMessage
from revive.services.consent import KeywordAction


@pytest.fixture
def engine(session_factory, provider, clock, settings):
    return Engine(session_factory, provider, clock=clock, settings=settings)


async def _load(session_factory, model, pk):
    async with session_factory() as session:
        return await session.get(model, pk)


class TestEngineGate:
    async def test_evaluate_records_decision(self, engine, make_account, make_lead):
        account = await make_account()
        lead = await make_lead(account)

        result = await engine.evaluate(lead.id)
        assert result.allowed is True

        from revive.services.compliance import last_evaluation
        async with engine.session_factory() as session:
            evaluation = await last_evaluation(session, lead.id)
        assert evaluation.context == "manual"
        assert evaluation.decision == "ALLOW"

    async def test_evaluate_unknown_lead(self, engine):
        with pytest.raises(LeadNotFound):
            await engine.evaluate(uuid.uuid4())


class TestEngineSendFlow:
    async def test_enqueue_send_deliver(self, engine, session_factory, make_account, make_lead, provider):
        account = await make_account()
        lead = await make_lead(account)

        item_id = await engine.enqueue(account.id, lead.id, "Your estimate is ready.")
        tick = await engine.run_worker()
        assert tick.sent == 1

        item = await _load(session_factory, OutboundMessage, item_id)
        assert item.status == SENT

        assert await engine.handle_status(item.provider_ref, "delivered") is True
        item = await _load(session_factory, OutboundMessage, item_id)
        assert item.status == DELIVERED

    async def test_enqueue_dedup(self, engine, make_account, make_lead):
        account = await make_account()
        lead = await make_lead(account)

        first = await engine.enqueue(account.id, lead.id, "One", dedup_key="manual:1")
        second = await engine.enqueue(account.id, lead.id, "Two", dedup_key="manual:1")
        assert first == second

    async def test_stop_between_enqueue_and_send(self, engine, session_factory, make_account, make_lead, provider):
        account = await make_account()
        lead = await make_lead(account)
        item_id = await engine.enqueue(account.id, lead.id, "See you Thursday")

        inbound = await engine.handle_inbound(
            InboundMessage(account_id=account.id, from_phone=lead.phone, body="Stop")
        )
        assert inbound.action == KeywordAction.REVOKE
        assert await engine.is_blocked(account.id, lead.phone) is True

        await engine.run_worker()
        assert provider.sent == []
        item = await _load(session_factory, OutboundMessage, item_id)
        assert item.status == DEAD_LETTER

        result = await engine.evaluate(lead.id)
        assert result.rule == "opted_out"

    async def test_record_consent(self, engine, make_account, make_lead):
        account = await make_account()
        lead = await make_lead(account)

        await engine.record_consent(account.id, lead.phone, "revoked", source="import")
        assert await engine.is_blocked(account.id, lead.phone) is True

        await engine.record_consent(account.id, lead.phone, "granted", source="import")
        assert await engine.is_blocked(account.id, lead.phone) is False


class TestEngineAutopilot:
    async def test_tick_enqueues_and_worker_sends(self, engine, make_account, make_lead, provider):
        account = await make_account()
        lead = await make_lead(account)

        result = await engine.tick(account.id)
        assert result.enqueued == 1

        await engine.run_worker()
        assert len(provider.sent) == 1
        assert provider.sent[0][0] == lead.phone
        assert provider.sent[0][1].endswith("Txt STOP to opt out")

    async def test_tick_unknown_account(self, engine):
        result = await engine.tick(uuid.uuid4())
        assert result.ran is False
        assert result.reason == "account_not_found"


class TestEngineIntro:
    async def test_intro_queued_and_sent(self, engine, session_factory, make_account, make_lead, clock, provider):
        from revive.models.lead import Lead

        account = await make_account()
        lead = await make_lead(account, created_at=clock() - timedelta(hours=3))

        result = await engine.queue_intro(lead.id)
        assert result.queued is True

        tick = await engine.run_worker()
        assert tick.sent == 1
        assert provider.sent[0][1].startswith("Hi Jamie, it's Acme.")

        stored = await _load(session_factory, Lead, lead.id)
        assert stored.intro_sent_at is not None
        assert (await engine.queue_intro(lead.id)).reason == "intro_sent"

    async def test_intro_unknown_lead(self, engine):
        with pytest.raises(LeadNotFound):
            await engine.queue_intro(uuid.uuid4())


class TestEngineFollowups:
    async def test_died_conversation_full_cycle(self, engine, session_factory, make_account, make_lead, clock, provider):
        """Enroll, wait out the first cadence step, queue, send, advance."""
        account = await make_account()
        lead = await make_lead(account, last_outbound_at=clock() - timedelta(hours=49))

        enrolled = await engine.enroll_followups()
        assert enrolled == {"enrolled": 1, "accounts": 1}

        clock.advance(hours=24)
        tick = await engine.run_followups()
        assert tick.enqueued == 1

        worker = await engine.run_worker()
        assert worker.sent == 1

        async with session_factory() as session:
            from revive.services.followups import get_live_cursor
            cursor = await get_live_cursor(session, lead.id)
        assert cursor.attempt == 1
        assert cursor.last_sent_at is not None

        # same attempt is not queued twice
        tick = await engine.run_followups()
        assert tick.enqueued == 0

    async def test_reply_stops_followups(self, engine, make_account, make_lead, clock):
        account = await make_account()
        lead = await make_lead(account, last_outbound_at=clock() - timedelta(hours=49))
        await engine.enroll_followups()

        await engine.handle_inbound(
            InboundMessage(account_id=account.id, from_phone=lead.phone, body="Sorry, been busy. Friday?")
        )

        clock.advance(hours=24)
        tick = await engine.run_followups()
        assert tick.due == 0

    async def test_enrollment_is_idempotent(self, engine, session_factory, make_account, make_lead, clock):
        account = await make_account()
        lead = await make_lead(account, last_outbound_at=clock() - timedelta(hours=49))

        await engine.enroll_followups()
        second = await engine.enroll_followups()
        assert second["enrolled"] == 0

        from sqlalchemy import func, select
        async with session_factory() as session:
            result = await session.execute(
                select(func.count()).select_from(FollowupCursor).where(FollowupCursor.lead_id == lead.id)
            )
            assert result.scalar_one() == 1
