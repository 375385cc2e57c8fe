"""
Autopilot tests - preflight reasons, step progression, daily budget and
enqueue-then-advance replay safety.
"""
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from revive.models.lead import Lead
from revive.models.outbound import OutboundMessage
from revive.schemas.account_policy import AccountPolicy
from revive.services import autopilot, send_queue
from revive.services.autopilot import preflight

UTC = timezone.utc


async def _autopilot_messages(db, lead_id) -> list[OutboundMessage]:
    result = await db.execute(
        select(OutboundMessage)
        .where(OutboundMessage.lead_id == lead_id, OutboundMessage.category == "autopilot")
        .order_by(OutboundMessage.created_at)
    )
    return list(result.scalars().all())


# === PREFLIGHT ===

class TestPreflight:
    async def test_ready(self, make_account, clock, settings):
        account = await make_account()
        assert preflight(AccountPolicy.from_account(account, settings), clock()) is None

    async def test_kill_switch_wins(self, make_account, clock, settings):
        account = await make_account(kill_switch=True, autopilot_enabled=False)
        assert preflight(AccountPolicy.from_account(account, settings), clock()) == "kill_switch"

    async def test_disabled(self, make_account, clock, settings):
        account = await make_account(autopilot_enabled=False)
        assert preflight(AccountPolicy.from_account(account, settings), clock()) == "autopilot_disabled"

    async def test_not_attested(self, make_account, clock, settings):
        account = await make_account(consent_attested=False)
        assert preflight(AccountPolicy.from_account(account, settings), clock()) == "consent_not_attested"

    async def test_outbound_paused(self, make_account, clock, settings):
        account = await make_account(outbound_paused=True)
        assert preflight(AccountPolicy.from_account(account, settings), clock()) == "outbound_paused"

    async def test_outside_window(self, make_account, settings):
        account = await make_account()
        night = datetime(2026, 3, 11, 4, 0, tzinfo=UTC)  # 00:00 EDT
        assert preflight(AccountPolicy.from_account(account, settings), night) == "outside_quiet_hours"


# === TICKS ===

class TestRunTick:
    async def test_kill_switch_is_noop(self, db, make_account, make_lead, clock, settings):
        account = await make_account(kill_switch=True)
        lead = await make_lead(account)

        result = await autopilot.run_tick(db, account, clock(), settings)

        assert result.ran is False
        assert result.reason == "kill_switch"
        assert await _autopilot_messages(db, lead.id) == []

    async def test_opener_enqueued_and_step_advanced(self, db, make_account, make_lead, clock, settings):
        account = await make_account()
        lead = await make_lead(account)

        result = await autopilot.run_tick(db, account, clock(), settings)
        await db.commit()

        assert result.ran is True
        assert result.enqueued == 1
        messages = await _autopilot_messages(db, lead.id)
        assert len(messages) == 1
        assert messages[0].dedup_key == f"autopilot:{lead.id}:0"
        assert messages[0].body.startswith("Hi Jamie, Acme here re your earlier inquiry.")
        assert messages[0].body.endswith("Txt STOP to opt out")
        assert messages[0].has_footer is True

        await db.refresh(lead)
        assert lead.step == 1

    async def test_next_step_waits_for_delay(self, db, make_account, make_lead, clock, settings):
        account = await make_account()
        lead = await make_lead(account)
        await autopilot.run_tick(db, account, clock(), settings)
        await db.commit()

        clock.advance(hours=2)
        result = await autopilot.run_tick(db, account, clock(), settings)
        assert result.reason == "no_eligible_leads"

        clock.advance(hours=22)
        result = await autopilot.run_tick(db, account, clock(), settings)
        await db.commit()
        assert result.enqueued == 1

        messages = await _autopilot_messages(db, lead.id)
        assert messages[-1].dedup_key == f"autopilot:{lead.id}:1"
        assert "still want to book" in messages[-1].body

    async def test_replay_after_crash_does_not_duplicate(self, db, make_account, make_lead, clock, settings):
        """Enqueued but never advanced: the next tick hits the dedup key and just advances."""
        account = await make_account()
        lead = await make_lead(account)
        await send_queue.enqueue_item(
            db, account.id, lead.id, "Opener", category="autopilot",
            dedup_key=f"autopilot:{lead.id}:0", now=clock(), settings=settings,
        )
        await db.commit()

        result = await autopilot.run_tick(db, account, clock(), settings)
        await db.commit()

        assert result.enqueued == 0
        assert result.skipped == 1
        assert len(await _autopilot_messages(db, lead.id)) == 1
        await db.refresh(lead)
        assert lead.step == 1

    async def test_blocked_leads_counted_by_rule(self, db, make_account, make_lead, clock, settings):
        account = await make_account(min_gap_minutes=60)
        lead = await make_lead(account, last_outbound_at=clock() - timedelta(minutes=10))

        result = await autopilot.run_tick(db, account, clock(), settings)
        await db.commit()

        assert result.ran is True
        assert result.enqueued == 0
        assert result.blocked == {"min_gap": 1}
        await db.refresh(lead)
        assert lead.step == 0

    async def test_revoked_lead_not_a_candidate(self, db, make_account, make_lead, clock, settings):
        account = await make_account()
        await make_lead(account, consent_state="revoked")

        result = await autopilot.run_tick(db, account, clock(), settings)
        assert result.reason == "no_eligible_leads"

    async def test_replied_lead_not_nudged(self, db, make_account, make_lead, clock, settings):
        account = await make_account()
        lead = await make_lead(account)
        await autopilot.run_tick(db, account, clock(), settings)
        lead.last_inbound_at = clock() + timedelta(hours=1)
        await db.commit()

        clock.advance(hours=25)
        result = await autopilot.run_tick(db, account, clock(), settings)
        assert result.reason == "no_eligible_leads"

    async def test_daily_budget(self, db, make_account, make_lead, clock, settings):
        account = await make_account(autopilot_daily_cap=1)
        await make_lead(account)
        await make_lead(account)

        first = await autopilot.run_tick(db, account, clock(), settings)
        await db.commit()
        assert first.enqueued == 1
        assert first.remaining == 0

        second = await autopilot.run_tick(db, account, clock(), settings)
        assert second.ran is False
        assert second.reason == "daily_cap_reached"

    async def test_template_override(self, db, make_account, make_lead, clock, settings):
        account = await make_account(template_opener="Hey {{name}}, {{brand}} again. Still need that roof looked at?")
        lead = await make_lead(account)

        await autopilot.run_tick(db, account, clock(), settings)
        await db.commit()

        messages = await _autopilot_messages(db, lead.id)
        assert messages[0].body.startswith("Hey Jamie, Acme again.")

    async def test_empty_override_disables_step(self, db, make_account, make_lead, clock, settings):
        account = await make_account(template_opener="")
        lead = await make_lead(account)

        result = await autopilot.run_tick(db, account, clock(), settings)

        assert result.skipped == 1
        assert result.enqueued == 0
        assert await _autopilot_messages(db, lead.id) == []

    async def test_finished_leads_ignored(self, db, make_account, make_lead, clock, settings):
        account = await make_account()
        await make_lead(account, step=3, last_step_at=clock() - timedelta(days=10))

        result = await autopilot.run_tick(db, account, clock(), settings)
        assert result.reason == "no_eligible_leads"

    async def test_records_gate_decision(self, db, make_account, make_lead, clock, settings):
        from revive.services.compliance import last_evaluation

        account = await make_account()
        lead = await make_lead(account)
        await autopilot.run_tick(db, account, clock(), settings)
        await db.commit()

        evaluation = await last_evaluation(db, lead.id)
        assert evaluation.context == "autopilot"
        assert evaluation.decision == "ALLOW"

    async def test_sent_today_counts_only_autopilot(self, db, make_account, make_lead, clock, settings):
        account = await make_account()
        lead = await make_lead(account)
        await send_queue.enqueue_item(db, account.id, lead.id, "manual", category="manual", now=clock(), settings=settings)
        await send_queue.enqueue_item(db, account.id, lead.id, "auto", category="autopilot", now=clock(), settings=settings)
        await db.commit()

        assert await autopilot.sent_today(db, account.id, clock()) == 1
        assert await autopilot.sent_today(db, account.id, clock() + timedelta(hours=25)) == 0
