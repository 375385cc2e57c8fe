"""
Consent ledger tests - keyword parsing, append-only events, inbound handling.
A missed STOP is the single most expensive bug this system can have.
"""
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from revive.config import Settings
from revive.models.consent import ConsentEvent
from revive.models.followup import ACTIVE, PAUSED, STOPPED
from revive.schemas.account_policy import AccountPolicy
from revive.schemas.webhook_payloads import InboundMessage
from revive.services import consent, followups
from revive.services.consent import KeywordAction, classify_keyword, normalize_keyword_text


async def _event_count(db, account_id, phone) -> int:
    result = await db.execute(
        select(func.count()).select_from(ConsentEvent).where(
            ConsentEvent.account_id == account_id,
            ConsentEvent.phone == phone,
        )
    )
    return result.scalar_one()


# === KEYWORD CLASSIFICATION ===

class TestClassifyKeyword:
    def test_stop(self, settings):
        assert classify_keyword("STOP", settings) == KeywordAction.REVOKE

    def test_stop_lowercase_with_punctuation(self, settings):
        assert classify_keyword("  stop. ", settings) == KeywordAction.REVOKE

    def test_stop_repeated_letters(self, settings):
        assert classify_keyword("STOPPPP", settings) == KeywordAction.REVOKE

    def test_unsubscribe(self, settings):
        assert classify_keyword("Unsubscribe", settings) == KeywordAction.REVOKE

    def test_opt_out_hyphen(self, settings):
        assert classify_keyword("opt-out", settings) == KeywordAction.REVOKE

    def test_stop_in_sentence_is_a_reply(self, settings):
        """'stop' inside a sentence is a regular message, not an opt-out."""
        assert classify_keyword("Please don't stop the service", settings) is None

    def test_start(self, settings):
        assert classify_keyword("start", settings) == KeywordAction.GRANT

    def test_unstop(self, settings):
        assert classify_keyword("UNSTOP", settings) == KeywordAction.GRANT

    def test_help(self, settings):
        assert classify_keyword("HELP", settings) == KeywordAction.HELP

    def test_info(self, settings):
        assert classify_keyword("info", settings) == KeywordAction.HELP

    def test_pause(self, settings):
        assert classify_keyword("Pause", settings) == KeywordAction.PAUSE

    def test_resume(self, settings):
        assert classify_keyword("resume", settings) == KeywordAction.RESUME

    def test_empty(self, settings):
        assert classify_keyword("", settings) is None
        assert classify_keyword(None, settings) is None

    def test_custom_vocabulary(self):
        custom = Settings(stop_keywords="BASTA,STOP")
        assert classify_keyword("basta", custom) == KeywordAction.REVOKE

    def test_normalize_strips_non_alphanumerics(self):
        assert normalize_keyword_text(" St-op! ") == "STOP"


# === LEDGER EVENTS ===

class TestRecordEvent:
    async def test_revoke_updates_lead_and_blocks(self, db, make_account, make_lead, clock):
        account = await make_account()
        lead = await make_lead(account)

        await consent.record_event(db, account.id, lead.phone, consent.REVOKED, "sms_keyword", "STOP", clock())
        await db.commit()
        await db.refresh(lead)

        assert lead.consent_state == consent.REVOKED
        assert await consent.is_blocked(db, account.id, lead.phone) is True
        assert await consent.current_state(db, account.id, lead.phone) == consent.REVOKED

    async def test_stop_twice_appends_two_rows_single_effect(self, db, make_account, make_lead, clock):
        """Re-recording the same state writes a second log row and changes nothing else."""
        account = await make_account()
        lead = await make_lead(account)

        await consent.record_event(db, account.id, lead.phone, consent.REVOKED, "sms_keyword", "STOP", clock())
        await consent.record_event(
            db, account.id, lead.phone, consent.REVOKED, "sms_keyword", "STOP", clock() + timedelta(minutes=1),
        )
        await db.commit()
        await db.refresh(lead)

        assert await _event_count(db, account.id, lead.phone) == 2
        assert lead.consent_state == consent.REVOKED
        assert await consent.is_blocked(db, account.id, lead.phone) is True

    async def test_help_changes_nothing(self, db, make_account, make_lead, clock):
        account = await make_account()
        lead = await make_lead(account)

        await consent.record_event(db, account.id, lead.phone, consent.HELP, "sms_keyword", "HELP", clock())
        await db.commit()
        await db.refresh(lead)

        assert lead.consent_state == consent.GRANTED
        assert await consent.current_state(db, account.id, lead.phone) is None
        assert await _event_count(db, account.id, lead.phone) == 1

    async def test_start_after_stop_regrants(self, db, make_account, make_lead, clock):
        account = await make_account()
        lead = await make_lead(account)

        await consent.record_event(db, account.id, lead.phone, consent.REVOKED, "sms_keyword", "STOP", clock())
        await consent.record_event(
            db, account.id, lead.phone, consent.GRANTED, "sms_keyword", "START", clock() + timedelta(hours=1),
        )
        await db.commit()
        await db.refresh(lead)

        assert lead.consent_state == consent.GRANTED
        assert await consent.is_blocked(db, account.id, lead.phone) is False

    async def test_phone_is_normalized(self, db, make_account, make_lead, clock):
        account = await make_account()
        lead = await make_lead(account, phone="+15125550199")

        await consent.record_event(db, account.id, "(512) 555-0199", consent.REVOKED, "manual", now=clock())
        await db.commit()

        assert await consent.is_blocked(db, account.id, "+15125550199") is True
        assert await consent.is_blocked(db, account.id, "512.555.0199") is True

    async def test_revoke_is_scoped_to_account(self, db, make_account, make_lead, clock):
        first = await make_account()
        second = await make_account(name="Other Co")
        lead = await make_lead(first)

        await consent.record_event(db, first.id, lead.phone, consent.REVOKED, "manual", now=clock())
        await db.commit()

        assert await consent.is_blocked(db, second.id, lead.phone) is False

    async def test_revoke_stops_live_cursor(self, db, make_account, make_lead, clock, settings):
        account = await make_account()
        lead = await make_lead(account)
        policy = AccountPolicy.from_account(account, settings)
        cursor, _ = await followups.enroll(db, lead, policy, clock())
        await db.commit()

        await consent.record_event(db, account.id, lead.phone, consent.REVOKED, "sms_keyword", "STOP", clock())
        await db.commit()
        await db.refresh(cursor)

        assert cursor.status == STOPPED
        assert cursor.stop_reason == "opted_out"

    async def test_unknown_event_type_rejected(self, db, make_account, clock):
        account = await make_account()
        with pytest.raises(ValueError):
            await consent.record_event(db, account.id, "+15125550100", "maybe", "manual", now=clock())


# === INBOUND HANDLING ===

class TestHandleInbound:
    async def test_stop_revokes_and_confirms(self, db, make_account, make_lead, clock, settings):
        account = await make_account()
        lead = await make_lead(account)

        result = await consent.handle_inbound(
            db, InboundMessage(account_id=account.id, from_phone=lead.phone, body="STOP"), settings, clock(),
        )
        await db.commit()

        assert result.action == KeywordAction.REVOKE
        assert result.reply == settings.stop_confirmation_text
        assert result.lead_ids == [lead.id]
        assert await consent.is_blocked(db, account.id, lead.phone) is True

    async def test_help_replies_without_state_change(self, db, make_account, make_lead, clock, settings):
        account = await make_account()
        lead = await make_lead(account)

        result = await consent.handle_inbound(
            db, InboundMessage(account_id=account.id, from_phone=lead.phone, body="help"), settings, clock(),
        )
        await db.commit()
        await db.refresh(lead)

        assert result.action == KeywordAction.HELP
        assert result.reply == settings.help_reply_text
        assert lead.consent_state == consent.GRANTED

    async def test_regular_reply_stops_cursor(self, db, make_account, make_lead, clock, settings):
        account = await make_account()
        lead = await make_lead(account)
        policy = AccountPolicy.from_account(account, settings)
        cursor, _ = await followups.enroll(db, lead, policy, clock())
        await db.commit()

        result = await consent.handle_inbound(
            db,
            InboundMessage(account_id=account.id, from_phone=lead.phone, body="Yes, Thursday works"),
            settings,
            clock(),
        )
        await db.commit()
        await db.refresh(cursor)
        await db.refresh(lead)

        assert result.action is None
        assert result.reply is None
        assert cursor.status == STOPPED
        assert cursor.stop_reason == "replied"
        assert lead.last_inbound_at is not None

    async def test_pause_is_opt_out_by_default(self, db, make_account, make_lead, clock, settings):
        account = await make_account()
        lead = await make_lead(account)

        result = await consent.handle_inbound(
            db, InboundMessage(account_id=account.id, from_phone=lead.phone, body="PAUSE"), settings, clock(),
        )
        await db.commit()

        assert result.action == KeywordAction.PAUSE
        assert await consent.is_blocked(db, account.id, lead.phone) is True

    async def test_soft_pause_and_resume(self, db, make_account, make_lead, clock):
        soft = Settings(pause_is_opt_out=False)
        account = await make_account()
        lead = await make_lead(account)
        cursor, _ = await followups.enroll(db, lead, AccountPolicy.from_account(account, soft), clock())
        await db.commit()

        paused = await consent.handle_inbound(
            db, InboundMessage(account_id=account.id, from_phone=lead.phone, body="pause"), soft, clock(),
        )
        await db.commit()
        await db.refresh(cursor)
        assert paused.reply == soft.pause_confirmation_text
        assert cursor.status == PAUSED
        assert await consent.is_blocked(db, account.id, lead.phone) is False

        await consent.handle_inbound(
            db, InboundMessage(account_id=account.id, from_phone=lead.phone, body="RESUME"), soft, clock(),
        )
        await db.commit()
        await db.refresh(cursor)
        assert cursor.status == ACTIVE

    async def test_unknown_phone_still_recorded(self, db, make_account, clock, settings):
        """A STOP from a number with no lead row still lands on the ledger."""
        account = await make_account()

        result = await consent.handle_inbound(
            db, InboundMessage(account_id=account.id, from_phone="+15125550999", body="STOP"), settings, clock(),
        )
        await db.commit()

        assert result.lead_ids == []
        assert await consent.is_blocked(db, account.id, "+15125550999") is True
