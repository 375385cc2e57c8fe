"""Initial schema: accounts, leads, consent ledger, outbound queue, follow-up cursors, gate log.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Accounts (tenants) and their sending policy
    op.create_table(
        "accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("brand", sa.String(255)),
        sa.Column("booking_link", sa.Text),
        sa.Column("timezone", sa.String(64), server_default="America/New_York"),
        sa.Column("quiet_start", sa.String(5), server_default="09:00"),
        sa.Column("quiet_end", sa.String(5), server_default="19:00"),
        sa.Column("daily_cap", sa.Integer, server_default="1"),
        sa.Column("weekly_cap", sa.Integer, server_default="3"),
        sa.Column("min_gap_minutes", sa.Integer, server_default="60"),
        sa.Column("footer_text", sa.String(160)),
        sa.Column("footer_refresh_days", sa.Integer, server_default="30"),
        sa.Column("intro_window_days", sa.Integer, server_default="7"),
        sa.Column("autotexter_enabled", sa.Boolean, server_default=sa.true()),
        sa.Column("outbound_paused", sa.Boolean, server_default=sa.false()),
        sa.Column("kill_switch", sa.Boolean, server_default=sa.false()),
        sa.Column("autopilot_enabled", sa.Boolean, server_default=sa.false()),
        sa.Column("consent_attested", sa.Boolean, server_default=sa.false()),
        sa.Column("autopilot_daily_cap", sa.Integer, server_default="50"),
        sa.Column("template_opener", sa.Text),
        sa.Column("template_nudge", sa.Text),
        sa.Column("template_reslot", sa.Text),
        sa.Column("conversation_died_hours", sa.Integer),
        sa.Column("followup_max_attempts", sa.Integer),
        sa.Column("followup_cadence_hours", postgresql.JSONB),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    # Leads
    op.create_table(
        "leads",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("phone", sa.String(20), nullable=False),
        sa.Column("email", sa.String(255)),
        sa.Column("name", sa.String(200)),
        sa.Column("consent_state", sa.String(20), nullable=False, server_default="granted"),
        sa.Column("last_outbound_at", sa.DateTime(timezone=True)),
        sa.Column("last_inbound_at", sa.DateTime(timezone=True)),
        sa.Column("followup_cursor_id", postgresql.UUID(as_uuid=True)),
        sa.Column("step", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_step_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_leads_account_id", "leads", ["account_id"])
    op.create_index("ix_leads_account_phone", "leads", ["account_id", "phone"])
    op.create_index("ix_leads_autopilot", "leads", ["account_id", "consent_state", "step"])

    # Consent ledger (append-only)
    op.create_table(
        "consent_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("phone", sa.String(20), nullable=False),
        sa.Column("event_type", sa.String(20), nullable=False),
        sa.Column("source", sa.String(50), nullable=False),
        sa.Column("keyword", sa.String(30)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index(
        "ix_consent_events_account_phone", "consent_events", ["account_id", "phone", "created_at"],
    )

    # Outbound messages: queue rows and send history
    op.create_table(
        "messages_out",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("category", sa.String(30), nullable=False, server_default="manual"),
        sa.Column("dedup_key", sa.String(200), unique=True),
        sa.Column("sent_by", sa.String(20), server_default="ai"),
        sa.Column("operator_id", sa.String(64)),
        sa.Column("has_footer", sa.Boolean, server_default=sa.false()),
        sa.Column("followup_attempt", sa.Integer),
        sa.Column("status", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("attempt", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="5"),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_error", sa.Text),
        sa.Column("error_code", sa.String(20)),
        sa.Column("to_phone", sa.String(20)),
        sa.Column("provider", sa.String(20)),
        sa.Column("provider_ref", sa.String(64), unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("sent_at", sa.DateTime(timezone=True)),
        sa.Column("delivered_at", sa.DateTime(timezone=True)),
        sa.Column("failed_at", sa.DateTime(timezone=True)),
    )
    op.create_index("ix_messages_out_ready", "messages_out", ["status", "run_after"])
    op.create_index("ix_messages_out_lead_sent", "messages_out", ["lead_id", "sent_at"])
    op.create_index("ix_messages_out_phone_sent", "messages_out", ["to_phone", "sent_at"])
    op.create_index("ix_messages_out_account_status", "messages_out", ["account_id", "status"])

    # Follow-up cursors
    op.create_table(
        "followup_cursors",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("accounts.id"), nullable=False),
        sa.Column("status", sa.String(20), nullable=False, server_default="active"),
        sa.Column("attempt", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False),
        sa.Column("cadence_hours", postgresql.JSONB, nullable=False),
        sa.Column("next_at", sa.DateTime(timezone=True)),
        sa.Column("last_sent_at", sa.DateTime(timezone=True)),
        sa.Column("stop_reason", sa.String(50)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_followup_cursors_due", "followup_cursors", ["status", "next_at"])
    op.create_index("ix_followup_cursors_account", "followup_cursors", ["account_id"])
    op.create_index(
        "uq_followup_cursors_live_lead",
        "followup_cursors",
        ["lead_id"],
        unique=True,
        postgresql_where=sa.text("status IN ('active', 'paused')"),
    )

    # Gate evaluations (operator view)
    op.create_table(
        "gate_evaluations",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("lead_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("leads.id"), nullable=False),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("decision", sa.String(10), nullable=False),
        sa.Column("reason_code", sa.String(30)),
        sa.Column("reason", postgresql.JSONB),
        sa.Column("needs_footer", sa.Boolean, server_default=sa.false()),
        sa.Column("context", sa.String(20), server_default="manual"),
        sa.Column("evaluated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_gate_evaluations_lead", "gate_evaluations", ["lead_id", "evaluated_at"])


def downgrade() -> None:
    op.drop_table("gate_evaluations")
    op.drop_index("uq_followup_cursors_live_lead", table_name="followup_cursors")
    op.drop_table("followup_cursors")
    op.drop_table("messages_out")
    op.drop_table("consent_events")
    op.drop_table("leads")
    op.drop_table("accounts")
