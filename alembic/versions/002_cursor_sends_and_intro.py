"""Link follow-up sends to their cursor; track first-touch intros on leads

Revision ID: 002
Revises: 001
Create Date: 2026-10-18
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column(
        "messages_out",
        sa.Column(
            "followup_cursor_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("followup_cursors.id"),
            nullable=True,
        ),
    )
    op.create_index("ix_messages_out_followup_cursor", "messages_out", ["followup_cursor_id"])

    op.add_column(
        "leads",
        sa.Column("intro_sent_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_column("leads", "intro_sent_at")
    op.drop_index("ix_messages_out_followup_cursor", table_name="messages_out")
    op.drop_column("messages_out", "followup_cursor_id")
