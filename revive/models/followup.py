"""
Follow-up cursor model: a lead's enrollment in a re-engagement cadence.

States: active, paused, completed, stopped.
At most one live (active or paused) cursor per lead, enforced by a partial
unique index so duplicate enrollment triggers collapse into a no-op.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, DateTime, ForeignKey, Index, text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from revive.database import Base

ACTIVE = "active"
PAUSED = "paused"
COMPLETED = "completed"
STOPPED = "stopped"

LIVE_STATUSES = (ACTIVE, PAUSED)


class FollowupCursor(Base):
    __tablename__ = "followup_cursors"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False
    )

    status: Mapped[str] = mapped_column(String(20), default=ACTIVE, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False)
    cadence_hours: Mapped[list] = mapped_column(JSONB, nullable=False)
    next_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    last_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    stop_reason: Mapped[Optional[str]] = mapped_column(
        String(50)
    )  # opted_out, replied, manual

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_followup_cursors_due", "status", "next_at"),
        Index("ix_followup_cursors_account", "account_id"),
        Index(
            "uq_followup_cursors_live_lead",
            "lead_id",
            unique=True,
            postgresql_where=text("status IN ('active', 'paused')"),
            sqlite_where=text("status IN ('active', 'paused')"),
        ),
    )

    def __repr__(self) -> str:
        return f"<FollowupCursor {self.status} {self.attempt}/{self.max_attempts}>"
