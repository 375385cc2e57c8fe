"""
Lead model - a contact owned by an account.
The engine never deletes leads; it only updates soft fields
(consent_state, outbound/inbound timestamps, autopilot step, cursor ref).
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from revive.database import Base


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False
    )

    # Contact info
    phone: Mapped[str] = mapped_column(String(20), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255))
    name: Mapped[Optional[str]] = mapped_column(String(200))

    # Cached view of the consent ledger for this phone: granted, revoked, unknown
    consent_state: Mapped[str] = mapped_column(String(20), default="granted", nullable=False)

    last_outbound_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    last_inbound_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Follow-up enrollment
    followup_cursor_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    # Autopilot step (0=opener, 1=nudge, 2=reslot, 3+=done)
    step: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_step_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # First-touch intro delivered (see services/intro.py)
    intro_sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_leads_account_id", "account_id"),
        Index("ix_leads_account_phone", "account_id", "phone"),
        Index("ix_leads_autopilot", "account_id", "consent_state", "step"),
    )

    @property
    def first_name(self) -> str:
        return (self.name or "").strip().split(" ")[0]

    def __repr__(self) -> str:
        masked = self.phone[:6] + "***" if self.phone else "unknown"
        return f"<Lead {masked} consent={self.consent_state} step={self.step}>"
