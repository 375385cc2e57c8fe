"""
Consent event log: append-only record of every opt-in, opt-out and HELP request.
The current consent state for a phone is derived from the most recent
granted/revoked event; HELP events never change state.

Records must be retained for audits, so rows are never updated or deleted.
Integer ids keep a total order for events recorded within the same instant.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Integer, DateTime, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from revive.database import Base


class ConsentEvent(Base):
    __tablename__ = "consent_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    phone: Mapped[str] = mapped_column(String(20), nullable=False)

    event_type: Mapped[str] = mapped_column(
        String(20), nullable=False
    )  # granted, revoked, help
    source: Mapped[str] = mapped_column(
        String(50), nullable=False
    )  # sms_keyword, carrier, manual, api, import
    keyword: Mapped[Optional[str]] = mapped_column(String(30))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_consent_events_account_phone", "account_id", "phone", "created_at"),
    )

    def __repr__(self) -> str:
        masked = self.phone[:6] + "***" if self.phone else "unknown"
        return f"<ConsentEvent {masked} {self.event_type} via {self.source}>"
