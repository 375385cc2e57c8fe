"""
Outbound message model (messages_out): one row per composed message.
The row is both the durable send-queue entry and the outbound history the
compliance gate reads.

Lifecycle (transitioned only by the send worker or a delivery webhook):
    queued → processing → sent → delivered
                        ↘ queued (retry with backoff)
                        ↘ dead_letter (terminal, manual requeue only)
    processing → failed (suppressed at send time: recipient opted out or
                         the follow-up cursor is no longer waiting on it)
    sent → failed (carrier reported undelivered)
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from revive.database import Base

QUEUED = "queued"
PROCESSING = "processing"
SENT = "sent"
DELIVERED = "delivered"
FAILED = "failed"
DEAD_LETTER = "dead_letter"

STATUSES = (QUEUED, PROCESSING, SENT, DELIVERED, FAILED, DEAD_LETTER)


class OutboundMessage(Base):
    __tablename__ = "messages_out"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False
    )

    body: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(
        String(30), nullable=False, default="manual"
    )  # autopilot, followup, intro, reminder, manual
    dedup_key: Mapped[Optional[str]] = mapped_column(String(200), unique=True)

    # Who composed it: ai, operator, system. operator_id="auto" also counts as automated.
    sent_by: Mapped[str] = mapped_column(String(20), default="ai")
    operator_id: Mapped[Optional[str]] = mapped_column(String(64))
    has_footer: Mapped[bool] = mapped_column(Boolean, default=False)

    # Cursor and attempt number this send fulfils (None = not a cursor send)
    followup_cursor_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("followup_cursors.id")
    )
    followup_attempt: Mapped[Optional[int]] = mapped_column(Integer)

    # Queue state
    status: Mapped[str] = mapped_column(String(20), default=QUEUED, nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    run_after: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    error_code: Mapped[Optional[str]] = mapped_column(String(20))

    # Provider result
    to_phone: Mapped[Optional[str]] = mapped_column(String(20))
    provider: Mapped[Optional[str]] = mapped_column(String(20))
    provider_ref: Mapped[Optional[str]] = mapped_column(String(64), unique=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    __table_args__ = (
        Index("ix_messages_out_ready", "status", "run_after"),
        Index("ix_messages_out_lead_sent", "lead_id", "sent_at"),
        Index("ix_messages_out_phone_sent", "to_phone", "sent_at"),
        Index("ix_messages_out_account_status", "account_id", "status"),
        Index("ix_messages_out_followup_cursor", "followup_cursor_id"),
    )

    @property
    def is_automated(self) -> bool:
        return self.sent_by == "ai" or self.operator_id == "auto"

    def __repr__(self) -> str:
        return f"<OutboundMessage {self.category} status={self.status} attempt={self.attempt}>"
