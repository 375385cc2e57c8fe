"""
Gate evaluation log: the structured answer to "why didn't lead X get a message".
Every ComplianceGate decision taken on behalf of a send is appended here with
its serialized BlockReason.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from revive.database import Base


class GateEvaluation(Base):
    __tablename__ = "gate_evaluations"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False
    )
    account_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    decision: Mapped[str] = mapped_column(String(10), nullable=False)  # ALLOW, BLOCK
    reason_code: Mapped[Optional[str]] = mapped_column(String(30))
    reason: Mapped[Optional[dict]] = mapped_column(JSONB)
    needs_footer: Mapped[bool] = mapped_column(Boolean, default=False)
    context: Mapped[str] = mapped_column(
        String(20), default="manual"
    )  # autopilot, followup, manual

    evaluated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_gate_evaluations_lead", "lead_id", "evaluated_at"),
    )

    def __repr__(self) -> str:
        return f"<GateEvaluation {self.decision} {self.reason_code or ''}>"
