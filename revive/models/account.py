"""
Account model - a tenant of the outreach platform.
Holds the sending policy the engine reads (timezone, send window, caps, footer
refresh) plus the autopilot switches. Edited by account owners elsewhere;
the engine treats it as read-only.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, Boolean, DateTime
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from revive.database import Base


class Account(Base):
    __tablename__ = "accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    brand: Mapped[Optional[str]] = mapped_column(String(255))
    booking_link: Mapped[Optional[str]] = mapped_column(Text)

    # Send window (local time, "HH:MM"); start > end wraps midnight
    timezone: Mapped[str] = mapped_column(String(64), default="America/New_York")
    quiet_start: Mapped[str] = mapped_column(String(5), default="09:00")
    quiet_end: Mapped[str] = mapped_column(String(5), default="19:00")

    # Per-lead frequency limits (trailing windows)
    daily_cap: Mapped[int] = mapped_column(Integer, default=1)
    weekly_cap: Mapped[int] = mapped_column(Integer, default=3)
    min_gap_minutes: Mapped[int] = mapped_column(Integer, default=60)

    # Footer / intro policy
    footer_text: Mapped[Optional[str]] = mapped_column(String(160))
    footer_refresh_days: Mapped[int] = mapped_column(Integer, default=30)
    intro_window_days: Mapped[int] = mapped_column(Integer, default=7)

    # Switches
    autotexter_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    outbound_paused: Mapped[bool] = mapped_column(Boolean, default=False)
    kill_switch: Mapped[bool] = mapped_column(Boolean, default=False)
    autopilot_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    consent_attested: Mapped[bool] = mapped_column(Boolean, default=False)

    # Autopilot templates by step: 0=opener, 1=nudge, 2=reslot
    autopilot_daily_cap: Mapped[int] = mapped_column(Integer, default=50)
    template_opener: Mapped[Optional[str]] = mapped_column(Text)
    template_nudge: Mapped[Optional[str]] = mapped_column(Text)
    template_reslot: Mapped[Optional[str]] = mapped_column(Text)

    # Follow-up cadence overrides (None = use settings defaults)
    conversation_died_hours: Mapped[Optional[int]] = mapped_column(Integer)
    followup_max_attempts: Mapped[Optional[int]] = mapped_column(Integer)
    followup_cadence_hours: Mapped[Optional[list]] = mapped_column(JSONB)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), onupdate=lambda: datetime.now(timezone.utc)
    )

    @property
    def is_sending_enabled(self) -> bool:
        return bool(self.autotexter_enabled) and not self.outbound_paused and not self.kill_switch

    def __repr__(self) -> str:
        return f"<Account {self.name} enabled={self.is_sending_enabled}>"
