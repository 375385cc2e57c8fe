"""
AccountPolicy - immutable per-account sending policy.
Built from the Account row at the start of each evaluation and passed
explicitly into the gate, the follow-up scheduler and the autopilot.
"""
import uuid
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from revive.config import Settings
from revive.utils.timezone import DEFAULT_TIMEZONE, parse_hhmm


class AccountPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    account_id: uuid.UUID
    timezone: str = DEFAULT_TIMEZONE

    # Allowed send window as minute-of-day, end inclusive
    quiet_start: int = Field(default=9 * 60, ge=0, le=1440)
    quiet_end: int = Field(default=19 * 60, ge=0, le=1440)

    daily_cap: int = Field(default=1, ge=0)
    weekly_cap: int = Field(default=3, ge=0)
    min_gap_minutes: int = Field(default=60, ge=0)
    footer_refresh_days: int = Field(default=30, ge=0)
    intro_window_days: int = Field(default=7, ge=0)
    footer_text: str = "Txt STOP to opt out"

    sending_enabled: bool = True
    autopilot_enabled: bool = False
    consent_attested: bool = False
    kill_switch: bool = False
    autopilot_daily_cap: int = Field(default=50, ge=0)

    brand: Optional[str] = None
    booking_link: Optional[str] = None
    template_opener: Optional[str] = None
    template_nudge: Optional[str] = None
    template_reslot: Optional[str] = None

    cadence_hours: tuple[int, ...] = (24, 72, 168, 336)
    followup_max_attempts: int = Field(default=4, ge=1)
    conversation_died_hours: int = Field(default=48, ge=1)

    @classmethod
    def from_account(cls, account, settings: Settings) -> "AccountPolicy":
        """Snapshot an Account row, filling unset follow-up fields from settings."""
        cadence = account.followup_cadence_hours or settings.default_cadence_hours
        return cls(
            account_id=account.id,
            timezone=account.timezone or DEFAULT_TIMEZONE,
            quiet_start=parse_hhmm(account.quiet_start or "09:00"),
            quiet_end=parse_hhmm(account.quiet_end or "19:00"),
            daily_cap=account.daily_cap if account.daily_cap is not None else 1,
            weekly_cap=account.weekly_cap if account.weekly_cap is not None else 3,
            min_gap_minutes=account.min_gap_minutes if account.min_gap_minutes is not None else 60,
            footer_refresh_days=account.footer_refresh_days if account.footer_refresh_days is not None else 30,
            intro_window_days=account.intro_window_days if account.intro_window_days is not None else 7,
            footer_text=account.footer_text or settings.compliance_footer,
            sending_enabled=account.is_sending_enabled,
            autopilot_enabled=bool(account.autopilot_enabled),
            consent_attested=bool(account.consent_attested),
            kill_switch=bool(account.kill_switch),
            autopilot_daily_cap=account.autopilot_daily_cap if account.autopilot_daily_cap is not None else 50,
            brand=account.brand or account.name,
            booking_link=account.booking_link,
            template_opener=account.template_opener,
            template_nudge=account.template_nudge,
            template_reslot=account.template_reslot,
            cadence_hours=tuple(int(h) for h in cadence) or (24,),
            followup_max_attempts=account.followup_max_attempts or settings.followup_max_attempts,
            conversation_died_hours=account.conversation_died_hours or settings.conversation_died_hours,
        )
