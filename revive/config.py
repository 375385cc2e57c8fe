"""
Application configuration using pydantic-settings.
All config is validated at startup - fail fast if anything is missing.

Per-account sending policy does NOT live here. It is read from the accounts
table and passed explicitly as an AccountPolicy into every evaluation.
"""
from functools import lru_cache

from pydantic_settings import BaseSettings


def parse_keywords(raw: str) -> frozenset[str]:
    """Split a comma-separated alias list into a normalized keyword set."""
    return frozenset(
        part.strip().upper() for part in (raw or "").split(",") if part.strip()
    )


class Settings(BaseSettings):
    # Application
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    app_base_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # Database
    database_url: str = "postgresql+asyncpg://localhost:5432/revive"
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # Redis (worker heartbeats only)
    redis_url: str = "redis://localhost:6379/0"

    # Twilio
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_messaging_service_sid: str = ""
    twilio_from_number: str = ""
    twilio_status_callback_url: str = ""
    provider_timeout_seconds: float = 10.0

    # Webhook / cron auth
    allow_unsigned_webhooks: bool = False
    cron_secret: str = ""

    # Sentry
    sentry_dsn: str = ""

    # Send queue
    queue_batch_size: int = 10
    queue_max_attempts: int = 5
    queue_concurrency: int = 1
    queue_backoff_base_seconds: int = 5
    queue_backoff_cap_seconds: int = 900
    queue_disabled_reschedule_minutes: int = 10
    queue_stale_claim_minutes: int = 15

    # Periodic triggers (only used when workers run in-process)
    run_workers_in_process: bool = False
    worker_poll_interval_seconds: int = 30
    autopilot_poll_interval_seconds: int = 300
    followup_poll_interval_seconds: int = 300

    # Consent keyword vocabularies (comma-separated, case-insensitive)
    stop_keywords: str = "STOP,STOPALL,UNSUBSCRIBE,CANCEL,END,QUIT,REMOVE,OPTOUT"
    start_keywords: str = "START,UNSTOP"
    help_keywords: str = "HELP,INFO"
    pause_keywords: str = "PAUSE"
    resume_keywords: str = "RESUME"
    pause_is_opt_out: bool = True

    # Compliance copy
    compliance_footer: str = "Txt STOP to opt out"
    stop_confirmation_text: str = (
        "You're unsubscribed and will receive no further messages. Reply START to resubscribe."
    )
    start_confirmation_text: str = "You're resubscribed. Reply STOP to opt out at any time."
    help_reply_text: str = "Reply STOP to opt out. Msg & data rates may apply."
    pause_confirmation_text: str = "Reminders paused. Reply RESUME to continue."

    # Follow-up defaults (overridable per account)
    followup_cadence_hours: str = "24,72,168,336"
    followup_max_attempts: int = 4
    conversation_died_hours: int = 48
    followup_batch_size: int = 25

    # Autopilot
    autopilot_max_steps: int = 3
    max_body_chars: int = 320

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def stop_keyword_set(self) -> frozenset[str]:
        return parse_keywords(self.stop_keywords)

    @property
    def start_keyword_set(self) -> frozenset[str]:
        return parse_keywords(self.start_keywords)

    @property
    def help_keyword_set(self) -> frozenset[str]:
        return parse_keywords(self.help_keywords)

    @property
    def pause_keyword_set(self) -> frozenset[str]:
        return parse_keywords(self.pause_keywords)

    @property
    def resume_keyword_set(self) -> frozenset[str]:
        return parse_keywords(self.resume_keywords)

    @property
    def default_cadence_hours(self) -> list[int]:
        return [int(h) for h in self.followup_cadence_hours.split(",") if h.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
