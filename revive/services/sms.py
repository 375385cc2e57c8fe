"""
SMS provider - Twilio.
The send worker is the only caller; every message reaching this module has
already been claimed, consent-checked and stamped with a footer where needed.

Carrier error handling:
- 21610 (unsubscribed via carrier): permanent, recorded as a revocation
- 21211 / 21612 (invalid number): permanent
- 30006 (landline or unreachable): permanent
- 30007 / 30008 / 30009 / 30010: transient, retried with backoff
- anything unclassified: transient
"""
import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Optional, Protocol

from revive.utils.logging import mask_phone

logger = logging.getLogger(__name__)

# SMS segment limits
GSM_SINGLE_SEGMENT = 160
GSM_MULTI_SEGMENT = 153
UCS2_SINGLE_SEGMENT = 70
UCS2_MULTI_SEGMENT = 67

# Carrier error classifications
PERMANENT_ERRORS = {
    "21211",  # Invalid "To" phone number
    "21610",  # Unsubscribed recipient (carrier-level opt-out)
    "30006",  # Landline or unreachable
    "21612",  # Invalid "To" phone number for SMS
}

TRANSIENT_ERRORS = {
    "30007",  # Message filtered by carrier
    "30008",  # Unknown error
    "30009",  # Missing segment
    "30010",  # Message price exceeds max price
}

LANDLINE_ERRORS = {"30006"}
OPT_OUT_ERRORS = {"21610"}
INVALID_NUMBER_ERRORS = {"21211", "21612"}


class ProviderError(Exception):
    """A provider rejected or failed to accept a message."""

    def __init__(self, message: str, retryable: bool = True, error_code: Optional[str] = None):
        super().__init__(message)
        self.retryable = retryable
        self.error_code = error_code

    @property
    def is_opt_out(self) -> bool:
        return self.error_code in OPT_OUT_ERRORS


class ProviderTimeout(ProviderError):
    """The provider did not answer within the configured timeout."""

    def __init__(self, message: str = "Provider timed out"):
        super().__init__(message, retryable=True, error_code="timeout")


@dataclass
class SendResult:
    provider_ref: str
    status: str = "sent"
    provider: str = "twilio"
    segments: int = 1


class SmsProvider(Protocol):
    name: str

    async def send(self, to: str, body: str) -> SendResult:
        ...


# GSM-7 basic character set (for encoding detection)
_GSM7_BASIC = set(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞ ÆæßÉ"
    " !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZ"
    "ÄÖÑÜabcdefghijklmnopqrstuvwxyz"
    "äöñüà§"
)

_GSM7_EXTENDED = set("^{}\\[~]|€")


def is_gsm7(message: str) -> bool:
    """Check if message can be encoded as GSM-7."""
    return all(c in _GSM7_BASIC or c in _GSM7_EXTENDED for c in message)


def count_segments(message: str) -> int:
    """Count SMS segments accounting for GSM-7 vs UCS-2 encoding."""
    if is_gsm7(message):
        length = sum(2 if c in _GSM7_EXTENDED else 1 for c in message)
        if length <= GSM_SINGLE_SEGMENT:
            return 1
        return math.ceil(length / GSM_MULTI_SEGMENT)
    if len(message) <= UCS2_SINGLE_SEGMENT:
        return 1
    return math.ceil(len(message) / UCS2_MULTI_SEGMENT)


def classify_error(error_code: Optional[str]) -> str:
    """
    Classify a Twilio error code.
    Returns: "opt_out", "landline", "invalid", "permanent", "transient", or "unknown"
    """
    if not error_code:
        return "unknown"
    code = str(error_code)
    if code in OPT_OUT_ERRORS:
        return "opt_out"
    if code in LANDLINE_ERRORS:
        return "landline"
    if code in INVALID_NUMBER_ERRORS:
        return "invalid"
    if code in PERMANENT_ERRORS:
        return "permanent"
    if code in TRANSIENT_ERRORS:
        return "transient"
    return "unknown"


def is_retryable(error_code: Optional[str]) -> bool:
    return classify_error(error_code) in ("transient", "unknown")


def _extract_error_code(error: Exception) -> Optional[str]:
    """Extract Twilio error code from exception."""
    code = getattr(error, "code", None)
    if code is not None:
        return str(code)
    msg = str(error)
    for known_code in PERMANENT_ERRORS | TRANSIENT_ERRORS:
        if known_code in msg:
            return known_code
    return None


async def _run_sync(func, *args, **kwargs):
    """Run a synchronous function in the thread pool to avoid blocking the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


def _get_twilio_client(settings):
    """Get a Twilio REST client with the configured timeout."""
    from twilio.rest import Client as TwilioClient
    from twilio.http.http_client import TwilioHttpClient
    http_client = TwilioHttpClient(timeout=settings.provider_timeout_seconds)
    return TwilioClient(
        settings.twilio_account_sid,
        settings.twilio_auth_token,
        http_client=http_client,
    )


class TwilioProvider:
    """Send SMS through the Twilio REST API (non-blocking via the thread pool)."""

    name = "twilio"

    def __init__(self, settings=None, client=None):
        if settings is None:
            from revive.config import get_settings
            settings = get_settings()
        self.settings = settings
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = _get_twilio_client(self.settings)
        return self._client

    async def send(self, to: str, body: str) -> SendResult:
        kwargs = {"to": to, "body": body}
        if self.settings.twilio_messaging_service_sid:
            kwargs["messaging_service_sid"] = self.settings.twilio_messaging_service_sid
        elif self.settings.twilio_from_number:
            kwargs["from_"] = self.settings.twilio_from_number
        else:
            raise ProviderError(
                "Either TWILIO_FROM_NUMBER or TWILIO_MESSAGING_SERVICE_SID required",
                retryable=False,
                error_code="config",
            )
        if self.settings.twilio_status_callback_url:
            kwargs["status_callback"] = self.settings.twilio_status_callback_url

        try:
            message = await _run_sync(self.client.messages.create, **kwargs)
        except Exception as e:
            error_code = _extract_error_code(e)
            error_class = classify_error(error_code)
            retryable = error_class in ("transient", "unknown")
            logger.warning(
                "Twilio send failed for %s: code=%s class=%s",
                mask_phone(to), error_code, error_class,
            )
            raise ProviderError(str(e), retryable=retryable, error_code=error_code) from e

        segments = count_segments(body)
        logger.info(
            "SMS sent via Twilio to %s (%d segments): %s",
            mask_phone(to), segments, message.sid,
        )
        return SendResult(
            provider_ref=message.sid,
            status=message.status or "sent",
            provider=self.name,
            segments=segments,
        )
