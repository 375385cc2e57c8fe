"""
Webhook signature validation - verify incoming Twilio webhooks are authentic.
Twilio signs with HMAC-SHA1 in X-Twilio-Signature over the public URL plus
the form parameters.
"""
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def validate_twilio_signature(
    auth_token: str,
    signature: str,
    url: str,
    params: dict,
) -> bool:
    """
    Validate Twilio webhook signature using their RequestValidator.
    Returns True if valid, False if invalid or on error.
    """
    if not signature:
        logger.warning("Missing X-Twilio-Signature header")
        return False

    try:
        from twilio.request_validator import RequestValidator
        validator = RequestValidator(auth_token)
        return validator.validate(url, params, signature)
    except Exception as e:
        logger.error("Twilio signature validation error: %s", str(e))
        return False


def get_webhook_url(request) -> str:
    """
    Reconstruct the public URL for Twilio signature validation.
    Behind a reverse proxy request.url is the internal URL, but Twilio signs
    against the public one, so honour X-Forwarded-Proto / X-Forwarded-Host.
    """
    proto = request.headers.get("x-forwarded-proto", request.url.scheme)
    host = request.headers.get("x-forwarded-host") or request.headers.get("host", "")
    base = f"{proto}://{host}{request.url.path}"
    if request.url.query:
        return f"{base}?{request.url.query}"
    return base


def validate_twilio_request(request, form_params: Optional[dict] = None, settings=None) -> bool:
    """
    Validate an incoming Twilio request.
    Without an auth token, unsigned webhooks are accepted outside production
    (or in production when ALLOW_UNSIGNED_WEBHOOKS is set).
    """
    if settings is None:
        from revive.config import get_settings
        settings = get_settings()

    if not settings.twilio_auth_token:
        if settings.app_env == "production" and not settings.allow_unsigned_webhooks:
            logger.error("Missing TWILIO_AUTH_TOKEN in production - rejecting webhook")
            return False
        logger.warning(
            "TWILIO_AUTH_TOKEN not set - accepting webhook without signature verification"
        )
        return True

    signature = request.headers.get("X-Twilio-Signature", "")
    return validate_twilio_signature(
        settings.twilio_auth_token,
        signature,
        get_webhook_url(request),
        form_params or {},
    )
