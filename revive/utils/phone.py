"""
Phone number normalization - E.164 format using the phonenumbers library.
Handles parentheses, dashes, dots, spaces and a missing country code.
Consent events and leads are keyed by the normalized value, so every phone
entering the engine goes through normalize_phone_e164 first.
"""
import logging
from typing import Optional

import phonenumbers

logger = logging.getLogger(__name__)


def normalize_phone_e164(phone: Optional[str], default_region: str = "US") -> Optional[str]:
    """
    Normalize a phone number to E.164 format.

    Handles:
    - (555) 123-4567 → +15551234567
    - 555.123.4567   → +15551234567
    - 1-555-123-4567 → +15551234567
    - +15551234567   → +15551234567

    Returns None if the number cannot be parsed or is not a possible number.
    """
    if not phone or not phone.strip():
        return None

    try:
        parsed = phonenumbers.parse(phone.strip(), default_region)
    except phonenumbers.NumberParseException:
        logger.debug("Unparseable phone number: %s", phone[:6] + "***")
        return None

    if not phonenumbers.is_possible_number(parsed):
        return None

    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)
