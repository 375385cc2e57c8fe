"""
Webhook payload schemas - raw input from the SMS provider.
Inbound messages are normalized into an InboundMessage before the consent
keyword parser sees them.
"""
import uuid
from datetime import datetime
from typing import Optional
from pydantic import BaseModel


class TwilioSmsPayload(BaseModel):
    """Twilio inbound SMS webhook payload."""
    MessageSid: str
    AccountSid: str = ""
    From: str  # E.164 phone number
    To: str = ""
    Body: str = ""
    NumMedia: str = "0"


class TwilioStatusPayload(BaseModel):
    """Twilio delivery status callback."""
    MessageSid: str
    MessageStatus: str  # accepted, queued, sending, sent, delivered, read, undelivered, failed
    ErrorCode: Optional[str] = None
    ErrorMessage: Optional[str] = None
    To: Optional[str] = None
    From: Optional[str] = None


class InboundMessage(BaseModel):
    """Provider-neutral inbound SMS."""
    account_id: uuid.UUID
    from_phone: str
    to_phone: Optional[str] = None
    body: str = ""
    provider_ref: Optional[str] = None
    received_at: Optional[datetime] = None
