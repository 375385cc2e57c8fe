"""
Webhook endpoints - inbound SMS and delivery status callbacks from Twilio.

Inbound messages go to the consent keyword parser before anything else, so a
STOP is on the ledger before any reply pipeline can see the message.
Twilio sends form-encoded data, not JSON.
"""
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import ValidationError

from revive.api.deps import get_engine
from revive.engine import Engine
from revive.schemas.api_responses import InboundResponse, StatusCallbackResponse
from revive.schemas.webhook_payloads import InboundMessage, TwilioSmsPayload, TwilioStatusPayload
from revive.utils.logging import mask_phone
from revive.utils.phone import normalize_phone_e164
from revive.utils.webhook_signatures import validate_twilio_request

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/webhook", tags=["webhooks"])


async def _read_form(request: Request) -> dict:
    form_data = await request.form()
    return {key: str(value) for key, value in form_data.items()}


def _validate_signature(request: Request, form_params: dict) -> None:
    """Validate webhook signature and raise 401 if invalid."""
    if not validate_twilio_request(request, form_params):
        client_ip = request.client.host if request.client else "unknown"
        logger.warning("Invalid Twilio webhook signature from %s", client_ip)
        raise HTTPException(status_code=401, detail="Invalid webhook signature")


@router.post("/twilio/inbound/{account_id}", response_model=InboundResponse)
async def twilio_inbound_webhook(
    account_id: str,
    request: Request,
    engine: Engine = Depends(get_engine),
):
    """Twilio inbound SMS webhook - consent keywords first, then reply bookkeeping."""
    form_params = await _read_form(request)
    _validate_signature(request, form_params)

    try:
        account_uuid = uuid.UUID(account_id)
    except ValueError:
        raise HTTPException(status_code=404, detail="Account not found")

    try:
        payload = TwilioSmsPayload(**form_params)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Missing MessageSid or From")

    phone = normalize_phone_e164(payload.From)
    if not phone:
        raise HTTPException(status_code=400, detail="Invalid phone number")

    logger.info("Inbound SMS from %s to account %s", mask_phone(phone), account_id[:8])
    result = await engine.handle_inbound(
        InboundMessage(
            account_id=account_uuid,
            from_phone=phone,
            to_phone=payload.To or None,
            body=payload.Body,
            provider_ref=payload.MessageSid,
        )
    )
    return InboundResponse(
        status="received",
        action=result.action.value if result.action else None,
        reply=result.reply,
    )


@router.post("/twilio/status", response_model=StatusCallbackResponse)
async def twilio_status_webhook(
    request: Request,
    engine: Engine = Depends(get_engine),
):
    """Twilio delivery status callback - monotonic status upgrade."""
    form_params = await _read_form(request)
    _validate_signature(request, form_params)

    try:
        payload = TwilioStatusPayload(**form_params)
    except ValidationError:
        raise HTTPException(status_code=400, detail="Missing MessageSid or MessageStatus")

    try:
        updated = await engine.handle_status(payload.MessageSid, payload.MessageStatus, payload.ErrorCode)
    except Exception as e:
        # Twilio retries non-2xx callbacks; a failed status update is not worth the storm
        logger.error("Twilio status webhook error: %s", str(e), exc_info=True)
        return StatusCallbackResponse(status="error", updated=False)
    return StatusCallbackResponse(status="ok", updated=updated)
