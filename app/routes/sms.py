"""
SMS provider information, cost estimates and the signed delivery-status webhook.
"""

import hashlib
import hmac

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import ValidationError

from app.config import settings
from app.infrastructure.observability.logging import get_logger, log_delivery
from app.models.api.sms_request import DeliveryStatusReport
from app.services.sms.delivery_channel import delivery_channel
from app.services.sms.errors import SmsError

router = APIRouter(prefix="/sms", tags=["sms"])
logger = get_logger(__name__)

SIGNATURE_HEADER = "x-sms-signature"
SMS_WEBHOOK_SECRET = settings.SMS_WEBHOOK_SECRET

DELIVERED_STATUSES = {"delivered", "sent", "queued", "accepted"}


def verify_status_signature(raw: bytes, signature: str | None) -> None:
    if not SMS_WEBHOOK_SECRET:
        logger.warning("SMS status webhook called without a configured secret")
        raise HTTPException(status_code=401, detail="Webhook secret not configured")
    if not signature:
        raise HTTPException(status_code=401, detail="Missing signature")
    mac = hmac.new(SMS_WEBHOOK_SECRET.encode(), raw, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(mac, signature):
        logger.warning("SMS status webhook signature mismatch")
        raise HTTPException(status_code=401, detail="Invalid signature")


@router.get("/provider")
async def provider_info():
    return delivery_channel.provider_info()


@router.get("/balance")
async def provider_balance():
    return await delivery_channel.get_balance()


@router.get("/senders")
async def provider_senders():
    try:
        senders = await delivery_channel.get_senders()
    except SmsError as e:
        logger.error("SMS sender lookup failed", provider=e.provider, error=str(e))
        raise HTTPException(status_code=502, detail=str(e)) from e
    return {"provider": delivery_channel.primary.name, "senders": senders}


@router.get("/estimate")
async def estimate_cost(
    message: str = Query(..., min_length=1),
    recipients: int = Query(1, ge=1),
):
    return delivery_channel.calculate_cost(message, recipients).to_dict()


@router.post("/webhook/status")
async def status_webhook(request: Request):
    """Provider-reported delivery status. The body is verified before it is parsed."""
    raw = await request.body()
    verify_status_signature(raw, request.headers.get(SIGNATURE_HEADER))

    try:
        report = DeliveryStatusReport.model_validate_json(raw)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=f"Invalid status report: {e.error_count()} error(s)") from None

    status = report.normalized_status
    log_delivery(
        provider=report.provider or delivery_channel.primary.name,
        to=report.to,
        success=status in DELIVERED_STATUSES,
        error=report.error,
        message_id=report.message_id,
        status=status,
        source="status_webhook",
    )
    return {"ok": True, "message_id": report.message_id, "status": status}
