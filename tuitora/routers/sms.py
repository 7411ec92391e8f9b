from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import PlainTextResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from datetime import datetime, timezone
from typing import Any, Optional
import logging
from tuitora.config import settings
from tuitora.crud import get_school_recipients
from tuitora.database import get_db
from tuitora.schemas import BulkRecipient, BulkSMSRequest, DeliveryReport, IncomingSMS, SMSSendRequest
from tuitora.services.africastalking_service import SmsGateway, get_sms_gateway, segment_count
from tuitora.services.audit import record_audit
from tuitora.utils.phone_utils import is_valid_kenyan_mobile, normalize_phone_number

router = APIRouter(prefix="/sms", tags=["SMS"])
logger = logging.getLogger("tuitora.routers.sms")

# Provider payloads are not stable; first alias present wins
INCOMING_ALIASES = {
    "sender": ("from", "From", "msisdn"),
    "to": ("to", "To", "shortCode"),
    "text": ("text", "Text", "message"),
    "message_id": ("id", "messageId", "message_id"),
    "network": ("network", "networkCode"),
}


def pick(payload: dict, aliases) -> Optional[Any]:
    for alias in aliases:
        value = payload.get(alias)
        if value not in (None, ""):
            return value
    return None


def parse_incoming(payload: dict) -> IncomingSMS:
    values = {field: pick(payload, aliases) for field, aliases in INCOMING_ALIASES.items()}
    return IncomingSMS(
        sender=str(values["sender"]) if values["sender"] is not None else None,
        to=str(values["to"]) if values["to"] is not None else None,
        text=str(values["text"] or ""),
        message_id=str(values["message_id"]) if values["message_id"] is not None else None,
        network=str(values["network"]) if values["network"] is not None else None,
    )


async def read_provider_payload(request: Request) -> dict:
    """Never fails: an unreadable body is logged and treated as empty."""
    content_type = request.headers.get("content-type", "")
    try:
        data = await (request.json() if "application/json" in content_type else request.form())
        return dict(data) if hasattr(data, "items") else {"raw": data}
    except Exception as e:
        logger.warning(f"Unreadable provider payload: {e}")
        return {}


def brand_message(message: str) -> str:
    return f"Tuitora: {message}\nReply STOP to opt-out"


@router.post("/send")
async def send_sms(
    payload: SMSSendRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: SmsGateway = Depends(get_sms_gateway),
):
    numbers = [normalize_phone_number(n) for n in payload.to]
    numbers = [n for n in numbers if is_valid_kenyan_mobile(n)]
    if not numbers:
        raise HTTPException(status_code=400, detail="No valid Kenyan phone numbers provided")

    message = brand_message(payload.message)
    results = await gateway.send_sms(numbers, message)

    if payload.schoolId:
        await record_audit(
            db,
            "SMS_SENT",
            {
                "recipients": len(numbers),
                "message_type": payload.messageType,
                "school_id": payload.schoolId,
                "results": [r.model_dump() for r in results],
            },
            user_id=request.headers.get("x-user-id"),
        )

    return {
        "success": True,
        "results": results,
        "sent": sum(1 for r in results if r.success),
        "segments": segment_count(message),
        "message": f"SMS sent via short code {settings.SMS_SHORT_CODE}",
    }


@router.post("/bulk")
async def send_bulk_sms(
    payload: BulkSMSRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: SmsGateway = Depends(get_sms_gateway),
):
    try:
        profiles = await get_school_recipients(db, payload.schoolId, payload.recipientType)
    except SQLAlchemyError as e:
        logger.error(f"Bulk SMS recipient lookup failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to send bulk SMS")

    if not profiles:
        raise HTTPException(status_code=404, detail="No recipients found with phone numbers")

    recipients = [BulkRecipient(phone=p.phone, name=p.full_name or "Unknown") for p in profiles]
    results = await gateway.send_bulk_sms(recipients, payload.message)
    successful = sum(1 for r in results if r.success)

    await record_audit(
        db,
        "BULK_SMS_SENT",
        {
            "school_id": payload.schoolId,
            "recipient_type": payload.recipientType,
            "recipient_count": len(recipients),
            "message_length": len(payload.message),
            "segments": segment_count(payload.message),
        },
        user_id=request.headers.get("x-user-id"),
    )

    return {
        "success": True,
        "totalRecipients": len(recipients),
        "successful": successful,
        "failed": len(results) - successful,
        "results": results,
    }


@router.post("/delivery-report", response_class=PlainTextResponse)
async def delivery_report(request: Request, db: AsyncSession = Depends(get_db)):
    data = await read_provider_payload(request)
    try:
        report = DeliveryReport.model_validate(
            {k: str(v) for k, v in data.items() if k in DeliveryReport.model_fields and v is not None}
        )
        await record_audit(
            db,
            "SMS_DELIVERY_REPORT",
            {
                "message_id": report.id,
                "status": report.status,
                "phone_number": report.phoneNumber,
                "network_code": report.networkCode,
                "failure_reason": report.failureReason,
                "received_at": datetime.now(timezone.utc).isoformat(),
            },
        )
    except Exception as e:
        logger.error(f"Delivery report error: {e}", exc_info=True)
    # Anything but 200 makes the provider retry
    return PlainTextResponse("OK")


@router.post("/incoming", response_class=PlainTextResponse)
async def incoming_sms(request: Request, db: AsyncSession = Depends(get_db)):
    data = await read_provider_payload(request)
    try:
        message = parse_incoming(data)
        await record_audit(
            db,
            "INCOMING_SMS",
            {
                "from": message.sender,
                "to": message.to,
                "text": message.text,
                "messageId": message.message_id,
                "network": message.network,
                "raw": {k: str(v) for k, v in data.items()},
                "received_at": datetime.now(timezone.utc).isoformat(),
            },
        )
    except Exception as e:
        logger.error(f"Incoming SMS handler error: {e}", exc_info=True)
    return PlainTextResponse("OK")
