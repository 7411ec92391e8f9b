from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
import logging
from tuitora import crud
from tuitora.database import get_db
from tuitora.schemas import MessageSendRequest
from tuitora.services.africastalking_service import SmsGateway, get_sms_gateway
from tuitora.services.audit import record_audit

router = APIRouter(prefix="/messages", tags=["Messages"])
logger = logging.getLogger("tuitora.routers.messages")


# Send message
@router.post("/send")
async def send_message(
    payload: MessageSendRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    gateway: SmsGateway = Depends(get_sms_gateway),
):
    """Send one message to a single profile over SMS, WhatsApp or both."""
    if not payload.viaSMS and not payload.viaWhatsApp:
        raise HTTPException(
            status_code=400,
            detail="At least one delivery method (SMS or WhatsApp) must be selected",
        )

    try:
        recipient = await crud.get_profile(db, payload.recipientId)
    except SQLAlchemyError as e:
        logger.error(f"Error loading message recipient: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to send message")

    if not recipient or not recipient.phone:
        raise HTTPException(status_code=404, detail="Recipient not found or has no phone number")

    sms_results = await gateway.send_sms([recipient.phone], payload.message) if payload.viaSMS else []
    whatsapp_results = await gateway.send_whatsapp([recipient.phone], payload.message) if payload.viaWhatsApp else None

    delivered = any(r.success for r in sms_results) or any(r.success for r in whatsapp_results or [])
    if not delivered:
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": "Failed to send message via any requested method"},
        )

    await record_audit(
        db,
        "MESSAGE_SENT",
        {
            "recipient_id": payload.recipientId,
            "via_sms": payload.viaSMS,
            "via_whatsapp": payload.viaWhatsApp,
            "message_length": len(payload.message),
        },
        user_id=request.headers.get("x-user-id"),
    )
    return {"success": True, "sms": sms_results, "whatsapp": whatsapp_results}
