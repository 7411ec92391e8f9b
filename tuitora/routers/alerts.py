from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
import logging
from tuitora import crud
from tuitora.database import get_db
from tuitora.schemas import AttendanceAlertRequest, PaymentConfirmationRequest
from tuitora.services.africastalking_service import SmsGateway, get_sms_gateway
from tuitora.utils.formatting import format_currency

router = APIRouter(prefix="/alerts", tags=["Alerts"])
logger = logging.getLogger("tuitora.routers.alerts")


@router.post("/attendance")
async def send_attendance_alerts(
    payload: AttendanceAlertRequest,
    db: AsyncSession = Depends(get_db),
    gateway: SmsGateway = Depends(get_sms_gateway),
):
    """Text every linked parent of the students marked absent."""
    absent_ids = [s.student_id for s in payload.students if s.status.lower() == "absent"]
    try:
        contacts = await crud.get_parent_contacts(db, absent_ids)
    except SQLAlchemyError as e:
        logger.error(f"Error loading parent contacts: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to send alerts")

    results = await gateway.send_many(
        (
            contact.phone,
            f"Attendance Alert: {contact.student_name} was absent on {payload.date}. "
            "Please contact the school if this is unexpected.",
        )
        for contact in contacts
    )
    return {"success": True, "sent": sum(1 for r in results if r.success), "results": results}


@router.post("/payment-confirmation")
async def send_payment_confirmation(
    payload: PaymentConfirmationRequest,
    db: AsyncSession = Depends(get_db),
    gateway: SmsGateway = Depends(get_sms_gateway),
):
    try:
        student = await crud.get_student(db, payload.studentId)
        contacts = await crud.get_parent_contacts(db, [payload.studentId]) if student else []
    except SQLAlchemyError as e:
        logger.error(f"Error loading payment recipients: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to send confirmation")

    if not student:
        raise HTTPException(status_code=404, detail="Student not found")

    message = (
        f"Payment Confirmation: {format_currency(payload.amount)} paid for {student.name} - "
        f"{payload.description}. Thank you for your payment!"
    )
    results = await gateway.send_many((contact.phone, message) for contact in contacts)
    return {"success": True, "sent": sum(1 for r in results if r.success), "results": results}
