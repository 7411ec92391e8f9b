from pydantic import BaseModel, Field, field_validator
from typing import Optional, List, Literal
from datetime import date, datetime
from decimal import Decimal
import enum
import re


SERVICE_CODE_RE = re.compile(r"^\*\d+(\*\d+)*#$")


# USSD SCHEMAS
class USSDStatus(str, enum.Enum):
    CONTINUE = "continue"
    COMPLETED = "completed"


class USSDRequest(BaseModel):
    """Callback body posted by Africa's Talking on every USSD turn."""
    sessionId: str = Field(min_length=1)
    phoneNumber: str = Field(min_length=1)
    text: str
    serviceCode: Optional[str] = None

    @field_validator("serviceCode")
    def service_code_shape(cls, v):
        if v in (None, ""):
            return None
        v = v.strip()
        if not SERVICE_CODE_RE.match(v):
            raise ValueError("serviceCode must look like *384*38164#")
        return v


class USSDSession(BaseModel):
    sessionId: str
    phoneNumber: str
    serviceCode: Optional[str] = None
    text: str = ""
    createdAt: Optional[datetime] = None


class USSDResponse(BaseModel):
    text: str
    status: USSDStatus

    @property
    def is_terminal(self) -> bool:
        return self.status == USSDStatus.COMPLETED


class USSDSessionRequest(BaseModel):
    phoneNumber: Optional[str] = None
    serviceCode: Optional[str] = None


class USSDSessionResponse(BaseModel):
    success: bool = True
    data: USSDSession
    instruction: str


class USSDRespondRequest(BaseModel):
    session: Optional[USSDSession] = None
    text: Optional[str] = None


class USSDRespondResponse(BaseModel):
    success: bool = True
    data: USSDResponse
    response: str



# BACKING DATA (read-only views used by the USSD menu)
class StudentSummary(BaseModel):
    id: int
    name: str
    grade: Optional[str] = None
    school_id: Optional[int] = None

    model_config = {"from_attributes": True}


class AttendanceSummary(BaseModel):
    student: StudentSummary
    since: date
    present: int = 0
    absent: int = 0
    late: int = 0
    last_date: Optional[date] = None
    last_status: Optional[str] = None

    @property
    def total(self) -> int:
        return self.present + self.absent + self.late


class FeeSummary(BaseModel):
    student: StudentSummary
    total_paid: Decimal = Decimal("0")
    term_fee: Optional[Decimal] = None
    payment_count: int = 0
    last_payment_amount: Optional[Decimal] = None
    last_payment_date: Optional[datetime] = None

    @property
    def balance(self) -> Optional[Decimal]:
        if self.term_fee is None:
            return None
        return max(self.term_fee - self.total_paid, Decimal("0"))


class SchoolContact(BaseModel):
    name: str
    phone: Optional[str] = None
    email: Optional[str] = None
    address: Optional[str] = None

    model_config = {"from_attributes": True}



# SMS SCHEMAS
class SMSResult(BaseModel):
    recipient: str
    success: bool
    error: Optional[str] = None
    message_id: Optional[str] = None
    status: Optional[str] = None
    cost: Optional[str] = None


class BulkRecipient(BaseModel):
    phone: str
    name: str = "Unknown"


class SMSSendRequest(BaseModel):
    to: List[str] = Field(min_length=1)
    message: str = Field(min_length=1)
    messageType: Literal["attendance", "payment", "general"] = "general"
    schoolId: Optional[int] = None


class BulkSMSRequest(BaseModel):
    schoolId: int
    message: str = Field(min_length=1)
    recipientType: Literal["parents", "teachers", "students", "all"] = "all"


class MessageSendRequest(BaseModel):
    """Direct message to one profile over SMS and/or WhatsApp."""
    recipientId: int
    message: str = Field(min_length=1)
    viaSMS: bool = True
    viaWhatsApp: bool = False


class DeliveryReport(BaseModel):
    id: Optional[str] = None
    status: Optional[str] = None
    phoneNumber: Optional[str] = None
    networkCode: Optional[str] = None
    failureReason: Optional[str] = None


class IncomingSMS(BaseModel):
    """Normalised view of a provider's inbound-SMS payload."""
    sender: Optional[str] = None
    to: Optional[str] = None
    text: str = ""
    message_id: Optional[str] = None
    network: Optional[str] = None



# ALERT SCHEMAS
class AttendanceAlertRecord(BaseModel):
    student_id: int
    status: str
    date: Optional[str] = None


class AttendanceAlertRequest(BaseModel):
    students: List[AttendanceAlertRecord]
    date: str


class PaymentConfirmationRequest(BaseModel):
    studentId: int
    amount: Decimal = Field(gt=0)
    description: str = Field(min_length=1)


class ParentContact(BaseModel):
    student_id: int
    student_name: str
    parent_name: Optional[str] = None
    phone: str
