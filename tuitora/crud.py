from datetime import date
from decimal import Decimal
from typing import Optional, List
from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from tuitora.models import (
    Attendance,
    AttendanceStatus,
    ParentStudentRelationship,
    Payment,
    Profile,
    Role,
    School,
    Student,
)
from tuitora.schemas import (
    AttendanceSummary,
    FeeSummary,
    ParentContact,
    SchoolContact,
    StudentSummary,
)
from tuitora.utils.phone_utils import phone_number_variants


#  PROFILES

async def get_profile(db: AsyncSession, profile_id: int) -> Optional[Profile]:
    return await db.get(Profile, profile_id)


#  STUDENTS

async def get_student(db: AsyncSession, student_id: int) -> Optional[Student]:
    return await db.get(Student, student_id)


async def get_linked_students(db: AsyncSession, phone_number: str) -> List[Student]:
    """Active students linked to the parent profile(s) owning this phone number."""
    variants = phone_number_variants(phone_number)
    if not variants:
        return []
    result = await db.execute(
        select(Student)
        .join(ParentStudentRelationship, ParentStudentRelationship.student_id == Student.id)
        .join(Profile, Profile.id == ParentStudentRelationship.parent_id)
        .where(
            Profile.phone.in_(variants),
            Profile.role == Role.PARENT,
            Student.is_active.is_(True),
        )
        .order_by(Student.name, Student.id)
        .distinct()
    )
    return list(result.scalars().all())


#  ATTENDANCE

async def get_attendance_counts(db: AsyncSession, student_id: int, since: date) -> dict:
    result = await db.execute(
        select(Attendance.status, func.count(Attendance.id))
        .where(Attendance.student_id == student_id, Attendance.date >= since)
        .group_by(Attendance.status)
    )
    return {AttendanceStatus(status): count for status, count in result.all()}


async def get_latest_attendance(db: AsyncSession, student_id: int) -> Optional[Attendance]:
    result = await db.execute(
        select(Attendance)
        .where(Attendance.student_id == student_id)
        .order_by(Attendance.date.desc(), Attendance.id.desc())
        .limit(1)
    )
    return result.scalars().first()


#  PAYMENTS

async def get_payment_totals(db: AsyncSession, student_id: int) -> tuple[Decimal, int]:
    result = await db.execute(
        select(func.coalesce(func.sum(Payment.amount), 0), func.count(Payment.id))
        .where(Payment.student_id == student_id)
    )
    total, count = result.one()
    return Decimal(str(total)), count


async def get_latest_payment(db: AsyncSession, student_id: int) -> Optional[Payment]:
    result = await db.execute(
        select(Payment)
        .where(Payment.student_id == student_id)
        .order_by(Payment.paid_at.desc(), Payment.id.desc())
        .limit(1)
    )
    return result.scalars().first()


#  SCHOOLS & CONTACTS

async def get_school_for_phone(db: AsyncSession, phone_number: str) -> Optional[School]:
    """The caller's own school, falling back to the school of a linked student."""
    variants = phone_number_variants(phone_number)
    if not variants:
        return None
    result = await db.execute(
        select(School)
        .join(Profile, Profile.school_id == School.id)
        .where(Profile.phone.in_(variants))
        .order_by(Profile.id)
        .limit(1)
    )
    school = result.scalars().first()
    if school:
        return school

    students = await get_linked_students(db, phone_number)
    if not students:
        return None
    return await db.get(School, students[0].school_id)


async def get_parent_contacts(db: AsyncSession, student_ids: List[int]) -> List[ParentContact]:
    """Every parent phone linked to the given students, one entry per (student, parent)."""
    if not student_ids:
        return []
    result = await db.execute(
        select(Student.id, Student.name, Profile.full_name, Profile.phone)
        .join(ParentStudentRelationship, ParentStudentRelationship.student_id == Student.id)
        .join(Profile, Profile.id == ParentStudentRelationship.parent_id)
        .where(Student.id.in_(student_ids), Profile.phone.is_not(None))
        .order_by(Student.id, Profile.id)
    )
    return [
        ParentContact(student_id=sid, student_name=sname, parent_name=pname, phone=phone)
        for sid, sname, pname, phone in result.all()
    ]


async def get_school_recipients(
    db: AsyncSession, school_id: int, recipient_type: str = "all"
) -> List[Profile]:
    roles = {
        "parents": Role.PARENT,
        "teachers": Role.TEACHER,
        "students": Role.STUDENT,
    }
    query = select(Profile).where(Profile.school_id == school_id, Profile.phone.is_not(None))
    if recipient_type in roles:
        query = query.where(Profile.role == roles[recipient_type])
    result = await db.execute(query.order_by(Profile.id))
    return list(result.scalars().all())


#  USSD DIRECTORY

class SchoolDirectory:
    """Read-only lookups the USSD menu needs, bound to one DB session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def linked_students(self, phone_number: str) -> List[StudentSummary]:
        students = await get_linked_students(self.db, phone_number)
        return [StudentSummary.model_validate(s) for s in students]

    async def attendance_summary(self, student: StudentSummary, since: date) -> AttendanceSummary:
        counts = await get_attendance_counts(self.db, student.id, since)
        latest = await get_latest_attendance(self.db, student.id)
        return AttendanceSummary(
            student=student,
            since=since,
            present=counts.get(AttendanceStatus.PRESENT, 0),
            absent=counts.get(AttendanceStatus.ABSENT, 0),
            late=counts.get(AttendanceStatus.LATE, 0),
            last_date=latest.date if latest else None,
            last_status=latest.status.value if latest else None,
        )

    async def fee_summary(self, student: StudentSummary) -> FeeSummary:
        record = await get_student(self.db, student.id)
        total, count = await get_payment_totals(self.db, student.id)
        latest = await get_latest_payment(self.db, student.id)
        return FeeSummary(
            student=student,
            total_paid=total,
            term_fee=record.term_fee if record else None,
            payment_count=count,
            last_payment_amount=latest.amount if latest else None,
            last_payment_date=latest.paid_at if latest else None,
        )

    async def school_contact(self, phone_number: str) -> Optional[SchoolContact]:
        school = await get_school_for_phone(self.db, phone_number)
        return SchoolContact.model_validate(school) if school else None
