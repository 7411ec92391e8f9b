"""
USSD menu engine for Tuitora
----------------------------
Turns the cumulative ``text`` Africa's Talking sends on every USSD turn
(``""``, ``"1"``, ``"1*2"`` ...) into the next screen.

Nothing is remembered between turns: the position in the menu is rebuilt
from ``text`` on every call, so a retried callback gets the same answer.

Usage:
    menu = USSDMenu(SchoolDirectory(db))
    reply = await menu.respond(text, phone_number)
"""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Callable, List, Optional, Protocol, Tuple

from tuitora.schemas import (
    AttendanceSummary,
    FeeSummary,
    SchoolContact,
    StudentSummary,
    USSDResponse,
    USSDStatus,
)
from tuitora.config import settings
from tuitora.utils.formatting import format_currency, format_date, truncate_text

logger = logging.getLogger("tuitora.services.ussd_menu")


WELCOME_TITLE = "Welcome to Tuitora"
BACK = "0"
ATTENDANCE_WINDOW_DAYS = 30

MESSAGES = {
    "invalid": "Invalid option.",
    "select_student": "{title} - select student:",
    "back": "0. Back",
    "no_records": "No records found for this phone number. Please contact your school.",
    "lookup_failed": "We could not fetch your records right now. Please try again later.",
    "no_attendance": "No attendance records found for {name}.",
    "no_fees": "No fee records found for {name}.",
    "no_contact": "No records found for your school. Please try again later.",
    "goodbye": "Thank you for using Tuitora. Goodbye.",
}


@dataclass(frozen=True)
class MenuOption:
    key: str
    label: str
    action: str


MAIN_MENU: Tuple[MenuOption, ...] = (
    MenuOption("1", "Check Attendance", "attendance"),
    MenuOption("2", "Check Fees", "fees"),
    MenuOption("3", "School Contact", "contact"),
)

# Actions answered per child; a parent with several children picks one first
PER_STUDENT_ACTIONS = {"attendance", "fees"}


class Directory(Protocol):
    async def linked_students(self, phone_number: str) -> List[StudentSummary]: ...

    async def attendance_summary(self, student: StudentSummary, since: date) -> AttendanceSummary: ...

    async def fee_summary(self, student: StudentSummary) -> FeeSummary: ...

    async def school_contact(self, phone_number: str) -> Optional[SchoolContact]: ...


@dataclass(frozen=True)
class MenuNode:
    """Where replayed input has got to: the root, or a student picker for an action."""
    option: Optional[MenuOption] = None
    students: Tuple[StudentSummary, ...] = ()

    @property
    def is_root(self) -> bool:
        return self.option is None


ROOT = MenuNode()


def parse_input(text: Optional[str]) -> List[str]:
    """Split cumulative USSD input into keystroke groups, dropping empty ones."""
    if not text:
        return []
    return [segment.strip() for segment in text.split("*") if segment.strip()]


def format_options(options) -> str:
    return "\n".join(f"{key}. {label}" for key, label in options)


def main_menu_prompt() -> str:
    return f"{WELCOME_TITLE}\n" + format_options((o.key, o.label) for o in MAIN_MENU)


def student_menu_prompt(node: MenuNode, budget: Optional[int] = None) -> str:
    """
    Numbered list of children. When full names do not fit in ``budget``
    characters, first names are used, then first names cut to an equal share,
    so every entry and the back option stay on screen.
    """
    title = MESSAGES["select_student"].format(title=node.option.label)

    def render(names) -> str:
        options = format_options((str(i + 1), name) for i, name in enumerate(names))
        return f"{title}\n{options}\n{MESSAGES['back']}"

    names = [s.name for s in node.students]
    prompt = render(names)
    if budget is None or len(prompt) <= budget:
        return prompt

    first_names = [(name.split() or [name])[0] for name in names]
    prompt = render(first_names)
    if len(prompt) <= budget:
        return prompt

    share = max((budget - len(render([""] * len(names)))) // len(names), 2)
    return render([truncate_text(name, share, suffix=".") for name in first_names])


def find_option(segment: str) -> Optional[MenuOption]:
    return next((o for o in MAIN_MENU if o.key == segment), None)


def pick_student(students: Tuple[StudentSummary, ...], segment: str) -> Optional[StudentSummary]:
    if segment.isdigit() and 1 <= int(segment) <= len(students):
        return students[int(segment) - 1]
    return None


def format_attendance(summary: AttendanceSummary, window_days: int = ATTENDANCE_WINDOW_DAYS) -> str:
    student = summary.student
    if summary.total == 0 and summary.last_date is None:
        return MESSAGES["no_attendance"].format(name=student.name)
    heading = f"Attendance for {student.name}"
    if student.grade:
        heading += f" (Grade {student.grade})"
    lines = [
        heading,
        f"Last {window_days} days: {summary.present} present, "
        f"{summary.absent} absent, {summary.late} late",
    ]
    if summary.last_date:
        lines.append(f"Last marked: {format_date(summary.last_date)} - {(summary.last_status or '').capitalize()}")
    return "\n".join(lines)


def format_fees(summary: FeeSummary) -> str:
    student = summary.student
    if summary.payment_count == 0 and summary.term_fee is None:
        return MESSAGES["no_fees"].format(name=student.name)
    lines = [f"Fees for {student.name}", f"Paid: {format_currency(summary.total_paid)}"]
    if summary.balance is not None:
        lines.append(f"Balance: {format_currency(summary.balance)}")
    if summary.last_payment_amount is not None:
        lines.append(
            f"Last payment: {format_currency(summary.last_payment_amount)} "
            f"on {format_date(summary.last_payment_date)}"
        )
    return "\n".join(lines)


def format_contact(contact: SchoolContact) -> str:
    lines = [contact.name]
    if contact.phone:
        lines.append(f"Tel: {contact.phone}")
    if contact.email:
        lines.append(f"Email: {contact.email}")
    if contact.address:
        lines.append(f"Address: {contact.address}")
    return "\n".join(lines)


class USSDMenu:
    """Stateless menu: the same (text, phone number) always gives the same reply."""

    def __init__(
        self,
        directory: Directory,
        today: Callable[[], date] = date.today,
        max_length: Optional[int] = None,
    ):
        self.directory = directory
        self.today = today
        self.max_length = max_length or settings.USSD_MAX_LENGTH

    async def respond(self, text: Optional[str], phone_number: str) -> USSDResponse:
        segments = parse_input(text)
        node = ROOT
        invalid = False

        for index, segment in enumerate(segments):
            is_last = index == len(segments) - 1

            if node.is_root:
                if segment == BACK:
                    return self._end(MESSAGES["goodbye"])
                option = find_option(segment)
                if option is None:
                    # Unknown digits stay in the replayed text; skip them
                    invalid = True
                    continue
                invalid = False

                if option.action not in PER_STUDENT_ACTIONS:
                    if not is_last:
                        return self._invalid(node)
                    return await self._school_contact(phone_number)

                try:
                    students = await self.directory.linked_students(phone_number)
                except Exception:
                    logger.exception("Student lookup failed for USSD caller")
                    return self._end(MESSAGES["lookup_failed"])
                if not students:
                    return self._end(MESSAGES["no_records"])
                if len(students) == 1:
                    if not is_last:
                        return self._invalid(node)
                    return await self._student_action(option, students[0])
                node = MenuNode(option=option, students=tuple(students))

            else:
                if segment == BACK:
                    node = ROOT
                    invalid = False
                    continue
                student = pick_student(node.students, segment)
                if student is None:
                    invalid = True
                    continue
                if not is_last:
                    return self._invalid(node)
                return await self._student_action(node.option, student)

        if invalid:
            return self._invalid(node)
        return self._con(self._prompt(node))

    # Leaf actions

    async def _student_action(self, option: MenuOption, student: StudentSummary) -> USSDResponse:
        try:
            if option.action == "attendance":
                since = self.today() - timedelta(days=ATTENDANCE_WINDOW_DAYS)
                summary = await self.directory.attendance_summary(student, since)
                return self._end(format_attendance(summary))
            summary = await self.directory.fee_summary(student)
            return self._end(format_fees(summary))
        except Exception:
            logger.exception(f"USSD {option.action} lookup failed for student {student.id}")
            return self._end(MESSAGES["lookup_failed"])

    async def _school_contact(self, phone_number: str) -> USSDResponse:
        try:
            contact = await self.directory.school_contact(phone_number)
        except Exception:
            logger.exception("School contact lookup failed for USSD caller")
            return self._end(MESSAGES["lookup_failed"])
        if contact is None:
            return self._end(MESSAGES["no_contact"])
        return self._end(format_contact(contact))

    # Screens

    def _prompt(self, node: MenuNode, reserved: int = 0) -> str:
        if node.is_root:
            return main_menu_prompt()
        return student_menu_prompt(node, budget=self.max_length - len("CON ") - reserved)

    def _invalid(self, node: MenuNode) -> USSDResponse:
        notice = f"{MESSAGES['invalid']}\n"
        return self._con(notice + self._prompt(node, reserved=len(notice)))

    @staticmethod
    def _con(text: str) -> USSDResponse:
        return USSDResponse(text=text, status=USSDStatus.CONTINUE)

    @staticmethod
    def _end(text: str) -> USSDResponse:
        return USSDResponse(text=text, status=USSDStatus.COMPLETED)
