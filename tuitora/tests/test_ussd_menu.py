from datetime import date

import pytest

from tuitora.schemas import StudentSummary, USSDStatus
from tuitora.services.africastalking_service import format_ussd_response
from tuitora.services.ussd_menu import USSDMenu, parse_input, main_menu_prompt
from tuitora.tests.fakes import (
    FakeDirectory,
    PARENT_ONE_CHILD,
    PARENT_TWO_CHILDREN,
    UNKNOWN_PHONE,
)

ROOT_PROMPT = "Welcome to Tuitora\n1. Check Attendance\n2. Check Fees\n3. School Contact"
JANE_ATTENDANCE = (
    "Attendance for Jane Wanjiru (Grade 4)\n"
    "Last 30 days: 18 present, 2 absent, 1 late\n"
    "Last marked: 14 Oct 2026 - Present"
)
JANE_FEES = (
    "Fees for Jane Wanjiru\n"
    "Paid: KES 12,000\n"
    "Balance: KES 3,000\n"
    "Last payment: KES 2,000 on 14 Oct 2026"
)
STUDENT_PICKER = "Check Attendance - select student:\n1. Amina Hassan\n2. Brian Otieno\n0. Back"


@pytest.fixture
def menu(directory):
    return USSDMenu(directory, today=lambda: date(2026, 10, 17))


# ------------------------
# Parsing
# ------------------------

def test_parse_input_drops_empty_segments():
    assert parse_input("") == []
    assert parse_input(None) == []
    assert parse_input("1") == ["1"]
    assert parse_input("1*2") == ["1", "2"]
    assert parse_input("1**2*") == ["1", "2"]
    assert parse_input(" 1 * 2 ") == ["1", "2"]


def test_main_menu_prompt():
    assert main_menu_prompt() == ROOT_PROMPT


# ------------------------
# Traversal
# ------------------------

@pytest.mark.asyncio
async def test_empty_text_shows_main_menu(menu):
    reply = await menu.respond("", PARENT_ONE_CHILD)
    assert reply.status == USSDStatus.CONTINUE
    assert reply.text == ROOT_PROMPT


@pytest.mark.asyncio
async def test_attendance_is_a_leaf_for_single_child(menu):
    reply = await menu.respond("1", PARENT_ONE_CHILD)
    assert reply.status == USSDStatus.COMPLETED
    assert reply.text == JANE_ATTENDANCE


@pytest.mark.asyncio
async def test_fees_is_a_leaf_for_single_child(menu):
    reply = await menu.respond("2", PARENT_ONE_CHILD)
    assert reply.status == USSDStatus.COMPLETED
    assert reply.text == JANE_FEES


@pytest.mark.asyncio
async def test_school_contact(menu):
    reply = await menu.respond("3", PARENT_ONE_CHILD)
    assert reply.status == USSDStatus.COMPLETED
    assert reply.text == (
        "Tuitora Dev School\n"
        "Tel: 0700123456\n"
        "Email: office@tuitora.dev\n"
        "Address: Ngong Road, Nairobi"
    )


@pytest.mark.asyncio
async def test_school_contact_missing(menu):
    reply = await menu.respond("3", UNKNOWN_PHONE)
    assert reply.status == USSDStatus.COMPLETED
    assert "No records found" in reply.text


@pytest.mark.asyncio
async def test_several_children_adds_student_picker(menu):
    reply = await menu.respond("1", PARENT_TWO_CHILDREN)
    assert reply.status == USSDStatus.CONTINUE
    assert reply.text == STUDENT_PICKER


@pytest.mark.asyncio
async def test_student_picker_selects_child(menu, directory):
    reply = await menu.respond("1*2", PARENT_TWO_CHILDREN)
    assert reply.status == USSDStatus.COMPLETED
    assert reply.text.startswith("Attendance for Brian Otieno (Grade 6)")
    assert ("attendance_summary", 2) in directory.calls


@pytest.mark.asyncio
async def test_child_without_attendance_records(menu):
    reply = await menu.respond("1*1", PARENT_TWO_CHILDREN)
    assert reply.status == USSDStatus.COMPLETED
    assert reply.text == "No attendance records found for Amina Hassan."


@pytest.mark.asyncio
async def test_back_from_student_picker(menu):
    reply = await menu.respond("1*0", PARENT_TWO_CHILDREN)
    assert reply.status == USSDStatus.CONTINUE
    assert reply.text == ROOT_PROMPT

    reply = await menu.respond("1*0*2", PARENT_TWO_CHILDREN)
    assert reply.status == USSDStatus.CONTINUE
    assert reply.text.startswith("Check Fees - select student:")

    reply = await menu.respond("1*0*2*2", PARENT_TWO_CHILDREN)
    assert reply.status == USSDStatus.COMPLETED
    assert reply.text.startswith("Fees for Brian Otieno")


@pytest.mark.asyncio
async def test_zero_at_root_ends_session(menu):
    reply = await menu.respond("0", PARENT_ONE_CHILD)
    assert reply.status == USSDStatus.COMPLETED
    assert reply.text == "Thank you for using Tuitora. Goodbye."


# ------------------------
# Invalid input
# ------------------------

@pytest.mark.asyncio
async def test_invalid_root_option_reprompts(menu):
    reply = await menu.respond("9", PARENT_ONE_CHILD)
    assert reply.status == USSDStatus.CONTINUE
    assert reply.text == f"Invalid option.\n{ROOT_PROMPT}"


@pytest.mark.asyncio
async def test_valid_digit_after_invalid_one_still_resolves(menu):
    reply = await menu.respond("9*1", PARENT_ONE_CHILD)
    assert reply.status == USSDStatus.COMPLETED
    assert reply.text == JANE_ATTENDANCE

    reply = await menu.respond("9*x*2", PARENT_ONE_CHILD)
    assert reply.text == JANE_FEES


@pytest.mark.asyncio
async def test_invalid_student_choice_reprompts_picker(menu):
    reply = await menu.respond("1*5", PARENT_TWO_CHILDREN)
    assert reply.status == USSDStatus.CONTINUE
    assert reply.text == f"Invalid option.\n{STUDENT_PICKER}"

    reply = await menu.respond("1*5*2", PARENT_TWO_CHILDREN)
    assert reply.status == USSDStatus.COMPLETED
    assert reply.text.startswith("Attendance for Brian Otieno")


@pytest.mark.asyncio
async def test_input_beyond_leaf_is_invalid(menu):
    reply = await menu.respond("1*1", PARENT_ONE_CHILD)
    assert reply.status == USSDStatus.CONTINUE
    assert reply.text == f"Invalid option.\n{ROOT_PROMPT}"

    reply = await menu.respond("3*1", PARENT_ONE_CHILD)
    assert reply.text == f"Invalid option.\n{ROOT_PROMPT}"

    reply = await menu.respond("1*2*1", PARENT_TWO_CHILDREN)
    assert reply.text == f"Invalid option.\n{STUDENT_PICKER}"


# ------------------------
# Backing data failures
# ------------------------

@pytest.mark.asyncio
async def test_no_linked_students_ends_with_no_records(menu):
    reply = await menu.respond("2", UNKNOWN_PHONE)
    assert reply.status == USSDStatus.COMPLETED
    assert "No records found" in reply.text


@pytest.mark.asyncio
async def test_lookup_error_ends_session_gracefully():
    menu = USSDMenu(FakeDirectory(fail=True), today=lambda: date(2026, 10, 17))
    for text in ("1", "2"):
        reply = await menu.respond(text, PARENT_ONE_CHILD)
        assert reply.status == USSDStatus.COMPLETED
        assert reply.text == "We could not fetch your records right now. Please try again later."


@pytest.mark.asyncio
async def test_summary_error_ends_session_gracefully(menu, directory):
    async def broken(student):
        raise RuntimeError("relation \"payments\" does not exist")

    directory.fee_summary = broken
    reply = await menu.respond("2", PARENT_ONE_CHILD)
    assert reply.status == USSDStatus.COMPLETED
    assert "try again later" in reply.text


# ------------------------
# Long student lists
# ------------------------

BIG_FAMILY = "+254711000006"


def family(directory, names):
    directory.students[BIG_FAMILY] = [
        StudentSummary(id=10 + i, name=name, grade="5", school_id=1) for i, name in enumerate(names)
    ]


@pytest.mark.asyncio
async def test_long_names_fall_back_to_first_names(menu, directory):
    family(directory, [f"Wanjiku{i} Kamau-Njoroge Wambui" for i in range(1, 7)])

    reply = await menu.respond("1", BIG_FAMILY)
    wire = format_ussd_response(reply)
    assert len(wire) <= 182
    assert wire.endswith("\n6. Wanjiku6\n0. Back")
    assert "1. Wanjiku1\n" in wire

    reply = await menu.respond("1*6", BIG_FAMILY)
    assert reply.text.startswith("Attendance for Wanjiku6 Kamau-Njoroge Wambui")


@pytest.mark.asyncio
async def test_many_children_share_the_screen(menu, directory):
    family(directory, [f"Bartholomew{i:02d} Ochieng" for i in range(1, 13)])

    for text in ("1", "1*99"):
        wire = format_ussd_response(await menu.respond(text, BIG_FAMILY))
        assert len(wire) <= 182
        assert "\n12. " in wire
        assert wire.endswith("\n0. Back")


# ------------------------
# Properties
# ------------------------

@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "1", "2", "3", "9", "9*1", "1*1", "1*0", "1*2", "0"])
@pytest.mark.parametrize("phone", [PARENT_ONE_CHILD, PARENT_TWO_CHILDREN, UNKNOWN_PHONE])
async def test_same_text_gives_same_reply(menu, text, phone):
    first = await menu.respond(text, phone)
    second = await menu.respond(text, phone)
    assert first == second


@pytest.mark.asyncio
async def test_leaf_always_terminates(menu):
    for phone in (PARENT_ONE_CHILD, UNKNOWN_PHONE):
        for text in ("1", "2", "3"):
            reply = await menu.respond(text, phone)
            assert reply.status == USSDStatus.COMPLETED
