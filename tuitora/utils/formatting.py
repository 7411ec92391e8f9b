"""Text formatting for USSD screens and SMS bodies."""
from datetime import date, datetime
from decimal import Decimal
from typing import Union
from tuitora.config import settings


def format_currency(amount: Union[Decimal, int, float], currency: str = None) -> str:
    """KES 1,234 or KES 1,234.50 (cents only when non-zero)."""
    currency = currency or settings.CURRENCY
    amount = Decimal(str(amount))
    if amount == amount.to_integral_value():
        return f"{currency} {amount:,.0f}"
    return f"{currency} {amount:,.2f}"


def format_date(value: Union[date, datetime, None]) -> str:
    if value is None:
        return "-"
    if isinstance(value, datetime):
        value = value.date()
    return value.strftime("%d %b %Y")


def truncate_text(text: str, max_length: int = 100, suffix: str = "...") -> str:
    if not text or len(text) <= max_length:
        return text
    return text[: max_length - len(suffix)] + suffix
