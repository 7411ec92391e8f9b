import re
from tuitora.config import settings


def normalize_phone_number(phone_number: str, country_code: str = None) -> str:
    """Convert phone number to E.164 format (defaults to Kenya, +254)."""
    if not phone_number:
        return ""
    country_code = country_code or settings.DEFAULT_COUNTRY_CODE
    phone_number = re.sub(r"[\s\-()]", "", phone_number.strip())
    if phone_number.startswith("+"):
        return phone_number
    if phone_number.startswith("00"):
        return "+" + phone_number[2:]
    if phone_number.startswith("0"):
        return f"+{country_code}" + phone_number[1:]
    if phone_number.startswith(country_code):
        return "+" + phone_number
    return f"+{country_code}" + phone_number


def phone_number_variants(phone_number: str, country_code: str = None) -> list[str]:
    """All the local shapes a stored number may take (+2547.., 2547.., 07.., 7..)."""
    country_code = country_code or settings.DEFAULT_COUNTRY_CODE
    normalized = normalize_phone_number(phone_number, country_code)
    if not normalized:
        return []
    prefix = f"+{country_code}"
    if not normalized.startswith(prefix):
        return [normalized]
    local = normalized[len(prefix):]
    return [normalized, normalized[1:], "0" + local, local]


def is_valid_kenyan_mobile(phone_number: str) -> bool:
    return bool(re.fullmatch(r"\+254\d{9}", phone_number or ""))


def mask_phone_number(phone_number: str) -> str:
    """Keep the last three digits for logs."""
    if not phone_number:
        return ""
    return "*" * max(len(phone_number) - 3, 0) + phone_number[-3:]
