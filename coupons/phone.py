import re

from .errors import ValidationError

E164_PATTERN = re.compile(r"^\+\d{1,15}$")
NON_DIGITS = re.compile(r"\D")

DEFAULT_COUNTRY_CODE = "90"
NATIONAL_NUMBER_LENGTH = 10


def is_e164(phone: str) -> bool:
    return bool(phone) and bool(E164_PATTERN.match(phone))


def normalize_phone(phone: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """Normalize a phone number to E.164.

    Accepts +905551234567, 905551234567, 05551234567 and 5551234567; numbers
    without a country code get ``country_code``.
    """
    if not phone or not phone.strip():
        raise ValidationError("Phone number is required")

    cleaned = phone.strip()
    has_plus = cleaned.startswith("+")
    digits = NON_DIGITS.sub("", cleaned)
    if not digits:
        raise ValidationError(f"Phone number contains no digits: {phone!r}")

    if has_plus or digits.startswith(country_code):
        normalized = "+" + digits
    elif digits.startswith("0"):
        normalized = "+" + country_code + digits[1:]
    elif len(digits) == NATIONAL_NUMBER_LENGTH:
        normalized = "+" + country_code + digits
    else:
        normalized = "+" + digits

    if not is_e164(normalized):
        raise ValidationError(f"Invalid phone number format: {phone!r}")

    prefix = "+" + country_code
    if normalized.startswith(prefix) and len(normalized) != len(prefix) + NATIONAL_NUMBER_LENGTH:
        raise ValidationError(
            f"Invalid phone number: {phone!r} (expected {NATIONAL_NUMBER_LENGTH} digits after {prefix})"
        )
    return normalized
