"""Normalization of Kenyan mobile numbers to the 2547XXXXXXXX form."""
import re
from typing import Any

from core.exceptions import InvalidPhone

COUNTRY_CODE = "254"

_NON_DIGITS = re.compile(r"\D")


def normalize_phone(value: Any) -> str:
    """
    Map a local or international phone number to its canonical form.

    Accepted shapes after stripping non-digits:
    - ``7XXXXXXXX`` (9 digits)
    - ``07XXXXXXXX`` (10 digits)
    - ``254XXXXXXXXX`` (12 digits)

    Args:
        value: Phone number as a string or number

    Returns:
        str: Canonical phone number

    Raises:
        InvalidPhone: If the input matches none of the accepted shapes
    """
    if value is None or isinstance(value, bool):
        raise InvalidPhone()

    digits = _NON_DIGITS.sub("", str(value))

    if len(digits) == 9 and digits.startswith("7"):
        return COUNTRY_CODE + digits
    if len(digits) == 10 and digits.startswith("07"):
        return COUNTRY_CODE + digits[1:]
    if len(digits) == 12 and digits.startswith(COUNTRY_CODE):
        return digits

    raise InvalidPhone()


def is_valid_phone(value: Any) -> bool:
    try:
        normalize_phone(value)
    except InvalidPhone:
        return False
    return True
