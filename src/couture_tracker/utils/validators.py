"""
Input validation helpers for workflow operations.

Validators return (is_valid, error_message) tuples; services collect the
messages and raise a single ValidationError so that a failed call names every
offending field at once.
"""

from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Optional, Tuple

from .constants import (
    ERROR_INVALID_DATE,
    ERROR_INVALID_POSITIVE,
    ERROR_INVALID_WHOLE,
    ERROR_REQUIRED_FIELD,
)


def validate_required_string(value: Optional[str], field_name: str = "Field") -> Tuple[bool, str]:
    """
    Validate that a string field is not empty.

    Args:
        value: The string value to validate
        field_name: Name of the field for error messages

    Returns:
        Tuple of (is_valid, error_message)
    """
    if value is None or (isinstance(value, str) and value.strip() == ""):
        return False, f"{field_name}: {ERROR_REQUIRED_FIELD}"
    return True, ""


def validate_positive_number(value: Any, field_name: str = "Field") -> Tuple[bool, str]:
    """
    Validate that a value is a number greater than zero.

    Args:
        value: The value to validate (int, float, Decimal or numeric string)
        field_name: Name of the field for error messages

    Returns:
        Tuple of (is_valid, error_message)
    """
    if value is None:
        return False, f"{field_name}: {ERROR_REQUIRED_FIELD}"
    try:
        number = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return False, f"{field_name}: {ERROR_INVALID_POSITIVE}"
    if not number.is_finite() or number <= 0:
        return False, f"{field_name}: {ERROR_INVALID_POSITIVE}"
    return True, ""


def validate_positive_whole_number(value: Any, field_name: str = "Field") -> Tuple[bool, str]:
    """
    Validate that a value is a whole number greater than zero.

    Accepts ints and numeric strings without a fractional part ("3", "3.0");
    rejects "1.5" and booleans.
    """
    if value is None:
        return False, f"{field_name}: {ERROR_REQUIRED_FIELD}"
    if isinstance(value, bool):
        return False, f"{field_name}: {ERROR_INVALID_WHOLE}"
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return False, f"{field_name}: {ERROR_INVALID_WHOLE}"
    if not number.is_finite() or number <= 0 or number != number.to_integral_value():
        return False, f"{field_name}: {ERROR_INVALID_WHOLE}"
    return True, ""


def validate_optional_date(value: Any, field_name: str = "Field") -> Tuple[bool, str]:
    """Validate an optional date given as a date or an ISO string."""
    if value is None or isinstance(value, date):
        return True, ""
    if isinstance(value, str):
        if not value.strip():
            return True, ""
        try:
            date.fromisoformat(value.strip())
        except ValueError:
            return False, f"{field_name}: {ERROR_INVALID_DATE}"
        return True, ""
    return False, f"{field_name}: {ERROR_INVALID_DATE}"


def validate_choice(value: Optional[str], choices: Iterable[str], field_name: str) -> Tuple[bool, str]:
    """Validate that value is one of the allowed codes."""
    choices = list(choices)
    if value is None or value == "":
        return False, f"{field_name}: {ERROR_REQUIRED_FIELD}"
    if value not in choices:
        return False, f"{field_name}: '{value}' is not one of {', '.join(choices)}"
    return True, ""


def normalize_section_name(name: str) -> str:
    """Section keys are stored lower-case and trimmed ("Kaftan " -> "kaftan")."""
    return (name or "").strip().lower()


def normalize_section_names(names: Iterable[str]) -> List[str]:
    """Normalize and de-duplicate section names, keeping first-seen order."""
    seen = []
    for name in names or []:
        key = normalize_section_name(name)
        if key and key not in seen:
            seen.append(key)
    return seen
