"""
Field validators shared by registration, visit intake and stock intake.

Each validator returns the cleaned value or raises ValidationError naming
the offending field. Optional fields accept None / blank and return None.
"""

import re
from datetime import date
from decimal import Decimal, InvalidOperation

from core.errors import ValidationError

_BP_RE = re.compile(r"^(\d{1,4})/(\d{1,4})$")
_LETTERS_SPACES_RE = re.compile(r"^[A-Za-zÀ-ſ\s]+$")
_NUMERIC_RE = re.compile(r"^\d+(\.\d*)?$")


def _blank(value) -> bool:
    return value is None or str(value).strip() == ""


def normalize_text(value) -> str:
    """Collapse runs of whitespace; None becomes ""."""
    return " ".join(str(value or "").split())


def match_key(value) -> str:
    """Case- and whitespace-insensitive key for medicine, class and form names."""
    return normalize_text(value).casefold()


def validate_blood_pressure(value, field: str = "blood_pressure") -> str | None:
    if _blank(value):
        return None
    text = str(value).strip()
    m = _BP_RE.match(text)
    if not m:
        raise ValidationError(field, 'Blood pressure must look like "120/80".')
    left, right = m.groups()
    if len(left) >= 4 or len(right) >= 4:
        raise ValidationError(field, "4 digits is invalid for blood pressure.")
    systolic, diastolic = int(left), int(right)
    if systolic < diastolic:
        raise ValidationError(field, "Systolic should be >= diastolic.")
    if systolic < 70 or systolic > 260 or diastolic < 40 or diastolic > 160:
        raise ValidationError(field, "Blood pressure values look out of range.")
    return f"{systolic}/{diastolic}"


def _bounded_decimal(value, field: str, label: str, max_digits: int, max_decimals: int,
                     low: float, high: float, low_inclusive: bool = True) -> float | None:
    if _blank(value):
        return None
    text = str(value).strip()
    if text.endswith("."):
        text = text[:-1]
    if not _NUMERIC_RE.match(text):
        raise ValidationError(field, f"{label} is not a number.")
    whole, _, frac = text.partition(".")
    if len(whole) + len(frac) > max_digits or len(frac) > max_decimals:
        raise ValidationError(
            field, f"{label} must be up to {max_digits} digits with at most {max_decimals} decimal(s)."
        )
    try:
        number = float(Decimal(text))
    except InvalidOperation:
        raise ValidationError(field, f"{label} is not a number.")
    too_low = number < low if low_inclusive else number <= low
    if too_low or number > high:
        raise ValidationError(field, f"{label} must be {low:g}-{high:g}.")
    return number


def validate_height_cm(value, field: str = "height_cm") -> float | None:
    return _bounded_decimal(value, field, "Height", 5, 1, 30, 300)


def validate_weight_kg(value, field: str = "weight_kg") -> float | None:
    return _bounded_decimal(value, field, "Weight", 4, 2, 0, 500, low_inclusive=False)


def validate_temperature_c(value, field: str = "temperature_c") -> float | None:
    return _bounded_decimal(value, field, "Temperature", 4, 2, 30, 45)


def validate_phone(value, field: str = "contact_number", required: bool = False) -> str | None:
    """Accept the 10 digits typed after +63 (or a local 09xx number); store local 11 digits."""
    if _blank(value):
        if required:
            raise ValidationError(field, "Phone number is required.")
        return None
    digits = re.sub(r"\D", "", str(value))
    if digits.startswith("63") and len(digits) == 12:
        digits = digits[2:]
    elif digits.startswith("0") and len(digits) == 11:
        digits = digits[1:]
    if len(digits) != 10 or not digits.startswith("9"):
        raise ValidationError(field, "Phone number must be 10 digits after +63 and start with 9.")
    return "0" + digits


def validate_name(value, field: str, required: bool = True) -> str | None:
    if _blank(value):
        if required:
            raise ValidationError(field, "This field is required.")
        return None
    text = " ".join(str(value).split())
    if not _LETTERS_SPACES_RE.match(text):
        raise ValidationError(field, "Letters and spaces only.")
    return text


def validate_family_number(value, field: str = "family_number") -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError(field, "Family number is required.")
    if not text.isdigit():
        raise ValidationError(field, "Family number must contain numbers only.")
    return text.zfill(3)


def validate_birthdate(value: date | None, today: date, field: str = "birthdate") -> date:
    if value is None:
        raise ValidationError(field, "Birthdate is required.")
    if value > today:
        raise ValidationError(field, "Birthdate cannot be in the future.")
    if age_on(value, today) > 120:
        raise ValidationError(field, "Birthdate implies age over 120.")
    return value


def age_on(birthdate: date, today: date) -> int:
    years = today.year - birthdate.year
    if (today.month, today.day) < (birthdate.month, birthdate.day):
        years -= 1
    return max(0, years)


def validate_quantity(value, field: str = "quantity") -> int:
    """Positive whole number; strings such as "10" are accepted."""
    if isinstance(value, bool) or _blank(value):
        raise ValidationError(field, "Quantity must be a positive whole number.")
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        raise ValidationError(field, "Quantity must be a positive whole number.")
    if not number.is_finite() or number <= 0 or number != number.to_integral_value():
        raise ValidationError(field, "Quantity must be a positive whole number.")
    return int(number)


def validate_required_text(value, field: str, label: str) -> str:
    text = (value or "").strip()
    if not text:
        raise ValidationError(field, f"{label} is required.")
    return text
