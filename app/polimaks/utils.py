from __future__ import annotations

import math
import re
from datetime import date, timedelta

_NON_DIGITS = re.compile(r"\D")
_MONTH_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")

PHONE_DIGITS = 9


def raw_phone(value: str | None) -> str:
    """Digits only, truncated to the 9-digit local number."""
    if not isinstance(value, str):
        return ""
    return _NON_DIGITS.sub("", value)[:PHONE_DIGITS]


def format_phone(value: str | None) -> str:
    """`901234567` -> `90 123-45-67`; partial numbers are formatted as far as they go."""
    digits = raw_phone(value)
    formatted = digits[0:2]
    if digits[2:5]:
        formatted += f" {digits[2:5]}"
    if digits[5:7]:
        formatted += f"-{digits[5:7]}"
    if digits[7:9]:
        formatted += f"-{digits[7:9]}"
    return formatted.strip()


def validate_phone(value: str | None, *, required: bool = True) -> str | None:
    digits = raw_phone(value)
    if not digits and not required:
        return None
    if len(digits) != PHONE_DIGITS:
        return f"Phone must have {PHONE_DIGITS} digits."
    return None


def parse_date(value) -> date | None:
    if isinstance(value, date):
        return value
    v = (str(value) if value is not None else "").strip()
    if not v:
        return None
    try:
        return date.fromisoformat(v[:10])
    except ValueError:
        return None


def parse_month(value) -> str | None:
    v = (str(value) if value is not None else "").strip()[:7]
    return v if _MONTH_RE.match(v) else None


def parse_float(value) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        v = value
    else:
        v = str(value).strip().replace(" ", "").replace(",", ".")
        if not v:
            return None
    try:
        f = float(v)
    except (ValueError, OverflowError):
        return None
    if not math.isfinite(f):
        return None
    return f


def parse_int(value) -> int | None:
    f = parse_float(value)
    if f is None:
        return None
    return int(f)


def clean_str(value) -> str | None:
    v = (str(value) if value is not None else "").strip()
    return v or None


def validate_date_range(start: date | None, end: date | None) -> str | None:
    if start and end and end < start:
        return "End date cannot be before start date."
    return None


def day_before(d: date) -> date:
    return d - timedelta(days=1)


def current_month(today: date | None = None) -> str:
    return (today or date.today()).strftime("%Y-%m")


def month_of(d: date | None) -> str | None:
    return d.strftime("%Y-%m") if d else None
