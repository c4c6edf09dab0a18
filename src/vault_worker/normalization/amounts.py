"""
Numeric and date parsing for upstream extraction payloads.

All money is Decimal rounded half-up to minor units (0.01) before any
arithmetic, so integrity checks compare like with like.
"""

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

MINOR_UNIT = Decimal("0.01")

# Tolerance for every integrity comparison
MONEY_TOLERANCE = Decimal("0.01")

_CURRENCY_CODES = re.compile(r"(GBP|USD|EUR)", re.IGNORECASE)
_CURRENCY_SYMBOLS = re.compile(r"[£$€,\s]")
_CREDIT_DEBIT_SUFFIX = re.compile(r"(CR|DR)$", re.IGNORECASE)

DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d.%m.%Y",
    "%d %B %Y",
    "%d %b %Y",
    "%B %d, %Y",
)


def round_money(value: Decimal) -> Decimal:
    """Round to minor units, half-up."""
    return value.quantize(MINOR_UNIT, rounding=ROUND_HALF_UP)


def parse_amount(value: Any) -> Decimal | None:
    """
    Parse a monetary value.

    Accepts numbers and strings such as "£1,234.56", "GBP 12", "(45.00)",
    "-3.2", "120.00 DR". Parenthesised values and a DR suffix are negative.

    Returns:
        Decimal rounded to 0.01, or None if the value is missing or not a
        finite number.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, Decimal):
        parsed = value
    elif isinstance(value, (int, float)):
        parsed = Decimal(str(value))
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        negative = False
        suffix = _CREDIT_DEBIT_SUFFIX.search(text)
        if suffix:
            negative = suffix.group(1).upper() == "DR"
            text = text[: suffix.start()]
        text = _CURRENCY_CODES.sub("", text)
        text = _CURRENCY_SYMBOLS.sub("", text)
        if text.startswith("(") and text.endswith(")"):
            negative = not negative
            text = text[1:-1]
        text = text.replace("(", "-").replace(")", "")
        if not text:
            return None
        try:
            parsed = Decimal(text)
        except InvalidOperation:
            return None
        if negative:
            parsed = -parsed
    else:
        return None

    if not parsed.is_finite():
        return None
    return round_money(parsed)


def parse_date(value: Any) -> str | None:
    """Parse a date into ISO YYYY-MM-DD, or None."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()

    text = " ".join(str(value).split())
    if not text:
        return None

    # ISO timestamps: keep the date part
    if len(text) >= 10 and text[4] == "-" and text[7] == "-":
        try:
            return date.fromisoformat(text[:10]).isoformat()
        except ValueError:
            pass

    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def sum_money(values: list[Decimal]) -> Decimal:
    return round_money(sum(values, Decimal("0")))
