import re
from datetime import datetime
from decimal import Decimal, InvalidOperation

from config.env import REFUND_EPSILON

ZERO = Decimal("0")

_NON_NUMERIC = re.compile(r"[^\d.\-]")


def to_decimal(value) -> Decimal:
    """
    Coerce a stored or parsed value to Decimal.
    Floats go through str() so 0.1 stays 0.1.
    Raises ValueError for anything that is not a finite number.
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a monetary value: {value!r}")
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float, str)):
        try:
            result = Decimal(str(value).strip())
        except InvalidOperation:
            raise ValueError(f"Not a monetary value: {value!r}")
    else:
        raise ValueError(f"Not a monetary value: {value!r}")

    if not result.is_finite():
        raise ValueError(f"Not a monetary value: {value!r}")
    return result


def amounts_equal(a, b, epsilon: float | None = None) -> bool:
    eps = to_decimal(REFUND_EPSILON if epsilon is None else epsilon)
    return abs(to_decimal(a) - to_decimal(b)) < eps


def amount_differs(a, b, epsilon: float | None = None) -> bool:
    """True when |a - b| meets or exceeds epsilon."""
    return not amounts_equal(a, b, epsilon)


# -----------------------------
# Spreadsheet parsing
# -----------------------------

def parse_amount(value) -> Decimal:
    """'1,234.50' -> 1234.50, blanks and garbage -> 0"""
    if value is None or value == "":
        return ZERO
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        try:
            return to_decimal(value)
        except ValueError:
            return ZERO

    clean = _NON_NUMERIC.sub("", str(value).replace(",", ""))
    try:
        return to_decimal(clean)
    except ValueError:
        return ZERO


def parse_percentage(value) -> Decimal:
    """'12.5%' -> 12.5"""
    if value is None or value == "":
        return ZERO
    clean = str(value).replace("%", "").replace(",", "").strip()
    try:
        return to_decimal(clean)
    except ValueError:
        return ZERO


_DATE_FORMATS = (
    "%d %b %Y %H:%M",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
)


def parse_datetime(value) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value

    text = str(value).strip()
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass

    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None
