"""Value normalization for extracted fields by declared catalog type.

Turns the raw strings an extraction workflow returns into typed values:
dates become ISO ``YYYY-MM-DD``, amounts become floats, yes/no answers
become booleans. Values that cannot be parsed normalize to ``None`` while
the raw value is kept untouched.
"""

import re
from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from src.models.domain import FieldType
from src.utils.logger import get_logger

logger = get_logger(__name__)


DATE_FORMATS: list[str] = [
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%m/%d/%Y",
    "%d-%m-%Y",
    "%m-%d-%Y",
    "%d.%m.%Y",
    "%B %d, %Y",
    "%b %d, %Y",
    "%d %B %Y",
    "%d %b %Y",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%SZ",
]

TRUE_WORDS = frozenset({"true", "yes", "y", "si", "sí", "1", "x", "checked"})
FALSE_WORDS = frozenset({"false", "no", "n", "0", "", "unchecked"})

_CURRENCY_RE = re.compile(r"[^\d,.\-]")


def normalize_text(value: Any) -> str | None:
    """Collapse whitespace; empty strings normalize to ``None``."""
    if value is None:
        return None
    text = " ".join(str(value).split())
    return text or None


def normalize_numeric(value: Any) -> float | None:
    """Parse an amount, tolerating currency symbols and thousands separators.

    Both ``1,234.56`` and ``1.234,56`` parse to ``1234.56``. A lone comma
    followed by exactly three digits groups thousands, otherwise it is the
    decimal separator.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        return float(value)

    cleaned = _CURRENCY_RE.sub("", str(value))
    if not cleaned:
        return None

    if "," in cleaned and "." in cleaned:
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif "," in cleaned:
        head, _, tail = cleaned.rpartition(",")
        if len(tail) == 3 and head.lstrip("-").isdigit():
            cleaned = head + tail
        else:
            cleaned = cleaned.replace(",", ".")

    try:
        return float(Decimal(cleaned))
    except InvalidOperation:
        return None


def normalize_boolean(value: Any) -> bool | None:
    """Map common yes/no spellings to a boolean."""
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    word = str(value).strip().lower()
    if word in TRUE_WORDS:
        return True
    if word in FALSE_WORDS:
        return False
    return None


def normalize_date(value: Any) -> str | None:
    """Parse a date in any supported format into ISO ``YYYY-MM-DD``."""
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if value is None:
        return None

    text = str(value).strip()
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


_NORMALIZERS: dict[FieldType, Callable[[Any], Any]] = {
    FieldType.TEXT: normalize_text,
    FieldType.NUMERIC: normalize_numeric,
    FieldType.BOOLEAN: normalize_boolean,
    FieldType.DATE: normalize_date,
}


def normalize_value(value: Any, value_type: FieldType) -> Any:
    """Normalize a raw value according to its declared type.

    Args:
        value: Raw value as returned by extraction or typed by a reviewer.
        value_type: Declared catalog type.

    Returns:
        The normalized value, or ``None`` when it cannot be parsed.
    """
    normalized = _NORMALIZERS[value_type](value)
    if normalized is None and value not in (None, ""):
        logger.debug("Could not normalize %r as %s", value, value_type)
    return normalized
