"""
Coercion -- whitelist-and-coerce helpers for raw store field bags.

The external record store returns every property as loosely-typed data:
booleans as ``"true"``/``"Sí"``, dates as ``YYYY-MM-DD``, ISO timestamps or
epoch milliseconds, numbers as strings with thousands separators.  These
helpers turn such values into Python types once, at the repository boundary,
so domain code only ever sees ``bool``/``Decimal``/``date``.

All parsers return ``None`` for absent or blank input; none of them raise.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

_TRUE_WORDS = frozenset({"true", "1", "yes", "y", "si", "sí", "on"})
_FALSE_WORDS = frozenset({"false", "0", "no", "n", "off"})


def is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def parse_bool(value: Any) -> bool | None:
    """Tri-state boolean: ``None`` when the field is absent or blank."""
    if is_blank(value):
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    text = str(value).strip().lower()
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    return None


def parse_flag(value: Any) -> bool:
    """Two-state boolean where absent means False."""
    return parse_bool(value) is True


def parse_decimal(value: Any) -> Decimal | None:
    if is_blank(value):
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        return Decimal(str(value))
    text = str(value).strip().replace(" ", "")
    # "1.234,5" and "1,234.5" both appear in the wild
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".")
    try:
        result = Decimal(text)
    except InvalidOperation:
        return None
    return result if result.is_finite() else None


def parse_int(value: Any) -> int | None:
    number = parse_decimal(value)
    if number is None:
        return None
    return int(number)


def parse_ymd(value: Any) -> date | None:
    """Parse a calendar date.

    Accepts ``date``/``datetime`` objects, ``YYYY-MM-DD`` strings, ISO-8601
    timestamps and epoch milliseconds (as int or digit string).  Anything
    else yields ``None``.
    """
    if is_blank(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return _from_epoch_ms(int(value))
    text = str(value).strip()
    if text.isdigit() and len(text) > 8:
        return _from_epoch_ms(int(text))
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def _from_epoch_ms(ms: int) -> date | None:
    try:
        return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).date()
    except (OverflowError, OSError, ValueError):
        return None


def parse_str(value: Any) -> str | None:
    if is_blank(value):
        return None
    return str(value).strip()


def to_field(value: Any) -> Any:
    """Serialize a typed value back into the store's field representation.

    ``None`` is passed through and means "clear this property".
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value.normalize(), "f") if value == value.to_integral() else str(value)
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    return value


def to_fields(patch: Mapping[str, Any]) -> dict[str, Any]:
    return {name: to_field(val) for name, val in patch.items()}


def pick(fields: Mapping[str, Any], whitelist: frozenset[str]) -> dict[str, Any]:
    """Keep only whitelisted properties."""
    return {k: v for k, v in fields.items() if k in whitelist}
