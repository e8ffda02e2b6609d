"""
Idempotency key generation utilities.

Billing keys ensure that the same (contract, line item, due date) always
maps to the same fulfillment record and the same invoice, even under
retries, duplicated triggers and manual re-runs.
"""

import re
import secrets
from datetime import date

from billing_kernel.exceptions import KeyComponentError

KEY_SEPARATOR = "::"
LIK_MARKER = "LIK:"

_LIK_SEPARATOR = ":"
_LIK_SUFFIX = re.compile(r"^[0-9a-f]{6}$")


def _check_component(name: str, value: str) -> str:
    text = str(value).strip() if value is not None else ""
    # A leading/trailing ':' would fuse with the separator when joined
    if not text or KEY_SEPARATOR in text or text.startswith(":") or text.endswith(":"):
        raise KeyComponentError(name, text)
    return text


def generate_billing_key(
    contract_id: str,
    line_item_key: str,
    due_date: date,
) -> str:
    """
    Generate the idempotency key for one billing occurrence.

    Format: contract_id::LIK:line_item_key::YYYY-MM-DD

    Fulfillment records and invoices share this key family, so a lookup
    by key always finds the artifacts of exactly one occurrence.

    Raises:
        KeyComponentError: If a component is empty or contains ``::``.

    Example:
        >>> generate_billing_key("9001", "9001:42:a1b2c3", date(2024, 3, 18))
        "9001::LIK:9001:42:a1b2c3::2024-03-18"
    """
    contract = _check_component("contract_id", contract_id)
    lik = _check_component("line_item_key", line_item_key)
    return f"{contract}{KEY_SEPARATOR}{LIK_MARKER}{lik}{KEY_SEPARATOR}{due_date.isoformat()}"


def parse_billing_key(key: str) -> tuple[str, str, date]:
    """
    Parse a billing key into (contract_id, line_item_key, due_date).

    Raises:
        ValueError: If key format is invalid.
    """
    parts = (key or "").split(KEY_SEPARATOR)
    if len(parts) != 3 or not parts[1].startswith(LIK_MARKER):
        raise ValueError(f"Invalid billing key format: {key}")
    contract_id, lik_part, ymd = parts
    lik = lik_part[len(LIK_MARKER):]
    if not contract_id or not lik:
        raise ValueError(f"Invalid billing key format: {key}")
    try:
        due = date.fromisoformat(ymd)
    except ValueError as exc:
        raise ValueError(f"Invalid billing key date: {key}") from exc
    return contract_id, lik, due


def key_matches(stored_key: str | None, expected_key: str) -> bool:
    """True only when a stored key is present and equals the expected key."""
    return bool(stored_key) and stored_key.strip() == expected_key


def generate_line_item_key(
    contract_id: str,
    line_item_id: str,
    suffix: str | None = None,
) -> str:
    """
    Generate a stable line-item key (LIK).

    Format: contract_id:line_item_id:6hex

    The key is assigned once and never regenerated for the same line item;
    the random suffix keeps keys distinct if a store id is ever reused.
    """
    contract = _check_component("contract_id", contract_id)
    item = _check_component("line_item_id", line_item_id)
    tail = suffix if suffix is not None else secrets.token_hex(3)
    if not _LIK_SUFFIX.match(tail):
        raise KeyComponentError("suffix", tail)
    return f"{contract}{_LIK_SEPARATOR}{item}{_LIK_SEPARATOR}{tail}"


def parse_line_item_key(key: str) -> tuple[str, str, str]:
    """
    Parse a line-item key into (contract_id, line_item_id, suffix).

    Raises:
        ValueError: If key format is invalid.
    """
    parts = (key or "").split(_LIK_SEPARATOR)
    if len(parts) != 3 or not all(parts) or not _LIK_SUFFIX.match(parts[2]):
        raise ValueError(f"Invalid line item key format: {key}")
    return parts[0], parts[1], parts[2]
