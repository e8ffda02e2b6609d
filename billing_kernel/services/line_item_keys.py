"""
LineItemKeyService -- stable line-item identity and clone sanitizing.

Contract:
    - ``ensure_keys()`` assigns a line-item key (LIK) to every line item that
      lacks one, and sanitizes line items whose key belongs to a different
      contract or line item (a UI clone or copied record).
    - Sanitizing wipes the operational billing state the clone inherited and
      assigns a fresh key, so the clone can never collide with the
      original's fulfillment records or invoices.

Invariants enforced:
    - A LIK, once assigned to its own line item, is never changed.
    - Keys that cannot be parsed (legacy formats) are left alone.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from billing_kernel.domain.types import Contract, LineItem
from billing_kernel.logging_config import get_logger
from billing_kernel.services.repository import BillingRepository
from billing_kernel.utils.idempotency import generate_line_item_key, parse_line_item_key

logger = get_logger("services.line_item_keys")

# Operational state a clone must not inherit
OPERATIONAL_FIELDS = (
    "anchor_date",
    "next_billing_date",
    "last_billed_date",
    "billing_error",
    "payments_issued",
    "payments_remaining",
    "invoice_id",
    "invoice_key",
    "bill_now",
)


@dataclass(frozen=True)
class KeyAssignment:
    line_item_id: str
    line_item_key: str
    previous_key: str | None
    sanitized: bool


def is_foreign_key(line_item_key: str | None, contract_id: str, line_item_id: str) -> bool:
    """True when the key parses and names another contract or line item."""
    if not line_item_key:
        return False
    try:
        key_contract, key_item, _ = parse_line_item_key(line_item_key)
    except ValueError:
        return False
    return key_contract != str(contract_id) or key_item != str(line_item_id)


def sanitize_patch(item: LineItem) -> dict:
    """Field patch that clears every operational property the item carries."""
    patch: dict = {}
    for name in OPERATIONAL_FIELDS:
        if getattr(item, name, None) not in (None, False):
            patch[name] = None
    return patch


class LineItemKeyService:
    def __init__(self, repository: BillingRepository):
        self._repo = repository

    def ensure_keys(
        self, contract: Contract, items: list[LineItem]
    ) -> tuple[list[LineItem], list[KeyAssignment]]:
        updated: list[LineItem] = []
        assignments: list[KeyAssignment] = []
        for item in items:
            foreign = is_foreign_key(item.line_item_key, contract.id, item.id)
            if item.line_item_key and not foreign:
                updated.append(item)
                continue

            new_key = generate_line_item_key(contract.id, item.id)
            patch: dict = {"line_item_key": new_key}
            if foreign:
                patch.update(sanitize_patch(item))
                logger.warning(
                    "line_item_clone_sanitized",
                    extra={
                        "line_item_id": item.id,
                        "foreign_key": item.line_item_key,
                        "reset_fields": sorted(k for k in patch if k != "line_item_key"),
                    },
                )
            else:
                logger.info(
                    "line_item_key_assigned",
                    extra={"line_item_id": item.id, "line_item_key": new_key},
                )
            self._repo.update_line_item(item.id, patch)
            assignments.append(KeyAssignment(
                line_item_id=item.id,
                line_item_key=new_key,
                previous_key=item.line_item_key,
                sanitized=foreign,
            ))
            updated.append(_apply_patch(item, patch))
        return updated, assignments


def _apply_patch(item: LineItem, patch: dict) -> LineItem:
    changes = dict(patch)
    if "bill_now" in changes:
        changes["bill_now"] = False
    return replace(item, **changes)
