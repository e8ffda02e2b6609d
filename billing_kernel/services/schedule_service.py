"""
ScheduleService -- Phase 1 schedule recompute with persistence.

Contract:
    ``recompute(contract, items, today)`` normalizes start delays, resolves
    every line item's schedule with the pure resolver, persists the changed
    schedule fields per line item, then persists the contract-level
    next/last billing dates and frequency label.

Invariants enforced:
    - Only changed fields are written.
    - A line item with a validation error gets ``billing_error`` set and
      keeps its previous next date cleared; siblings continue.
    - The anchor date is written once (when absent) and never overwritten.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date

from billing_kernel.domain.schedule import (
    ScheduleResolution,
    contract_last_date,
    contract_next_date,
    normalize_start_delay,
    resolve_schedule,
    summarize_frequencies,
)
from billing_kernel.domain.types import Contract, LineItem, LineItemError
from billing_kernel.logging_config import get_logger
from billing_kernel.services.repository import BillingRepository

logger = get_logger("services.schedule")

PHASE = "schedule"


@dataclass(frozen=True)
class ScheduleResult:
    contract_id: str
    resolutions: tuple[ScheduleResolution, ...] = ()
    next_billing_date: date | None = None
    last_billing_date: date | None = None
    normalized_line_items: tuple[str, ...] = ()
    errors: tuple[LineItemError, ...] = field(default_factory=tuple)

    def resolution_for(self, line_item_id: str) -> ScheduleResolution | None:
        for res in self.resolutions:
            if res.line_item_id == line_item_id:
                return res
        return None


def schedule_patch(item: LineItem, res: ScheduleResolution) -> dict:
    """Fields of ``item`` that differ from the resolution."""
    patch: dict = {}
    if res.error is not None:
        if item.billing_error != res.error:
            patch["billing_error"] = res.error
        if item.next_billing_date is not None:
            patch["next_billing_date"] = None
        return patch
    if item.billing_error is not None:
        patch["billing_error"] = None
    if item.next_billing_date != res.next_date:
        patch["next_billing_date"] = res.next_date
    if res.anchor_initialized and res.anchor_date is not None and item.anchor_date is None:
        patch["anchor_date"] = res.anchor_date
    if res.payments_remaining is not None and item.payments_remaining is None:
        patch["payments_remaining"] = res.payments_remaining
    return patch


class ScheduleService:
    def __init__(self, repository: BillingRepository):
        self._repo = repository

    def normalize_delays(
        self, contract: Contract, items: list[LineItem], today: date
    ) -> tuple[list[LineItem], list[str]]:
        result: list[LineItem] = []
        changed: list[str] = []
        for item in items:
            start = normalize_start_delay(
                item,
                contract_created=contract.created_on,
                contract_close=contract.close_date,
                today=today,
            )
            if start is None:
                result.append(item)
                continue
            self._repo.update_line_item(item.id, {
                "start_date": start,
                "start_delay_days": None,
                "start_delay_months": None,
            })
            logger.info(
                "start_delay_normalized",
                extra={"line_item_id": item.id, "start_date": start.isoformat()},
            )
            changed.append(item.id)
            result.append(replace(item, start_date=start, start_delay_days=None, start_delay_months=None))
        return result, changed

    def recompute(
        self, contract: Contract, items: list[LineItem], today: date
    ) -> tuple[ScheduleResult, list[LineItem]]:
        """Resolve and persist; returns the result and the refreshed item views."""
        items, normalized = self.normalize_delays(contract, items, today)
        resolutions: list[ScheduleResolution] = []
        errors: list[LineItemError] = []
        refreshed: list[LineItem] = []

        for item in items:
            res = resolve_schedule(item, today)
            resolutions.append(res)
            patch = schedule_patch(item, res)
            if patch:
                self._repo.update_line_item(item.id, patch)
                item = replace(item, **patch)
            refreshed.append(item)
            if res.error is not None:
                errors.append(LineItemError(
                    phase=PHASE,
                    line_item_id=item.id,
                    line_item_key=item.line_item_key,
                    code=res.error,
                    message=f"schedule not computable: {res.error}",
                ))
                logger.warning(
                    "schedule_validation_failed",
                    extra={"line_item_id": item.id, "error": res.error},
                )

        next_date = contract_next_date(resolutions)
        last_date = contract_last_date(resolutions)
        label = summarize_frequencies(items)
        contract_patch: dict = {}
        if contract.next_billing_date != next_date:
            contract_patch["next_billing_date"] = next_date
        if contract.last_billing_date != last_date:
            contract_patch["last_billing_date"] = last_date
        if contract.billing_frequency_label != label:
            contract_patch["billing_frequency_label"] = label
        self._repo.update_contract(contract.id, contract_patch)

        logger.info(
            "schedule_recomputed",
            extra={
                "contract_id": contract.id,
                "line_items": len(items),
                "next_billing_date": next_date,
                "last_billing_date": last_date,
                "errors": len(errors),
            },
        )
        return (
            ScheduleResult(
                contract_id=contract.id,
                resolutions=tuple(resolutions),
                next_billing_date=next_date,
                last_billing_date=last_date,
                normalized_line_items=tuple(normalized),
                errors=tuple(errors),
            ),
            refreshed,
        )
