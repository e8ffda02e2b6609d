"""
LineItemSync -- post-promotion update of a line item's billing pointers.

After an occurrence is fulfilled (manual promotion or automatic invoice),
the line item's ``last_billed_date`` moves forward and its
``next_billing_date`` is re-pointed at the nearest later forecast record.

Invariants enforced:
    - ``last_billed_date`` never decreases.
    - ``next_billing_date`` is never equal to ``last_billed_date``.
    - Payment counters move only when ``last_billed_date`` actually
      advances, so re-running a sync is a no-op.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from billing_kernel.domain.policy import EnginePolicy
from billing_kernel.domain.types import Contract, LineItem
from billing_kernel.logging_config import get_logger
from billing_kernel.services.repository import BillingRepository

logger = get_logger("services.line_item_sync")


@dataclass(frozen=True)
class SyncResult:
    line_item_id: str
    last_billed_date: date | None
    next_billing_date: date | None
    advanced: bool
    payments_issued: int | None = None
    payments_remaining: int | None = None


class LineItemSync:
    def __init__(self, repository: BillingRepository, policy: EnginePolicy):
        self._repo = repository
        self._policy = policy

    def next_forecast_after(self, contract: Contract, item: LineItem, after: date) -> date | None:
        """Earliest forecast-stage due date strictly after ``after``, across both pipelines."""
        if not item.line_item_key:
            return None
        candidates = [
            r.due_date
            for r in self._repo.fulfillment_after(contract.id, item.line_item_key, after)
            if r.due_date is not None
            and r.due_date > after
            and not r.is_duplicate
            and self._policy.stages.is_forecast(r.pipeline, r.stage)
        ]
        return min(candidates) if candidates else None

    def sync(self, contract: Contract, item: LineItem, fulfilled_due: date) -> SyncResult:
        previous_last = item.last_billed_date
        advanced = previous_last is None or fulfilled_due > previous_last
        last = fulfilled_due if advanced else previous_last

        found = self.next_forecast_after(contract, item, last)
        current = item.next_billing_date
        next_date = found
        if current is not None and current > last and (found is None or current > found):
            # Keep a next date that was already pushed further ahead
            next_date = current
        if next_date is not None and next_date <= last:
            next_date = self.next_forecast_after(contract, item, last)

        patch: dict = {}
        issued = item.payments_issued
        remaining = item.payments_remaining
        if advanced:
            patch["last_billed_date"] = last
            issued = (issued or 0) + 1
            patch["payments_issued"] = issued
            if remaining is not None:
                remaining = max(remaining - 1, 0)
                patch["payments_remaining"] = remaining
        if remaining == 0 and not item.auto_renew:
            next_date = None
        if next_date != current:
            patch["next_billing_date"] = next_date

        self._repo.update_line_item(item.id, patch)
        if patch:
            logger.info(
                "line_item_synced",
                extra={
                    "line_item_id": item.id,
                    "last_billed_date": last,
                    "next_billing_date": next_date,
                    "advanced": advanced,
                },
            )
        return SyncResult(
            line_item_id=item.id,
            last_billed_date=last,
            next_billing_date=next_date,
            advanced=advanced,
            payments_issued=issued,
            payments_remaining=remaining,
        )
