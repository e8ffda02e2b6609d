"""
ForecastPlanner -- forecast-stage placeholders for upcoming occurrences.

Contract:
    ``plan(contract, item, today)`` makes the set of forecast records of a
    line item equal the set of its upcoming due dates (bounded by count and
    horizon):

    - a desired date with no record gets a new forecast record;
    - a forecast record on a desired date is re-staged when the contract's
      probability bucket or the item's pipeline changed;
    - a forecast record on a date no longer desired is re-dated onto a
      missing date when one exists, and archived otherwise.

Invariants enforced:
    - Records past the forecast stage (ready, invoiced, cancelled or a
      foreign stage) are never touched, and their dates are never
      re-created.
    - Records due before today are left alone.
    - Keys always match (contract, LIK, due date) after a re-date.
    - Placeholders are created without associations; the contract, line
      item, company and contact links are added when the record is promoted.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from billing_kernel.domain.policy import EnginePolicy
from billing_kernel.domain.schedule import (
    ScheduleMode,
    add_months,
    first_index_on_or_after,
    interval_for_frequency,
    iter_occurrences,
    resolve_schedule,
)
from billing_kernel.domain.types import Contract, FulfillmentRecord, LineItem
from billing_kernel.logging_config import get_logger
from billing_kernel.services.fulfillment import FulfillmentService
from billing_kernel.services.repository import BillingRepository
from billing_kernel.store.protocol import RecordFilter

logger = get_logger("services.forecast")


@dataclass(frozen=True)
class ForecastPlan:
    line_item_id: str
    desired: tuple[date, ...] = ()
    created: int = 0
    restaged: int = 0
    redated: int = 0
    archived: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.created or self.restaged or self.redated or self.archived)


class ForecastPlanner:
    def __init__(
        self,
        repository: BillingRepository,
        policy: EnginePolicy,
        fulfillment: FulfillmentService,
    ) -> None:
        self._repo = repository
        self._policy = policy
        self._fulfillment = fulfillment

    def desired_dates(self, item: LineItem, today: date) -> list[date]:
        """Upcoming due dates the line item should have placeholders for."""
        settings = self._policy.forecast
        res = resolve_schedule(item, today)
        if res.error is not None or res.next_date is None:
            return []
        if res.mode in (ScheduleMode.ONE_TIME, ScheduleMode.IRREGULAR):
            return [res.next_date]

        interval = interval_for_frequency(item.frequency)
        if interval is None:
            return [res.next_date]
        horizon = add_months(today, settings.horizon_months)

        series_anchor = res.anchor_date or item.start_date
        if res.mode is ScheduleMode.AUTO_RENEW:
            override = item.anchor_override_date
            if override is not None and override >= today:
                series_anchor = override
            limit = None
            budget = settings.max_occurrences
        else:
            limit = res.payments_total
            budget = min(settings.max_occurrences, res.payments_remaining or 0)

        start = first_index_on_or_after(series_anchor, interval, res.next_date)
        dates: list[date] = []
        for due in iter_occurrences(series_anchor, interval, start, limit):
            if len(dates) >= budget or due > horizon:
                break
            dates.append(due)
        return dates

    def _records(self, contract: Contract, item: LineItem) -> list[FulfillmentRecord]:
        return [
            r for r in self._repo.search_fulfillment(RecordFilter(equals={
                "contract_id": contract.id,
                "line_item_key": item.line_item_key,
            }))
            if not r.is_duplicate and r.due_date is not None
        ]

    def plan(self, contract: Contract, item: LineItem, today: date) -> ForecastPlan:
        if not self._policy.forecast.enabled or not item.line_item_key:
            return ForecastPlan(item.id)

        desired = self.desired_dates(item, today)
        pipeline = item.pipeline
        bucket = self._policy.forecast.bucket_for(contract.stage)
        target_stage = self._policy.stages.for_pipeline(pipeline).forecast_for_bucket(bucket)

        records = self._records(contract, item)
        occupied: set[date] = set()
        forecast: dict[date, FulfillmentRecord] = {}
        stale: list[FulfillmentRecord] = []
        for record in records:
            if not self._policy.stages.is_forecast(record.pipeline, record.stage):
                occupied.add(record.due_date)
            elif record.due_date < today:
                continue
            elif record.due_date in forecast or record.due_date not in desired:
                stale.append(record)
            else:
                forecast[record.due_date] = record

        created = restaged = redated = archived = 0

        for due, record in forecast.items():
            if due in occupied:
                stale.append(record)
                continue
            if record.stage != target_stage or record.pipeline is not pipeline:
                self._repo.update_fulfillment(record.id, {
                    "stage": target_stage,
                    "pipeline": pipeline,
                })
                restaged += 1

        missing = sorted(d for d in desired if d not in forecast and d not in occupied)
        stale.sort(key=lambda r: r.due_date)
        for record, due in zip(stale, missing):
            self._repo.update_fulfillment(record.id, {
                "due_date": due,
                "record_key": self._fulfillment.billing_key(contract, item, due),
                "stage": target_stage,
                "pipeline": pipeline,
            })
            redated += 1
        for record in stale[len(missing):]:
            self._repo.archive_fulfillment(record.id)
            archived += 1
        for due in missing[len(stale):]:
            self._fulfillment.create(contract, item, due, pipeline, target_stage, associations=())
            created += 1

        plan = ForecastPlan(
            line_item_id=item.id,
            desired=tuple(desired),
            created=created,
            restaged=restaged,
            redated=redated,
            archived=archived,
        )
        if plan.changed:
            self._repo.update_line_item(item.id, {"forecast_generated_on": today})
            logger.info(
                "forecast_planned",
                extra={
                    "line_item_id": item.id,
                    "desired_count": len(desired),
                    "created_count": created,
                    "restaged_count": restaged,
                    "redated_count": redated,
                    "archived_count": archived,
                },
            )
        return plan
