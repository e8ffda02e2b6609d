"""
PromotionEngine -- Phase 2 forecast-to-ready promotion for manual line items.

Contract:
    ``promote(contract, item, due, today)`` moves the occurrence's manual
    fulfillment record from a forecast stage to the ready stage when the due
    date falls inside the lookahead window.

Guard ladder (first match wins):
    outside_window  due > today + lookahead; nothing is read or written
    missing         no record under the key; reported, no action
    already_ready   record already in the ready stage; no-op
    foreign_stage   record in neither a forecast nor the ready stage; untouched
    promoted        stage -> ready, associations, line-item sync, preventive alert
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta

from billing_kernel.domain.policy import EnginePolicy
from billing_kernel.domain.types import (
    Contract,
    LineItem,
    Pipeline,
    PromotionOutcome,
    StageKind,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.services.fulfillment import FulfillmentService
from billing_kernel.services.line_item_sync import LineItemSync, SyncResult
from billing_kernel.services.quota_ledger import QuotaLedger

logger = get_logger("services.promotion")


@dataclass(frozen=True)
class PromotionResult:
    line_item_id: str
    due_date: date
    outcome: PromotionOutcome
    record_id: str | None = None
    stage: str | None = None
    sync: SyncResult | None = None
    preventive_alert: bool = False

    @property
    def promoted(self) -> bool:
        return self.outcome is PromotionOutcome.PROMOTED


class PromotionEngine:
    def __init__(
        self,
        policy: EnginePolicy,
        fulfillment: FulfillmentService,
        sync: LineItemSync,
        quota: QuotaLedger,
    ) -> None:
        self._policy = policy
        self._fulfillment = fulfillment
        self._sync = sync
        self._quota = quota

    def in_window(self, due: date, today: date) -> bool:
        return due <= today + timedelta(days=self._policy.lookahead_days)

    def promote(
        self, contract: Contract, item: LineItem, due: date, today: date
    ) -> PromotionResult:
        if not self.in_window(due, today):
            return PromotionResult(item.id, due, PromotionOutcome.OUTSIDE_WINDOW)

        record = self._fulfillment.find(contract, item, due)
        if record is None:
            logger.warning(
                "promotion_record_missing",
                extra={"line_item_id": item.id, "due_date": due},
            )
            return PromotionResult(item.id, due, PromotionOutcome.MISSING)

        stages = self._policy.stages.manual
        kind = stages.kind_of(record.stage)
        if kind is StageKind.READY:
            return PromotionResult(
                item.id, due, PromotionOutcome.ALREADY_READY,
                record_id=record.id, stage=record.stage,
            )
        if kind is not StageKind.FORECAST:
            logger.warning(
                "promotion_foreign_stage",
                extra={"record_id": record.id, "stage": record.stage, "due_date": due},
            )
            return PromotionResult(
                item.id, due, PromotionOutcome.FOREIGN_STAGE,
                record_id=record.id, stage=record.stage,
            )

        promoted = self._fulfillment.advance(record, Pipeline.MANUAL, stages.ready)
        self._fulfillment.link(promoted, contract, item)
        sync = self._sync.sync(contract, item, due)
        alerted = self._quota.preventive_alert(contract, promoted)

        logger.info(
            "fulfillment_promoted",
            extra={
                "record_id": promoted.id,
                "line_item_id": item.id,
                "due_date": due,
                "next_billing_date": sync.next_billing_date,
            },
        )
        return PromotionResult(
            item.id, due, PromotionOutcome.PROMOTED,
            record_id=promoted.id,
            stage=promoted.stage,
            sync=sync,
            preventive_alert=alerted,
        )
