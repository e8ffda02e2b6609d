"""
FulfillmentService -- key-addressed fulfillment records.

Contract:
    Every billing occurrence (contract, line item, due date) owns exactly
    one canonical fulfillment record, found by its billing key.

Invariants enforced:
    - Lookups are by key; a record whose contract or line-item key does not
      match the key's owner (a copied record) is treated as absent.
    - When several live records share a key, the oldest is canonical and
      the rest are marked ``duplicate`` with ``duplicate_of`` set.  Nothing
      is deleted.
    - Stages only move forward (see ``PipelineStages.rank``).
"""

from __future__ import annotations

from dataclasses import replace
from datetime import date
from typing import Sequence, TypeVar

from billing_kernel.domain.policy import EnginePolicy
from billing_kernel.domain.types import (
    DUPLICATE_STATUS,
    Contract,
    FulfillmentRecord,
    Invoice,
    LineItem,
    Pipeline,
)
from billing_kernel.exceptions import MissingLineItemKeyError, StageRegressionError
from billing_kernel.logging_config import get_logger
from billing_kernel.services.repository import BillingRepository
from billing_kernel.store.protocol import (
    COMPANY,
    CONTACT,
    CONTRACT,
    FULFILLMENT,
    LINE_ITEM,
    AssociationSpec,
)
from billing_kernel.utils.idempotency import generate_billing_key

logger = get_logger("services.fulfillment")

R = TypeVar("R", FulfillmentRecord, Invoice)


def split_duplicates(records: Sequence[R]) -> tuple[R | None, list[R]]:
    """Return (canonical, newly-duplicate) for records sharing one key.

    Canonical is the oldest record not already marked duplicate; the sort
    is stable so ties keep store order.
    """
    if not records:
        return None, []
    ordered = sorted(records, key=lambda r: r.created_at or "")
    live = [r for r in ordered if not r.is_duplicate]
    canonical = live[0] if live else ordered[0]
    extras = [r for r in live if r.id != canonical.id]
    return canonical, extras


def record_associations(contract: Contract, item: LineItem) -> list[AssociationSpec]:
    """Contract, line item, and the contract's companies and contacts."""
    specs = [
        AssociationSpec(CONTRACT, contract.id),
        AssociationSpec(LINE_ITEM, item.id),
    ]
    specs.extend(AssociationSpec(COMPANY, cid) for cid in contract.company_ids)
    specs.extend(AssociationSpec(CONTACT, cid) for cid in contract.contact_ids)
    return specs


class FulfillmentService:
    def __init__(self, repository: BillingRepository, policy: EnginePolicy):
        self._repo = repository
        self._policy = policy

    def billing_key(self, contract: Contract, item: LineItem, due: date) -> str:
        if not item.line_item_key:
            raise MissingLineItemKeyError(item.id)
        return generate_billing_key(contract.id, item.line_item_key, due)

    def find(self, contract: Contract, item: LineItem, due: date) -> FulfillmentRecord | None:
        """Canonical record for the occurrence, marking extra copies duplicate."""
        key = self.billing_key(contract, item, due)
        found = self._repo.find_fulfillment_by_key(key)
        owned = []
        for record in found:
            if record.contract_id == contract.id and record.line_item_key == item.line_item_key:
                owned.append(record)
            else:
                logger.warning(
                    "fulfillment_key_owner_mismatch",
                    extra={
                        "record_id": record.id,
                        "key": key,
                        "record_contract_id": record.contract_id,
                    },
                )
        canonical, extras = split_duplicates(owned)
        for dup in extras:
            self._repo.update_fulfillment(dup.id, {
                "status": DUPLICATE_STATUS,
                "duplicate_of": canonical.id,
            })
            logger.warning(
                "fulfillment_duplicate_marked",
                extra={"record_id": dup.id, "canonical_id": canonical.id, "key": key},
            )
        return canonical

    def ensure(
        self,
        contract: Contract,
        item: LineItem,
        due: date,
        pipeline: Pipeline,
        stage: str,
    ) -> tuple[FulfillmentRecord, bool]:
        """Find the occurrence's record or create it in ``stage``."""
        existing = self.find(contract, item, due)
        if existing is not None:
            return existing, False
        return self.create(contract, item, due, pipeline, stage), True

    def create(
        self,
        contract: Contract,
        item: LineItem,
        due: date,
        pipeline: Pipeline,
        stage: str,
        associations: Sequence[AssociationSpec] | None = None,
    ) -> FulfillmentRecord:
        """Create the occurrence's record.

        ``associations`` defaults to the full set from ``record_associations``;
        forecast placeholders pass ``()`` and are linked on promotion.
        """
        key = self.billing_key(contract, item, due)
        fields = {
            "record_key": key,
            "contract_id": contract.id,
            "line_item_key": item.line_item_key,
            "line_item_id": item.id,
            "pipeline": pipeline,
            "stage": stage,
            "due_date": due,
            "real_quantity": item.quantity,
            "real_amount": item.line_total,
        }
        if associations is None:
            associations = record_associations(contract, item)
        record = self._repo.create_fulfillment(fields, associations)
        logger.info(
            "fulfillment_record_created",
            extra={
                "record_id": record.id,
                "key": key,
                "pipeline": pipeline.value,
                "stage": stage,
                "due_date": due,
            },
        )
        return record

    def link(self, record: FulfillmentRecord, contract: Contract, item: LineItem) -> None:
        for spec in record_associations(contract, item):
            self._repo.associate(FULFILLMENT, record.id, spec.to_type, spec.to_id)

    def advance(self, record: FulfillmentRecord, pipeline: Pipeline, target: str) -> FulfillmentRecord:
        """Move ``record`` to ``target``; equal stage is a no-op, backwards raises."""
        if record.stage == target:
            return record
        stages = self._policy.stages.for_pipeline(pipeline)
        if stages.rank(target) <= stages.rank(record.stage):
            raise StageRegressionError(record.id, record.stage, target)
        self._repo.update_fulfillment(record.id, {"stage": target})
        logger.info(
            "fulfillment_stage_advanced",
            extra={"record_id": record.id, "from_stage": record.stage, "to_stage": target},
        )
        return replace(record, stage=target)
