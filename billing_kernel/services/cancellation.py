"""
CancellationService -- propagates lost contracts and cancelled invoices.

Responsibility:
    Contract cancellation: a contract in a cancelled stage (closed-lost)
    gets ``billing_active = false`` and every open forecast placeholder of
    its line items moves to its pipeline's cancelled stage.

    Invoice cancellation: the fulfillment record behind a cancelled invoice
    is marked ``invoice_status = cancelled`` so Phase 3 may bill the
    occurrence again.  ``invoice_id`` / ``invoice_key`` stay on the record
    for traceability.

Architecture position:
    Kernel > Services.  Called by the orchestrator in Phase 1 (contracts)
    and by callers that cancel invoices (``cancel_invoice``) or observe a
    cancellation made elsewhere (``propagate_invoice_cancellation``).

Invariants enforced:
    - Only forecast-stage records are cancelled; ready, invoiced and
      foreign-stage records are left alone.
    - Both operations are idempotent: a second call changes nothing.
    - A billing flag already false is not rewritten.

Failure modes:
    - StoreError from the repository propagates; the orchestrator records
      it as a phase error.
    - StageRegressionError if ``cancel_invoice`` targets a paid invoice.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date

from billing_kernel.domain.policy import EnginePolicy
from billing_kernel.domain.types import (
    INVOICE_CANCELLED_STATUS,
    Contract,
    FulfillmentRecord,
    InvoiceStage,
    LineItem,
    StageKind,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.services.invoicing import InvoiceService
from billing_kernel.services.repository import BillingRepository
from billing_kernel.store.protocol import RecordFilter

logger = get_logger("services.cancellation")

DEFAULT_CANCELLATION_REASON = "closed_lost"


@dataclass(frozen=True)
class ContractCancellation:
    contract_id: str
    cancelled: bool
    billing_deactivated: bool = False
    records_cancelled: tuple[str, ...] = ()
    reason: str | None = None


@dataclass(frozen=True)
class InvoiceCancellation:
    invoice_id: str
    propagated: bool
    reason: str
    record_id: str | None = None


class CancellationService:
    def __init__(
        self,
        repository: BillingRepository,
        policy: EnginePolicy,
        invoicing: InvoiceService,
    ) -> None:
        self._repo = repository
        self._policy = policy
        self._invoicing = invoicing

    def is_cancelled(self, contract: Contract) -> bool:
        return contract.stage in self._policy.cancelled_stages

    # -------------------------------------------------------------------------
    # Contracts
    # -------------------------------------------------------------------------

    def cancel_contract(self, contract: Contract, items: list[LineItem]) -> ContractCancellation:
        """Switch billing off and cancel open forecast placeholders."""
        if not self.is_cancelled(contract):
            return ContractCancellation(contract.id, False)

        reason = contract.closed_lost_reason or DEFAULT_CANCELLATION_REASON
        deactivated = False
        if contract.billing_active is not False:
            self._repo.update_contract(contract.id, {"billing_active": False})
            deactivated = True

        cancelled: list[str] = []
        for item in items:
            if not item.line_item_key:
                continue
            for record in self._open_forecasts(contract, item):
                self._cancel_record(record, reason)
                cancelled.append(record.id)

        logger.info(
            "contract_cancellation_propagated",
            extra={
                "contract_id": contract.id,
                "stage": contract.stage,
                "billing_deactivated": deactivated,
                "records_cancelled": len(cancelled),
                "cancellation_reason": reason,
            },
        )
        return ContractCancellation(
            contract.id, True,
            billing_deactivated=deactivated,
            records_cancelled=tuple(cancelled),
            reason=reason,
        )

    def _open_forecasts(self, contract: Contract, item: LineItem) -> list[FulfillmentRecord]:
        records = self._repo.search_fulfillment(RecordFilter(equals={
            "contract_id": contract.id,
            "line_item_key": item.line_item_key,
        }))
        return [
            r for r in records
            if not r.is_duplicate
            and r.pipeline is not None
            and self._policy.stages.for_pipeline(r.pipeline).kind_of(r.stage) is StageKind.FORECAST
        ]

    def _cancel_record(self, record: FulfillmentRecord, reason: str) -> None:
        target = self._policy.stages.for_pipeline(record.pipeline).cancelled
        self._repo.update_fulfillment(record.id, {
            "stage": target,
            "cancellation_reason": reason,
        })
        logger.debug(
            "forecast_record_cancelled",
            extra={"record_id": record.id, "from_stage": record.stage, "to_stage": target},
        )

    # -------------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------------

    def cancel_invoice(self, invoice_id: str, today: date) -> InvoiceCancellation:
        """Cancel the invoice, then release its occurrence for re-billing."""
        self._invoicing.advance_invoice_stage(invoice_id, InvoiceStage.CANCELLED, today)
        return self.propagate_invoice_cancellation(invoice_id)

    def propagate_invoice_cancellation(self, invoice_id: str) -> InvoiceCancellation:
        invoice = self._repo.get_invoice(invoice_id)
        if invoice.stage is not InvoiceStage.CANCELLED:
            return InvoiceCancellation(invoice_id, False, "not_cancelled")
        if not invoice.fulfillment_id:
            logger.warning("invoice_cancellation_no_record", extra={"invoice_id": invoice_id})
            return InvoiceCancellation(invoice_id, False, "no_record")

        record = self._repo.get_fulfillment(invoice.fulfillment_id)
        if record.invoice_id != invoice_id:
            # The record already points at a replacement invoice
            return InvoiceCancellation(invoice_id, False, "superseded", record_id=record.id)
        if record.invoice_status != INVOICE_CANCELLED_STATUS:
            self._repo.update_fulfillment(record.id, {"invoice_status": INVOICE_CANCELLED_STATUS})
            logger.info(
                "invoice_cancellation_propagated",
                extra={"invoice_id": invoice_id, "record_id": record.id},
            )
        return InvoiceCancellation(invoice_id, True, "propagated", record_id=record.id)
