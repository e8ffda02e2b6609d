"""
InvoiceService -- Phase 3 invoice emission for automatic line items.

Contract:
    ``emit(contract, item, due, today)`` guarantees that the occurrence has
    exactly one automatic fulfillment record and exactly one invoice, links
    them, consumes quota once, and re-points the line item.

Idempotency:
    Both artifacts are looked up by the same billing key before anything is
    created, so running Phase 3 twice for the same occurrence produces one
    invoice.  A stored ``invoice_id`` whose invoice carries a different key
    (a stale or copied pointer) is ignored and the key lookup decides.
    A cancelled invoice counts as absent: the occurrence gets a new invoice
    under the same key and keeps the quota debit of the cancelled one.

Failure modes:
    - StageRegressionError if an invoice stage would move backwards.
    - QuotaLedgerWriteError / QuotaInconsistentError from the quota ledger.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from billing_kernel.domain.policy import EnginePolicy
from billing_kernel.domain.types import (
    DUPLICATE_STATUS,
    INVOICE_CANCELLED_STATUS,
    Contract,
    FulfillmentRecord,
    Invoice,
    InvoiceStage,
    LineItem,
    Pipeline,
    StageKind,
)
from billing_kernel.exceptions import RecordNotFoundError, StageRegressionError
from billing_kernel.logging_config import get_logger
from billing_kernel.services.fulfillment import FulfillmentService, split_duplicates
from billing_kernel.services.line_item_sync import LineItemSync, SyncResult
from billing_kernel.services.quota_ledger import QuotaConsumption, QuotaLedger
from billing_kernel.services.repository import BillingRepository
from billing_kernel.store.protocol import CONTRACT, FULFILLMENT, INVOICE, LINE_ITEM
from billing_kernel.utils.idempotency import key_matches

logger = get_logger("services.invoicing")

_INVOICE_RANK = {
    InvoiceStage.PENDING: 0,
    InvoiceStage.ISSUED: 1,
    InvoiceStage.PAID: 2,
    InvoiceStage.CANCELLED: 2,
}

_STAGE_DATE_FIELD = {
    InvoiceStage.ISSUED: "issued_on",
    InvoiceStage.PAID: "paid_on",
    InvoiceStage.CANCELLED: "cancelled_on",
}


@dataclass(frozen=True)
class InvoiceEmission:
    line_item_id: str
    key: str
    due_date: date
    record_id: str | None = None
    invoice_id: str | None = None
    record_created: bool = False
    invoice_created: bool = False
    skipped_reason: str | None = None
    quota: QuotaConsumption | None = None
    sync: SyncResult | None = None

    @property
    def emitted(self) -> bool:
        return self.skipped_reason is None and self.invoice_id is not None


class InvoiceService:
    def __init__(
        self,
        repository: BillingRepository,
        policy: EnginePolicy,
        fulfillment: FulfillmentService,
        sync: LineItemSync,
        quota: QuotaLedger,
    ) -> None:
        self._repo = repository
        self._policy = policy
        self._fulfillment = fulfillment
        self._sync = sync
        self._quota = quota

    def emit(self, contract: Contract, item: LineItem, due: date, today: date) -> InvoiceEmission:
        stages = self._policy.stages.automatic
        key = self._fulfillment.billing_key(contract, item, due)

        record, record_created = self._fulfillment.ensure(
            contract, item, due, Pipeline.AUTOMATIC, stages.ready,
        )
        kind = stages.kind_of(record.stage)
        if kind is StageKind.CANCELLED or kind is StageKind.UNKNOWN:
            logger.warning(
                "invoice_skipped_record_stage",
                extra={"record_id": record.id, "stage": record.stage, "key": key},
            )
            return InvoiceEmission(
                item.id, key, due, record_id=record.id,
                skipped_reason=f"record_stage:{record.stage}",
            )
        if kind is StageKind.FORECAST:
            record = self._fulfillment.advance(record, Pipeline.AUTOMATIC, stages.ready)
            self._fulfillment.link(record, contract, item)

        invoice, invoice_created, replaced = self._ensure_invoice(contract, item, record, key, due)

        self._repo.associate(FULFILLMENT, record.id, INVOICE, invoice.id)
        self._repo.associate(INVOICE, invoice.id, CONTRACT, contract.id)
        self._repo.associate(INVOICE, invoice.id, LINE_ITEM, item.id)

        record_patch: dict = {}
        if record.invoice_id != invoice.id:
            record_patch["invoice_id"] = invoice.id
            record_patch["invoice_key"] = key
        if replaced is not None:
            if record.invoice_status == INVOICE_CANCELLED_STATUS:
                record_patch["invoice_status"] = None
            if record.quota_invoice_id == replaced:
                # The cancelled invoice's debit carries over to its replacement
                record_patch["quota_invoice_id"] = invoice.id
        if item.bill_now and not record.urgent:
            record_patch["urgent"] = True
        self._repo.update_fulfillment(record.id, record_patch)
        if stages.kind_of(record.stage) is StageKind.READY:
            record = self._fulfillment.advance(record, Pipeline.AUTOMATIC, stages.invoiced)

        item_patch: dict = {}
        if item.invoice_id != invoice.id or item.invoice_key != key:
            item_patch["invoice_id"] = invoice.id
            item_patch["invoice_key"] = key
        if item.bill_now:
            item_patch["bill_now"] = False
        self._repo.update_line_item(item.id, item_patch)

        consumption = self._quota.consume_for_invoice(contract.id, item, record.id, invoice.id)
        sync = self._sync.sync(contract, item, due)

        logger.info(
            "invoice_emitted" if invoice_created else "invoice_reused",
            extra={
                "invoice_id": invoice.id,
                "record_id": record.id,
                "key": key,
                "amount": invoice.amount,
                "quota_applied": consumption.applied,
            },
        )
        return InvoiceEmission(
            line_item_id=item.id,
            key=key,
            due_date=due,
            record_id=record.id,
            invoice_id=invoice.id,
            record_created=record_created,
            invoice_created=invoice_created,
            quota=consumption,
            sync=sync,
        )

    def _ensure_invoice(
        self,
        contract: Contract,
        item: LineItem,
        record: FulfillmentRecord,
        key: str,
        due: date,
    ) -> tuple[Invoice, bool, str | None]:
        """Return (invoice, created, id of the cancelled invoice it replaces)."""
        replaced = None
        if record.invoice_id:
            try:
                linked = self._repo.get_invoice(record.invoice_id)
            except RecordNotFoundError:
                linked = None
            if linked is not None and linked.stage is InvoiceStage.CANCELLED:
                logger.info(
                    "invoice_cancelled_rebilling",
                    extra={"record_id": record.id, "invoice_id": linked.id, "key": key},
                )
                replaced = linked.id
            elif linked is not None and key_matches(linked.key, key):
                return linked, False, None
            else:
                logger.warning(
                    "invoice_pointer_mismatch",
                    extra={"record_id": record.id, "invoice_id": record.invoice_id, "key": key},
                )

        live = [
            i for i in self._repo.find_invoices_by_key(key)
            if i.stage is not InvoiceStage.CANCELLED
        ]
        canonical, extras = split_duplicates(live)
        for dup in extras:
            self._repo.update_invoice(dup.id, {
                "status": DUPLICATE_STATUS,
                "duplicate_of": canonical.id,
            })
            logger.warning(
                "invoice_duplicate_marked",
                extra={"invoice_id": dup.id, "canonical_id": canonical.id, "key": key},
            )
        if canonical is not None:
            return canonical, False, replaced

        invoice = self._repo.create_invoice({
            "invoice_key": key,
            "contract_id": contract.id,
            "line_item_id": item.id,
            "line_item_key": item.line_item_key,
            "fulfillment_id": record.id,
            "amount": invoice_amount(record, item),
            "currency": contract.currency or self._policy.default_currency,
            "stage": InvoiceStage.PENDING,
            "due_date": due,
        })
        return invoice, True, replaced

    def advance_invoice_stage(self, invoice_id: str, target: InvoiceStage, today: date) -> Invoice:
        """Move an invoice forward: pending -> issued -> paid | cancelled."""
        invoice = self._repo.get_invoice(invoice_id)
        if invoice.stage is target:
            return invoice
        if _INVOICE_RANK[target] <= _INVOICE_RANK[invoice.stage]:
            raise StageRegressionError(invoice_id, invoice.stage.value, target.value)
        patch: dict = {"stage": target}
        date_field = _STAGE_DATE_FIELD.get(target)
        if date_field is not None:
            patch[date_field] = today
        self._repo.update_invoice(invoice_id, patch)
        logger.info(
            "invoice_stage_advanced",
            extra={"invoice_id": invoice_id, "from_stage": invoice.stage.value, "to_stage": target.value},
        )
        return self._repo.get_invoice(invoice_id)


def invoice_amount(record: FulfillmentRecord, item: LineItem) -> Decimal | None:
    """Real (possibly hand-adjusted) amount on the record, else the line total."""
    if record.real_amount is not None:
        return record.real_amount
    return item.line_total
