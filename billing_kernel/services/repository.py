"""
BillingRepository -- typed boundary over the RecordStore collaborator.

Responsibility:
    Every read returns a typed view (whitelist-and-coerce); every write takes
    a typed patch and serializes it with ``to_fields``.  All store calls go
    through ``with_retry`` with the engine's retry policy.

Architecture position:
    Kernel > Services.  The only service that touches ``RecordStore``.

Invariants enforced:
    - In dry-run mode no write reaches the store.  Creates return a
      synthetic view so downstream steps can still be computed and logged.
    - Transient failures are retried; everything else propagates on the
      first attempt.
"""

from __future__ import annotations

import time
from datetime import date
from typing import Any, Callable, Mapping, Sequence, TypeVar

from billing_kernel.domain.coercion import to_fields
from billing_kernel.domain.policy import EnginePolicy
from billing_kernel.domain.types import Contract, FulfillmentRecord, Invoice, LineItem
from billing_kernel.logging_config import get_logger
from billing_kernel.store.protocol import (
    COMPANY,
    CONTACT,
    CONTRACT,
    AssociationSpec,
    ContractPage,
    ContractQuery,
    RecordFilter,
    RecordStore,
)
from billing_kernel.utils.retry import with_retry

logger = get_logger("services.repository")

T = TypeVar("T")

DRY_RUN_PREFIX = "dry-run:"


def is_synthetic(record_id: str | None) -> bool:
    """True for ids of records that were only simulated in dry-run mode."""
    return str(record_id or "").startswith(DRY_RUN_PREFIX)


class BillingRepository:
    """Typed, retrying, dry-run-aware access to the record store."""

    def __init__(
        self,
        store: RecordStore,
        policy: EnginePolicy,
        *,
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._store = store
        self._policy = policy
        self._sleep = sleep
        self.dry_run = dry_run
        self.skipped_writes = 0

    def _call(self, operation: str, fn: Callable[[], T]) -> T:
        return with_retry(
            fn, policy=self._policy.retry, sleep=self._sleep, operation=operation,
        )

    def _skip_write(self, operation: str, **details: Any) -> bool:
        if not self.dry_run:
            return False
        self.skipped_writes += 1
        logger.info("dry_run_write_skipped", extra={"operation": operation, **details})
        return True

    # -------------------------------------------------------------------------
    # Contracts
    # -------------------------------------------------------------------------

    def get_contract(self, contract_id: str) -> Contract:
        record = self._call("get_contract", lambda: self._store.get_contract(contract_id))
        companies = self._call(
            "list_associations",
            lambda: self._store.list_associations(CONTRACT, record.id, COMPANY),
        )
        contacts = self._call(
            "list_associations",
            lambda: self._store.list_associations(CONTRACT, record.id, CONTACT),
        )
        return Contract.from_record(
            record.id, record.fields,
            company_ids=tuple(companies), contact_ids=tuple(contacts),
        )

    def update_contract(self, contract_id: str, patch: Mapping[str, Any]) -> None:
        if not patch or self._skip_write("update_contract", record_id=contract_id, fields=sorted(patch)):
            return
        fields = to_fields(patch)
        self._call("update_contract", lambda: self._store.update_contract(contract_id, fields))

    def list_contracts(
        self, query: ContractQuery, *, after: str | None, limit: int
    ) -> ContractPage:
        return self._call(
            "list_contracts",
            lambda: self._store.list_contracts(query, after=after, limit=limit),
        )

    # -------------------------------------------------------------------------
    # Line items
    # -------------------------------------------------------------------------

    def get_line_items(self, contract_id: str) -> list[LineItem]:
        records = self._call("get_line_items", lambda: self._store.get_line_items(contract_id))
        return [LineItem.from_record(r.id, r.fields) for r in records]

    def update_line_item(self, line_item_id: str, patch: Mapping[str, Any]) -> None:
        if not patch or self._skip_write("update_line_item", record_id=line_item_id, fields=sorted(patch)):
            return
        fields = to_fields(patch)
        self._call("update_line_item", lambda: self._store.update_line_item(line_item_id, fields))

    # -------------------------------------------------------------------------
    # Fulfillment records
    # -------------------------------------------------------------------------

    def find_fulfillment_by_key(self, key: str) -> list[FulfillmentRecord]:
        return self.search_fulfillment(RecordFilter(equals={"record_key": key}))

    def search_fulfillment(self, query: RecordFilter) -> list[FulfillmentRecord]:
        records = self._call(
            "search_fulfillment_records",
            lambda: self._store.search_fulfillment_records(query),
        )
        return [FulfillmentRecord.from_record(r.id, r.fields) for r in records]

    def fulfillment_after(
        self, contract_id: str, line_item_key: str, after: date
    ) -> list[FulfillmentRecord]:
        """Records of one line item with a due date strictly after ``after``."""
        return self.search_fulfillment(RecordFilter(
            equals={"contract_id": contract_id, "line_item_key": line_item_key},
            due_after=after.isoformat(),
        ))

    def get_fulfillment(self, record_id: str) -> FulfillmentRecord:
        record = self._call(
            "get_fulfillment_record",
            lambda: self._store.get_fulfillment_record(record_id),
        )
        return FulfillmentRecord.from_record(record.id, record.fields)

    def create_fulfillment(
        self,
        fields: Mapping[str, Any],
        associations: Sequence[AssociationSpec] = (),
    ) -> FulfillmentRecord:
        payload = to_fields(fields)
        if self._skip_write("create_fulfillment_record", record_key=payload.get("record_key")):
            return FulfillmentRecord.from_record(
                f"{DRY_RUN_PREFIX}{payload.get('record_key')}", payload,
            )
        record = self._call(
            "create_fulfillment_record",
            lambda: self._store.create_fulfillment_record(payload, associations),
        )
        return FulfillmentRecord.from_record(record.id, record.fields)

    def update_fulfillment(self, record_id: str, patch: Mapping[str, Any]) -> None:
        if not patch or self._skip_write("update_fulfillment_record", record_id=record_id, fields=sorted(patch)):
            return
        fields = to_fields(patch)
        self._call(
            "update_fulfillment_record",
            lambda: self._store.update_fulfillment_record(record_id, fields),
        )

    def archive_fulfillment(self, record_id: str) -> None:
        if self._skip_write("archive_fulfillment_record", record_id=record_id):
            return
        self._call(
            "archive_fulfillment_record",
            lambda: self._store.archive_fulfillment_record(record_id),
        )

    # -------------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------------

    def find_invoices_by_key(self, key: str) -> list[Invoice]:
        records = self._call(
            "search_invoices",
            lambda: self._store.search_invoices(RecordFilter(equals={"invoice_key": key})),
        )
        return [Invoice.from_record(r.id, r.fields) for r in records]

    def get_invoice(self, invoice_id: str) -> Invoice:
        record = self._call("get_invoice", lambda: self._store.get_invoice(invoice_id))
        return Invoice.from_record(record.id, record.fields)

    def create_invoice(self, fields: Mapping[str, Any]) -> Invoice:
        payload = to_fields(fields)
        if self._skip_write("create_invoice", invoice_key=payload.get("invoice_key")):
            return Invoice.from_record(f"{DRY_RUN_PREFIX}{payload.get('invoice_key')}", payload)
        record = self._call("create_invoice", lambda: self._store.create_invoice(payload))
        return Invoice.from_record(record.id, record.fields)

    def update_invoice(self, invoice_id: str, patch: Mapping[str, Any]) -> None:
        if not patch or self._skip_write("update_invoice", record_id=invoice_id, fields=sorted(patch)):
            return
        fields = to_fields(patch)
        self._call("update_invoice", lambda: self._store.update_invoice(invoice_id, fields))

    # -------------------------------------------------------------------------
    # Associations
    # -------------------------------------------------------------------------

    def associate(self, from_type: str, from_id: str, to_type: str, to_id: str) -> None:
        if self._skip_write("associate", from_type=from_type, to_type=to_type):
            return
        self._call(
            "associate",
            lambda: self._store.associate(from_type, from_id, to_type, to_id),
        )

    def list_associations(self, from_type: str, from_id: str, to_type: str) -> list[str]:
        return self._call(
            "list_associations",
            lambda: self._store.list_associations(from_type, from_id, to_type),
        )
