"""
RecordStore -- the collaborator interface over the external system of record.

The store is a generic CRUD surface over loosely-typed field bags.  It has no
transactions and may be eventually consistent; every operation may raise
``TransientStoreError`` (retryable) or ``RecordNotFoundError``.

Object types used by the kernel: ``contract``, ``line_item``,
``fulfillment``, ``invoice``, ``company``, ``contact``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, Sequence, runtime_checkable

CONTRACT = "contract"
LINE_ITEM = "line_item"
FULFILLMENT = "fulfillment"
INVOICE = "invoice"
COMPANY = "company"
CONTACT = "contact"


@dataclass(frozen=True)
class StoredRecord:
    id: str
    object_type: str
    fields: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AssociationSpec:
    """Association to create alongside a new record."""

    to_type: str
    to_id: str


@dataclass(frozen=True)
class RecordFilter:
    """Equality filter over record properties (AND semantics).

    ``due_after``/``due_on_or_before`` bound the ``due_date`` property
    (``YYYY-MM-DD`` strings compare lexicographically).
    """

    equals: Mapping[str, Any] = field(default_factory=dict)
    due_after: str | None = None
    due_on_or_before: str | None = None
    include_archived: bool = False


@dataclass(frozen=True)
class ContractQuery:
    """Contract selection for the batch sweep.

    Mirror contracts and cancelled stages are excluded at the source; the
    date bounds compare ``next_billing_date`` as ``YYYY-MM-DD`` strings.
    """

    exclude_stages: tuple[str, ...] = ()
    exclude_mirrors: bool = True
    next_billing_on: str | None = None
    next_billing_on_or_after: str | None = None
    modified_since: str | None = None


@dataclass(frozen=True)
class ContractPage:
    records: tuple[StoredRecord, ...]
    next_cursor: str | None


@runtime_checkable
class RecordStore(Protocol):
    def get_contract(self, contract_id: str, fields: Sequence[str] | None = None) -> StoredRecord: ...

    def update_contract(self, contract_id: str, fields: Mapping[str, Any]) -> StoredRecord: ...

    def list_contracts(
        self, query: ContractQuery, *, after: str | None = None, limit: int = 100
    ) -> ContractPage: ...

    def get_line_items(self, contract_id: str) -> list[StoredRecord]: ...

    def update_line_item(self, line_item_id: str, fields: Mapping[str, Any]) -> StoredRecord: ...

    def search_fulfillment_records(self, query: RecordFilter) -> list[StoredRecord]: ...

    def get_fulfillment_record(self, record_id: str) -> StoredRecord: ...

    def create_fulfillment_record(
        self, fields: Mapping[str, Any], associations: Sequence[AssociationSpec] = ()
    ) -> StoredRecord: ...

    def update_fulfillment_record(self, record_id: str, fields: Mapping[str, Any]) -> StoredRecord: ...

    def archive_fulfillment_record(self, record_id: str) -> None: ...

    def create_invoice(self, fields: Mapping[str, Any]) -> StoredRecord: ...

    def update_invoice(self, invoice_id: str, fields: Mapping[str, Any]) -> StoredRecord: ...

    def get_invoice(self, invoice_id: str) -> StoredRecord: ...

    def search_invoices(self, query: RecordFilter) -> list[StoredRecord]: ...

    def associate(self, from_type: str, from_id: str, to_type: str, to_id: str) -> None: ...

    def list_associations(self, from_type: str, from_id: str, to_type: str) -> list[str]: ...
