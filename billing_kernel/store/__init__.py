"""Record store collaborator: protocol and the SQLAlchemy reference store."""

from billing_kernel.store.protocol import (
    AssociationSpec,
    ContractPage,
    ContractQuery,
    RecordFilter,
    RecordStore,
    StoredRecord,
)
from billing_kernel.store.sql_store import SqlRecordStore

__all__ = [
    "AssociationSpec",
    "ContractPage",
    "ContractQuery",
    "RecordFilter",
    "RecordStore",
    "SqlRecordStore",
    "StoredRecord",
]
