"""
ORM models backing the SQL reference record store.

Contract:
    StoreRecordModel holds one record of any object type as a JSON field
    bag, with the properties the kernel searches on (key, contract,
    line-item key) denormalized into indexed columns.  AssociationModel
    holds directed links between records.

Architecture: billing_kernel/store.  Imports from billing_kernel.db.base only.
"""

from __future__ import annotations

from sqlalchemy import JSON, BigInteger, Boolean, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import Base, TrackedBase
from billing_kernel.store.protocol import StoredRecord

# Field names copied into indexed columns on every write
KEY_FIELDS = {"fulfillment": "record_key", "invoice": "invoice_key"}


class StoreRecordModel(TrackedBase):
    """One record in the store (contract, line item, fulfillment, invoice...)."""

    __tablename__ = "store_records"

    __table_args__ = (
        Index("ix_store_records_type_seq", "object_type", "seq"),
        Index("ix_store_records_key", "object_type", "record_key"),
        Index("ix_store_records_contract", "object_type", "contract_id"),
        Index("ix_store_records_lik", "object_type", "line_item_key"),
    )

    object_type: Mapped[str] = mapped_column(String(40), nullable=False)
    seq: Mapped[int] = mapped_column(BigInteger, nullable=False)
    record_key: Mapped[str | None] = mapped_column(String(300), nullable=True)
    contract_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    line_item_key: Mapped[str | None] = mapped_column(String(200), nullable=True)
    fields: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    def sync_index_columns(self) -> None:
        props = self.fields or {}
        key_field = KEY_FIELDS.get(self.object_type)
        self.record_key = _str_or_none(props.get(key_field)) if key_field else None
        self.contract_id = _str_or_none(props.get("contract_id"))
        self.line_item_key = _str_or_none(props.get("line_item_key"))

    def to_record(self) -> StoredRecord:
        props = dict(self.fields or {})
        if "created_at" not in props and self.created_at is not None:
            props["created_at"] = self.created_at.isoformat()
        return StoredRecord(id=str(self.id), object_type=self.object_type, fields=props)


class AssociationModel(Base):
    """Directed association between two records."""

    __tablename__ = "store_associations"

    __table_args__ = (
        UniqueConstraint(
            "from_type", "from_id", "to_type", "to_id",
            name="uq_store_associations_edge",
        ),
        Index("ix_store_associations_from", "from_type", "from_id", "to_type"),
    )

    from_type: Mapped[str] = mapped_column(String(40), nullable=False)
    from_id: Mapped[str] = mapped_column(String(100), nullable=False)
    to_type: Mapped[str] = mapped_column(String(40), nullable=False)
    to_id: Mapped[str] = mapped_column(String(100), nullable=False)


def _str_or_none(value) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None
