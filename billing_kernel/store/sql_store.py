"""
SqlRecordStore -- SQLAlchemy implementation of the RecordStore collaborator.

Contract:
    Provides the generic CRUD/search/associate surface the billing kernel
    expects from the external system of record, backed by two tables
    (``store_records`` and ``store_associations``).  Used for local runs and
    as the in-memory SQLite store in tests.

Guarantees:
    - Every call runs in its own commit-or-rollback session scope; there is
      no multi-call transaction, matching the external store's semantics.
    - ``None`` in an update patch removes the property (the store's notion
      of "clear").
    - Search results are returned in creation order.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Generator, Iterable, Mapping, Sequence
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session, sessionmaker

from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.exceptions import ContractNotFoundError, RecordNotFoundError
from billing_kernel.logging_config import get_logger
from billing_kernel.store.models import AssociationModel, StoreRecordModel
from billing_kernel.store.protocol import (
    CONTRACT,
    FULFILLMENT,
    INVOICE,
    LINE_ITEM,
    AssociationSpec,
    ContractPage,
    ContractQuery,
    RecordFilter,
    StoredRecord,
)

logger = get_logger("store.sql")


class SqlRecordStore:
    """RecordStore over SQLAlchemy sessions."""

    def __init__(self, session_factory: sessionmaker[Session], clock: Clock | None = None):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    @contextmanager
    def _scope(self) -> Generator[Session, None, None]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # -------------------------------------------------------------------------
    # Generic helpers
    # -------------------------------------------------------------------------

    def _load(self, session: Session, object_type: str, record_id: str) -> StoreRecordModel:
        try:
            pk = UUID(str(record_id))
        except ValueError:
            pk = None
        model = session.get(StoreRecordModel, pk) if pk is not None else None
        if model is None or model.object_type != object_type or model.archived:
            if object_type == CONTRACT:
                raise ContractNotFoundError(str(record_id))
            raise RecordNotFoundError(object_type, str(record_id))
        return model

    def _next_seq(self, session: Session, object_type: str) -> int:
        current = session.execute(
            select(func.max(StoreRecordModel.seq)).where(
                StoreRecordModel.object_type == object_type
            )
        ).scalar()
        return (current or 0) + 1

    def create_record(self, object_type: str, fields: Mapping[str, Any]) -> StoredRecord:
        now = self._clock.now_utc()
        with self._scope() as session:
            model = StoreRecordModel(
                object_type=object_type,
                seq=self._next_seq(session, object_type),
                fields={k: v for k, v in fields.items() if v is not None},
                archived=False,
                created_at=now,
                updated_at=now,
            )
            model.sync_index_columns()
            session.add(model)
            session.flush()
            record = model.to_record()
        logger.debug(
            "store_record_created",
            extra={"object_type": object_type, "record_id": record.id},
        )
        return record

    def _update(self, object_type: str, record_id: str, fields: Mapping[str, Any]) -> StoredRecord:
        with self._scope() as session:
            model = self._load(session, object_type, record_id)
            merged = dict(model.fields or {})
            for name, value in fields.items():
                if value is None:
                    merged.pop(name, None)
                else:
                    merged[name] = value
            model.fields = merged
            model.updated_at = self._clock.now_utc()
            model.sync_index_columns()
            session.flush()
            return model.to_record()

    def _get(self, object_type: str, record_id: str) -> StoredRecord:
        with self._scope() as session:
            return self._load(session, object_type, record_id).to_record()

    def _all(self, session: Session, object_type: str, **columns: Any) -> list[StoreRecordModel]:
        stmt = select(StoreRecordModel).where(
            StoreRecordModel.object_type == object_type
        )
        for name, value in columns.items():
            stmt = stmt.where(getattr(StoreRecordModel, name) == value)
        return list(session.execute(stmt.order_by(StoreRecordModel.seq)).scalars())

    def _search(self, object_type: str, query: RecordFilter) -> list[StoredRecord]:
        equals = {k: v for k, v in query.equals.items()}
        key_field = "record_key" if object_type == FULFILLMENT else "invoice_key"
        columns: dict[str, Any] = {}
        if key_field in equals:
            columns["record_key"] = str(equals[key_field])
        if "contract_id" in equals:
            columns["contract_id"] = str(equals["contract_id"])
        if "line_item_key" in equals:
            columns["line_item_key"] = str(equals["line_item_key"])
        with self._scope() as session:
            models = self._all(session, object_type, **columns)
            return [
                m.to_record()
                for m in models
                if (query.include_archived or not m.archived)
                and _matches(m.fields or {}, equals, query)
            ]

    # -------------------------------------------------------------------------
    # Contracts and line items
    # -------------------------------------------------------------------------

    def get_contract(self, contract_id: str, fields: Sequence[str] | None = None) -> StoredRecord:
        record = self._get(CONTRACT, contract_id)
        if fields is None:
            return record
        wanted = set(fields)
        return StoredRecord(
            id=record.id,
            object_type=record.object_type,
            fields={k: v for k, v in record.fields.items() if k in wanted},
        )

    def update_contract(self, contract_id: str, fields: Mapping[str, Any]) -> StoredRecord:
        return self._update(CONTRACT, contract_id, fields)

    def list_contracts(
        self, query: ContractQuery, *, after: str | None = None, limit: int = 100
    ) -> ContractPage:
        after_seq = int(after) if after else 0
        modified_since = _parse_instant(query.modified_since)
        with self._scope() as session:
            stmt = (
                select(StoreRecordModel)
                .where(StoreRecordModel.object_type == CONTRACT)
                .where(StoreRecordModel.archived.is_(False))
                .where(StoreRecordModel.seq > after_seq)
                .order_by(StoreRecordModel.seq)
            )
            selected: list[StoreRecordModel] = []
            has_more = False
            for model in session.execute(stmt).scalars():
                if not _contract_matches(model, query, modified_since):
                    continue
                if len(selected) >= limit:
                    has_more = True
                    break
                selected.append(model)
            records = tuple(m.to_record() for m in selected)
            next_cursor = str(selected[-1].seq) if (has_more and selected) else None
        return ContractPage(records=records, next_cursor=next_cursor)

    def get_line_items(self, contract_id: str) -> list[StoredRecord]:
        with self._scope() as session:
            return [
                m.to_record()
                for m in self._all(session, LINE_ITEM, contract_id=str(contract_id))
                if not m.archived
            ]

    def update_line_item(self, line_item_id: str, fields: Mapping[str, Any]) -> StoredRecord:
        return self._update(LINE_ITEM, line_item_id, fields)

    # -------------------------------------------------------------------------
    # Fulfillment records
    # -------------------------------------------------------------------------

    def search_fulfillment_records(self, query: RecordFilter) -> list[StoredRecord]:
        return self._search(FULFILLMENT, query)

    def get_fulfillment_record(self, record_id: str) -> StoredRecord:
        return self._get(FULFILLMENT, record_id)

    def create_fulfillment_record(
        self, fields: Mapping[str, Any], associations: Sequence[AssociationSpec] = ()
    ) -> StoredRecord:
        record = self.create_record(FULFILLMENT, fields)
        for assoc in associations:
            self.associate(FULFILLMENT, record.id, assoc.to_type, assoc.to_id)
        return record

    def update_fulfillment_record(self, record_id: str, fields: Mapping[str, Any]) -> StoredRecord:
        return self._update(FULFILLMENT, record_id, fields)

    def archive_fulfillment_record(self, record_id: str) -> None:
        with self._scope() as session:
            model = self._load(session, FULFILLMENT, record_id)
            model.archived = True
            model.updated_at = self._clock.now_utc()

    # -------------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------------

    def create_invoice(self, fields: Mapping[str, Any]) -> StoredRecord:
        return self.create_record(INVOICE, fields)

    def update_invoice(self, invoice_id: str, fields: Mapping[str, Any]) -> StoredRecord:
        return self._update(INVOICE, invoice_id, fields)

    def get_invoice(self, invoice_id: str) -> StoredRecord:
        return self._get(INVOICE, invoice_id)

    def search_invoices(self, query: RecordFilter) -> list[StoredRecord]:
        return self._search(INVOICE, query)

    # -------------------------------------------------------------------------
    # Associations
    # -------------------------------------------------------------------------

    def associate(self, from_type: str, from_id: str, to_type: str, to_id: str) -> None:
        with self._scope() as session:
            existing = session.execute(
                select(AssociationModel).where(
                    AssociationModel.from_type == from_type,
                    AssociationModel.from_id == str(from_id),
                    AssociationModel.to_type == to_type,
                    AssociationModel.to_id == str(to_id),
                )
            ).scalar_one_or_none()
            if existing is None:
                session.add(AssociationModel(
                    from_type=from_type,
                    from_id=str(from_id),
                    to_type=to_type,
                    to_id=str(to_id),
                ))

    def list_associations(self, from_type: str, from_id: str, to_type: str) -> list[str]:
        with self._scope() as session:
            rows = session.execute(
                select(AssociationModel.to_id)
                .where(
                    AssociationModel.from_type == from_type,
                    AssociationModel.from_id == str(from_id),
                    AssociationModel.to_type == to_type,
                )
                .order_by(AssociationModel.to_id)
            ).scalars()
            return list(rows)


# -----------------------------------------------------------------------------
# Filtering helpers
# -----------------------------------------------------------------------------


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


def _matches(fields: Mapping[str, Any], equals: Mapping[str, Any], query: RecordFilter) -> bool:
    for name, expected in equals.items():
        if _as_text(fields.get(name)) != _as_text(expected):
            return False
    due = _as_text(fields.get("due_date"))[:10]
    if query.due_after is not None and not (due and due > query.due_after):
        return False
    if query.due_on_or_before is not None and not (due and due <= query.due_on_or_before):
        return False
    return True


def _parse_instant(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _contract_matches(
    model: StoreRecordModel, query: ContractQuery, modified_since: datetime | None
) -> bool:
    props = model.fields or {}
    if _as_text(props.get("stage")) in query.exclude_stages:
        return False
    if query.exclude_mirrors and _as_text(props.get("is_mirror")).lower() == "true":
        return False
    next_date = _as_text(props.get("next_billing_date"))[:10]
    if query.next_billing_on is not None and next_date != query.next_billing_on:
        return False
    if query.next_billing_on_or_after is not None and not (
        next_date and next_date >= query.next_billing_on_or_after
    ):
        return False
    if modified_since is not None:
        updated = _aware(model.updated_at)
        if updated is None or updated < modified_since:
            return False
    return True


def seed_records(store: SqlRecordStore, object_type: str, rows: Iterable[Mapping[str, Any]]) -> list[StoredRecord]:
    """Create several records of one type.  Convenience for fixtures and demos."""
    return [store.create_record(object_type, row) for row in rows]
