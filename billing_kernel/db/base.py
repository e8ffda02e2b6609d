"""
Module: billing_kernel.db.base
Responsibility: declarative base for the record store and sweep ledger
    models.  Fixes the primary key convention, the Python-type to column-type
    map and the row timestamp columns.
Architecture position: Kernel > DB.  Lowest import target of the kernel;
    imports nothing from store/, services/ or domain/.

Invariants enforced:
    - Every model has a uuid4 primary key stored as String(36), so SQLite
      and PostgreSQL hold the same values.
    - Decimal columns are Numeric(38, 9); quota and invoice amounts never
      pass through float.
    - TrackedBase rows carry created_at / updated_at.
"""

from datetime import datetime
from decimal import Decimal
from typing import ClassVar
from uuid import UUID, uuid4

from sqlalchemy import BigInteger, DateTime, Numeric, String, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class UUIDString(TypeDecorator):
    """UUID bound as its canonical string and loaded back as ``uuid.UUID``."""

    impl = String(36)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        return None if value is None else str(value)

    def process_result_value(self, value, dialect):
        return None if value is None else UUID(value)


class Base(DeclarativeBase):
    type_annotation_map: ClassVar[dict] = {
        UUID: UUIDString(),
        Decimal: Numeric(38, 9),
        datetime: DateTime(timezone=True),
        int: BigInteger,
    }

    id: Mapped[UUID] = mapped_column(UUIDString(), primary_key=True, default=uuid4)


class TrackedBase(Base):
    """Abstract base adding database-stamped row timestamps.

    The SQL record store overrides both columns from its injected clock so
    tests see deterministic values.
    """

    __abstract__ = True

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
