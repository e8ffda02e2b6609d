"""
ORM models for the sweep run ledger.

Contract:
    SweepRunModel records one sweep run and its counters, DeadLetterModel
    records contracts that failed within a run, SweepCursorModel stores the
    resume point of each contract query per mode.  Each has a ``to_dto()``
    method.

Architecture: billing_batch/models. Imports from billing_kernel.db.base only.

Invariants enforced:
    - One cursor row per (mode, query_name); the row is reset when the
      business date changes.
"""

from __future__ import annotations

from datetime import date, datetime
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import JSON, Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from billing_kernel.db.base import TrackedBase, UUIDString

if TYPE_CHECKING:
    from billing_batch.domain.types import DeadLetter, SweepCursor, SweepRunResult


class SweepRunModel(TrackedBase):
    """Persistent sweep run record."""

    __tablename__ = "billing_sweep_runs"

    __table_args__ = (
        Index("ix_billing_sweep_runs_status", "status"),
        Index("ix_billing_sweep_runs_business_date", "business_date"),
    )

    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(50), nullable=False)
    business_date: Mapped[str] = mapped_column(String(10), nullable=False)
    dry_run: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    contract_override: Mapped[str | None] = mapped_column(String(100), nullable=True)
    processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    succeeded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deferred: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    deadline_reached: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_summary: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dto(self) -> SweepRunResult:
        from billing_batch.domain.types import SweepMode, SweepRunResult, SweepStatus

        return SweepRunResult(
            run_id=self.id,
            mode=SweepMode(self.mode),
            status=SweepStatus(self.status),
            business_date=date.fromisoformat(self.business_date),
            dry_run=self.dry_run,
            processed=self.processed,
            succeeded=self.succeeded,
            failed=self.failed,
            skipped=self.skipped,
            deferred=self.deferred,
            deadline_reached=self.deadline_reached,
            started_at=self.started_at,
            completed_at=self.completed_at,
        )


class DeadLetterModel(TrackedBase):
    """A contract that failed within a sweep run."""

    __tablename__ = "billing_dead_letters"

    __table_args__ = (
        Index("ix_billing_dead_letters_run", "run_id"),
        Index("ix_billing_dead_letters_contract", "contract_id"),
    )

    run_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    contract_id: Mapped[str] = mapped_column(String(100), nullable=False)
    error_code: Mapped[str] = mapped_column(String(100), nullable=False)
    error_message: Mapped[str] = mapped_column(Text, nullable=False, default="")
    details: Mapped[dict | None] = mapped_column(JSON, nullable=True)

    def to_dto(self) -> DeadLetter:
        from billing_batch.domain.types import DeadLetter

        return DeadLetter(
            run_id=self.run_id,
            contract_id=self.contract_id,
            error_code=self.error_code,
            error_message=self.error_message,
            created_at=self.created_at,
        )


class SweepCursorModel(TrackedBase):
    """Resume point for one contract query."""

    __tablename__ = "billing_sweep_cursors"

    __table_args__ = (
        UniqueConstraint("mode", "query_name", name="uq_billing_sweep_cursors_query"),
    )

    mode: Mapped[str] = mapped_column(String(20), nullable=False)
    query_name: Mapped[str] = mapped_column(String(50), nullable=False)
    business_date: Mapped[str] = mapped_column(String(10), nullable=False)
    cursor: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def to_dto(self) -> SweepCursor:
        from billing_batch.domain.types import SweepCursor, SweepMode

        return SweepCursor(
            mode=SweepMode(self.mode),
            query_name=self.query_name,
            business_date=date.fromisoformat(self.business_date),
            cursor=self.cursor,
        )
