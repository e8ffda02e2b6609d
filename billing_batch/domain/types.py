"""
billing_batch.domain.types -- Pure frozen dataclasses for the billing sweep.

ZERO I/O.  Frozen dataclasses with enum status fields and tuples for
immutable collections, like the rest of the batch layer.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from uuid import UUID


# =============================================================================
# Status enums
# =============================================================================


class SweepMode(str, Enum):
    """Contract selection strategy."""

    WEEKDAY = "weekday"  # Targeted: due today, far-future next, recently modified
    WEEKEND = "weekend"  # Full scan

    @classmethod
    def for_date(cls, day: date) -> SweepMode:
        return cls.WEEKEND if day.weekday() >= 5 else cls.WEEKDAY


class SweepStatus(str, Enum):
    """Run-level lifecycle status."""

    RUNNING = "running"
    COMPLETED = "completed"  # Every selected contract succeeded
    FAILED = "failed"  # No contract succeeded
    PARTIALLY_COMPLETED = "partially_completed"  # Some failed or deferred


class ContractStatus(str, Enum):
    """Per-contract outcome within a sweep."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"  # Fatal error or phase error; dead-lettered
    SKIPPED = "skipped"  # Loose mirror or already processed this run
    DEFERRED = "deferred"  # Deadline reached before the contract started


# Query names used for weekday cursors
QUERY_DUE_TODAY = "due_today"
QUERY_FAR_FUTURE = "far_future"
QUERY_RECENTLY_MODIFIED = "recently_modified"
QUERY_FULL_SCAN = "full_scan"


# =============================================================================
# DTOs
# =============================================================================


@dataclass(frozen=True)
class SweepOptions:
    """Operator overrides for one sweep run."""

    contract_id: str | None = None  # Single-contract override
    dry_run: bool = False  # Compute and log, write nothing
    once: bool = False  # Stop after the first eligible contract
    mode: SweepMode | None = None  # Default: derived from the business date


@dataclass(frozen=True)
class ContractOutcome:
    contract_id: str
    status: ContractStatus
    promoted: int = 0
    invoices_emitted: int = 0
    line_item_errors: int = 0
    error_code: str | None = None
    error_message: str | None = None
    mirror_of: str | None = None
    duration_ms: int = 0


@dataclass(frozen=True)
class SweepCursor:
    """Resume point of one contract query for one business day."""

    mode: SweepMode
    query_name: str
    business_date: date
    cursor: str | None = None


@dataclass(frozen=True)
class DeadLetter:
    run_id: UUID
    contract_id: str
    error_code: str
    error_message: str
    created_at: datetime | None = None


@dataclass(frozen=True)
class SweepRunResult:
    """Immutable result of one sweep run.

    Returned by ``BillingSweep.run()``.
    """

    run_id: UUID
    mode: SweepMode
    status: SweepStatus
    business_date: date
    dry_run: bool = False
    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0
    deadline_reached: bool = False
    outcomes: tuple[ContractOutcome, ...] = ()
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int = 0
