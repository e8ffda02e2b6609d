"""billing_batch.domain -- pure sweep DTOs."""

from billing_batch.domain.types import (
    ContractOutcome,
    ContractStatus,
    DeadLetter,
    SweepCursor,
    SweepMode,
    SweepOptions,
    SweepRunResult,
    SweepStatus,
)

__all__ = [
    "ContractOutcome",
    "ContractStatus",
    "DeadLetter",
    "SweepCursor",
    "SweepMode",
    "SweepOptions",
    "SweepRunResult",
    "SweepStatus",
]
