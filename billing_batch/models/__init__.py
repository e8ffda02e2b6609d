"""
billing_batch.models -- ORM models for the sweep run ledger.

Architecture: billing_batch/models. Imports from billing_kernel.db.base only.
"""

from billing_batch.models.sweep import DeadLetterModel, SweepCursorModel, SweepRunModel

__all__ = [
    "DeadLetterModel",
    "SweepCursorModel",
    "SweepRunModel",
]
