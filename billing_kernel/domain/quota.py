"""
Quota arithmetic -- pure status labelling and debit computation.

The ledger itself (services/quota_ledger.py) performs I/O; everything here
is a function of its inputs.

Invariants enforced:
    - ``consumed + remaining == total`` within ``epsilon``; a violation is
      labelled INCONSISTENT and never corrected.
    - A debit never changes ``total``.
    - The alert fires at most once per quota (``alert_fired`` latches).
    - A debit deactivates the quota once ``remaining <= 0``.  Within
      ``epsilon`` of zero the label reads EXHAUSTED while the quota is
      still active.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from billing_kernel.domain.types import (
    Contract,
    FulfillmentRecord,
    QuotaStatus,
    QuotaType,
)

DEFAULT_EPSILON = Decimal("0.01")
ZERO = Decimal("0")


@dataclass(frozen=True)
class QuotaSnapshot:
    quota_type: QuotaType | None
    total: Decimal | None
    consumed: Decimal | None
    remaining: Decimal | None
    threshold: Decimal | None
    active: bool
    alert_fired: bool

    @classmethod
    def of(cls, contract: Contract) -> QuotaSnapshot:
        return cls(
            quota_type=contract.quota_type,
            total=contract.quota_total,
            consumed=contract.quota_consumed,
            remaining=contract.quota_remaining,
            threshold=contract.quota_threshold,
            active=contract.quota_active,
            alert_fired=contract.quota_alert_fired,
        )


def is_consistent(snapshot: QuotaSnapshot, epsilon: Decimal = DEFAULT_EPSILON) -> bool:
    if snapshot.total is None or snapshot.consumed is None or snapshot.remaining is None:
        return False
    return abs(snapshot.consumed + snapshot.remaining - snapshot.total) <= epsilon


def compute_quota_status(
    snapshot: QuotaSnapshot, epsilon: Decimal = DEFAULT_EPSILON
) -> QuotaStatus | None:
    """Derive the status label.  ``None`` when no quota is configured."""
    if snapshot.quota_type is None:
        return None
    if not snapshot.active and snapshot.total is None:
        return None
    if not is_consistent(snapshot, epsilon):
        return QuotaStatus.INCONSISTENT
    remaining = snapshot.remaining
    if remaining < -epsilon:
        return QuotaStatus.OVERDRAWN
    if remaining <= epsilon:
        return QuotaStatus.EXHAUSTED
    if not snapshot.active:
        return QuotaStatus.DEACTIVATED
    threshold = snapshot.threshold if snapshot.threshold is not None else ZERO
    if remaining <= threshold + epsilon:
        return QuotaStatus.NEAR_THRESHOLD
    return QuotaStatus.OK


def consumption_amount(
    quota_type: QuotaType, record: FulfillmentRecord
) -> Decimal | None:
    """Amount to debit, taken from the record's real (adjusted) values."""
    if quota_type is QuotaType.HOURS:
        if record.real_hours is not None:
            return record.real_hours
        return record.real_quantity
    return record.real_amount


@dataclass(frozen=True)
class QuotaDebit:
    """Result of applying one consumption to a snapshot."""

    amount: Decimal
    consumed: Decimal
    remaining: Decimal
    alert_triggered: bool
    deactivated: bool
    status: QuotaStatus | None

    def contract_patch(self, today: date, consumption_marker: str) -> dict:
        patch: dict = {
            "quota_consumed": self.consumed,
            "quota_remaining": self.remaining,
            "quota_status": self.status,
            "quota_last_consumption": consumption_marker,
        }
        if self.alert_triggered:
            patch["quota_alert_fired"] = True
            patch["quota_alert_fired_at"] = today
        if self.deactivated:
            patch["quota_active"] = False
        return patch


def apply_debit(
    snapshot: QuotaSnapshot,
    amount: Decimal,
    epsilon: Decimal = DEFAULT_EPSILON,
) -> QuotaDebit:
    """``consumed += amount; remaining -= amount`` plus alert/exhaustion."""
    consumed = (snapshot.consumed or ZERO) + amount
    remaining = (snapshot.remaining if snapshot.remaining is not None else (snapshot.total or ZERO)) - amount
    threshold = snapshot.threshold if snapshot.threshold is not None else ZERO
    alert = not snapshot.alert_fired and remaining <= threshold + epsilon
    deactivated = remaining <= ZERO
    status = compute_quota_status(
        QuotaSnapshot(
            quota_type=snapshot.quota_type,
            total=snapshot.total,
            consumed=consumed,
            remaining=remaining,
            threshold=snapshot.threshold,
            active=snapshot.active and not deactivated,
            alert_fired=snapshot.alert_fired or alert,
        ),
        epsilon,
    )
    return QuotaDebit(
        amount=amount,
        consumed=consumed,
        remaining=remaining,
        alert_triggered=alert,
        deactivated=deactivated,
        status=status,
    )


def projected_breach(
    snapshot: QuotaSnapshot, estimate: Decimal, epsilon: Decimal = DEFAULT_EPSILON
) -> bool:
    """Would debiting ``estimate`` leave the quota at or under its threshold?"""
    if snapshot.remaining is None:
        return False
    threshold = snapshot.threshold if snapshot.threshold is not None else ZERO
    return snapshot.remaining - estimate <= threshold + epsilon
