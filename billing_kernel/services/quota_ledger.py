"""
QuotaLedger -- activation, per-invoice consumption and alerts for contract quotas.

Responsibility:
    Owns every write to the contract's quota fields.  Consumption debits the
    quota once per (fulfillment record, invoice) pair using the record's real
    (human-adjusted) hours or amount.

Architecture position:
    Kernel > Services.  Called by the orchestrator (activation in Phase 1),
    the promotion engine (preventive alert) and the invoice emitter
    (consumption in Phase 3).

Invariants enforced:
    - ``consumed += amount; remaining -= amount`` is written as ONE contract
      update together with the status label, alert latch and consumption
      marker.
    - A second consumption attempt for the same pair is a no-op.  The guard
      is checked on the record (``quota_invoice_id``) and on the contract
      (``quota_last_consumption``), covering a crash between the two writes.
    - The alert fires at most once; an exhausted quota is deactivated and
      never re-activated by ``initialize``.
    - Inconsistent numbers are reported (QuotaInconsistentError) and never
      rewritten.

Failure modes:
    - QuotaLedgerWriteError if the contract update fails (after retries).
      Hard error for the current line item.
    - QuotaInconsistentError if consumed + remaining != total.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from billing_kernel.domain.clock import BusinessCalendar
from billing_kernel.domain.policy import EnginePolicy
from billing_kernel.domain.quota import (
    QuotaSnapshot,
    apply_debit,
    compute_quota_status,
    consumption_amount,
    is_consistent,
    projected_breach,
)
from billing_kernel.domain.types import (
    Contract,
    FulfillmentRecord,
    LineItem,
    QuotaStatus,
)
from billing_kernel.exceptions import (
    QuotaInconsistentError,
    QuotaLedgerWriteError,
    StoreError,
)
from billing_kernel.logging_config import get_logger
from billing_kernel.services.repository import BillingRepository, is_synthetic

logger = get_logger("services.quota_ledger")


class QuotaAlertSink(Protocol):
    """Receives threshold notifications (e-mail, chat, ticket...)."""

    def quota_threshold_reached(
        self, contract: Contract, remaining: Decimal, threshold: Decimal | None
    ) -> None: ...


@dataclass(frozen=True)
class QuotaActivation:
    contract_id: str
    activated: bool
    reason: str
    status: QuotaStatus | None = None


@dataclass(frozen=True)
class QuotaConsumption:
    applied: bool
    reason: str
    amount: Decimal | None = None
    consumed: Decimal | None = None
    remaining: Decimal | None = None
    alert_triggered: bool = False
    deactivated: bool = False
    status: QuotaStatus | None = None


def consumption_marker(record_id: str, invoice_id: str) -> str:
    return f"{record_id}:{invoice_id}"


class QuotaLedger:
    def __init__(
        self,
        repository: BillingRepository,
        policy: EnginePolicy,
        calendar: BusinessCalendar,
        alert_sink: QuotaAlertSink | None = None,
    ) -> None:
        self._repo = repository
        self._policy = policy
        self._calendar = calendar
        self._alert_sink = alert_sink

    @property
    def epsilon(self) -> Decimal:
        return self._policy.quota_epsilon

    # -------------------------------------------------------------------------
    # Activation
    # -------------------------------------------------------------------------

    def initialize(self, contract: Contract, items: list[LineItem]) -> QuotaActivation:
        """Activate the quota when billing is on and a type is configured.

        ``consumed``/``remaining`` are initialized to 0/total only if unset.
        """
        if not contract.has_quota:
            return QuotaActivation(contract.id, False, "no_quota")
        snapshot = QuotaSnapshot.of(contract)
        if contract.quota_active:
            self._refresh_status(contract, snapshot)
            return QuotaActivation(contract.id, False, "already_active",
                                   compute_quota_status(snapshot, self.epsilon))
        if contract.billing_active is not True:
            return QuotaActivation(contract.id, False, "billing_inactive")
        total = contract.quota_total
        if total is None or total <= 0:
            return QuotaActivation(contract.id, False, "no_total")
        if not any(item.part_of_quota for item in items):
            return QuotaActivation(contract.id, False, "no_eligible_line_items")
        if contract.quota_remaining is not None and contract.quota_remaining <= 0:
            self._refresh_status(contract, snapshot)
            return QuotaActivation(contract.id, False, "exhausted",
                                   compute_quota_status(snapshot, self.epsilon))

        consumed = contract.quota_consumed if contract.quota_consumed is not None else Decimal("0")
        remaining = contract.quota_remaining if contract.quota_remaining is not None else total
        activated = QuotaSnapshot(
            quota_type=contract.quota_type,
            total=total,
            consumed=consumed,
            remaining=remaining,
            threshold=contract.quota_threshold,
            active=True,
            alert_fired=contract.quota_alert_fired,
        )
        status = compute_quota_status(activated, self.epsilon)
        patch: dict = {"quota_active": True, "quota_status": status}
        if contract.quota_consumed is None:
            patch["quota_consumed"] = consumed
        if contract.quota_remaining is None:
            patch["quota_remaining"] = remaining
        self._repo.update_contract(contract.id, patch)
        logger.info(
            "quota_activated",
            extra={
                "contract_id": contract.id,
                "quota_type": contract.quota_type.value,
                "total": total,
                "remaining": remaining,
                "status": status.value if status else None,
            },
        )
        return QuotaActivation(contract.id, True, "activated", status)

    def _refresh_status(self, contract: Contract, snapshot: QuotaSnapshot) -> None:
        status = compute_quota_status(snapshot, self.epsilon)
        label = status.value if status else None
        if contract.quota_status != label:
            self._repo.update_contract(contract.id, {"quota_status": status})
        if status is QuotaStatus.INCONSISTENT:
            logger.error(
                "quota_inconsistent",
                extra={
                    "contract_id": contract.id,
                    "total": snapshot.total,
                    "consumed": snapshot.consumed,
                    "remaining": snapshot.remaining,
                },
            )

    # -------------------------------------------------------------------------
    # Consumption
    # -------------------------------------------------------------------------

    def consume_for_invoice(
        self,
        contract_id: str,
        line_item: LineItem,
        record_id: str,
        invoice_id: str,
    ) -> QuotaConsumption:
        """Debit the quota for one invoiced fulfillment record (at most once)."""
        if not line_item.part_of_quota:
            return QuotaConsumption(False, "not_eligible")
        if is_synthetic(record_id) or is_synthetic(invoice_id):
            return QuotaConsumption(False, "dry_run")

        # Re-read: the record's real quantities may have been adjusted by hand
        contract = self._repo.get_contract(contract_id)
        record = self._repo.get_fulfillment(record_id)
        if not contract.has_quota:
            return QuotaConsumption(False, "no_quota")

        marker = consumption_marker(record.id, invoice_id)
        if record.quota_invoice_id == invoice_id:
            return QuotaConsumption(False, "already_consumed")
        if contract.quota_last_consumption == marker:
            # Contract was debited but the record marker never landed
            self._mark_record(record, invoice_id, None)
            return QuotaConsumption(False, "already_consumed")
        if not contract.quota_active:
            logger.info(
                "quota_consumption_skipped_inactive",
                extra={"contract_id": contract.id, "invoice_id": invoice_id},
            )
            return QuotaConsumption(False, "inactive")

        snapshot = QuotaSnapshot.of(contract)
        if not is_consistent(snapshot, self.epsilon):
            self._refresh_status(contract, snapshot)
            raise QuotaInconsistentError(
                contract.id, snapshot.total, snapshot.consumed, snapshot.remaining,
            )

        amount = consumption_amount(contract.quota_type, record)
        if amount is None or amount <= 0:
            logger.warning(
                "quota_consumption_no_amount",
                extra={"contract_id": contract.id, "record_id": record.id, "amount": amount},
            )
            return QuotaConsumption(False, "non_positive_amount", amount=amount)

        debit = apply_debit(snapshot, amount, self.epsilon)
        today = self._calendar.today()
        try:
            self._repo.update_contract(contract.id, debit.contract_patch(today, marker))
        except StoreError as exc:
            raise QuotaLedgerWriteError(contract.id, invoice_id, str(exc)) from exc

        self._mark_record(record, invoice_id, amount)

        logger.info(
            "quota_consumed",
            extra={
                "contract_id": contract.id,
                "record_id": record.id,
                "invoice_id": invoice_id,
                "amount": amount,
                "consumed": debit.consumed,
                "remaining": debit.remaining,
                "status": debit.status.value if debit.status else None,
            },
        )
        if debit.alert_triggered:
            logger.warning(
                "quota_alert_fired",
                extra={
                    "contract_id": contract.id,
                    "remaining": debit.remaining,
                    "threshold": snapshot.threshold,
                },
            )
            if self._alert_sink is not None:
                self._alert_sink.quota_threshold_reached(
                    contract, debit.remaining, snapshot.threshold,
                )
        if debit.deactivated:
            logger.warning(
                "quota_exhausted",
                extra={"contract_id": contract.id, "remaining": debit.remaining},
            )

        return QuotaConsumption(
            applied=True,
            reason="applied",
            amount=amount,
            consumed=debit.consumed,
            remaining=debit.remaining,
            alert_triggered=debit.alert_triggered,
            deactivated=debit.deactivated,
            status=debit.status,
        )

    def _mark_record(self, record: FulfillmentRecord, invoice_id: str, amount: Decimal | None) -> None:
        patch: dict = {
            "quota_invoice_id": invoice_id,
            "quota_consumed_on": self._calendar.today(),
        }
        if amount is not None:
            patch["quota_consumed_value"] = amount
        self._repo.update_fulfillment(record.id, patch)

    # -------------------------------------------------------------------------
    # Preventive alert
    # -------------------------------------------------------------------------

    def preventive_alert(self, contract: Contract, record: FulfillmentRecord) -> bool:
        """Flag a freshly promoted record whose consumption would breach the threshold."""
        if not contract.has_quota or not contract.quota_active or record.quota_preventive_alert:
            return False
        estimate = consumption_amount(contract.quota_type, record)
        if estimate is None or estimate <= 0:
            return False
        if not projected_breach(QuotaSnapshot.of(contract), estimate, self.epsilon):
            return False
        self._repo.update_fulfillment(record.id, {"quota_preventive_alert": True})
        logger.warning(
            "quota_preventive_alert",
            extra={
                "contract_id": contract.id,
                "record_id": record.id,
                "estimate": estimate,
                "remaining": contract.quota_remaining,
            },
        )
        return True
