"""
Phase Orchestrator - Runs the billing phases for one contract.

The orchestrator ties together:
- Phase 1: line-item keys, schedule recompute, cancellation of lost
  contracts, quota activation, forecast planning, mirroring
- Activation Gate: closed-won switch-on with refetch, then quota activation
  for the newly billing contract
- Phase 2: manual forecast -> ready promotion
- Phase 3: automatic invoice emission with quota consumption

Failure isolation:
    Every Phase 1 step and every later phase runs in its own guard.  A
    failing step is recorded in ``phase_errors`` and the next step still
    runs; nothing in Phase 2 or 3 depends on Phase 1 having succeeded.
    Within Phases 2 and 3 a validation, integrity or quota error is scoped
    to its line item (``per_line_item_errors``) and siblings continue.
    Store errors abort the phase.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import date
from typing import Callable

from billing_kernel.domain.clock import BusinessCalendar, Clock, SystemClock
from billing_kernel.domain.policy import EnginePolicy
from billing_kernel.domain.types import Contract, LineItem, LineItemError
from billing_kernel.exceptions import (
    BillingError,
    BillingValidationError,
    IntegrityError,
    QuotaError,
)
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.activation import ActivationGate, ActivationResult
from billing_kernel.services.cancellation import CancellationService, ContractCancellation
from billing_kernel.services.forecast import ForecastPlan, ForecastPlanner
from billing_kernel.services.fulfillment import FulfillmentService
from billing_kernel.services.invoicing import InvoiceEmission, InvoiceService
from billing_kernel.services.line_item_keys import KeyAssignment, LineItemKeyService
from billing_kernel.services.line_item_sync import LineItemSync
from billing_kernel.services.mirroring import MirrorService, NullMirrorService
from billing_kernel.services.promotion import PromotionEngine, PromotionResult
from billing_kernel.services.quota_ledger import QuotaActivation, QuotaAlertSink, QuotaLedger
from billing_kernel.services.repository import BillingRepository
from billing_kernel.services.schedule_service import ScheduleResult, ScheduleService
from billing_kernel.store.protocol import RecordStore

logger = get_logger("services.orchestrator")

PHASE_KEYS = "line_item_keys"
PHASE_SCHEDULE = "schedule"
PHASE_CANCELLATION = "cancellation"
PHASE_QUOTA = "quota_init"
PHASE_FORECAST = "forecast"
PHASE_MIRROR = "mirror"
PHASE_ACTIVATION = "activation"
PHASE_PROMOTION = "promotion"
PHASE_INVOICING = "invoicing"

_LINE_ITEM_ERRORS = (BillingValidationError, IntegrityError, QuotaError)


@dataclass(frozen=True)
class PhaseError:
    phase: str
    code: str
    message: str


@dataclass(frozen=True)
class PhaseRunResult:
    """Everything one contract run did, for logging and the sweep ledger."""

    contract_id: str
    run_date: date
    schedule_result: ScheduleResult | None = None
    activation_result: ActivationResult | None = None
    quota_activation: QuotaActivation | None = None
    cancellation: ContractCancellation | None = None
    key_assignments: tuple[KeyAssignment, ...] = ()
    forecast_plans: tuple[ForecastPlan, ...] = ()
    mirror_contract_id: str | None = None
    promotions: tuple[PromotionResult, ...] = ()
    emissions: tuple[InvoiceEmission, ...] = ()
    per_line_item_errors: tuple[LineItemError, ...] = ()
    phase_errors: tuple[PhaseError, ...] = field(default_factory=tuple)

    @property
    def manual_fulfillments_promoted(self) -> int:
        return sum(1 for p in self.promotions if p.promoted)

    @property
    def invoices_emitted(self) -> int:
        return sum(1 for e in self.emissions if e.invoice_created)

    @property
    def has_phase_errors(self) -> bool:
        return bool(self.phase_errors)


class _RunState:
    """Mutable accumulator for one contract run."""

    def __init__(self, contract: Contract, items: list[LineItem], today: date):
        self.contract = contract
        self.items = items
        self.today = today
        self.schedule_result: ScheduleResult | None = None
        self.activation_result: ActivationResult | None = None
        self.quota_activation: QuotaActivation | None = None
        self.cancellation: ContractCancellation | None = None
        self.key_assignments: list[KeyAssignment] = []
        self.forecast_plans: list[ForecastPlan] = []
        self.mirror_contract_id: str | None = None
        self.promotions: list[PromotionResult] = []
        self.emissions: list[InvoiceEmission] = []
        self.line_item_errors: list[LineItemError] = []
        self.phase_errors: list[PhaseError] = []

    def fail(self, phase: str, exc: Exception) -> None:
        code = getattr(exc, "code", type(exc).__name__)
        self.phase_errors.append(PhaseError(phase, code, str(exc)))
        logger.error(
            "phase_failed",
            extra={"phase": phase, "error_code": code, "error": str(exc)},
        )

    def item_failed(self, phase: str, item: LineItem, exc: BillingError) -> None:
        self.line_item_errors.append(LineItemError(
            phase=phase,
            line_item_id=item.id,
            line_item_key=item.line_item_key,
            code=exc.code,
            message=str(exc),
        ))
        logger.warning(
            "line_item_failed",
            extra={"phase": phase, "line_item_id": item.id, "error_code": exc.code},
        )

    def result(self) -> PhaseRunResult:
        errors = list(self.schedule_result.errors) if self.schedule_result else []
        return PhaseRunResult(
            contract_id=self.contract.id,
            run_date=self.today,
            schedule_result=self.schedule_result,
            activation_result=self.activation_result,
            quota_activation=self.quota_activation,
            cancellation=self.cancellation,
            key_assignments=tuple(self.key_assignments),
            forecast_plans=tuple(self.forecast_plans),
            mirror_contract_id=self.mirror_contract_id,
            promotions=tuple(self.promotions),
            emissions=tuple(self.emissions),
            per_line_item_errors=tuple(errors + self.line_item_errors),
            phase_errors=tuple(self.phase_errors),
        )


class PhaseOrchestrator:
    """
    Runs Phase 1 -> Activation Gate -> Phase 2 -> Phase 3 for one contract.

    All collaborators share one repository, so dry-run and retry behaviour
    apply uniformly.  Use ``from_store()`` to build the default graph.
    """

    def __init__(
        self,
        repository: BillingRepository,
        policy: EnginePolicy,
        calendar: BusinessCalendar,
        mirror_service: MirrorService | None = None,
        alert_sink: QuotaAlertSink | None = None,
    ):
        self.repository = repository
        self.policy = policy
        self.calendar = calendar
        self._mirror = mirror_service or NullMirrorService()

        fulfillment = FulfillmentService(repository, policy)
        sync = LineItemSync(repository, policy)
        self._keys = LineItemKeyService(repository)
        self._schedule = ScheduleService(repository)
        self._quota = QuotaLedger(repository, policy, calendar, alert_sink)
        self._forecast = ForecastPlanner(repository, policy, fulfillment)
        self._gate = ActivationGate(repository, policy)
        self._promotion = PromotionEngine(policy, fulfillment, sync, self._quota)
        self._invoicing = InvoiceService(repository, policy, fulfillment, sync, self._quota)
        self._cancellation = CancellationService(repository, policy, self._invoicing)

    @classmethod
    def from_store(
        cls,
        store: RecordStore,
        policy: EnginePolicy,
        *,
        clock: Clock | None = None,
        dry_run: bool = False,
        sleep: Callable[[float], None] = time.sleep,
        mirror_service: MirrorService | None = None,
        alert_sink: QuotaAlertSink | None = None,
    ) -> PhaseOrchestrator:
        repository = BillingRepository(store, policy, dry_run=dry_run, sleep=sleep)
        calendar = BusinessCalendar(clock or SystemClock(), policy.timezone)
        return cls(repository, policy, calendar, mirror_service, alert_sink)

    @property
    def invoices(self) -> InvoiceService:
        return self._invoicing

    @property
    def cancellations(self) -> CancellationService:
        return self._cancellation

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def run_for_contract_id(self, contract_id: str) -> PhaseRunResult:
        """Load and run one contract.  Raises ContractNotFoundError."""
        contract = self.repository.get_contract(contract_id)
        items = self.repository.get_line_items(contract.id)
        return self.run_phases_for_contract(contract, items)

    def run_phases_for_contract(
        self, contract: Contract, line_items: list[LineItem]
    ) -> PhaseRunResult:
        state = _RunState(contract, list(line_items), self.calendar.today())
        with LogContext.bind(contract_id=contract.id):
            logger.info(
                "contract_run_started",
                extra={"line_items": len(line_items), "run_date": state.today},
            )
            self._phase_one(state)
            self._activation(state)
            billing_on = state.contract.billing_active is True
            if billing_on and not self._cancellation.is_cancelled(state.contract):
                self._phase_two(state)
                self._phase_three(state)
            else:
                logger.info(
                    "billing_inactive_phases_skipped",
                    extra={"billing_active": state.contract.billing_active},
                )
            result = state.result()
            logger.info(
                "contract_run_completed",
                extra={
                    "promoted": result.manual_fulfillments_promoted,
                    "invoices_emitted": result.invoices_emitted,
                    "line_item_errors": len(result.per_line_item_errors),
                    "phase_errors": len(result.phase_errors),
                },
            )
        return result

    # -------------------------------------------------------------------------
    # Phase 1
    # -------------------------------------------------------------------------

    def _phase_one(self, state: _RunState) -> None:
        with LogContext.bind(phase=PHASE_KEYS):
            try:
                state.items, assignments = self._keys.ensure_keys(state.contract, state.items)
                state.key_assignments.extend(assignments)
            except Exception as exc:
                state.fail(PHASE_KEYS, exc)

        with LogContext.bind(phase=PHASE_SCHEDULE):
            try:
                state.schedule_result, state.items = self._schedule.recompute(
                    state.contract, state.items, state.today,
                )
            except Exception as exc:
                state.fail(PHASE_SCHEDULE, exc)

        if self._cancellation.is_cancelled(state.contract):
            with LogContext.bind(phase=PHASE_CANCELLATION):
                try:
                    self._cancel_contract(state)
                except Exception as exc:
                    state.fail(PHASE_CANCELLATION, exc)
            # Nothing further to plan or mirror for a lost contract
            return

        with LogContext.bind(phase=PHASE_QUOTA):
            try:
                state.quota_activation = self._quota.initialize(state.contract, state.items)
            except Exception as exc:
                state.fail(PHASE_QUOTA, exc)

        with LogContext.bind(phase=PHASE_FORECAST):
            try:
                for item in state.items:
                    if not item.line_item_key or item.billing_error:
                        continue
                    try:
                        state.forecast_plans.append(
                            self._forecast.plan(state.contract, item, state.today)
                        )
                    except _LINE_ITEM_ERRORS as exc:
                        state.item_failed(PHASE_FORECAST, item, exc)
            except Exception as exc:
                state.fail(PHASE_FORECAST, exc)

        if self.policy.mirroring_enabled and not state.contract.is_mirror:
            with LogContext.bind(phase=PHASE_MIRROR):
                try:
                    self._mirror_contract(state)
                except Exception as exc:
                    state.fail(PHASE_MIRROR, exc)

    def _cancel_contract(self, state: _RunState) -> None:
        state.cancellation = self._cancellation.cancel_contract(state.contract, state.items)
        if state.cancellation.billing_deactivated:
            state.contract = replace(state.contract, billing_active=False)

    def _mirror_contract(self, state: _RunState) -> None:
        mirror_id = self._mirror.mirror(state.contract, state.items)
        if mirror_id is None:
            return
        state.mirror_contract_id = mirror_id
        if state.contract.mirror_contract_id != mirror_id:
            self.repository.update_contract(state.contract.id, {"mirror_contract_id": mirror_id})
            logger.info("mirror_linked", extra={"mirror_contract_id": mirror_id})

    # -------------------------------------------------------------------------
    # Activation gate
    # -------------------------------------------------------------------------

    def _activation(self, state: _RunState) -> None:
        with LogContext.bind(phase=PHASE_ACTIVATION):
            try:
                state.activation_result, state.contract = self._gate.evaluate(state.contract)
                if not self.repository.dry_run:
                    if not state.activation_result.activated:
                        state.contract = self.repository.get_contract(state.contract.id)
                    state.items = self.repository.get_line_items(state.contract.id)
            except Exception as exc:
                state.fail(PHASE_ACTIVATION, exc)
        if state.activation_result is not None and state.activation_result.activated:
            self._activate_quota(state)

    def _activate_quota(self, state: _RunState) -> None:
        """Re-run quota initialization that Phase 1 skipped while billing was off."""
        with LogContext.bind(phase=PHASE_QUOTA):
            try:
                state.quota_activation = self._quota.initialize(state.contract, state.items)
                if state.quota_activation.activated and not self.repository.dry_run:
                    state.contract = self.repository.get_contract(state.contract.id)
            except Exception as exc:
                state.fail(PHASE_QUOTA, exc)

    # -------------------------------------------------------------------------
    # Phase 2
    # -------------------------------------------------------------------------

    def promotable(self, item: LineItem, today: date) -> bool:
        return (
            item.is_manual
            and not item.paused
            and item.next_billing_date is not None
            and self._promotion.in_window(item.next_billing_date, today)
        )

    def _phase_two(self, state: _RunState) -> None:
        with LogContext.bind(phase=PHASE_PROMOTION):
            try:
                for item in state.items:
                    if not self.promotable(item, state.today):
                        continue
                    with LogContext.bind(line_item_key=item.line_item_key):
                        try:
                            state.promotions.append(self._promotion.promote(
                                state.contract, item, item.next_billing_date, state.today,
                            ))
                        except _LINE_ITEM_ERRORS as exc:
                            state.item_failed(PHASE_PROMOTION, item, exc)
            except Exception as exc:
                state.fail(PHASE_PROMOTION, exc)

    # -------------------------------------------------------------------------
    # Phase 3
    # -------------------------------------------------------------------------

    def billable(self, item: LineItem, today: date) -> bool:
        return (
            item.automatic_billing
            and not item.paused
            and (item.bill_now or item.next_billing_date == today)
        )

    def _phase_three(self, state: _RunState) -> None:
        with LogContext.bind(phase=PHASE_INVOICING):
            try:
                for item in state.items:
                    if not self.billable(item, state.today):
                        continue
                    with LogContext.bind(line_item_key=item.line_item_key):
                        try:
                            state.emissions.append(self._invoicing.emit(
                                state.contract, item, state.today, state.today,
                            ))
                        except _LINE_ITEM_ERRORS as exc:
                            state.item_failed(PHASE_INVOICING, item, exc)
            except Exception as exc:
                state.fail(PHASE_INVOICING, exc)
