"""
BillingSweep -- scheduled selection and execution of contracts.

Contract:
    ``run(options)`` holds the single-runner lock, records a sweep run in
    the ledger, selects contracts, runs the phase orchestrator for each one
    and then for its validated mirror, and returns a ``SweepRunResult``.

Selection:
    - single-contract override: only that contract, cursors untouched;
    - weekday: contracts due today, contracts whose next billing date lies
      beyond the lookahead window, contracts modified recently.  Each query
      pages with its own cursor;
    - weekend: a full scan.
    Cancelled stages and mirror contracts are excluded at the source and a
    contract is processed at most once per run.

Invariants enforced:
    - A cursor is saved only after its page is fully processed, so contracts
      left over at the deadline are picked up by the next run.
    - Cursors reset when the business date changes.
    - A failing mirror never changes the outcome of its original.
    - Dry runs never move cursors.

Ledger writes:
    Every ledger write (run row, cursor, dead letter) commits in its own
    short session so a crashed run still leaves its cursors and dead
    letters behind, and no ledger transaction stays open while the
    phases write to the system of record.
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Callable, Generator
from uuid import UUID, uuid4

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from billing_config.schema import SweepConfig
from billing_kernel.domain.types import Contract
from billing_kernel.exceptions import BillingError
from billing_kernel.logging_config import LogContext, get_logger
from billing_kernel.services.mirroring import validate_mirror_link
from billing_kernel.services.orchestrator import PhaseOrchestrator, PhaseRunResult
from billing_kernel.store.protocol import ContractQuery

from billing_batch.domain.types import (
    QUERY_DUE_TODAY,
    QUERY_FAR_FUTURE,
    QUERY_FULL_SCAN,
    QUERY_RECENTLY_MODIFIED,
    ContractOutcome,
    ContractStatus,
    SweepMode,
    SweepOptions,
    SweepRunResult,
    SweepStatus,
)
from billing_batch.models.sweep import DeadLetterModel, SweepCursorModel, SweepRunModel
from billing_batch.services.lock import FileLock

logger = get_logger("batch.sweep")


class _Deadline(Exception):
    """Raised inside the selection loop when the run deadline passes."""

    def __init__(self, deferred: int):
        self.deferred = deferred


class _Tally:
    def __init__(self) -> None:
        self.outcomes: list[ContractOutcome] = []
        self.seen: set[str] = set()
        self.deferred = 0
        self.deadline_reached = False
        self.aborted: str | None = None

    def add(self, outcome: ContractOutcome) -> None:
        self.outcomes.append(outcome)

    def count(self, status: ContractStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)


class BillingSweep:
    """Runs the billing phases across the contract base.

    Contract:
        - ``run()`` for one full sweep (lock, select, execute, record).
        - ``selection_queries()`` for the named contract queries of a mode.

    Non-goals:
        - Does NOT schedule itself -- an external cron invokes the script.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        orchestrator_factory: Callable[[bool], PhaseOrchestrator],
        config: SweepConfig,
        *,
        lock: FileLock | None = None,
        monotonic: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._session_factory = session_factory
        self._orchestrator_factory = orchestrator_factory
        self._config = config
        self._lock = lock or FileLock(config.lock_path, config.lock_ttl_seconds)
        self._monotonic = monotonic
        self._sleep = sleep

    @contextmanager
    def _ledger(self) -> Generator[Session, None, None]:
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
    # Run
    # -------------------------------------------------------------------------

    def run(self, options: SweepOptions | None = None) -> SweepRunResult:
        """Execute one sweep.

        Raises:
            SweepAlreadyRunningError: If another sweep holds a fresh lock.
        """
        options = options or SweepOptions()
        self._lock.acquire()
        try:
            return self._run(options)
        finally:
            self._lock.release()

    def _run(self, options: SweepOptions) -> SweepRunResult:
        orchestrator = self._orchestrator_factory(options.dry_run)
        calendar = orchestrator.calendar
        today = calendar.today()
        mode = options.mode or SweepMode.for_date(today)
        run_id = uuid4()
        started_at = calendar.clock.now_utc()
        start = self._monotonic()
        deadline = start + self._config.deadline_seconds

        with self._ledger() as session:
            session.add(SweepRunModel(
                id=run_id,
                mode=mode.value,
                status=SweepStatus.RUNNING.value,
                business_date=today.isoformat(),
                dry_run=options.dry_run,
                contract_override=options.contract_id,
                started_at=started_at,
            ))

        tally = _Tally()
        with LogContext.bind(run_id=str(run_id)):
            logger.info(
                "sweep_started",
                extra={
                    "mode": mode.value,
                    "business_date": today,
                    "dry_run": options.dry_run,
                    "contract_override": options.contract_id,
                },
            )
            if options.contract_id:
                self._process(orchestrator, run_id, options.contract_id, tally, explicit=True)
            else:
                try:
                    self._sweep(orchestrator, run_id, mode, today, options, tally, deadline)
                except _Deadline as stop:
                    tally.deadline_reached = True
                    tally.deferred = stop.deferred
                    logger.warning(
                        "sweep_deadline_reached",
                        extra={"deferred": stop.deferred},
                    )
                except BillingError as exc:
                    # Contract selection failed; contracts already run keep their outcomes
                    tally.aborted = f"{exc.code}: {exc}"
                    logger.error(
                        "sweep_selection_failed",
                        extra={"error_code": exc.code, "error": str(exc)},
                    )

            result = self._finish(
                run_id, tally, mode, today, options,
                started_at, calendar.clock.now_utc(), start,
            )
            logger.info(
                "sweep_completed",
                extra={
                    "status": result.status.value,
                    "processed": result.processed,
                    "succeeded": result.succeeded,
                    "failed": result.failed,
                    "skipped": result.skipped,
                    "deferred": result.deferred,
                    "duration_ms": result.duration_ms,
                },
            )
        return result

    def _finish(
        self,
        run_id: UUID,
        tally: _Tally,
        mode: SweepMode,
        today: date,
        options: SweepOptions,
        started_at: datetime,
        completed_at: datetime,
        start: float,
    ) -> SweepRunResult:
        succeeded = tally.count(ContractStatus.SUCCEEDED)
        failed = tally.count(ContractStatus.FAILED)
        skipped = tally.count(ContractStatus.SKIPPED)

        if failed == 0 and tally.deferred == 0 and tally.aborted is None:
            status = SweepStatus.COMPLETED
        elif succeeded == 0 and (failed > 0 or tally.aborted is not None):
            status = SweepStatus.FAILED
        else:
            status = SweepStatus.PARTIALLY_COMPLETED

        duration_ms = int((self._monotonic() - start) * 1000)

        with self._ledger() as session:
            run_model = session.get(SweepRunModel, run_id)
            run_model.status = status.value
            run_model.processed = succeeded + failed
            run_model.succeeded = succeeded
            run_model.failed = failed
            run_model.skipped = skipped
            run_model.deferred = tally.deferred
            run_model.deadline_reached = tally.deadline_reached
            run_model.completed_at = completed_at
            summary = []
            if tally.aborted:
                summary.append(f"selection aborted ({tally.aborted})")
            if failed:
                codes = sorted({o.error_code or "UNKNOWN" for o in tally.outcomes
                                if o.status is ContractStatus.FAILED})
                summary.append(f"{failed} contract(s) failed: {', '.join(codes)}")
            run_model.error_summary = "; ".join(summary) or None

        return SweepRunResult(
            run_id=run_id,
            mode=mode,
            status=status,
            business_date=today,
            dry_run=options.dry_run,
            processed=succeeded + failed,
            succeeded=succeeded,
            failed=failed,
            skipped=skipped,
            deferred=tally.deferred,
            deadline_reached=tally.deadline_reached,
            outcomes=tuple(tally.outcomes),
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=duration_ms,
        )

    # -------------------------------------------------------------------------
    # Selection
    # -------------------------------------------------------------------------

    def selection_queries(
        self,
        mode: SweepMode,
        today: date,
        now: datetime,
        cancelled_stages: tuple[str, ...],
        lookahead_days: int,
    ) -> list[tuple[str, ContractQuery]]:
        """Named contract queries for ``mode``, in processing order."""
        base = ContractQuery(exclude_stages=tuple(cancelled_stages), exclude_mirrors=True)
        if mode is SweepMode.WEEKEND:
            return [(QUERY_FULL_SCAN, base)]
        far = today + timedelta(days=lookahead_days)
        since = now - timedelta(days=self._config.modified_lookback_days)
        return [
            (QUERY_DUE_TODAY, replace(base, next_billing_on=today.isoformat())),
            (QUERY_FAR_FUTURE, replace(base, next_billing_on_or_after=far.isoformat())),
            # Includes lost contracts; Phase 1 propagates their cancellation
            (QUERY_RECENTLY_MODIFIED, replace(base, exclude_stages=(), modified_since=since.isoformat())),
        ]

    def _sweep(
        self,
        orchestrator: PhaseOrchestrator,
        run_id: UUID,
        mode: SweepMode,
        today: date,
        options: SweepOptions,
        tally: _Tally,
        deadline: float,
    ) -> None:
        policy = orchestrator.policy
        queries = self.selection_queries(
            mode, today, orchestrator.calendar.clock.now_utc(),
            policy.cancelled_stages, policy.lookahead_days,
        )
        repository = orchestrator.repository
        for query_name, query in queries:
            cursor = self._load_cursor(mode, query_name, today)
            while True:
                page = repository.list_contracts(
                    query, after=cursor, limit=self._config.page_size,
                )
                logger.info(
                    "sweep_page_loaded",
                    extra={
                        "query_name": query_name,
                        "cursor": cursor,
                        "contracts": len(page.records),
                        "has_more": page.next_cursor is not None,
                    },
                )
                ids = [r.id for r in page.records]
                for index, contract_id in enumerate(ids):
                    if contract_id in tally.seen:
                        continue
                    if self._monotonic() >= deadline:
                        raise _Deadline(sum(1 for c in ids[index:] if c not in tally.seen))
                    processed = self._process(orchestrator, run_id, contract_id, tally)
                    if options.once and processed:
                        return
                    if self._config.pacing_seconds:
                        self._sleep(self._config.pacing_seconds)

                cursor = page.next_cursor
                if not options.dry_run:
                    self._save_cursor(mode, query_name, today, cursor)
                if cursor is None:
                    break

    def _cursor_row(self, session: Session, mode: SweepMode, query_name: str) -> SweepCursorModel | None:
        return session.execute(
            select(SweepCursorModel).where(
                SweepCursorModel.mode == mode.value,
                SweepCursorModel.query_name == query_name,
            )
        ).scalar_one_or_none()

    def _load_cursor(self, mode: SweepMode, query_name: str, today: date) -> str | None:
        """Saved cursor for today, or None (start over) on a new business date."""
        with self._ledger() as session:
            model = self._cursor_row(session, mode, query_name)
            if model is None:
                return None
            if model.business_date != today.isoformat():
                logger.info(
                    "sweep_cursor_reset",
                    extra={"query_name": query_name, "previous_date": model.business_date},
                )
                return None
            return model.cursor

    def _save_cursor(self, mode: SweepMode, query_name: str, today: date, cursor: str | None) -> None:
        with self._ledger() as session:
            model = self._cursor_row(session, mode, query_name)
            if model is None:
                model = SweepCursorModel(mode=mode.value, query_name=query_name)
                session.add(model)
            model.business_date = today.isoformat()
            model.cursor = cursor

    # -------------------------------------------------------------------------
    # Per-contract execution
    # -------------------------------------------------------------------------

    def _process(
        self,
        orchestrator: PhaseOrchestrator,
        run_id: UUID,
        contract_id: str,
        tally: _Tally,
        explicit: bool = False,
    ) -> bool:
        """Run one contract and its mirror.  Returns False when skipped."""
        tally.seen.add(contract_id)
        started = self._monotonic()
        repository = orchestrator.repository
        try:
            contract = repository.get_contract(contract_id)
            if contract.is_mirror and not explicit:
                logger.info("sweep_loose_mirror_skipped", extra={"contract_id": contract_id})
                tally.add(ContractOutcome(contract_id, ContractStatus.SKIPPED))
                return False
            items = repository.get_line_items(contract.id)
            result = orchestrator.run_phases_for_contract(contract, items)
        except BillingError as exc:
            tally.add(self._failed(run_id, contract_id, exc.code, str(exc), started))
            return True
        except Exception as exc:
            logger.exception("sweep_contract_crashed", extra={"contract_id": contract_id})
            tally.add(self._failed(run_id, contract_id, "UNHANDLED_EXCEPTION", str(exc), started))
            return True

        tally.add(self._outcome(run_id, result, started))
        self._process_mirror(orchestrator, run_id, contract, result, tally)
        return True

    def _process_mirror(
        self,
        orchestrator: PhaseOrchestrator,
        run_id: UUID,
        contract: Contract,
        result: PhaseRunResult,
        tally: _Tally,
    ) -> None:
        original = contract
        if result.mirror_contract_id:
            original = replace(contract, mirror_contract_id=result.mirror_contract_id)
        started = self._monotonic()
        mirror_id = original.mirror_contract_id
        try:
            mirror = validate_mirror_link(orchestrator.repository, original)
            if mirror is None or mirror.id in tally.seen:
                return
            tally.seen.add(mirror.id)
            items = orchestrator.repository.get_line_items(mirror.id)
            mirror_result = orchestrator.run_phases_for_contract(mirror, items)
        except Exception as exc:
            code = getattr(exc, "code", "UNHANDLED_EXCEPTION")
            logger.error(
                "sweep_mirror_failed",
                extra={"contract_id": contract.id, "mirror_contract_id": mirror_id, "error": str(exc)},
            )
            tally.add(replace(
                self._failed(run_id, mirror_id or "", code, str(exc), started),
                mirror_of=contract.id,
            ))
            return
        tally.add(replace(self._outcome(run_id, mirror_result, started), mirror_of=contract.id))

    def _outcome(self, run_id: UUID, result: PhaseRunResult, started: float) -> ContractOutcome:
        duration_ms = int((self._monotonic() - started) * 1000)
        if result.phase_errors:
            first = result.phase_errors[0]
            message = "; ".join(f"{e.phase}: {e.message}" for e in result.phase_errors)
            self._dead_letter(run_id, result.contract_id, first.code, message, details={
                "phase_errors": [
                    {"phase": e.phase, "code": e.code, "message": e.message}
                    for e in result.phase_errors
                ],
            })
            return ContractOutcome(
                contract_id=result.contract_id,
                status=ContractStatus.FAILED,
                promoted=result.manual_fulfillments_promoted,
                invoices_emitted=result.invoices_emitted,
                line_item_errors=len(result.per_line_item_errors),
                error_code=first.code,
                error_message=message,
                duration_ms=duration_ms,
            )
        return ContractOutcome(
            contract_id=result.contract_id,
            status=ContractStatus.SUCCEEDED,
            promoted=result.manual_fulfillments_promoted,
            invoices_emitted=result.invoices_emitted,
            line_item_errors=len(result.per_line_item_errors),
            duration_ms=duration_ms,
        )

    def _failed(
        self, run_id: UUID, contract_id: str, code: str, message: str, started: float,
    ) -> ContractOutcome:
        self._dead_letter(run_id, contract_id, code, message)
        return ContractOutcome(
            contract_id=contract_id,
            status=ContractStatus.FAILED,
            error_code=code,
            error_message=message,
            duration_ms=int((self._monotonic() - started) * 1000),
        )

    def _dead_letter(
        self, run_id: UUID, contract_id: str, code: str, message: str, details: dict | None = None,
    ) -> None:
        with self._ledger() as session:
            session.add(DeadLetterModel(
                run_id=run_id,
                contract_id=contract_id,
                error_code=code,
                error_message=message,
                details=details,
            ))
        logger.error(
            "sweep_contract_dead_lettered",
            extra={"contract_id": contract_id, "error_code": code, "error": message},
        )
