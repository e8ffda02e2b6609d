"""
SweepOrchestrator -- DI container for the billing sweep.

Contract:
    Builds the engine policy from ``BillingConfig``, wires a phase
    orchestrator per run (dry-run or live) and creates the BillingSweep.
    Single place where all sweep dependencies are composed.

Architecture: billing_batch (top-level).  This is the canonical entry point
    for configuring and running sweeps.  The kernel never imports it.
"""

from __future__ import annotations

import time
from typing import Callable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from billing_config.bridges import build_engine_policy
from billing_config.schema import BillingConfig
from billing_kernel.domain.clock import Clock, SystemClock
from billing_kernel.logging_config import get_logger
from billing_kernel.services.mirroring import MirrorService
from billing_kernel.services.orchestrator import PhaseOrchestrator
from billing_kernel.services.quota_ledger import QuotaAlertSink
from billing_kernel.store.protocol import RecordStore

from billing_batch.domain.types import DeadLetter, SweepRunResult
from billing_batch.models.sweep import DeadLetterModel, SweepRunModel
from billing_batch.services.lock import FileLock
from billing_batch.services.sweep import BillingSweep

logger = get_logger("batch.orchestrator")


class SweepOrchestrator:
    """DI container for the billing sweep.

    Contract:
        - ``from_config()`` factory creates a fully wired orchestrator.
        - ``create_sweep()`` returns a BillingSweep writing to the ledger.
        - ``recent_runs()`` / ``dead_letters()`` query the run ledger.

    Non-goals:
        - Does NOT create tables -- caller runs ``create_tables()``.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        store: RecordStore,
        config: BillingConfig,
        clock: Clock | None = None,
        mirror_service: MirrorService | None = None,
        alert_sink: QuotaAlertSink | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._store = store
        self._config = config
        self._policy = build_engine_policy(config)
        self._clock = clock or SystemClock()
        self._mirror = mirror_service
        self._alert_sink = alert_sink
        self._sleep = sleep
        self._monotonic = monotonic

    # -------------------------------------------------------------------------
    # Factory
    # -------------------------------------------------------------------------

    @classmethod
    def from_config(
        cls,
        session_factory: sessionmaker[Session],
        store: RecordStore,
        config: BillingConfig,
        clock: Clock | None = None,
        **kwargs,
    ) -> SweepOrchestrator:
        """Create a fully wired SweepOrchestrator.

        Args:
            session_factory: Session factory for the run ledger.
            store: System of record the phases read and write.
            config: Loaded billing configuration.
            clock: Optional clock for deterministic testing.
        """
        logger.info(
            "sweep_orchestrator_created",
            extra={
                "timezone": config.timezone,
                "page_size": config.sweep.page_size,
                "deadline_seconds": config.sweep.deadline_seconds,
            },
        )
        return cls(session_factory, store, config, clock=clock, **kwargs)

    def phase_orchestrator(self, dry_run: bool = False) -> PhaseOrchestrator:
        return PhaseOrchestrator.from_store(
            self._store,
            self._policy,
            clock=self._clock,
            dry_run=dry_run,
            sleep=self._sleep,
            mirror_service=self._mirror,
            alert_sink=self._alert_sink,
        )

    def create_sweep(self, lock: FileLock | None = None) -> BillingSweep:
        sweep_config = self._config.sweep
        return BillingSweep(
            session_factory=self._session_factory,
            orchestrator_factory=self.phase_orchestrator,
            config=sweep_config,
            lock=lock or FileLock(sweep_config.lock_path, sweep_config.lock_ttl_seconds),
            monotonic=self._monotonic,
            sleep=self._sleep,
        )

    # -------------------------------------------------------------------------
    # Ledger queries
    # -------------------------------------------------------------------------

    def recent_runs(self, limit: int = 10) -> list[SweepRunResult]:
        with self._session_factory() as session:
            models = session.execute(
                select(SweepRunModel).order_by(SweepRunModel.started_at.desc()).limit(limit)
            ).scalars()
            return [m.to_dto() for m in models]

    def dead_letters(self, run_id: UUID) -> list[DeadLetter]:
        with self._session_factory() as session:
            models = session.execute(
                select(DeadLetterModel)
                .where(DeadLetterModel.run_id == run_id)
                .order_by(DeadLetterModel.created_at)
            ).scalars()
            return [m.to_dto() for m in models]

    @property
    def config(self) -> BillingConfig:
        return self._config
