"""
Pytest fixtures for the billing test suite.

Provides:
- Structured logging configured once per session, LogContext cleared per test
- An in-memory SQLite database holding both the reference record store
  and the sweep ledger
- A deterministic clock fixed on Friday 2024-03-15 (UTC)
- Builders for contracts and line items in the store
"""

import json
import logging
from datetime import date, datetime, timezone
from io import StringIO

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from billing_config.bridges import build_engine_policy
from billing_config.schema import BillingConfig
from billing_kernel.db.base import Base
from billing_kernel.domain.clock import BusinessCalendar, DeterministicClock
from billing_kernel.exceptions import TransientStoreError
from billing_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from billing_kernel.services.orchestrator import PhaseOrchestrator
from billing_kernel.services.repository import BillingRepository
from billing_kernel.store.protocol import CONTRACT, LINE_ITEM
from billing_kernel.store.sql_store import SqlRecordStore

import billing_batch.models  # noqa: F401  register ledger tables
import billing_kernel.store.models  # noqa: F401

TODAY = date(2024, 3, 15)
NOW = datetime(2024, 3, 15, 15, 0, 0, tzinfo=timezone.utc)


def no_sleep(seconds: float) -> None:
    return None


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture billing_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, orchestrator):
            orchestrator.run_for_contract_id(cid)
            logs = captured_logs()
            assert any(r["message"] == "contract_run_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("billing_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Clock and policy
# =============================================================================


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(NOW)


@pytest.fixture
def config() -> BillingConfig:
    return BillingConfig()


@pytest.fixture
def policy(config):
    return build_engine_policy(config)


@pytest.fixture
def calendar(clock, policy) -> BusinessCalendar:
    return BusinessCalendar(clock, policy.timezone)


# =============================================================================
# Database and store
# =============================================================================


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database per test."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def store(session_factory, clock) -> SqlRecordStore:
    return SqlRecordStore(session_factory, clock=clock)


@pytest.fixture
def repo(store, policy) -> BillingRepository:
    return BillingRepository(store, policy, sleep=no_sleep)


@pytest.fixture
def dry_repo(store, policy) -> BillingRepository:
    return BillingRepository(store, policy, dry_run=True, sleep=no_sleep)


@pytest.fixture
def orchestrator(store, policy, clock) -> PhaseOrchestrator:
    return PhaseOrchestrator.from_store(store, policy, clock=clock, sleep=no_sleep)


# =============================================================================
# Record builders
# =============================================================================


@pytest.fixture
def make_contract(store):
    """Create a contract record; returns its id.

    Defaults to a won, billing-active contract in USD.
    """

    def _make(**fields) -> str:
        values = {
            "name": "Acme retainer",
            "stage": "closedwon",
            "billing_active": "true",
            "currency": "USD",
        }
        values.update(fields)
        return store.create_record(CONTRACT, values).id

    return _make


@pytest.fixture
def make_line_item(store):
    """Create a line item on ``contract_id``; returns its id.

    Defaults to a monthly automatic item starting on TODAY.
    """

    def _make(contract_id: str, **fields) -> str:
        values = {
            "contract_id": contract_id,
            "name": "Support plan",
            "frequency": "monthly",
            "start_date": TODAY.isoformat(),
            "quantity": "1",
            "unit_price": "100",
            "automatic_billing": "true",
        }
        values.update(fields)
        return store.create_record(LINE_ITEM, values).id

    return _make


# =============================================================================
# Failure injection
# =============================================================================


class FlakyStore:
    """Delegates to a real store, failing the first ``failures`` calls of ``operation``."""

    def __init__(self, store, operation, failures, status=503):
        self._store = store
        self._operation = operation
        self.remaining_failures = failures
        self.status = status

    def __getattr__(self, name):
        target = getattr(self._store, name)
        if name != self._operation:
            return target

        def _call(*args, **kwargs):
            if self.remaining_failures > 0:
                self.remaining_failures -= 1
                raise TransientStoreError(name, self.status)
            return target(*args, **kwargs)

        return _call


@pytest.fixture
def flaky_store(store):
    """Factory wrapping the test store so that one operation fails transiently."""

    def _make(operation: str, failures: int, status: int = 503) -> FlakyStore:
        return FlakyStore(store, operation, failures, status)

    return _make
