"""
Tests for sweep DTOs and ledger model conversion.
"""

from datetime import date
from uuid import uuid4

import pytest

from billing_batch.domain.types import (
    ContractOutcome,
    ContractStatus,
    SweepMode,
    SweepOptions,
    SweepStatus,
)
from billing_batch.models.sweep import DeadLetterModel, SweepCursorModel, SweepRunModel


class TestSweepMode:
    @pytest.mark.parametrize("day,mode", [
        (date(2024, 3, 15), SweepMode.WEEKDAY),  # Friday
        (date(2024, 3, 16), SweepMode.WEEKEND),  # Saturday
        (date(2024, 3, 17), SweepMode.WEEKEND),  # Sunday
        (date(2024, 3, 18), SweepMode.WEEKDAY),  # Monday
    ])
    def test_for_date(self, day, mode):
        assert SweepMode.for_date(day) is mode

    def test_values(self):
        assert SweepMode("weekend") is SweepMode.WEEKEND
        assert SweepStatus.PARTIALLY_COMPLETED.value == "partially_completed"


class TestDtos:
    def test_options_defaults(self):
        options = SweepOptions()
        assert options.contract_id is None
        assert options.dry_run is False
        assert options.once is False
        assert options.mode is None

    def test_outcome_is_frozen(self):
        outcome = ContractOutcome("c1", ContractStatus.SUCCEEDED)
        with pytest.raises(AttributeError):
            outcome.status = ContractStatus.FAILED


class TestModels:
    def test_run_to_dto(self, session_factory):
        run_id = uuid4()
        with session_factory() as session:
            session.add(SweepRunModel(
                id=run_id, mode="weekday", status="completed",
                business_date="2024-03-15", dry_run=False, succeeded=3, processed=3,
            ))
            session.commit()
            dto = session.get(SweepRunModel, run_id).to_dto()
        assert dto.run_id == run_id
        assert dto.mode is SweepMode.WEEKDAY
        assert dto.status is SweepStatus.COMPLETED
        assert dto.business_date == date(2024, 3, 15)
        assert dto.succeeded == 3

    def test_dead_letter_details_round_trip(self, session_factory):
        run_id = uuid4()
        with session_factory() as session:
            model = DeadLetterModel(
                run_id=run_id, contract_id="c1", error_code="X", error_message="m",
                details={"phase_errors": [{"phase": "forecast"}]},
            )
            session.add(model)
            session.commit()
            assert session.get(DeadLetterModel, model.id).details == {"phase_errors": [{"phase": "forecast"}]}
            dto = model.to_dto()
        assert dto.run_id == run_id
        assert dto.contract_id == "c1"

    def test_cursor_to_dto(self, session_factory):
        with session_factory() as session:
            model = SweepCursorModel(mode="weekend", query_name="full_scan", business_date="2024-03-16", cursor="7")
            session.add(model)
            session.commit()
            dto = model.to_dto()
        assert dto.mode is SweepMode.WEEKEND
        assert dto.cursor == "7"
