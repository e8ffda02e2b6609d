"""
Tests for LineItemSync: pointer moves after fulfillment.
"""

from datetime import date

import pytest

from billing_kernel.domain.types import Pipeline
from billing_kernel.services.fulfillment import FulfillmentService
from billing_kernel.services.line_item_sync import LineItemSync


@pytest.fixture
def sync(repo, policy):
    return LineItemSync(repo, policy)


@pytest.fixture
def setup(repo, policy, make_contract, make_line_item):
    def _make(**item_fields):
        cid = make_contract()
        make_line_item(cid, line_item_key="lik-1", **item_fields)
        contract = repo.get_contract(cid)
        return contract, repo.get_line_items(cid)[0], FulfillmentService(repo, policy)

    return _make


class TestSync:
    def test_points_at_next_forecast(self, sync, store, setup):
        contract, item, fulfillment = setup(payments_remaining=3)
        fulfillment.create(contract, item, date(2024, 4, 15), Pipeline.MANUAL, "forecast_95")
        fulfillment.create(contract, item, date(2024, 5, 15), Pipeline.MANUAL, "forecast_95")

        result = sync.sync(contract, item, date(2024, 3, 15))

        assert result.advanced is True
        assert result.last_billed_date == date(2024, 3, 15)
        assert result.next_billing_date == date(2024, 4, 15)
        fields = store.get_line_items(contract.id)[0].fields
        assert fields["payments_issued"] == 1
        assert fields["payments_remaining"] == 2

    def test_forecast_of_other_pipeline_counts(self, sync, setup):
        contract, item, fulfillment = setup()
        fulfillment.create(contract, item, date(2024, 4, 15), Pipeline.AUTOMATIC, "auto_forecast_50")
        assert sync.sync(contract, item, date(2024, 3, 15)).next_billing_date == date(2024, 4, 15)

    def test_ready_records_are_not_next(self, sync, setup):
        contract, item, fulfillment = setup()
        fulfillment.create(contract, item, date(2024, 4, 15), Pipeline.MANUAL, "ready")
        assert sync.sync(contract, item, date(2024, 3, 15)).next_billing_date is None

    def test_resync_does_not_move_counters(self, sync, repo, store, setup):
        contract, item, _ = setup(payments_remaining=3)
        sync.sync(contract, item, date(2024, 3, 15))
        fresh = repo.get_line_items(contract.id)[0]

        result = sync.sync(contract, fresh, date(2024, 3, 15))

        assert result.advanced is False
        assert store.get_line_items(contract.id)[0].fields["payments_issued"] == 1
        assert store.get_line_items(contract.id)[0].fields["payments_remaining"] == 2

    def test_last_billed_never_decreases(self, sync, setup):
        contract, item, _ = setup(last_billed_date="2024-04-15")
        result = sync.sync(contract, item, date(2024, 3, 15))
        assert result.advanced is False
        assert result.last_billed_date == date(2024, 4, 15)

    def test_next_pushed_further_ahead_is_kept(self, sync, setup):
        contract, item, fulfillment = setup(next_billing_date="2024-06-15")
        fulfillment.create(contract, item, date(2024, 4, 15), Pipeline.MANUAL, "forecast_95")
        assert sync.sync(contract, item, date(2024, 3, 15)).next_billing_date == date(2024, 6, 15)

    def test_last_payment_clears_next(self, sync, store, setup):
        contract, item, fulfillment = setup(payments_remaining=1, next_billing_date="2024-03-15")
        fulfillment.create(contract, item, date(2024, 4, 15), Pipeline.MANUAL, "forecast_95")

        result = sync.sync(contract, item, date(2024, 3, 15))

        assert result.payments_remaining == 0
        assert result.next_billing_date is None
        assert "next_billing_date" not in store.get_line_items(contract.id)[0].fields
