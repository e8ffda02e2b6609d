"""
Tests for cancellation propagation: lost contracts and cancelled invoices.
"""

from collections import Counter
from datetime import date

import pytest

from billing_kernel.domain.types import InvoiceStage, Pipeline
from billing_kernel.exceptions import StageRegressionError
from billing_kernel.services.cancellation import CancellationService
from billing_kernel.services.fulfillment import FulfillmentService
from billing_kernel.services.invoicing import InvoiceService
from billing_kernel.services.line_item_sync import LineItemSync
from billing_kernel.services.orchestrator import PHASE_CANCELLATION, PhaseOrchestrator
from billing_kernel.services.quota_ledger import QuotaLedger
from billing_kernel.store.protocol import RecordFilter

APRIL = date(2024, 4, 15)
MAY = date(2024, 5, 15)


@pytest.fixture
def fulfillment(repo, policy):
    return FulfillmentService(repo, policy)


@pytest.fixture
def invoicing(repo, policy, calendar, fulfillment):
    return InvoiceService(
        repo, policy, fulfillment, LineItemSync(repo, policy), QuotaLedger(repo, policy, calendar),
    )


@pytest.fixture
def cancellation(repo, policy, invoicing):
    return CancellationService(repo, policy, invoicing)


@pytest.fixture
def lost_contract(repo, store, make_contract, make_line_item):
    """Won contract with one manual and one automatic item, then lost."""

    def _make(**contract_fields):
        cid = make_contract(**contract_fields)
        make_line_item(cid, line_item_key="lik-manual", automatic_billing="false")
        make_line_item(cid, line_item_key="lik-auto")
        return cid

    return _make


def stages(store, contract_id):
    records = store.search_fulfillment_records(RecordFilter(equals={"contract_id": contract_id}))
    return Counter(r.fields["stage"] for r in records)


# =============================================================================
# Contracts
# =============================================================================


class TestCancelContract:
    def test_open_contract_is_untouched(self, cancellation, repo, store, fulfillment, lost_contract):
        cid = lost_contract()
        contract = repo.get_contract(cid)
        manual, _ = repo.get_line_items(cid)
        fulfillment.create(contract, manual, APRIL, Pipeline.MANUAL, "forecast_95", associations=())

        result = cancellation.cancel_contract(contract, repo.get_line_items(cid))

        assert result.cancelled is False
        assert stages(store, cid) == Counter({"forecast_95": 1})
        assert store.get_contract(cid).fields["billing_active"] == "true"

    def test_forecasts_cancelled_and_billing_off(self, cancellation, repo, store, fulfillment, lost_contract):
        cid = lost_contract()
        contract = repo.get_contract(cid)
        manual, auto = repo.get_line_items(cid)
        ready = fulfillment.create(contract, manual, date(2024, 3, 15), Pipeline.MANUAL, "ready")
        open_manual = fulfillment.create(contract, manual, APRIL, Pipeline.MANUAL, "forecast_95", associations=())
        fulfillment.create(contract, auto, MAY, Pipeline.AUTOMATIC, "auto_forecast_75", associations=())
        repo.update_contract(cid, {"stage": "closedlost", "closed_lost_reason": "budget cut"})

        result = cancellation.cancel_contract(repo.get_contract(cid), repo.get_line_items(cid))

        assert result.cancelled is True
        assert result.billing_deactivated is True
        assert len(result.records_cancelled) == 2
        assert result.reason == "budget cut"
        assert stages(store, cid) == Counter({"ready": 1, "cancelled": 1, "auto_cancelled": 1})
        assert store.get_fulfillment_record(ready.id).fields["stage"] == "ready"
        assert store.get_fulfillment_record(open_manual.id).fields["cancellation_reason"] == "budget cut"
        assert store.get_contract(cid).fields["billing_active"] == "false"

    def test_second_call_changes_nothing(self, cancellation, repo, fulfillment, lost_contract):
        cid = lost_contract(stage="closedlost")
        contract = repo.get_contract(cid)
        manual, _ = repo.get_line_items(cid)
        fulfillment.create(contract, manual, APRIL, Pipeline.MANUAL, "forecast_25", associations=())
        cancellation.cancel_contract(contract, repo.get_line_items(cid))

        again = cancellation.cancel_contract(repo.get_contract(cid), repo.get_line_items(cid))

        assert again.cancelled is True
        assert again.billing_deactivated is False
        assert again.records_cancelled == ()
        assert again.reason == "closed_lost"

    def test_items_without_key_are_skipped(self, cancellation, repo, make_contract, make_line_item):
        cid = make_contract(stage="closedlost", billing_active="false")
        make_line_item(cid)
        result = cancellation.cancel_contract(repo.get_contract(cid), repo.get_line_items(cid))
        assert result.records_cancelled == ()
        assert result.billing_deactivated is False


class TestOrchestratorCancellation:
    def test_lost_contract_run_cancels_placeholders(self, orchestrator, store, make_contract, make_line_item):
        cid = make_contract()
        make_line_item(cid, number_of_payments="4")
        orchestrator.run_for_contract_id(cid)
        assert stages(store, cid) == Counter({"auto_invoiced": 1, "auto_forecast_95": 3})

        store.update_contract(cid, {"stage": "closedlost"})
        result = orchestrator.run_for_contract_id(cid)

        assert result.phase_errors == ()
        assert result.cancellation.cancelled is True
        assert len(result.cancellation.records_cancelled) == 3
        assert result.forecast_plans == ()
        assert result.emissions == ()
        assert stages(store, cid) == Counter({"auto_invoiced": 1, "auto_cancelled": 3})
        assert store.get_contract(cid).fields["billing_active"] == "false"

    def test_lost_contract_is_never_billed(self, orchestrator, store, make_contract, make_line_item):
        cid = make_contract(stage="closedlost")
        make_line_item(cid)

        result = orchestrator.run_for_contract_id(cid)

        assert result.emissions == ()
        assert store.search_invoices(RecordFilter()) == []
        assert stages(store, cid) == Counter()

    def test_failure_is_a_phase_error(self, flaky_store, policy, clock, make_contract, make_line_item):
        cid = make_contract(stage="closedlost")
        make_line_item(cid)
        broken = flaky_store("search_fulfillment_records", failures=999)
        orchestrator = PhaseOrchestrator.from_store(broken, policy, clock=clock, sleep=lambda s: None)

        result = orchestrator.run_for_contract_id(cid)

        assert [e.phase for e in result.phase_errors] == [PHASE_CANCELLATION]
        assert result.emissions == ()


# =============================================================================
# Invoices
# =============================================================================


class TestInvoiceCancellation:
    @pytest.fixture
    def emitted(self, invoicing, repo, today, make_contract, make_line_item):
        cid = make_contract()
        make_line_item(cid, line_item_key="lik-1", next_billing_date=today.isoformat())
        contract, item = repo.get_contract(cid), repo.get_line_items(cid)[0]
        return contract, invoicing.emit(contract, item, today, today)

    def test_marks_record_for_rebilling(self, cancellation, store, today, emitted):
        _, emission = emitted

        result = cancellation.cancel_invoice(emission.invoice_id, today)

        assert result.propagated is True
        assert result.record_id == emission.record_id
        invoice = store.get_invoice(emission.invoice_id).fields
        assert invoice["stage"] == "cancelled"
        assert invoice["cancelled_on"] == "2024-03-15"
        record = store.get_fulfillment_record(emission.record_id).fields
        assert record["invoice_status"] == "cancelled"
        assert record["invoice_id"] == emission.invoice_id
        assert record["invoice_key"] == emission.key

    def test_open_invoice_is_not_propagated(self, cancellation, emitted):
        _, emission = emitted
        result = cancellation.propagate_invoice_cancellation(emission.invoice_id)
        assert result.propagated is False
        assert result.reason == "not_cancelled"

    def test_paid_invoice_cannot_be_cancelled(self, cancellation, invoicing, today, emitted):
        _, emission = emitted
        invoicing.advance_invoice_stage(emission.invoice_id, InvoiceStage.PAID, today)
        with pytest.raises(StageRegressionError):
            cancellation.cancel_invoice(emission.invoice_id, today)

    def test_occurrence_is_billed_again(self, cancellation, invoicing, repo, store, today, emitted):
        contract, emission = emitted
        cancellation.cancel_invoice(emission.invoice_id, today)

        again = invoicing.emit(contract, repo.get_line_items(contract.id)[0], today, today)

        assert again.invoice_created is True
        assert again.invoice_id != emission.invoice_id
        assert again.record_id == emission.record_id
        record = store.get_fulfillment_record(emission.record_id).fields
        assert record["invoice_id"] == again.invoice_id
        assert "invoice_status" not in record

        stale = cancellation.propagate_invoice_cancellation(emission.invoice_id)
        assert stale.propagated is False
        assert stale.reason == "superseded"
