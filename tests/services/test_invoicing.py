"""
Tests for automatic invoice emission and invoice stage transitions.
"""

from dataclasses import replace
from datetime import date
from decimal import Decimal

import pytest

from billing_kernel.domain.types import FulfillmentRecord, InvoiceStage, LineItem, Pipeline
from billing_kernel.exceptions import StageRegressionError
from billing_kernel.services.fulfillment import FulfillmentService
from billing_kernel.services.invoicing import InvoiceService, invoice_amount
from billing_kernel.services.line_item_sync import LineItemSync
from billing_kernel.services.quota_ledger import QuotaLedger
from billing_kernel.store.protocol import CONTRACT, FULFILLMENT, INVOICE, LINE_ITEM, RecordFilter


def build_service(repo, policy, calendar):
    fulfillment = FulfillmentService(repo, policy)
    return InvoiceService(
        repo, policy, fulfillment, LineItemSync(repo, policy), QuotaLedger(repo, policy, calendar),
    ), fulfillment


@pytest.fixture
def invoicing(repo, policy, calendar):
    return build_service(repo, policy, calendar)


@pytest.fixture
def billable(repo, today, make_contract, make_line_item):
    def _make(contract_fields=None, **item_fields):
        cid = make_contract(**(contract_fields or {}))
        values = {"line_item_key": "lik-1", "next_billing_date": today.isoformat()}
        values.update(item_fields)
        make_line_item(cid, **values)
        return repo.get_contract(cid), repo.get_line_items(cid)[0]

    return _make


def invoices_for(store, key):
    return store.search_invoices(RecordFilter(equals={"invoice_key": key}))


# =============================================================================
# Emission
# =============================================================================


class TestEmit:
    def test_first_emission(self, invoicing, store, today, billable):
        service, _ = invoicing
        contract, item = billable()

        emission = service.emit(contract, item, today, today)

        assert emission.emitted is True
        assert emission.record_created is True
        assert emission.invoice_created is True
        assert emission.key == f"{contract.id}::LIK:lik-1::2024-03-15"
        invoice = store.get_invoice(emission.invoice_id).fields
        assert invoice["stage"] == "pending"
        assert invoice["amount"] == "100"
        assert invoice["currency"] == "USD"
        assert invoice["due_date"] == "2024-03-15"
        assert invoice["fulfillment_id"] == emission.record_id
        record = store.get_fulfillment_record(emission.record_id).fields
        assert record["stage"] == "auto_invoiced"
        assert record["pipeline"] == "automatic"
        assert record["invoice_id"] == emission.invoice_id
        assert store.list_associations(FULFILLMENT, emission.record_id, INVOICE) == [emission.invoice_id]
        assert store.list_associations(INVOICE, emission.invoice_id, CONTRACT) == [contract.id]
        assert store.list_associations(INVOICE, emission.invoice_id, LINE_ITEM) == [item.id]
        item_fields = store.get_line_items(contract.id)[0].fields
        assert item_fields["invoice_id"] == emission.invoice_id
        assert item_fields["invoice_key"] == emission.key
        assert item_fields["last_billed_date"] == "2024-03-15"

    def test_second_emission_reuses_artifacts(self, invoicing, repo, store, today, billable):
        service, _ = invoicing
        contract, item = billable()
        first = service.emit(contract, item, today, today)

        second = service.emit(contract, repo.get_line_items(contract.id)[0], today, today)

        assert second.invoice_id == first.invoice_id
        assert second.record_id == first.record_id
        assert second.invoice_created is False
        assert second.record_created is False
        assert len(invoices_for(store, first.key)) == 1
        assert store.get_line_items(contract.id)[0].fields["payments_issued"] == 1

    def test_default_currency(self, repo, policy, calendar, today, billable):
        service, _ = build_service(repo, replace(policy, default_currency="EUR"), calendar)
        contract, item = billable({"currency": None})
        emission = service.emit(contract, item, today, today)
        assert repo.get_invoice(emission.invoice_id).currency == "EUR"

    def test_bill_now_is_cleared_and_record_flagged(self, invoicing, repo, store, today, billable):
        service, _ = invoicing
        contract, item = billable(bill_now="true")
        emission = service.emit(contract, item, today, today)
        assert repo.get_line_items(contract.id)[0].bill_now is False
        assert store.get_fulfillment_record(emission.record_id).fields["urgent"] == "true"

    def test_forecast_record_is_advanced(self, invoicing, store, today, billable):
        service, fulfillment = invoicing
        contract, item = billable()
        record = fulfillment.create(contract, item, today, Pipeline.AUTOMATIC, "auto_forecast_95")

        emission = service.emit(contract, item, today, today)

        assert emission.record_id == record.id
        assert emission.record_created is False
        assert store.get_fulfillment_record(record.id).fields["stage"] == "auto_invoiced"

    @pytest.mark.parametrize("stage", ["auto_cancelled", "something_else"])
    def test_cancelled_or_foreign_record_is_skipped(self, invoicing, store, today, billable, stage):
        service, fulfillment = invoicing
        contract, item = billable()
        record = fulfillment.create(contract, item, today, Pipeline.AUTOMATIC, stage)

        emission = service.emit(contract, item, today, today)

        assert emission.emitted is False
        assert emission.skipped_reason == f"record_stage:{stage}"
        assert invoices_for(store, emission.key) == []
        assert store.get_fulfillment_record(record.id).fields["stage"] == stage

    def test_real_amount_override_is_invoiced(self, invoicing, repo, today, billable):
        service, fulfillment = invoicing
        contract, item = billable()
        record = fulfillment.create(contract, item, today, Pipeline.AUTOMATIC, "auto_ready")
        repo.update_fulfillment(record.id, {"real_amount": Decimal("80")})
        emission = service.emit(contract, item, today, today)
        assert repo.get_invoice(emission.invoice_id).amount == Decimal("80")

    def test_next_date_follows_forecast(self, invoicing, store, today, billable):
        service, fulfillment = invoicing
        contract, item = billable()
        fulfillment.create(contract, item, date(2024, 4, 15), Pipeline.AUTOMATIC, "auto_forecast_95")
        emission = service.emit(contract, item, today, today)
        assert emission.sync.next_billing_date == date(2024, 4, 15)
        assert store.get_line_items(contract.id)[0].fields["next_billing_date"] == "2024-04-15"


class TestInvoiceLookup:
    def test_stale_pointer_is_ignored(self, invoicing, repo, store, today, billable, captured_logs):
        service, fulfillment = invoicing
        contract, item = billable()
        record = fulfillment.create(contract, item, today, Pipeline.AUTOMATIC, "auto_ready")
        stray = repo.create_invoice({"invoice_key": "another-occurrence"})
        repo.update_fulfillment(record.id, {"invoice_id": stray.id})

        emission = service.emit(contract, item, today, today)

        assert emission.invoice_created is True
        assert emission.invoice_id != stray.id
        assert store.get_fulfillment_record(record.id).fields["invoice_id"] == emission.invoice_id
        assert any(r["message"] == "invoice_pointer_mismatch" for r in captured_logs())

    def test_line_item_pointer_is_not_trusted(self, invoicing, repo, today, billable):
        service, _ = invoicing
        contract, item = billable()
        stray = repo.create_invoice({"invoice_key": "copied"})
        repo.update_line_item(item.id, {"invoice_id": stray.id, "invoice_key": "copied"})

        emission = service.emit(contract, repo.get_line_items(contract.id)[0], today, today)

        assert emission.invoice_created is True
        assert repo.get_line_items(contract.id)[0].invoice_id == emission.invoice_id

    def test_cancelled_invoice_is_replaced(self, invoicing, repo, store, today, billable, captured_logs):
        service, _ = invoicing
        contract, item = billable()
        first = service.emit(contract, item, today, today)
        service.advance_invoice_stage(first.invoice_id, InvoiceStage.CANCELLED, today)

        second = service.emit(contract, repo.get_line_items(contract.id)[0], today, today)

        assert second.invoice_created is True
        assert second.invoice_id != first.invoice_id
        assert second.record_id == first.record_id
        assert store.get_invoice(first.invoice_id).fields["stage"] == "cancelled"
        assert store.get_invoice(first.invoice_id).fields.get("status") is None
        assert store.get_fulfillment_record(first.record_id).fields["invoice_id"] == second.invoice_id
        assert any(r["message"] == "invoice_cancelled_rebilling" for r in captured_logs())

        third = service.emit(contract, repo.get_line_items(contract.id)[0], today, today)
        assert third.invoice_id == second.invoice_id
        assert third.invoice_created is False

    def test_duplicate_invoices_marked(self, invoicing, repo, store, clock, today, billable):
        service, fulfillment = invoicing
        contract, item = billable()
        key = fulfillment.billing_key(contract, item, today)
        older = repo.create_invoice({"invoice_key": key})
        clock.advance(5)
        younger = repo.create_invoice({"invoice_key": key})

        emission = service.emit(contract, item, today, today)

        assert emission.invoice_id == older.id
        assert emission.invoice_created is False
        fields = store.get_invoice(younger.id).fields
        assert fields["status"] == "duplicate"
        assert fields["duplicate_of"] == older.id


# =============================================================================
# Quota
# =============================================================================


class TestQuotaOnEmission:
    QUOTA = {
        "quota_type": "amount",
        "quota_total": "1000",
        "quota_consumed": "0",
        "quota_remaining": "1000",
        "quota_threshold": "100",
        "quota_active": "true",
    }

    def test_consumes_once(self, invoicing, repo, store, today, billable):
        service, _ = invoicing
        contract, item = billable(self.QUOTA, part_of_quota="true")

        first = service.emit(contract, item, today, today)
        second = service.emit(repo.get_contract(contract.id), repo.get_line_items(contract.id)[0], today, today)

        assert first.quota.applied is True
        assert second.quota.applied is False
        assert second.quota.reason == "already_consumed"
        fields = store.get_contract(contract.id).fields
        assert fields["quota_consumed"] == "100"
        assert fields["quota_remaining"] == "900"

    def test_replacement_invoice_keeps_original_debit(self, invoicing, repo, store, today, billable):
        service, _ = invoicing
        contract, item = billable(self.QUOTA, part_of_quota="true")
        first = service.emit(contract, item, today, today)
        service.advance_invoice_stage(first.invoice_id, InvoiceStage.CANCELLED, today)

        second = service.emit(repo.get_contract(contract.id), repo.get_line_items(contract.id)[0], today, today)

        assert second.invoice_id != first.invoice_id
        assert second.quota.reason == "already_consumed"
        assert store.get_fulfillment_record(second.record_id).fields["quota_invoice_id"] == second.invoice_id
        assert store.get_contract(contract.id).fields["quota_remaining"] == "900"

    def test_items_outside_quota_do_not_consume(self, invoicing, store, today, billable):
        service, _ = invoicing
        contract, item = billable(self.QUOTA)
        emission = service.emit(contract, item, today, today)
        assert emission.quota.reason == "not_eligible"
        assert store.get_contract(contract.id).fields["quota_consumed"] == "0"


# =============================================================================
# Invoice stages
# =============================================================================


class TestAdvanceInvoiceStage:
    def test_forward_moves_stamp_dates(self, invoicing, repo, today):
        service, _ = invoicing
        invoice = repo.create_invoice({"invoice_key": "k", "stage": InvoiceStage.PENDING})

        issued = service.advance_invoice_stage(invoice.id, InvoiceStage.ISSUED, today)
        paid = service.advance_invoice_stage(invoice.id, InvoiceStage.PAID, date(2024, 4, 1))

        assert issued.stage is InvoiceStage.ISSUED
        assert issued.issued_on == today
        assert paid.stage is InvoiceStage.PAID
        assert paid.paid_on == date(2024, 4, 1)

    def test_same_stage_is_noop(self, invoicing, repo, today):
        service, _ = invoicing
        invoice = repo.create_invoice({"invoice_key": "k"})
        assert service.advance_invoice_stage(invoice.id, InvoiceStage.PENDING, today).stage is InvoiceStage.PENDING

    def test_backwards_raises(self, invoicing, repo, today):
        service, _ = invoicing
        invoice = repo.create_invoice({"invoice_key": "k", "stage": InvoiceStage.PAID})
        with pytest.raises(StageRegressionError):
            service.advance_invoice_stage(invoice.id, InvoiceStage.ISSUED, today)

    def test_paid_cannot_be_cancelled(self, invoicing, repo, today):
        service, _ = invoicing
        invoice = repo.create_invoice({"invoice_key": "k", "stage": InvoiceStage.PAID})
        with pytest.raises(StageRegressionError):
            service.advance_invoice_stage(invoice.id, InvoiceStage.CANCELLED, today)


class TestInvoiceAmount:
    def test_record_amount_wins(self):
        item = LineItem(id="li", quantity=Decimal("2"), unit_price=Decimal("50"))
        assert invoice_amount(FulfillmentRecord(id="r", real_amount=Decimal("75")), item) == Decimal("75")

    def test_falls_back_to_line_total(self):
        item = LineItem(id="li", quantity=Decimal("2"), unit_price=Decimal("50"))
        assert invoice_amount(FulfillmentRecord(id="r"), item) == Decimal("100")
