"""
Tests for BillingRepository: typed reads, serialized writes, retries, dry run.
"""

from datetime import date
from decimal import Decimal

import pytest

from billing_kernel.domain.types import InvoiceStage
from billing_kernel.exceptions import ContractNotFoundError, TransientStoreError
from billing_kernel.services.repository import BillingRepository, is_synthetic
from billing_kernel.store.protocol import COMPANY, CONTACT, CONTRACT, RecordFilter


# =============================================================================
# Reads and writes
# =============================================================================


class TestTypedAccess:
    def test_get_contract_with_associations(self, repo, store, make_contract):
        cid = make_contract(quota_type="hours", quota_total="100")
        store.associate(CONTRACT, cid, COMPANY, "co-1")
        store.associate(CONTRACT, cid, CONTACT, "p-1")
        contract = repo.get_contract(cid)
        assert contract.id == cid
        assert contract.billing_active is True
        assert contract.quota_total == Decimal("100")
        assert contract.company_ids == ("co-1",)
        assert contract.contact_ids == ("p-1",)

    def test_unknown_contract(self, repo):
        with pytest.raises(ContractNotFoundError):
            repo.get_contract("missing")

    def test_update_serializes_typed_patch(self, repo, store, make_contract):
        cid = make_contract()
        repo.update_contract(cid, {
            "billing_active": False,
            "next_billing_date": date(2024, 3, 18),
            "quota_remaining": Decimal("3.00"),
        })
        fields = store.get_contract(cid).fields
        assert fields["billing_active"] == "false"
        assert fields["next_billing_date"] == "2024-03-18"
        assert fields["quota_remaining"] == "3"

    def test_empty_patch_is_not_written(self, repo, store, make_contract, clock):
        cid = make_contract()
        before = store.get_contract(cid).fields
        clock.advance(60)
        repo.update_contract(cid, {})
        assert store.get_contract(cid).fields == before

    def test_fulfillment_round_trip(self, repo):
        record = repo.create_fulfillment({
            "record_key": "c::LIK:l::2024-03-18",
            "contract_id": "c",
            "line_item_key": "l",
            "due_date": date(2024, 3, 18),
            "real_amount": Decimal("100"),
        })
        found = repo.find_fulfillment_by_key("c::LIK:l::2024-03-18")
        assert [r.id for r in found] == [record.id]
        assert found[0].due_date == date(2024, 3, 18)
        assert repo.fulfillment_after("c", "l", date(2024, 3, 17))[0].id == record.id
        assert repo.fulfillment_after("c", "l", date(2024, 3, 18)) == []

    def test_invoice_round_trip(self, repo):
        invoice = repo.create_invoice({"invoice_key": "k", "stage": InvoiceStage.PENDING})
        assert repo.get_invoice(invoice.id).stage is InvoiceStage.PENDING
        assert [i.id for i in repo.find_invoices_by_key("k")] == [invoice.id]


class TestLineItemClear:
    def test_none_clears_property(self, repo, store, make_contract, make_line_item):
        cid = make_contract()
        lid = make_line_item(cid, billing_error="missing_start_date")
        repo.update_line_item(lid, {"billing_error": None})
        item = repo.get_line_items(cid)[0]
        assert item.id == lid
        assert item.billing_error is None
        assert "billing_error" not in store.get_line_items(cid)[0].fields


# =============================================================================
# Retries
# =============================================================================


class TestRetries:
    def test_transient_failures_are_retried(self, flaky_store, policy, make_contract):
        cid = make_contract()
        sleeps = []
        flaky = flaky_store("get_contract", failures=2)
        repo = BillingRepository(flaky, policy, sleep=sleeps.append)
        assert repo.get_contract(cid).id == cid
        assert sleeps == [1.0, 2.0]

    def test_exhausted_retries_raise(self, flaky_store, policy, make_contract):
        cid = make_contract()
        flaky = flaky_store("update_contract", failures=99, status=429)
        repo = BillingRepository(flaky, policy, sleep=lambda s: None)
        with pytest.raises(TransientStoreError):
            repo.update_contract(cid, {"stage": "x"})
        assert flaky.remaining_failures == 99 - policy.retry.max_attempts


# =============================================================================
# Dry run
# =============================================================================


class TestDryRun:
    def test_updates_are_skipped(self, dry_repo, store, make_contract):
        cid = make_contract()
        dry_repo.update_contract(cid, {"stage": "closedlost"})
        assert store.get_contract(cid).fields["stage"] == "closedwon"
        assert dry_repo.skipped_writes == 1

    def test_creates_return_synthetic_views(self, dry_repo, store):
        record = dry_repo.create_fulfillment({"record_key": "k", "stage": "auto_ready"})
        invoice = dry_repo.create_invoice({"invoice_key": "k", "amount": Decimal("10")})
        assert is_synthetic(record.id)
        assert is_synthetic(invoice.id)
        assert record.stage == "auto_ready"
        assert invoice.amount == Decimal("10")
        assert store.search_invoices(RecordFilter(equals={"invoice_key": "k"})) == []
        assert dry_repo.skipped_writes == 2

    def test_reads_still_hit_the_store(self, dry_repo, make_contract):
        cid = make_contract()
        assert dry_repo.get_contract(cid).stage == "closedwon"

    def test_is_synthetic(self):
        assert is_synthetic("dry-run:k")
        assert not is_synthetic("3f2b")
        assert not is_synthetic(None)
