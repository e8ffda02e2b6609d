"""
Tests for PhaseOrchestrator: full contract runs, phase gating and isolation.
"""

from dataclasses import replace
from decimal import Decimal

import pytest

from billing_kernel.exceptions import ContractNotFoundError
from billing_kernel.services.orchestrator import (
    PHASE_FORECAST,
    PHASE_INVOICING,
    PhaseOrchestrator,
)
from billing_kernel.services.repository import is_synthetic
from billing_kernel.store.protocol import RecordFilter


def no_sleep(seconds):
    return None


def invoices(store):
    return store.search_invoices(RecordFilter(equals={}))


def fulfillment_records(store):
    return store.search_fulfillment_records(RecordFilter(equals={}))


class RecordingMirror:
    def __init__(self, mirror_id):
        self.mirror_id = mirror_id
        self.calls = []

    def mirror(self, contract, items):
        self.calls.append(contract.id)
        return self.mirror_id


# =============================================================================
# Full runs
# =============================================================================


class TestFullRun:
    def test_automatic_item_due_today_is_invoiced(self, orchestrator, store, make_contract, make_line_item, captured_logs):
        cid = make_contract(billing_active=None)
        make_line_item(cid)

        result = orchestrator.run_for_contract_id(cid)

        assert result.phase_errors == ()
        assert result.activation_result.activated is True
        assert len(result.key_assignments) == 1
        assert result.invoices_emitted == 1
        assert len(invoices(store)) == 1
        item = store.get_line_items(cid)[0].fields
        assert item["last_billed_date"] == "2024-03-15"
        assert item["next_billing_date"] == "2024-04-15"
        assert store.get_contract(cid).fields["billing_active"] == "true"
        completed = [r for r in captured_logs() if r["message"] == "contract_run_completed"]
        assert completed[0]["contract_id"] == cid

    def test_first_invoice_after_activation_debits_quota(self, orchestrator, store, make_contract, make_line_item):
        cid = make_contract(
            billing_active=None, quota_type="amount", quota_total="1000", quota_threshold="100",
        )
        make_line_item(cid, part_of_quota="true")

        result = orchestrator.run_for_contract_id(cid)

        assert result.phase_errors == ()
        assert result.activation_result.activated is True
        assert result.quota_activation.activated is True
        (emission,) = result.emissions
        assert emission.quota.applied is True
        contract = orchestrator.repository.get_contract(cid)
        assert contract.quota_active is True
        assert contract.quota_consumed == Decimal("100")
        assert contract.quota_remaining == Decimal("900")

    def test_second_run_is_idempotent(self, orchestrator, store, make_contract, make_line_item):
        cid = make_contract()
        make_line_item(cid)
        orchestrator.run_for_contract_id(cid)

        again = orchestrator.run_for_contract_id(cid)

        assert again.invoices_emitted == 0
        assert len(invoices(store)) == 1
        dues = [r.fields["due_date"] for r in fulfillment_records(store)]
        assert len(dues) == len(set(dues))

    def test_manual_item_in_window_is_promoted(self, orchestrator, store, make_contract, make_line_item):
        cid = make_contract()
        make_line_item(cid, automatic_billing="false", start_date="2024-03-25")

        result = orchestrator.run_for_contract_id(cid)

        assert result.manual_fulfillments_promoted == 1
        assert result.invoices_emitted == 0
        stages = {r.fields["due_date"]: r.fields["stage"] for r in fulfillment_records(store)}
        assert stages["2024-03-25"] == "ready"
        assert stages["2024-04-25"] == "forecast_95"
        assert invoices(store) == []

    def test_bill_now_invoices_before_due_date(self, orchestrator, store, make_contract, make_line_item):
        cid = make_contract()
        make_line_item(cid, start_date="2024-04-01", bill_now="true")
        result = orchestrator.run_for_contract_id(cid)
        assert result.invoices_emitted == 1
        assert store.get_line_items(cid)[0].fields["bill_now"] == "false"

    def test_paused_item_is_not_billed(self, orchestrator, store, make_contract, make_line_item):
        cid = make_contract()
        make_line_item(cid, paused="true")
        assert orchestrator.run_for_contract_id(cid).invoices_emitted == 0
        assert invoices(store) == []

    def test_unknown_contract(self, orchestrator):
        with pytest.raises(ContractNotFoundError):
            orchestrator.run_for_contract_id("missing")


# =============================================================================
# Gating
# =============================================================================


class TestBillingInactive:
    def test_phases_two_and_three_are_skipped(self, orchestrator, store, make_contract, make_line_item):
        cid = make_contract(billing_active="false")
        make_line_item(cid)
        make_line_item(cid, automatic_billing="false", start_date="2024-03-20")

        result = orchestrator.run_for_contract_id(cid)

        assert result.promotions == ()
        assert result.emissions == ()
        assert invoices(store) == []
        # Phase 1 still maintains schedules and forecasts
        assert store.get_contract(cid).fields["next_billing_date"] == "2024-03-15"
        assert fulfillment_records(store)

    def test_not_won_contract_is_not_activated(self, orchestrator, store, make_contract, make_line_item):
        cid = make_contract(stage="contractsent", billing_active=None)
        make_line_item(cid)
        result = orchestrator.run_for_contract_id(cid)
        assert result.activation_result.activated is False
        assert result.emissions == ()


# =============================================================================
# Isolation
# =============================================================================


class TestIsolation:
    def test_store_failure_aborts_only_its_phase(self, flaky_store, policy, clock, store, make_contract, make_line_item):
        cid = make_contract()
        make_line_item(cid)
        flaky = flaky_store("search_fulfillment_records", failures=999)
        orchestrator = PhaseOrchestrator.from_store(flaky, policy, clock=clock, sleep=no_sleep)

        result = orchestrator.run_for_contract_id(cid)

        assert {e.phase for e in result.phase_errors} == {PHASE_FORECAST, PHASE_INVOICING}
        assert all(e.code == "TRANSIENT_STORE_ERROR" for e in result.phase_errors)
        assert result.schedule_result is not None
        assert store.get_contract(cid).fields["next_billing_date"] == "2024-03-15"

    def test_line_item_errors_do_not_stop_siblings(self, orchestrator, store, make_contract, make_line_item):
        cid = make_contract(
            quota_type="amount", quota_total="1000", quota_consumed="0",
            quota_remaining="500", quota_threshold="100", quota_active="true",
        )
        broken = make_line_item(cid, part_of_quota="true")
        healthy = make_line_item(cid, name="Hosting")

        result = orchestrator.run_for_contract_id(cid)

        errors = [e for e in result.per_line_item_errors if e.phase == PHASE_INVOICING]
        assert [(e.line_item_id, e.code) for e in errors] == [(broken, "QUOTA_INCONSISTENT")]
        emitted = {e.line_item_id for e in result.emissions}
        assert healthy in emitted
        assert store.get_contract(cid).fields["quota_status"] == "inconsistent"

    def test_schedule_errors_are_reported_per_item(self, orchestrator, make_contract, make_line_item):
        cid = make_contract()
        bad = make_line_item(cid, frequency="every blue moon")
        good = make_line_item(cid, name="Hosting")

        result = orchestrator.run_for_contract_id(cid)

        assert [e.line_item_id for e in result.per_line_item_errors] == [bad]
        assert [e.line_item_id for e in result.emissions] == [good]


# =============================================================================
# Dry run and mirroring
# =============================================================================


class TestDryRun:
    def test_nothing_is_written(self, store, policy, clock, make_contract, make_line_item):
        cid = make_contract(billing_active=None)
        make_line_item(cid)
        before_contract = store.get_contract(cid).fields
        before_item = store.get_line_items(cid)[0].fields
        orchestrator = PhaseOrchestrator.from_store(store, policy, clock=clock, dry_run=True, sleep=no_sleep)

        result = orchestrator.run_for_contract_id(cid)

        assert result.phase_errors == ()
        assert len(result.emissions) == 1
        assert is_synthetic(result.emissions[0].invoice_id)
        assert orchestrator.repository.skipped_writes > 0
        assert store.get_contract(cid).fields == before_contract
        assert store.get_line_items(cid)[0].fields == before_item
        assert invoices(store) == []
        assert fulfillment_records(store) == []


class TestMirroring:
    def test_mirror_link_is_recorded(self, store, policy, clock, make_contract, make_line_item):
        cid = make_contract()
        mirror_id = make_contract(is_mirror="true", origin_contract_id=cid)
        mirror = RecordingMirror(mirror_id)
        orchestrator = PhaseOrchestrator.from_store(
            store, replace(policy, mirroring_enabled=True), clock=clock,
            sleep=no_sleep, mirror_service=mirror,
        )

        result = orchestrator.run_for_contract_id(cid)

        assert result.mirror_contract_id == mirror_id
        assert mirror.calls == [cid]
        assert store.get_contract(cid).fields["mirror_contract_id"] == mirror_id

    def test_mirrors_are_not_mirrored_again(self, store, policy, clock, make_contract):
        cid = make_contract(is_mirror="true")
        mirror = RecordingMirror("x")
        orchestrator = PhaseOrchestrator.from_store(
            store, replace(policy, mirroring_enabled=True), clock=clock,
            sleep=no_sleep, mirror_service=mirror,
        )
        orchestrator.run_for_contract_id(cid)
        assert mirror.calls == []

    def test_disabled_by_default(self, store, policy, clock, make_contract):
        mirror = RecordingMirror("x")
        orchestrator = PhaseOrchestrator.from_store(store, policy, clock=clock, sleep=no_sleep, mirror_service=mirror)
        orchestrator.run_for_contract_id(make_contract())
        assert mirror.calls == []
