"""
Typed views over store records.

Every view is a frozen dataclass built through ``from_record()``, which only
reads whitelisted properties and coerces them with
``billing_kernel.domain.coercion``.  Raw field bags never travel past the
repository.

Invariants enforced:
    - ``Contract.billing_active`` is tri-state: ``None`` means the property is
      absent, which is what the activation gate keys on.
    - ``LineItem.line_item_key`` is the stable identity; ``id`` is the mutable
      store id and is never used to build idempotency keys.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping

from billing_kernel.domain.coercion import (
    parse_bool,
    parse_decimal,
    parse_flag,
    parse_int,
    parse_str,
    parse_ymd,
    pick,
)


# =============================================================================
# Enums
# =============================================================================


class QuotaType(str, Enum):
    HOURS = "hours"
    AMOUNT = "amount"

    @classmethod
    def parse(cls, value: Any) -> QuotaType | None:
        text = (parse_str(value) or "").lower()
        if text in ("hours", "horas", "hour", "hora"):
            return cls.HOURS
        if text in ("amount", "monto", "dinero", "money", "currency"):
            return cls.AMOUNT
        return None


class QuotaStatus(str, Enum):
    """Human-facing quota label, recomputed on every ledger write."""

    OK = "ok"
    NEAR_THRESHOLD = "near_threshold"
    EXHAUSTED = "exhausted"
    OVERDRAWN = "overdrawn"
    INCONSISTENT = "inconsistent"
    DEACTIVATED = "deactivated"


class Pipeline(str, Enum):
    MANUAL = "manual"
    AUTOMATIC = "automatic"


class StageKind(str, Enum):
    """Position of a fulfillment stage in the forward-only lifecycle."""

    FORECAST = "forecast"
    READY = "ready"
    INVOICED = "invoiced"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class InvoiceStage(str, Enum):
    PENDING = "pending"
    ISSUED = "issued"
    PAID = "paid"
    CANCELLED = "cancelled"


class PromotionOutcome(str, Enum):
    PROMOTED = "promoted"
    ALREADY_READY = "already_ready"
    MISSING = "missing"
    FOREIGN_STAGE = "foreign_stage"
    OUTSIDE_WINDOW = "outside_window"


DUPLICATE_STATUS = "duplicate"
INVOICE_CANCELLED_STATUS = "cancelled"


# =============================================================================
# Contract
# =============================================================================


@dataclass(frozen=True)
class Contract:
    id: str
    name: str | None = None
    stage: str | None = None
    billing_active: bool | None = None
    currency: str | None = None
    close_date: date | None = None
    created_on: date | None = None
    is_mirror: bool = False
    mirror_contract_id: str | None = None
    origin_contract_id: str | None = None
    next_billing_date: date | None = None
    last_billing_date: date | None = None
    billing_frequency_label: str | None = None
    quota_type: QuotaType | None = None
    quota_total: Decimal | None = None
    quota_consumed: Decimal | None = None
    quota_remaining: Decimal | None = None
    quota_threshold: Decimal | None = None
    quota_alert_fired: bool = False
    quota_alert_fired_at: date | None = None
    quota_active: bool = False
    quota_status: str | None = None
    quota_last_consumption: str | None = None
    closed_lost_reason: str | None = None
    company_ids: tuple[str, ...] = ()
    contact_ids: tuple[str, ...] = ()

    FIELDS = frozenset({
        "name", "stage", "billing_active", "currency", "close_date",
        "created_at", "is_mirror", "mirror_contract_id", "origin_contract_id",
        "next_billing_date", "last_billing_date", "billing_frequency_label",
        "quota_type", "quota_total", "quota_consumed", "quota_remaining",
        "quota_threshold", "quota_alert_fired", "quota_alert_fired_at",
        "quota_active", "quota_status", "quota_last_consumption",
        "closed_lost_reason",
    })

    @classmethod
    def from_record(
        cls,
        record_id: str,
        fields: Mapping[str, Any],
        company_ids: tuple[str, ...] = (),
        contact_ids: tuple[str, ...] = (),
    ) -> Contract:
        f = pick(fields, cls.FIELDS)
        return cls(
            id=str(record_id),
            name=parse_str(f.get("name")),
            stage=parse_str(f.get("stage")),
            billing_active=parse_bool(f.get("billing_active")),
            currency=parse_str(f.get("currency")),
            close_date=parse_ymd(f.get("close_date")),
            created_on=parse_ymd(f.get("created_at")),
            is_mirror=parse_flag(f.get("is_mirror")),
            mirror_contract_id=parse_str(f.get("mirror_contract_id")),
            origin_contract_id=parse_str(f.get("origin_contract_id")),
            next_billing_date=parse_ymd(f.get("next_billing_date")),
            last_billing_date=parse_ymd(f.get("last_billing_date")),
            billing_frequency_label=parse_str(f.get("billing_frequency_label")),
            quota_type=QuotaType.parse(f.get("quota_type")),
            quota_total=parse_decimal(f.get("quota_total")),
            quota_consumed=parse_decimal(f.get("quota_consumed")),
            quota_remaining=parse_decimal(f.get("quota_remaining")),
            quota_threshold=parse_decimal(f.get("quota_threshold")),
            quota_alert_fired=parse_flag(f.get("quota_alert_fired")),
            quota_alert_fired_at=parse_ymd(f.get("quota_alert_fired_at")),
            quota_active=parse_flag(f.get("quota_active")),
            quota_status=parse_str(f.get("quota_status")),
            quota_last_consumption=parse_str(f.get("quota_last_consumption")),
            closed_lost_reason=parse_str(f.get("closed_lost_reason")),
            company_ids=tuple(company_ids),
            contact_ids=tuple(contact_ids),
        )

    @property
    def has_quota(self) -> bool:
        return self.quota_type is not None


# =============================================================================
# Line item
# =============================================================================


@dataclass(frozen=True)
class LineItem:
    id: str
    contract_id: str | None = None
    name: str | None = None
    line_item_key: str | None = None
    frequency: str | None = None
    start_date: date | None = None
    start_delay_days: int | None = None
    start_delay_months: int | None = None
    number_of_payments: int | None = None
    auto_renew: bool = False
    automatic_billing: bool = False
    part_of_quota: bool = False
    paused: bool = False
    bill_now: bool = False
    irregular: bool = False
    irregular_date: date | None = None
    anchor_date: date | None = None
    anchor_override_date: date | None = None
    schedule_complete: bool = False
    next_billing_date: date | None = None
    last_billed_date: date | None = None
    payments_issued: int | None = None
    payments_remaining: int | None = None
    quantity: Decimal | None = None
    unit_price: Decimal | None = None
    invoice_id: str | None = None
    invoice_key: str | None = None
    billing_error: str | None = None
    created_on: date | None = None
    origin_line_item_id: str | None = None
    forecast_generated_on: date | None = None

    FIELDS = frozenset({
        "contract_id", "name", "line_item_key", "frequency", "start_date",
        "start_delay_days", "start_delay_months", "number_of_payments",
        "auto_renew", "automatic_billing", "part_of_quota", "paused",
        "bill_now", "irregular", "irregular_date", "anchor_date",
        "anchor_override_date", "schedule_complete", "next_billing_date",
        "last_billed_date", "payments_issued", "payments_remaining",
        "quantity", "unit_price", "invoice_id", "invoice_key",
        "billing_error", "created_at", "origin_line_item_id",
        "forecast_generated_on",
    })

    @classmethod
    def from_record(cls, record_id: str, fields: Mapping[str, Any]) -> LineItem:
        f = pick(fields, cls.FIELDS)
        return cls(
            id=str(record_id),
            contract_id=parse_str(f.get("contract_id")),
            name=parse_str(f.get("name")),
            line_item_key=parse_str(f.get("line_item_key")),
            frequency=parse_str(f.get("frequency")),
            start_date=parse_ymd(f.get("start_date")),
            start_delay_days=parse_int(f.get("start_delay_days")),
            start_delay_months=parse_int(f.get("start_delay_months")),
            number_of_payments=parse_int(f.get("number_of_payments")),
            auto_renew=parse_flag(f.get("auto_renew")),
            automatic_billing=parse_flag(f.get("automatic_billing")),
            part_of_quota=parse_flag(f.get("part_of_quota")),
            paused=parse_flag(f.get("paused")),
            bill_now=parse_flag(f.get("bill_now")),
            irregular=parse_flag(f.get("irregular")),
            irregular_date=parse_ymd(f.get("irregular_date")),
            anchor_date=parse_ymd(f.get("anchor_date")),
            anchor_override_date=parse_ymd(f.get("anchor_override_date")),
            schedule_complete=parse_flag(f.get("schedule_complete")),
            next_billing_date=parse_ymd(f.get("next_billing_date")),
            last_billed_date=parse_ymd(f.get("last_billed_date")),
            payments_issued=parse_int(f.get("payments_issued")),
            payments_remaining=parse_int(f.get("payments_remaining")),
            quantity=parse_decimal(f.get("quantity")),
            unit_price=parse_decimal(f.get("unit_price")),
            invoice_id=parse_str(f.get("invoice_id")),
            invoice_key=parse_str(f.get("invoice_key")),
            billing_error=parse_str(f.get("billing_error")),
            created_on=parse_ymd(f.get("created_at")),
            origin_line_item_id=parse_str(f.get("origin_line_item_id")),
            forecast_generated_on=parse_ymd(f.get("forecast_generated_on")),
        )

    @property
    def is_manual(self) -> bool:
        return not self.automatic_billing

    @property
    def pipeline(self) -> Pipeline:
        return Pipeline.AUTOMATIC if self.automatic_billing else Pipeline.MANUAL

    @property
    def line_total(self) -> Decimal | None:
        if self.quantity is None or self.unit_price is None:
            return None
        return self.quantity * self.unit_price


# =============================================================================
# Fulfillment record
# =============================================================================


@dataclass(frozen=True)
class FulfillmentRecord:
    id: str
    key: str | None = None
    contract_id: str | None = None
    line_item_key: str | None = None
    line_item_id: str | None = None
    pipeline: Pipeline | None = None
    stage: str | None = None
    due_date: date | None = None
    real_quantity: Decimal | None = None
    real_hours: Decimal | None = None
    real_amount: Decimal | None = None
    quota_invoice_id: str | None = None
    quota_consumed_value: Decimal | None = None
    quota_consumed_on: date | None = None
    quota_preventive_alert: bool = False
    invoice_id: str | None = None
    invoice_key: str | None = None
    invoice_status: str | None = None
    cancellation_reason: str | None = None
    urgent: bool = False
    status: str | None = None
    duplicate_of: str | None = None
    created_at: str | None = None

    FIELDS = frozenset({
        "record_key", "contract_id", "line_item_key", "line_item_id",
        "pipeline", "stage", "due_date", "real_quantity", "real_hours",
        "real_amount", "quota_invoice_id", "quota_consumed_value",
        "quota_consumed_on", "quota_preventive_alert", "invoice_id",
        "invoice_key", "invoice_status", "cancellation_reason", "urgent",
        "status", "duplicate_of", "created_at",
    })

    @classmethod
    def from_record(cls, record_id: str, fields: Mapping[str, Any]) -> FulfillmentRecord:
        f = pick(fields, cls.FIELDS)
        pipeline_raw = parse_str(f.get("pipeline"))
        return cls(
            id=str(record_id),
            key=parse_str(f.get("record_key")),
            contract_id=parse_str(f.get("contract_id")),
            line_item_key=parse_str(f.get("line_item_key")),
            line_item_id=parse_str(f.get("line_item_id")),
            pipeline=Pipeline(pipeline_raw) if pipeline_raw in ("manual", "automatic") else None,
            stage=parse_str(f.get("stage")),
            due_date=parse_ymd(f.get("due_date")),
            real_quantity=parse_decimal(f.get("real_quantity")),
            real_hours=parse_decimal(f.get("real_hours")),
            real_amount=parse_decimal(f.get("real_amount")),
            quota_invoice_id=parse_str(f.get("quota_invoice_id")),
            quota_consumed_value=parse_decimal(f.get("quota_consumed_value")),
            quota_consumed_on=parse_ymd(f.get("quota_consumed_on")),
            quota_preventive_alert=parse_flag(f.get("quota_preventive_alert")),
            invoice_id=parse_str(f.get("invoice_id")),
            invoice_key=parse_str(f.get("invoice_key")),
            invoice_status=parse_str(f.get("invoice_status")),
            cancellation_reason=parse_str(f.get("cancellation_reason")),
            urgent=parse_flag(f.get("urgent")),
            status=parse_str(f.get("status")),
            duplicate_of=parse_str(f.get("duplicate_of")),
            created_at=parse_str(f.get("created_at")),
        )

    @property
    def is_duplicate(self) -> bool:
        return self.status == DUPLICATE_STATUS


# =============================================================================
# Invoice
# =============================================================================


@dataclass(frozen=True)
class Invoice:
    id: str
    key: str | None = None
    contract_id: str | None = None
    line_item_id: str | None = None
    line_item_key: str | None = None
    fulfillment_id: str | None = None
    amount: Decimal | None = None
    currency: str | None = None
    stage: InvoiceStage = InvoiceStage.PENDING
    due_date: date | None = None
    issued_on: date | None = None
    paid_on: date | None = None
    cancelled_on: date | None = None
    status: str | None = None
    created_at: str | None = None

    FIELDS = frozenset({
        "invoice_key", "contract_id", "line_item_id", "line_item_key",
        "fulfillment_id", "amount", "currency", "stage", "due_date",
        "issued_on", "paid_on", "cancelled_on", "status", "created_at",
    })

    @classmethod
    def from_record(cls, record_id: str, fields: Mapping[str, Any]) -> Invoice:
        f = pick(fields, cls.FIELDS)
        stage_raw = parse_str(f.get("stage")) or InvoiceStage.PENDING.value
        try:
            stage = InvoiceStage(stage_raw)
        except ValueError:
            stage = InvoiceStage.PENDING
        return cls(
            id=str(record_id),
            key=parse_str(f.get("invoice_key")),
            contract_id=parse_str(f.get("contract_id")),
            line_item_id=parse_str(f.get("line_item_id")),
            line_item_key=parse_str(f.get("line_item_key")),
            fulfillment_id=parse_str(f.get("fulfillment_id")),
            amount=parse_decimal(f.get("amount")),
            currency=parse_str(f.get("currency")),
            stage=stage,
            due_date=parse_ymd(f.get("due_date")),
            issued_on=parse_ymd(f.get("issued_on")),
            paid_on=parse_ymd(f.get("paid_on")),
            cancelled_on=parse_ymd(f.get("cancelled_on")),
            status=parse_str(f.get("status")),
            created_at=parse_str(f.get("created_at")),
        )

    @property
    def is_duplicate(self) -> bool:
        return self.status == DUPLICATE_STATUS


# =============================================================================
# Errors reported per line item
# =============================================================================


@dataclass(frozen=True)
class LineItemError:
    """One failure scoped to a single line item within a phase."""

    phase: str
    line_item_id: str
    code: str
    message: str
    line_item_key: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
