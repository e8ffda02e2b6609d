"""
Pure domain layer.

Typed record views, schedule arithmetic, quota arithmetic and engine
policy.  Nothing here touches the record store or reads the wall clock
except ``SystemClock``.
"""

from billing_kernel.domain.clock import BusinessCalendar, Clock, DeterministicClock, SystemClock
from billing_kernel.domain.policy import (
    EnginePolicy,
    ForecastPolicy,
    PipelineStages,
    StagePolicy,
)
from billing_kernel.domain.quota import QuotaSnapshot, apply_debit, compute_quota_status
from billing_kernel.domain.schedule import ScheduleMode, ScheduleResolution, resolve_schedule
from billing_kernel.domain.types import (
    Contract,
    FulfillmentRecord,
    Invoice,
    InvoiceStage,
    LineItem,
    LineItemError,
    Pipeline,
    PromotionOutcome,
    QuotaStatus,
    QuotaType,
    StageKind,
)

__all__ = [
    "BusinessCalendar",
    "Clock",
    "Contract",
    "DeterministicClock",
    "EnginePolicy",
    "ForecastPolicy",
    "FulfillmentRecord",
    "Invoice",
    "InvoiceStage",
    "LineItem",
    "LineItemError",
    "Pipeline",
    "PipelineStages",
    "PromotionOutcome",
    "QuotaSnapshot",
    "QuotaStatus",
    "QuotaType",
    "ScheduleMode",
    "ScheduleResolution",
    "StageKind",
    "StagePolicy",
    "SystemClock",
    "apply_debit",
    "compute_quota_status",
    "resolve_schedule",
]
