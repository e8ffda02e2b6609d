"""Services for the billing kernel (everything that reads or writes the store)."""

from billing_kernel.services.activation import ActivationGate, ActivationResult
from billing_kernel.services.forecast import ForecastPlan, ForecastPlanner
from billing_kernel.services.fulfillment import FulfillmentService
from billing_kernel.services.invoicing import InvoiceEmission, InvoiceService
from billing_kernel.services.line_item_keys import LineItemKeyService
from billing_kernel.services.line_item_sync import LineItemSync, SyncResult
from billing_kernel.services.mirroring import MirrorService, NullMirrorService
from billing_kernel.services.orchestrator import PhaseOrchestrator, PhaseRunResult
from billing_kernel.services.promotion import PromotionEngine, PromotionResult
from billing_kernel.services.quota_ledger import QuotaLedger
from billing_kernel.services.repository import BillingRepository
from billing_kernel.services.schedule_service import ScheduleResult, ScheduleService

__all__ = [
    "ActivationGate",
    "ActivationResult",
    "BillingRepository",
    "ForecastPlan",
    "ForecastPlanner",
    "FulfillmentService",
    "InvoiceEmission",
    "InvoiceService",
    "LineItemKeyService",
    "LineItemSync",
    "MirrorService",
    "NullMirrorService",
    "PhaseOrchestrator",
    "PhaseRunResult",
    "PromotionEngine",
    "PromotionResult",
    "QuotaLedger",
    "ScheduleResult",
    "ScheduleService",
    "SyncResult",
]
