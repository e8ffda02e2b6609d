"""
Engine policy -- the kernel-side view of billing configuration.

The kernel never reads YAML or environment variables.  ``billing_config``
builds an ``EnginePolicy`` once (see ``billing_config.bridges``) and every
service receives it by reference.

Invariants enforced:
    - Fulfillment stages move forward only: forecast -> ready ->
      invoiced | cancelled.  ``PipelineStages.rank`` encodes that order.
    - Forecast buckets map a contract's sales stage to one forecast stage
      per pipeline; unknown contract stages fall into the lowest bucket.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal

from billing_kernel.domain.types import Pipeline, StageKind
from billing_kernel.utils.retry import RetryPolicy

FORECAST_BUCKETS = (25, 50, 75, 95)


@dataclass(frozen=True)
class PipelineStages:
    """Stage names for one fulfillment pipeline."""

    forecast_by_bucket: dict[int, str]
    ready: str
    invoiced: str
    cancelled: str

    def __post_init__(self) -> None:
        missing = [b for b in FORECAST_BUCKETS if b not in self.forecast_by_bucket]
        if missing:
            raise ValueError(f"forecast stages missing for buckets {missing}")
        names = list(self.forecast_by_bucket.values()) + [
            self.ready, self.invoiced, self.cancelled,
        ]
        if len(set(names)) != len(names):
            raise ValueError("pipeline stage names must be unique")

    @property
    def forecast_stages(self) -> frozenset[str]:
        return frozenset(self.forecast_by_bucket.values())

    def kind_of(self, stage: str | None) -> StageKind:
        if stage is None:
            return StageKind.UNKNOWN
        if stage in self.forecast_stages:
            return StageKind.FORECAST
        if stage == self.ready:
            return StageKind.READY
        if stage == self.invoiced:
            return StageKind.INVOICED
        if stage == self.cancelled:
            return StageKind.CANCELLED
        return StageKind.UNKNOWN

    def rank(self, stage: str | None) -> int:
        kind = self.kind_of(stage)
        if kind is StageKind.FORECAST:
            return 0
        if kind is StageKind.READY:
            return 1
        if kind in (StageKind.INVOICED, StageKind.CANCELLED):
            return 2
        return -1

    def forecast_for_bucket(self, bucket: int) -> str:
        return self.forecast_by_bucket[bucket]


@dataclass(frozen=True)
class StagePolicy:
    manual: PipelineStages
    automatic: PipelineStages

    def for_pipeline(self, pipeline: Pipeline) -> PipelineStages:
        return self.automatic if pipeline is Pipeline.AUTOMATIC else self.manual

    def is_forecast(self, pipeline: Pipeline | None, stage: str | None) -> bool:
        if pipeline is None:
            return (
                self.manual.kind_of(stage) is StageKind.FORECAST
                or self.automatic.kind_of(stage) is StageKind.FORECAST
            )
        return self.for_pipeline(pipeline).kind_of(stage) is StageKind.FORECAST


@dataclass(frozen=True)
class ForecastPolicy:
    """How many forecast placeholders to keep ahead of each line item."""

    enabled: bool = True
    max_occurrences: int = 24
    horizon_months: int = 24
    stage_buckets: dict[str, int] = field(default_factory=dict)

    def bucket_for(self, contract_stage: str | None) -> int:
        bucket = self.stage_buckets.get(contract_stage or "", FORECAST_BUCKETS[0])
        return bucket if bucket in FORECAST_BUCKETS else FORECAST_BUCKETS[0]


@dataclass(frozen=True)
class EnginePolicy:
    stages: StagePolicy
    timezone: str = "UTC"
    lookahead_days: int = 30
    won_stages: tuple[str, ...] = ("closedwon",)
    cancelled_stages: tuple[str, ...] = ("closedlost",)
    default_currency: str = "USD"
    quota_epsilon: Decimal = Decimal("0.01")
    activation_refetch_attempts: int = 2
    mirroring_enabled: bool = False
    forecast: ForecastPolicy = field(default_factory=ForecastPolicy)
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        if self.lookahead_days < 0:
            raise ValueError("lookahead_days cannot be negative")
        if self.activation_refetch_attempts < 1:
            raise ValueError("activation_refetch_attempts must be at least 1")
