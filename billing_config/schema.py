"""
Billing Configuration Schema.

Defines the structure and defaults for the billing engine and the batch
sweep.  Values are loaded once from YAML (``billing_config.loader``) and
passed by reference; nothing reads configuration mid-computation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Self

from billing_kernel.logging_config import get_logger

logger = get_logger("config.schema")

FORECAST_BUCKETS = (25, 50, 75, 95)


def _int_keys(mapping: dict) -> dict[int, str]:
    return {int(k): str(v) for k, v in (mapping or {}).items()}


@dataclass(frozen=True)
class PipelineConfig:
    """Stage names for one fulfillment pipeline (manual or automatic)."""

    forecast: dict[int, str]
    ready: str
    invoiced: str
    cancelled: str

    def __post_init__(self) -> None:
        missing = [b for b in FORECAST_BUCKETS if b not in self.forecast]
        if missing:
            raise ValueError(f"forecast stages missing for buckets {missing}")
        if not self.ready or not self.invoiced or not self.cancelled:
            raise ValueError("ready, invoiced and cancelled stage names are required")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(
            forecast=_int_keys(data["forecast"]),
            ready=data["ready"],
            invoiced=data["invoiced"],
            cancelled=data["cancelled"],
        )


def _default_manual() -> PipelineConfig:
    return PipelineConfig(
        forecast={25: "forecast_25", 50: "forecast_50", 75: "forecast_75", 95: "forecast_95"},
        ready="ready",
        invoiced="invoiced",
        cancelled="cancelled",
    )


def _default_automatic() -> PipelineConfig:
    return PipelineConfig(
        forecast={
            25: "auto_forecast_25",
            50: "auto_forecast_50",
            75: "auto_forecast_75",
            95: "auto_forecast_95",
        },
        ready="auto_ready",
        invoiced="auto_invoiced",
        cancelled="auto_cancelled",
    )


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays cannot be negative")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(**data)


@dataclass(frozen=True)
class SweepConfig:
    """Batch sweep limits.  Deadline and pacing are in seconds."""

    page_size: int = 100
    deadline_seconds: float = 1500.0
    pacing_seconds: float = 0.15
    lock_path: str = "/tmp/billing_sweep.lock"
    lock_ttl_seconds: float = 3600.0
    modified_lookback_days: int = 7

    def __post_init__(self) -> None:
        if self.page_size <= 0:
            raise ValueError("page_size must be positive")
        if self.deadline_seconds <= 0:
            raise ValueError("deadline_seconds must be positive")
        if self.pacing_seconds < 0:
            raise ValueError("pacing_seconds cannot be negative")
        if self.lock_ttl_seconds <= 0:
            raise ValueError("lock_ttl_seconds must be positive")
        if self.modified_lookback_days < 0:
            raise ValueError("modified_lookback_days cannot be negative")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        return cls(**data)


@dataclass(frozen=True)
class ForecastConfig:
    enabled: bool = True
    max_occurrences: int = 24
    horizon_months: int = 24
    # Contract stage -> probability bucket; unknown stages use bucket 25
    stage_buckets: dict[str, int] = field(default_factory=lambda: {
        "decisionmakerboughtin": 50,
        "contractsent": 75,
        "closedwon": 95,
    })

    def __post_init__(self) -> None:
        if self.max_occurrences <= 0:
            raise ValueError("max_occurrences must be positive")
        if self.horizon_months <= 0:
            raise ValueError("horizon_months must be positive")
        bad = {k: v for k, v in self.stage_buckets.items() if v not in FORECAST_BUCKETS}
        if bad:
            raise ValueError(f"stage_buckets values must be one of {FORECAST_BUCKETS}, got {bad}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        values = dict(data)
        if "stage_buckets" in values:
            values["stage_buckets"] = {str(k): int(v) for k, v in values["stage_buckets"].items()}
        return cls(**values)


@dataclass(frozen=True)
class BillingConfig:
    """
    Configuration for the billing engine and sweep.

    Override at instantiation or load from YAML:

        config = BillingConfig(lookahead_days=45, won_stages=("closedwon", "renewal"))
        config = load_billing_config(Path("billing.yaml"))
    """

    timezone: str = "UTC"
    lookahead_days: int = 30
    won_stages: tuple[str, ...] = ("closedwon",)
    cancelled_stages: tuple[str, ...] = ("closedlost",)
    default_currency: str = "USD"
    quota_epsilon: Decimal = Decimal("0.01")
    activation_refetch_attempts: int = 2
    mirroring_enabled: bool = False
    database_url: str = "sqlite:///billing.db"

    manual: PipelineConfig = field(default_factory=_default_manual)
    automatic: PipelineConfig = field(default_factory=_default_automatic)
    forecast: ForecastConfig = field(default_factory=ForecastConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    sweep: SweepConfig = field(default_factory=SweepConfig)

    def __post_init__(self) -> None:
        if self.lookahead_days < 0:
            raise ValueError("lookahead_days cannot be negative")
        if not self.won_stages:
            raise ValueError("won_stages must name at least one stage")
        if set(self.won_stages) & set(self.cancelled_stages):
            raise ValueError("a stage cannot be both won and cancelled")
        if self.quota_epsilon < 0:
            raise ValueError("quota_epsilon cannot be negative")
        if self.activation_refetch_attempts < 1:
            raise ValueError("activation_refetch_attempts must be at least 1")
        overlap = set(self.manual.forecast.values()) & set(self.automatic.forecast.values())
        if overlap:
            raise ValueError(f"forecast stage names shared by both pipelines: {sorted(overlap)}")

        logger.info(
            "billing_config_initialized",
            extra={
                "timezone": self.timezone,
                "lookahead_days": self.lookahead_days,
                "won_stages": list(self.won_stages),
                "mirroring_enabled": self.mirroring_enabled,
                "forecast_enabled": self.forecast.enabled,
                "retry_max_attempts": self.retry.max_attempts,
            },
        )

    @classmethod
    def with_defaults(cls) -> Self:
        """Create config with the built-in stage names and limits."""
        logger.info("billing_config_created_with_defaults")
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Self:
        """Create config from a dictionary (e.g., parsed YAML)."""
        logger.info(
            "billing_config_loading_from_dict",
            extra={"keys": sorted(data.keys())},
        )
        values = dict(data)
        for name in ("won_stages", "cancelled_stages"):
            if name in values:
                values[name] = tuple(values[name])
        if "quota_epsilon" in values:
            values["quota_epsilon"] = Decimal(str(values["quota_epsilon"]))
        if "stages" in values:
            stages = values.pop("stages") or {}
            if "manual" in stages:
                values["manual"] = PipelineConfig.from_dict(stages["manual"])
            if "automatic" in stages:
                values["automatic"] = PipelineConfig.from_dict(stages["automatic"])
        nested = {
            "forecast": ForecastConfig,
            "retry": RetryConfig,
            "sweep": SweepConfig,
        }
        for name, section in nested.items():
            if name in values:
                values[name] = section.from_dict(values[name] or {})
        return cls(**values)
