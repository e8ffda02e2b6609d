"""
Config -> Kernel Bridges.

Functions that convert a ``BillingConfig`` into kernel-side policy objects.
These live in billing_config (the producer) because the kernel must never
import billing_config.

Usage:
    from billing_config.bridges import build_engine_policy

    config = get_active_config()
    policy = build_engine_policy(config)
"""

from __future__ import annotations

from billing_config.schema import BillingConfig, PipelineConfig
from billing_kernel.domain.policy import (
    EnginePolicy,
    ForecastPolicy,
    PipelineStages,
    StagePolicy,
)
from billing_kernel.utils.retry import RetryPolicy


def build_pipeline_stages(pipeline: PipelineConfig) -> PipelineStages:
    return PipelineStages(
        forecast_by_bucket=dict(pipeline.forecast),
        ready=pipeline.ready,
        invoiced=pipeline.invoiced,
        cancelled=pipeline.cancelled,
    )


def build_retry_policy(config: BillingConfig) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=config.retry.max_attempts,
        base_delay_seconds=config.retry.base_delay_seconds,
        max_delay_seconds=config.retry.max_delay_seconds,
    )


def build_engine_policy(config: BillingConfig) -> EnginePolicy:
    """Build the ``EnginePolicy`` every kernel service receives."""
    return EnginePolicy(
        stages=StagePolicy(
            manual=build_pipeline_stages(config.manual),
            automatic=build_pipeline_stages(config.automatic),
        ),
        timezone=config.timezone,
        lookahead_days=config.lookahead_days,
        won_stages=tuple(config.won_stages),
        cancelled_stages=tuple(config.cancelled_stages),
        default_currency=config.default_currency,
        quota_epsilon=config.quota_epsilon,
        activation_refetch_attempts=config.activation_refetch_attempts,
        mirroring_enabled=config.mirroring_enabled,
        forecast=ForecastPolicy(
            enabled=config.forecast.enabled,
            max_occurrences=config.forecast.max_occurrences,
            horizon_months=config.forecast.horizon_months,
            stage_buckets=dict(config.forecast.stage_buckets),
        ),
        retry=build_retry_policy(config),
    )
