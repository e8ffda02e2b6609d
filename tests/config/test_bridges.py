"""
Tests for config -> kernel policy bridges.
"""

from dataclasses import replace

from billing_config.bridges import build_engine_policy
from billing_config.schema import BillingConfig, ForecastConfig, RetryConfig
from billing_kernel.domain.types import Pipeline, StageKind


class TestBuildEnginePolicy:
    def test_scalars_carried_over(self):
        config = BillingConfig(
            timezone="America/Bogota",
            lookahead_days=45,
            won_stages=("closedwon", "renewal"),
            mirroring_enabled=True,
        )
        policy = build_engine_policy(config)
        assert policy.timezone == "America/Bogota"
        assert policy.lookahead_days == 45
        assert policy.won_stages == ("closedwon", "renewal")
        assert policy.cancelled_stages == ("closedlost",)
        assert policy.mirroring_enabled is True

    def test_pipeline_stages(self):
        policy = build_engine_policy(BillingConfig())
        manual = policy.stages.for_pipeline(Pipeline.MANUAL)
        automatic = policy.stages.for_pipeline(Pipeline.AUTOMATIC)
        assert manual.forecast_for_bucket(75) == "forecast_75"
        assert automatic.ready == "auto_ready"
        assert automatic.kind_of("auto_invoiced") is StageKind.INVOICED
        assert manual.kind_of("auto_ready") is StageKind.UNKNOWN

    def test_forecast_and_retry(self):
        config = replace(
            BillingConfig(),
            forecast=ForecastConfig(max_occurrences=6, horizon_months=3),
            retry=RetryConfig(max_attempts=2, base_delay_seconds=0.5),
        )
        policy = build_engine_policy(config)
        assert policy.forecast.max_occurrences == 6
        assert policy.forecast.horizon_months == 3
        assert policy.forecast.bucket_for("contractsent") == 75
        assert policy.forecast.bucket_for("appointmentscheduled") == 25
        assert policy.retry.max_attempts == 2
        assert policy.retry.base_delay_seconds == 0.5

    def test_policy_does_not_share_config_dicts(self):
        config = BillingConfig()
        policy = build_engine_policy(config)
        assert policy.forecast.stage_buckets == config.forecast.stage_buckets
        assert policy.forecast.stage_buckets is not config.forecast.stage_buckets
