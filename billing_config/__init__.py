"""
billing_config -- single public entrypoint for billing configuration.

Responsibility:
    Provides the way to obtain configuration at runtime through
    ``get_active_config()``.  The configuration is built once and passed
    by reference; no component reads environment variables or files
    mid-computation.

Architecture position:
    Configuration.  Sits above ``billing_kernel`` and below
    ``billing_batch``.  The kernel MUST NEVER import from
    ``billing_config``; ``billing_config.bridges`` translates the config
    into kernel policy objects.

Audit relevance:
    Every successful ``get_active_config()`` call emits a
    ``BILLING_CONFIG_TRACE`` log entry with the source path and checksum.
"""

from __future__ import annotations

from pathlib import Path

from billing_config.loader import compute_checksum, load_billing_config
from billing_config.schema import BillingConfig
from billing_kernel.logging_config import get_logger

_logger = get_logger("config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "billing.yaml"


def get_active_config(path: Path | None = None) -> BillingConfig:
    """Load the billing configuration (the packaged default when ``path`` is None).

    Raises:
        FileNotFoundError: If ``path`` does not exist.
        ValueError: If a value fails validation.
    """
    source = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    config = load_billing_config(source)
    _logger.info(
        "BILLING_CONFIG_TRACE",
        extra={
            "trace_type": "BILLING_CONFIG_TRACE",
            "source": str(source),
            "checksum": compute_checksum(config),
            "lookahead_days": config.lookahead_days,
            "timezone": config.timezone,
        },
    )
    return config


__all__ = ["BillingConfig", "DEFAULT_CONFIG_PATH", "get_active_config"]
