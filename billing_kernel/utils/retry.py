"""
Generic retry wrapper with capped exponential backoff.

Only failures accepted by the ``is_retryable`` predicate are retried; any
other exception propagates on the first attempt.  Sleep is injectable so
tests never wait.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from billing_kernel.exceptions import TransientStoreError
from billing_kernel.logging_config import get_logger

logger = get_logger("utils.retry")

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays cannot be negative")

    def delay_for(self, attempt: int) -> float:
        """Backoff before retry number ``attempt`` (1-based): base * 2^(attempt-1), capped."""
        return min(self.base_delay_seconds * (2 ** (attempt - 1)), self.max_delay_seconds)


def is_transient(exc: BaseException) -> bool:
    """Rate limits and server-side failures are transient; nothing else is."""
    if isinstance(exc, TransientStoreError):
        return True
    status = getattr(exc, "status", None)
    if status is None:
        status = getattr(exc, "status_code", None)
    if isinstance(status, int):
        return status == 429 or 500 <= status <= 599
    return False


def with_retry(
    fn: Callable[[], T],
    *,
    policy: RetryPolicy | None = None,
    is_retryable: Callable[[BaseException], bool] = is_transient,
    sleep: Callable[[float], None] = time.sleep,
    operation: str = "operation",
) -> T:
    """Call ``fn`` until it succeeds, a non-retryable error occurs, or attempts run out.

    The last retryable exception is re-raised unchanged when attempts are
    exhausted.
    """
    policy = policy or RetryPolicy()
    attempt = 1
    while True:
        try:
            return fn()
        except Exception as exc:
            if not is_retryable(exc) or attempt >= policy.max_attempts:
                if attempt > 1:
                    logger.warning(
                        "retry_gave_up",
                        extra={
                            "operation": operation,
                            "attempts": attempt,
                            "error_type": type(exc).__name__,
                        },
                    )
                raise
            delay = policy.delay_for(attempt)
            logger.info(
                "retry_scheduled",
                extra={
                    "operation": operation,
                    "attempt": attempt,
                    "delay_seconds": delay,
                    "error_type": type(exc).__name__,
                },
            )
            sleep(delay)
            attempt += 1
