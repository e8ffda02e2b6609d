"""
FileLock -- single-runner guard for the billing sweep.

Contract:
    ``acquire()`` creates the lock file atomically (``O_CREAT | O_EXCL``) and
    writes the acquisition time into it.  A lock file older than the TTL
    belongs to a dead run and is reclaimed.  ``release()`` removes the file.

Failure modes:
    - SweepAlreadyRunningError if a fresh lock file exists.
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Callable

from billing_kernel.exceptions import SweepAlreadyRunningError
from billing_kernel.logging_config import get_logger

logger = get_logger("batch.lock")


class FileLock:
    def __init__(
        self,
        path: str | Path,
        ttl_seconds: float,
        now: Callable[[], float] = time.time,
    ):
        self.path = Path(path)
        self.ttl_seconds = ttl_seconds
        self._now = now
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def _age(self) -> float | None:
        try:
            return self._now() - self.path.stat().st_mtime
        except FileNotFoundError:
            return None

    def acquire(self) -> None:
        age = self._age()
        if age is not None:
            if age <= self.ttl_seconds:
                raise SweepAlreadyRunningError(str(self.path), age)
            logger.warning(
                "sweep_lock_stale_reclaimed",
                extra={"lock_path": str(self.path), "age_seconds": round(age, 1)},
            )
            self.path.unlink(missing_ok=True)

        try:
            fd = os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            # Another runner won the race between the stale check and create
            raise SweepAlreadyRunningError(str(self.path), 0.0) from None
        with os.fdopen(fd, "w") as f:
            f.write(str(self._now()))
        self._held = True
        logger.info("sweep_lock_acquired", extra={"lock_path": str(self.path)})

    def release(self) -> None:
        if not self._held:
            return
        self.path.unlink(missing_ok=True)
        self._held = False
        logger.info("sweep_lock_released", extra={"lock_path": str(self.path)})

    def __enter__(self) -> FileLock:
        self.acquire()
        return self

    def __exit__(self, *exc) -> None:
        self.release()
