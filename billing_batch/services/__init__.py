"""Sweep services: the single-runner lock and the sweep itself."""

from billing_batch.services.lock import FileLock
from billing_batch.services.sweep import BillingSweep

__all__ = ["BillingSweep", "FileLock"]
