"""
Configuration Loader (``billing_config.loader``).

Responsibility
--------------
Loads the billing YAML file and parses it into a frozen
``billing_config.schema.BillingConfig``.  Callers normally go through
``billing_config.get_active_config()``.

Architecture position
---------------------
**Config layer**.  Depends on the schema only; the kernel never imports
this module.

Invariants enforced
-------------------
* Unknown keys raise ``TypeError`` from the dataclass constructor; there
  are no silently ignored settings.
* ``compute_checksum`` produces a deterministic SHA-256 hash for
  configuration identity and change detection.

Failure modes
-------------
* Missing YAML file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid values  -> ``ValueError`` from ``__post_init__`` validation.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict
from pathlib import Path
from typing import Any

import yaml

from billing_config.schema import BillingConfig


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
    """
    with open(path) as f:
        return yaml.safe_load(f) or {}


def load_billing_config(path: Path) -> BillingConfig:
    """Parse ``path`` into a ``BillingConfig``.

    The file may nest everything under a top-level ``billing:`` key.
    """
    data = load_yaml_file(Path(path))
    if "billing" in data and isinstance(data["billing"], dict):
        data = data["billing"]
    return BillingConfig.from_dict(data)


def compute_checksum(data: dict[str, Any] | BillingConfig) -> str:
    """
    Compute SHA-256 checksum of canonical JSON serialization.

    Identical configuration always produces identical checksums.
    """
    if isinstance(data, BillingConfig):
        data = asdict(data)
    canonical = json.dumps(data, sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()
