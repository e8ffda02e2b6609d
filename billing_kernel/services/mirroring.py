"""
Mirroring -- collaborator interface and link validation for mirror contracts.

A mirror is an independent contract that replicates an original (for a
second legal entity, for instance).  The two are linked by explicit ids in
both directions: ``original.mirror_contract_id`` and
``mirror.origin_contract_id``.  A link is trusted only when both directions
agree and the target is flagged ``is_mirror``.

Producing the mirror is delegated to a ``MirrorService`` supplied by the
deployment; the kernel only ships the no-op default.
"""

from __future__ import annotations

from typing import Protocol

from billing_kernel.domain.types import Contract, LineItem
from billing_kernel.exceptions import RecordNotFoundError
from billing_kernel.logging_config import get_logger
from billing_kernel.services.repository import BillingRepository

logger = get_logger("services.mirroring")


class MirrorService(Protocol):
    """Creates or refreshes the mirror of ``contract``; returns the mirror id."""

    def mirror(self, contract: Contract, items: list[LineItem]) -> str | None: ...


class NullMirrorService:
    def mirror(self, contract: Contract, items: list[LineItem]) -> str | None:
        return None


def validate_mirror_link(repository: BillingRepository, original: Contract) -> Contract | None:
    """Return the mirror contract if the link is valid in both directions."""
    if not original.mirror_contract_id or original.is_mirror:
        return None
    try:
        mirror = repository.get_contract(original.mirror_contract_id)
    except RecordNotFoundError:
        logger.warning(
            "mirror_link_dangling",
            extra={"contract_id": original.id, "mirror_contract_id": original.mirror_contract_id},
        )
        return None
    if not mirror.is_mirror or mirror.origin_contract_id != original.id:
        logger.warning(
            "mirror_link_rejected",
            extra={
                "contract_id": original.id,
                "mirror_contract_id": mirror.id,
                "is_mirror": mirror.is_mirror,
                "origin_contract_id": mirror.origin_contract_id,
            },
        )
        return None
    return mirror
