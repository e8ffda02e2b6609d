"""
ActivationGate -- one-time switch-on of billing for won contracts.

The trigger is the *absence* of ``billing_active``: a contract in a won
stage whose flag was never written gets it set to true exactly once.  A
flag explicitly set to false (billing paused by a person) is respected.

After the write the contract is re-read (at least once) because the store
may be eventually consistent; later phases must see the activated state.
"""

from __future__ import annotations

from dataclasses import dataclass, replace

from billing_kernel.domain.policy import EnginePolicy
from billing_kernel.domain.types import Contract
from billing_kernel.logging_config import get_logger
from billing_kernel.services.repository import BillingRepository

logger = get_logger("services.activation")


@dataclass(frozen=True)
class ActivationResult:
    contract_id: str
    activated: bool
    refetched: int
    billing_active: bool


class ActivationGate:
    def __init__(self, repository: BillingRepository, policy: EnginePolicy):
        self._repo = repository
        self._policy = policy

    def should_activate(self, contract: Contract) -> bool:
        return contract.stage in self._policy.won_stages and contract.billing_active is None

    def evaluate(self, contract: Contract) -> tuple[ActivationResult, Contract]:
        """Activate if eligible; return the result and the freshest contract view."""
        if not self.should_activate(contract):
            return (
                ActivationResult(contract.id, False, 0, contract.billing_active is True),
                contract,
            )

        self._repo.update_contract(contract.id, {"billing_active": True})
        logger.info(
            "billing_activated",
            extra={"contract_id": contract.id, "stage": contract.stage},
        )

        fresh = contract
        attempts = 0
        for _ in range(self._policy.activation_refetch_attempts):
            attempts += 1
            fresh = self._repo.get_contract(contract.id)
            if fresh.billing_active is True:
                break
        else:
            if not self._repo.dry_run:
                logger.warning(
                    "activation_not_visible",
                    extra={"contract_id": contract.id, "attempts": attempts},
                )
            fresh = replace(fresh, billing_active=True)

        return ActivationResult(contract.id, True, attempts, True), fresh
