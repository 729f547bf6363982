"""
Validation Quorum
Compliance Reference: PP No. 5/2021 Pasal 11 — Akses dan otorisasi

Counts validator decisions for one transaction against its required
approvals. The count is always recomputed from the stored validation rows;
`Transaction.current_approvals` is only a cache of the last recount.
Recording a decision is a plain append, so concurrent validators never
overwrite one another.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from clearinghouse.errors import InvalidInput, NotFound
from clearinghouse.models import Validation, ValidationDecision
from clearinghouse.store import Store

logger = logging.getLogger(__name__)

INFORMATIONAL_DECISIONS = {
    ValidationDecision.REQUEST_MORE_INFO,
    ValidationDecision.ESCALATE,
}


@dataclass(frozen=True)
class QuorumPolicy:
    count_conditional: bool = False      # CONDITIONAL_APPROVE counts as APPROVE
    complete_on_approval: bool = False   # APPROVED -> COMPLETED with no further action


@dataclass
class QuorumState:
    transaction_id: str
    required_approvals: int
    approvals: int = 0
    rejections: int = 0
    conditional: int = 0
    informational: int = 0
    newly_reached: bool = False
    validations: list[Validation] = field(default_factory=list)

    @property
    def current_approvals(self) -> int:
        return min(self.approvals, self.required_approvals)

    @property
    def reached(self) -> bool:
        return self.approvals >= self.required_approvals

    @property
    def net_positive(self) -> bool:
        return self.approvals > self.rejections

    def as_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "required_approvals": self.required_approvals,
            "current_approvals": self.current_approvals,
            "approvals": self.approvals,
            "rejections": self.rejections,
            "conditional": self.conditional,
            "informational": self.informational,
            "reached": self.reached,
            "newly_reached": self.newly_reached,
            "net_positive": self.net_positive,
        }


def check_validation(validation: Validation) -> None:
    """Reject malformed validator decisions before anything is stored."""
    if not validation.reasoning or not validation.reasoning.strip():
        raise InvalidInput("Validation reasoning is required.")
    is_conditional = validation.decision == ValidationDecision.CONDITIONAL_APPROVE
    if is_conditional and not validation.conditions:
        raise InvalidInput("CONDITIONAL_APPROVE requires conditions.")
    if not is_conditional and validation.conditions:
        raise InvalidInput(
            f"Conditions are only allowed with CONDITIONAL_APPROVE, "
            f"got {validation.decision.value}."
        )
    if validation.score is not None and not 0 <= validation.score <= 100:
        raise InvalidInput(f"Validation score must be 0-100, got {validation.score}.")
    if validation.confidence is not None and not 0.0 <= validation.confidence <= 1.0:
        raise InvalidInput(
            f"Validation confidence must be 0.0-1.0, got {validation.confidence}."
        )


def effective_decisions(validations: list[Validation]) -> list[Validation]:
    """
    Latest decision per validator, in recording order.

    A validator corrects a decision by recording a new one; the old row stays
    as history but no longer counts. Anonymous rows each count once.
    """
    latest: dict[str, Validation] = {}
    ordered: list[Validation] = []
    for v in validations:
        if v.validator_id is None:
            ordered.append(v)
            continue
        if v.validator_id in latest:
            ordered.remove(latest[v.validator_id])
        latest[v.validator_id] = v
        ordered.append(v)
    return ordered


class ValidationQuorum:
    def __init__(self, store: Store, policy: Optional[QuorumPolicy] = None):
        self.store = store
        self.policy = policy or QuorumPolicy()

    def _count(self, transaction_id: str, required: int,
               policy: QuorumPolicy) -> QuorumState:
        validations = self.store.list_validations(transaction_id)
        state = QuorumState(
            transaction_id=transaction_id,
            required_approvals=required,
            validations=validations,
        )
        for v in effective_decisions(validations):
            if v.decision == ValidationDecision.APPROVE:
                state.approvals += 1
            elif v.decision == ValidationDecision.CONDITIONAL_APPROVE:
                state.conditional += 1
                if policy.count_conditional:
                    state.approvals += 1
            elif v.decision == ValidationDecision.REJECT:
                state.rejections += 1
            elif v.decision in INFORMATIONAL_DECISIONS:
                state.informational += 1
        return state

    def _required(self, transaction_id: str) -> int:
        transaction = self.store.find_transaction(transaction_id)
        if transaction is None:
            raise NotFound(f"Transaction {transaction_id} not found.")
        return transaction.required_approvals

    def state(self, transaction_id: str,
              policy: Optional[QuorumPolicy] = None) -> QuorumState:
        """Recount from the stored validation rows."""
        return self._count(transaction_id, self._required(transaction_id),
                           policy or self.policy)

    def record_decision(self, transaction_id: str, validation: Validation,
                        policy: Optional[QuorumPolicy] = None) -> QuorumState:
        """
        Append one validator decision and return the recounted state.

        `newly_reached` is True only for the decision that took the count
        from below the threshold to at or above it.
        """
        policy = policy or self.policy
        if validation.transaction_id != transaction_id:
            raise InvalidInput(
                f"Validation {validation.id} belongs to transaction "
                f"{validation.transaction_id}, not {transaction_id}."
            )
        check_validation(validation)

        with self.store.atomic():
            # recounts below must not interleave with another decision
            self.store.lock_transaction(transaction_id)
            required = self._required(transaction_id)
            before = self._count(transaction_id, required, policy)
            self.store.create_validation(validation)
            after = self._count(transaction_id, required, policy)

        after.newly_reached = after.reached and not before.reached
        if after.newly_reached:
            logger.info("Quorum reached for %s: %d/%d", transaction_id,
                        after.approvals, required)
        return after
