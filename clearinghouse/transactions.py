"""
Transaction State Machine
Compliance Reference: PP No. 5/2021 Pasal 9 — Audit trail sistem

Top-level lifecycle of a clearing house transaction. Status changes are
driven by negotiation outcomes, validator quorum, or administrative update,
and every change is written to the audit ledger in the same unit of work as
the change itself. Illegal transitions are refused, logged as diagnostics,
and never reach the ledger.

    INITIATED ──► PENDING_VALIDATION ──► PENDING_APPROVAL ──► APPROVED ──► COMPLETED
        │                 │                     │                 │
        └─────────────────┴──► REJECTED ◄───────┘                 │
        └─────────────────┴──► CANCELLED ◄──────┴─────────────────┘
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional

from clearinghouse.errors import (
    ConcurrentModification,
    InvalidInput,
    InvalidState,
    InvalidTransition,
    NotFound,
)
from clearinghouse.ledger import AuditLedger
from clearinghouse.models import (
    SYSTEM_ACTOR,
    Actor,
    AuditEventType,
    AuditLogEntry,
    NegotiationOutcome,
    NegotiationStatus,
    SecurityLevel,
    Transaction,
    TransactionStatus,
    Validation,
    ValidationDecision,
    resolve_actor,
    utcnow,
)
from clearinghouse.quorum import QuorumPolicy, QuorumState, ValidationQuorum
from clearinghouse.store import Store

logger = logging.getLogger(__name__)

S = TransactionStatus

# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------

TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    S.INITIATED: frozenset({S.PENDING_VALIDATION, S.PENDING_APPROVAL, S.REJECTED, S.CANCELLED}),
    S.PENDING_VALIDATION: frozenset({S.PENDING_APPROVAL, S.REJECTED, S.CANCELLED}),
    S.PENDING_APPROVAL: frozenset({S.APPROVED, S.REJECTED, S.CANCELLED}),
    S.APPROVED: frozenset({S.COMPLETED, S.CANCELLED}),
    S.REJECTED: frozenset(),
    S.COMPLETED: frozenset(),
    S.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset(s for s, targets in TRANSITIONS.items() if not targets)
DELETABLE_STATES = frozenset({S.INITIATED, S.PENDING_VALIDATION, S.REJECTED, S.CANCELLED})
VALIDATING_STATES = frozenset({S.PENDING_VALIDATION, S.PENDING_APPROVAL})
NEGOTIABLE_STATES = frozenset({S.INITIATED, S.PENDING_VALIDATION})

UPDATABLE_FIELDS = frozenset({
    "status", "priority", "total_amount", "currency", "billing_model",
    "compliance_level", "security_rating", "risk_score",
    "expected_completion", "expires_at", "transaction_data",
    "contract_terms", "metadata",
})

CREATE_FIELDS = (UPDATABLE_FIELDS - {"status"}) | {
    "transaction_type", "contract_id", "request_id", "strict_rejection",
}

# bookkeeping columns that change on every write
_DIFF_IGNORED = {"version", "updated_at"}


def diff_fields(old: dict[str, Any], new: dict[str, Any]) -> list[str]:
    return [k for k in new if k not in _DIFF_IGNORED and old.get(k) != new.get(k)]


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in TRANSITIONS[current]


@dataclass
class ValidationOutcome:
    validation: Validation
    quorum: QuorumState
    transaction: Transaction


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class TransactionStateMachine:
    """
    Orchestrates transaction status.

    Collaborators are injected: the store (persistence), the ledger (every
    change), and the quorum (validator decisions).
    """

    def __init__(self, store: Store, ledger: AuditLedger,
                 quorum: Optional[ValidationQuorum] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.ledger = ledger
        self.quorum = quorum or ValidationQuorum(store)
        self._clock = clock or utcnow

    # -- reads ---------------------------------------------------------------

    def get(self, transaction_id: str) -> Transaction:
        transaction = self.store.find_transaction(transaction_id)
        if transaction is None:
            raise NotFound(f"Transaction {transaction_id} not found.")
        return transaction

    def get_for_update(self, transaction_id: str) -> Transaction:
        """Lock the transaction row for the current unit, then read it."""
        self.store.lock_transaction(transaction_id)
        return self.get(transaction_id)

    def approval_status(self, transaction_id: str) -> QuorumState:
        return self.quorum.state(transaction_id)

    def statistics(self) -> dict[str, Any]:
        by_status = self.store.group_transactions_by_status()
        total = sum(by_status.values())
        pending = sum(by_status.get(s.value, 0) for s in
                      (S.INITIATED, S.PENDING_VALIDATION, S.PENDING_APPROVAL))
        completed = by_status.get(S.COMPLETED.value, 0)
        failed = by_status.get(S.REJECTED.value, 0) + by_status.get(S.CANCELLED.value, 0)
        return {
            "total_transactions": total,
            "pending_transactions": pending,
            "approved_transactions": by_status.get(S.APPROVED.value, 0),
            "completed_transactions": completed,
            "failed_transactions": failed,
            "total_value": self.store.sum_transaction_amounts(S.COMPLETED),
            "success_rate": (completed / total) * 100 if total else 0.0,
            "by_status": by_status,
            "validations_by_decision": self.store.group_validations_by_decision(),
            "payments_by_status": self.store.group_payments_by_status(),
        }

    # -- creation ------------------------------------------------------------

    def create(self, initiator: str, provider: str, consumer: str, resource: str,
               required_approvals: int = 2, **fields: Any) -> Transaction:
        """Create a transaction in INITIATED and log TRANSACTION_CREATED."""
        if (not isinstance(required_approvals, int) or isinstance(required_approvals, bool)
                or required_approvals < 1):
            raise InvalidInput(
                f"required_approvals must be an integer >= 1, got {required_approvals!r}."
            )
        for label, value in (("initiator", initiator), ("provider", provider),
                             ("consumer", consumer), ("resource", resource)):
            if not isinstance(value, str) or not value.strip():
                raise InvalidInput(f"A {label} id is required.")
        unknown = set(fields) - CREATE_FIELDS
        if unknown:
            raise InvalidInput(f"Unknown transaction fields: {', '.join(sorted(unknown))}.")

        now = self._clock()
        transaction = Transaction(
            initiator_id=initiator,
            provider_id=provider,
            consumer_id=consumer,
            resource_id=resource,
            required_approvals=required_approvals,
            created_at=now,
            updated_at=now,
            **fields,
        )
        # round-trip so string dates and enum values are normalized
        transaction = Transaction.from_record(transaction.to_record())

        with self.store.atomic():
            created = self.store.create_transaction(transaction)
            self.ledger.append(
                AuditEventType.TRANSACTION_CREATED,
                f"Transaction {created.id} initiated by {initiator}",
                actor=initiator,
                transaction_id=created.id,
                new_state=created.to_record(),
                metadata={"required_approvals": required_approvals},
            )
        logger.info("Transaction %s created (%d approvals required)",
                    created.id, required_approvals)
        return created

    # -- transition plumbing -------------------------------------------------

    def _refuse(self, transaction: Transaction, target: TransactionStatus,
                reason: str) -> InvalidTransition:
        logger.warning("Rejected transition for %s: %s -> %s (%s)",
                       transaction.id, transaction.status.value, target.value, reason)
        return InvalidTransition(
            f"Transaction {transaction.id} cannot move from "
            f"{transaction.status.value} to {target.value}: {reason}",
            current=transaction.status.value,
            target=target.value,
        )

    def _check_transition(self, transaction: Transaction, target: TransactionStatus) -> None:
        if can_transition(transaction.status, target):
            return
        if transaction.status in TERMINAL_STATES:
            reason = f"{transaction.status.value} is terminal"
        else:
            allowed = ", ".join(sorted(s.value for s in TRANSITIONS[transaction.status]))
            reason = f"allowed targets are {allowed}"
        raise self._refuse(transaction, target, reason)

    def _write(self, transaction: Transaction, changes: dict[str, Any]) -> Transaction:
        try:
            return self.store.update_transaction(
                transaction.id, {**changes, "updated_at": self._clock()},
                expected_status=transaction.status,
            )
        except ConcurrentModification as exc:
            target = changes.get("status", transaction.status)
            raise self._refuse(transaction, TransactionStatus(target),
                               f"modified concurrently ({exc})") from exc

    def _log_change(self, before: Transaction, after: Transaction,
                    event_type: AuditEventType, description: str, actor: Actor,
                    metadata: Optional[dict[str, Any]] = None,
                    security_level: SecurityLevel = SecurityLevel.INTERNAL) -> AuditLogEntry:
        old, new = before.to_record(), after.to_record()
        return self.ledger.append(
            event_type,
            description,
            actor=actor,
            transaction_id=after.id,
            previous_state=old,
            new_state=new,
            changed_fields=diff_fields(old, new),
            security_level=security_level,
            metadata=metadata,
        )

    def _transition(self, transaction: Transaction, target: TransactionStatus,
                    actor: Actor, event_type: AuditEventType, description: str,
                    changes: Optional[dict[str, Any]] = None,
                    metadata: Optional[dict[str, Any]] = None) -> Transaction:
        self._check_transition(transaction, target)
        changes = dict(changes or {})
        changes["status"] = target
        if target == S.COMPLETED:
            changes["completed_at"] = self._clock()
        updated = self._write(transaction, changes)
        self._log_change(transaction, updated, event_type, description, actor, metadata)
        logger.info("Transaction %s: %s -> %s", transaction.id,
                    transaction.status.value, target.value)
        return updated

    def _refresh_cache(self, transaction: Transaction, state: QuorumState) -> Transaction:
        if transaction.current_approvals == state.current_approvals:
            return transaction
        return self._write(transaction, {"current_approvals": state.current_approvals})

    def _settle(self, transaction: Transaction, state: QuorumState, actor: Actor,
                policy: QuorumPolicy) -> Transaction:
        """Advance PENDING_APPROVAL once quorum holds with a net-positive mix."""
        if transaction.status != S.PENDING_APPROVAL:
            return transaction
        if not (state.reached and state.net_positive):
            return transaction
        transaction = self._transition(
            transaction, S.APPROVED, actor,
            AuditEventType.TRANSACTION_APPROVED,
            f"Transaction approved with {state.current_approvals}/"
            f"{state.required_approvals} validations",
            metadata={"quorum": state.as_dict()},
        )
        if policy.complete_on_approval:
            transaction = self._transition(
                transaction, S.COMPLETED, actor,
                AuditEventType.TRANSACTION_COMPLETED,
                "Transaction completed on approval; no further action required",
            )
        return transaction

    def _advance_if_quorum(self, transaction: Transaction, actor: Actor) -> Transaction:
        """Approvals gathered during PENDING_VALIDATION may already meet quorum."""
        if transaction.status != S.PENDING_APPROVAL:
            return transaction
        state = self.quorum.state(transaction.id)
        transaction = self._refresh_cache(transaction, state)
        return self._settle(transaction, state, actor, self.quorum.policy)

    def _expect(self, transaction: Transaction, expected_status: Any,
                target: TransactionStatus) -> None:
        if expected_status is None:
            return
        if transaction.status != TransactionStatus(expected_status):
            raise self._refuse(
                transaction, target,
                f"expected current status {TransactionStatus(expected_status).value}",
            )

    # -- negotiation outcomes ------------------------------------------------

    def apply_negotiation_outcome(self, transaction_id: str, outcome: NegotiationOutcome,
                                  expected_status: Optional[TransactionStatus] = None
                                  ) -> Transaction:
        """
        ACCEPTED: adopt the accepted terms and move to PENDING_APPROVAL.
        REJECTED: move to REJECTED. Both log PROPOSAL_RESPONDED.
        """
        _, actor_label = resolve_actor(outcome.actor)
        metadata = {
            "negotiation_id": outcome.negotiation_id,
            "round": outcome.round,
            "outcome": outcome.status.value,
        }
        with self.store.atomic():
            transaction = self.get_for_update(transaction_id)
            if outcome.status == NegotiationStatus.ACCEPTED:
                self._expect(transaction, expected_status, S.PENDING_APPROVAL)
                updated = self._transition(
                    transaction, S.PENDING_APPROVAL, outcome.actor,
                    AuditEventType.PROPOSAL_RESPONDED,
                    f"Proposal round {outcome.round} accepted by {actor_label}",
                    changes={"contract_terms": outcome.terms},
                    metadata=metadata,
                )
                return self._advance_if_quorum(updated, outcome.actor)
            if outcome.status == NegotiationStatus.REJECTED:
                self._expect(transaction, expected_status, S.REJECTED)
                if outcome.notes:
                    metadata["rejection_reason"] = outcome.notes
                return self._transition(
                    transaction, S.REJECTED, outcome.actor,
                    AuditEventType.PROPOSAL_RESPONDED,
                    f"Proposal round {outcome.round} rejected by {actor_label}"
                    + (f": {outcome.notes}" if outcome.notes else ""),
                    metadata=metadata,
                )
        raise InvalidInput(
            f"Negotiation outcome must be ACCEPTED or REJECTED, got {outcome.status.value}."
        )

    # -- validation ----------------------------------------------------------

    def record_validation(self, transaction_id: str, validation: Validation,
                          policy: Optional[QuorumPolicy] = None) -> ValidationOutcome:
        """
        Record a validator decision and apply its consequences.

        Every decision is logged. A REJECT under the strict policy rejects
        the transaction at once; otherwise quorum with more approvals than
        rejections approves it.
        """
        policy = policy or self.quorum.policy
        with self.store.atomic():
            transaction = self.get_for_update(transaction_id)
            if transaction.status not in VALIDATING_STATES:
                logger.warning("Validation refused for %s in %s",
                               transaction_id, transaction.status.value)
                raise InvalidState(
                    f"Transaction {transaction_id} is {transaction.status.value}; "
                    f"validations are accepted only while PENDING_VALIDATION "
                    f"or PENDING_APPROVAL."
                )

            state = self.quorum.record_decision(transaction_id, validation, policy)
            actor: Actor = validation.validator_id or SYSTEM_ACTOR
            self.ledger.append(
                AuditEventType.VALIDATION_RECORDED,
                f"Validation completed by {validation.validator_role.value} "
                f"with decision: {validation.decision.value}",
                actor=actor,
                transaction_id=transaction_id,
                new_state=validation.to_record(),
                metadata={
                    "validation_id": validation.id,
                    "validation_type": validation.validation_type.value,
                    "decision": validation.decision.value,
                    "current_approvals": state.current_approvals,
                    "required_approvals": state.required_approvals,
                },
            )
            transaction = self._refresh_cache(transaction, state)

            rejected = validation.decision == ValidationDecision.REJECT
            if rejected and transaction.strict_rejection:
                transaction = self._transition(
                    transaction, S.REJECTED, actor,
                    AuditEventType.TRANSACTION_REJECTED,
                    f"Transaction rejected by validator: {validation.reasoning}",
                    metadata={"validation_id": validation.id, "policy": "strict"},
                )
            elif (rejected and not transaction.strict_rejection
                  and state.rejections >= transaction.required_approvals):
                transaction = self._transition(
                    transaction, S.REJECTED, actor,
                    AuditEventType.TRANSACTION_REJECTED,
                    f"Transaction rejected by {state.rejections} validators",
                    metadata={"validation_id": validation.id, "policy": "threshold"},
                )
            else:
                transaction = self._settle(transaction, state, actor, policy)

        return ValidationOutcome(validation=validation, quorum=state, transaction=transaction)

    # -- administrative operations -------------------------------------------

    def update(self, transaction_id: str, fields: dict[str, Any], actor: Actor,
               expected_status: Optional[TransactionStatus] = None) -> Transaction:
        """
        Generic field update. Old and new state are diffed and the changed
        field names written to the ledger entry.
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise InvalidInput(
                f"Fields cannot be updated: {', '.join(sorted(unknown))}."
            )
        resolve_actor(actor)

        with self.store.atomic():
            transaction = self.get_for_update(transaction_id)
            changes = dict(fields)
            target: Optional[TransactionStatus] = None
            if "status" in changes:
                try:
                    target = TransactionStatus(changes["status"])
                except ValueError:
                    raise InvalidInput(f"Unknown status {changes['status']!r}.") from None
                changes["status"] = target
                if target == transaction.status:
                    target = None
                else:
                    self._check_transition(transaction, target)
                    if target == S.COMPLETED:
                        changes["completed_at"] = self._clock()
            self._expect(transaction, expected_status, target or transaction.status)

            updated = self._write(transaction, changes)
            if target is not None:
                event_type = AuditEventType.STATUS_CHANGED
                description = (f"Transaction status changed from "
                               f"{transaction.status.value} to {target.value}")
            else:
                event_type = AuditEventType.TRANSACTION_UPDATED
                description = f"Transaction {transaction_id} updated"
            self._log_change(transaction, updated, event_type, description, actor,
                             metadata={"requested_fields": sorted(fields)})
            if target == S.PENDING_APPROVAL:
                updated = self._advance_if_quorum(updated, actor)
        return updated

    def cancel(self, transaction_id: str, actor: Actor,
               reason: Optional[str] = None,
               metadata: Optional[dict[str, Any]] = None) -> Transaction:
        metadata = {**({"reason": reason} if reason else {}), **(metadata or {})}
        with self.store.atomic():
            transaction = self.get_for_update(transaction_id)
            return self._transition(
                transaction, S.CANCELLED, actor,
                AuditEventType.TRANSACTION_CANCELLED,
                f"Transaction {transaction_id} cancelled"
                + (f": {reason}" if reason else ""),
                metadata=metadata or None,
            )

    def complete(self, transaction_id: str, actor: Actor,
                 description: Optional[str] = None,
                 metadata: Optional[dict[str, Any]] = None) -> Transaction:
        with self.store.atomic():
            transaction = self.get_for_update(transaction_id)
            return self._transition(
                transaction, S.COMPLETED, actor,
                AuditEventType.TRANSACTION_COMPLETED,
                description or f"Transaction {transaction_id} completed",
                metadata=metadata,
            )

    def delete(self, transaction_id: str, actor: Actor) -> AuditLogEntry:
        """
        Remove a transaction and its negotiations, validations and payments.

        The final ledger entry is written first, inside the same unit, so
        the ledger keeps referring to an id that no longer resolves.
        """
        with self.store.atomic():
            transaction = self.get_for_update(transaction_id)
            if transaction.status not in DELETABLE_STATES:
                logger.warning("Delete refused for %s in %s",
                               transaction_id, transaction.status.value)
                allowed = ", ".join(sorted(s.value for s in DELETABLE_STATES))
                raise InvalidState(
                    f"Transaction {transaction_id} cannot be deleted while "
                    f"{transaction.status.value}; deletable states: {allowed}."
                )
            negotiations = self.store.list_negotiations(transaction_id)
            validations = self.store.list_validations(transaction_id)
            payments = self.store.list_payments(transaction_id)
            entry = self.ledger.append(
                AuditEventType.TRANSACTION_DELETED,
                f"Transaction {transaction_id} deleted",
                actor=actor,
                transaction_id=transaction_id,
                previous_state=transaction.to_record(),
                security_level=SecurityLevel.CONFIDENTIAL,
                metadata={
                    "negotiations_removed": len(negotiations),
                    "validations_removed": len(validations),
                    "payments_removed": len(payments),
                },
            )
            self.store.delete_payments(transaction_id)
            self.store.delete_validations(transaction_id)
            self.store.delete_negotiations(transaction_id)
            self.store.delete_transaction(transaction_id)
        logger.info("Transaction %s deleted", transaction_id)
        return entry
