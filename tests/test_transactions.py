"""
Transaction state machine tests: lifecycle, quorum-driven transitions,
administrative updates, deletion and ledger atomicity.
"""

from __future__ import annotations

import logging

import pytest

from clearinghouse.errors import (
    InvalidInput,
    InvalidState,
    InvalidTransition,
    NotFound,
    PersistenceFailure,
)
from clearinghouse.models import (
    AuditEventType,
    NegotiationStatus,
    SecurityLevel,
    TransactionStatus,
)
from clearinghouse.models import ValidationDecision as D
from clearinghouse.quorum import QuorumPolicy
from clearinghouse.transactions import (
    DELETABLE_STATES,
    TERMINAL_STATES,
    TRANSITIONS,
)

from conftest import INITIATOR, PROVIDER


def _events(ledger, transaction_id):
    return [e.event_type for e in ledger.entries_for(transaction_id)]


# ---------------------------------------------------------------------------
# Transition table
# ---------------------------------------------------------------------------

def test_transition_table_shape():
    assert TERMINAL_STATES == {TransactionStatus.REJECTED, TransactionStatus.COMPLETED,
                               TransactionStatus.CANCELLED}
    assert set(TRANSITIONS) == set(TransactionStatus)
    assert TransactionStatus.APPROVED not in DELETABLE_STATES
    assert TransactionStatus.APPROVED in TRANSITIONS[TransactionStatus.PENDING_APPROVAL]


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

def test_create_logs_initiator(new_transaction, ledger):
    tx = new_transaction(required_approvals=3, total_amount=125000.0, currency="USD")

    assert tx.status == TransactionStatus.INITIATED
    assert tx.required_approvals == 3
    assert tx.current_approvals == 0
    assert tx.completed_at is None

    entries = ledger.entries_for(tx.id)
    assert len(entries) == 1
    assert entries[0].event_type == AuditEventType.TRANSACTION_CREATED
    assert entries[0].actor_user_id == INITIATOR
    assert entries[0].new_state["total_amount"] == 125000.0


@pytest.mark.parametrize("required", [0, -1, True, "2"])
def test_create_rejects_bad_required_approvals(machine, store, required):
    with pytest.raises(InvalidInput):
        machine.create(INITIATOR, PROVIDER, "c", "r", required_approvals=required)
    assert store.count_transactions() == 0
    assert store.count_entries() == 0


def test_create_rejects_unknown_fields(machine):
    with pytest.raises(InvalidInput):
        machine.create(INITIATOR, PROVIDER, "c", "r", status="APPROVED")


def test_get_unknown(machine):
    with pytest.raises(NotFound):
        machine.get("missing")


# ---------------------------------------------------------------------------
# Validation and quorum
# ---------------------------------------------------------------------------

def test_two_approvals_reach_quorum(pending_approval, machine, ledger, make_validation):
    tx = pending_approval(required_approvals=2)
    assert tx.status == TransactionStatus.PENDING_APPROVAL

    first = machine.record_validation(tx.id, make_validation(tx.id, validator_id="regulator:1"))
    assert first.transaction.status == TransactionStatus.PENDING_APPROVAL
    assert first.transaction.current_approvals == 1

    second = machine.record_validation(tx.id, make_validation(tx.id, validator_id="auditor:1"))
    assert second.quorum.newly_reached
    assert second.transaction.status == TransactionStatus.APPROVED
    assert second.transaction.current_approvals == 2
    assert second.transaction.completed_at is None

    events = _events(ledger, tx.id)
    assert events.count(AuditEventType.VALIDATION_RECORDED) == 2
    assert events[-1] == AuditEventType.TRANSACTION_APPROVED


def test_validation_outside_validation_phase(new_transaction, machine, make_validation, store):
    tx = new_transaction()
    with pytest.raises(InvalidState):
        machine.record_validation(tx.id, make_validation(tx.id))
    assert store.list_validations(tx.id) == []


def test_every_decision_is_logged(pending_approval, machine, ledger, make_validation):
    tx = pending_approval(required_approvals=2)
    outcome = machine.record_validation(
        tx.id, make_validation(tx.id, decision=D.REQUEST_MORE_INFO),
    )
    assert outcome.transaction.status == TransactionStatus.PENDING_APPROVAL
    last = ledger.entries_for(tx.id)[-1]
    assert last.event_type == AuditEventType.VALIDATION_RECORDED
    assert last.metadata["decision"] == "REQUEST_MORE_INFO"


def test_strict_rejection_is_immediate(pending_approval, machine, ledger, make_validation):
    tx = pending_approval(required_approvals=2)
    machine.record_validation(tx.id, make_validation(tx.id, validator_id="a"))
    outcome = machine.record_validation(
        tx.id, make_validation(tx.id, decision=D.REJECT, validator_id="b"),
    )
    assert outcome.transaction.status == TransactionStatus.REJECTED
    assert _events(ledger, tx.id)[-1] == AuditEventType.TRANSACTION_REJECTED

    with pytest.raises(InvalidState):
        machine.record_validation(tx.id, make_validation(tx.id, validator_id="c"))


def test_non_strict_rejection_needs_threshold(pending_approval, machine, make_validation):
    tx = pending_approval(required_approvals=2, strict_rejection=False)

    one = machine.record_validation(tx.id, make_validation(tx.id, decision=D.REJECT,
                                                           validator_id="a"))
    assert one.transaction.status == TransactionStatus.PENDING_APPROVAL

    two = machine.record_validation(tx.id, make_validation(tx.id, decision=D.REJECT,
                                                           validator_id="b"))
    assert two.transaction.status == TransactionStatus.REJECTED


def test_non_strict_needs_net_positive_mix(pending_approval, machine, make_validation):
    tx = pending_approval(required_approvals=2, strict_rejection=False)
    machine.record_validation(tx.id, make_validation(tx.id, decision=D.REJECT, validator_id="a"))
    machine.record_validation(tx.id, make_validation(tx.id, validator_id="b"))
    outcome = machine.record_validation(tx.id, make_validation(tx.id, validator_id="c"))
    # two approvals against one rejection
    assert outcome.transaction.status == TransactionStatus.APPROVED


def test_complete_on_approval_policy(pending_approval, machine, ledger, make_validation, clock):
    tx = pending_approval(required_approvals=1)
    outcome = machine.record_validation(
        tx.id, make_validation(tx.id), policy=QuorumPolicy(complete_on_approval=True),
    )
    assert outcome.transaction.status == TransactionStatus.COMPLETED
    assert outcome.transaction.completed_at == clock()
    assert _events(ledger, tx.id)[-2:] == [AuditEventType.TRANSACTION_APPROVED,
                                           AuditEventType.TRANSACTION_COMPLETED]


def test_approvals_before_acceptance_apply_on_accept(new_transaction, machine, engine,
                                                     make_validation):
    tx = new_transaction(required_approvals=2)
    machine.update(tx.id, {"status": "PENDING_VALIDATION"}, INITIATOR)
    machine.record_validation(tx.id, make_validation(tx.id, validator_id="a"))
    machine.record_validation(tx.id, make_validation(tx.id, validator_id="b"))
    assert machine.get(tx.id).status == TransactionStatus.PENDING_VALIDATION

    n = engine.propose(tx.id, INITIATOR, {"price": 1})
    engine.respond(n.id, PROVIDER, "ACCEPT")

    assert machine.get(tx.id).status == TransactionStatus.APPROVED


def test_approval_status_recounts(pending_approval, machine, make_validation):
    tx = pending_approval(required_approvals=3)
    machine.record_validation(tx.id, make_validation(tx.id, validator_id="a"))
    state = machine.approval_status(tx.id)
    assert state.current_approvals == 1
    assert state.required_approvals == 3
    assert not state.reached


# ---------------------------------------------------------------------------
# Illegal transitions
# ---------------------------------------------------------------------------

def test_illegal_transition_is_not_logged(new_transaction, machine, store, caplog):
    tx = new_transaction()
    entries_before = store.count_entries()

    with caplog.at_level(logging.WARNING, logger="clearinghouse.transactions"):
        with pytest.raises(InvalidTransition) as exc:
            machine.complete(tx.id, INITIATOR)

    assert exc.value.current == "INITIATED"
    assert exc.value.target == "COMPLETED"
    assert store.count_entries() == entries_before
    assert machine.get(tx.id).status == TransactionStatus.INITIATED
    assert any("Rejected transition" in r.message for r in caplog.records)


def test_terminal_states_refuse_everything(new_transaction, machine):
    tx = new_transaction()
    machine.cancel(tx.id, INITIATOR)
    with pytest.raises(InvalidTransition):
        machine.cancel(tx.id, INITIATOR)
    with pytest.raises(InvalidTransition):
        machine.update(tx.id, {"status": "PENDING_VALIDATION"}, INITIATOR)


def test_cancel_and_complete(pending_approval, machine, make_validation, ledger, clock):
    tx = pending_approval(required_approvals=1)
    machine.record_validation(tx.id, make_validation(tx.id))
    clock.advance(days=1)

    done = machine.complete(tx.id, "admin:ops")
    assert done.status == TransactionStatus.COMPLETED
    assert done.completed_at == clock()
    assert _events(ledger, tx.id)[-1] == AuditEventType.TRANSACTION_COMPLETED

    other = pending_approval()
    cancelled = machine.cancel(other.id, "admin:ops", reason="duplicate request")
    assert cancelled.status == TransactionStatus.CANCELLED
    assert cancelled.completed_at is None
    last = ledger.entries_for(other.id)[-1]
    assert last.event_type == AuditEventType.TRANSACTION_CANCELLED
    assert last.metadata["reason"] == "duplicate request"


# ---------------------------------------------------------------------------
# Administrative update
# ---------------------------------------------------------------------------

def test_update_records_changed_fields(new_transaction, machine, ledger):
    tx = new_transaction()
    updated = machine.update(tx.id, {"priority": "HIGH", "total_amount": 5000.0}, "admin:ops")

    assert updated.priority == "HIGH"
    assert updated.version == tx.version + 1
    entry = ledger.entries_for(tx.id)[-1]
    assert entry.event_type == AuditEventType.TRANSACTION_UPDATED
    assert sorted(entry.changed_fields) == ["priority", "total_amount"]
    assert entry.previous_state["priority"] == "NORMAL"
    assert entry.new_state["priority"] == "HIGH"


def test_update_status_change(new_transaction, machine, ledger):
    tx = new_transaction()
    machine.update(tx.id, {"status": TransactionStatus.PENDING_VALIDATION}, "admin:ops")
    entry = ledger.entries_for(tx.id)[-1]
    assert entry.event_type == AuditEventType.STATUS_CHANGED
    assert "status" in entry.changed_fields


def test_update_rejects_unknown_and_missing(new_transaction, machine):
    tx = new_transaction()
    with pytest.raises(InvalidInput):
        machine.update(tx.id, {"required_approvals": 1}, "admin:ops")
    with pytest.raises(InvalidInput):
        machine.update(tx.id, {"status": "SHIPPED"}, "admin:ops")
    with pytest.raises(NotFound):
        machine.update("missing", {"priority": "LOW"}, "admin:ops")


def test_update_with_stale_expected_status(new_transaction, machine):
    tx = new_transaction()
    with pytest.raises(InvalidTransition):
        machine.update(tx.id, {"priority": "LOW"}, "admin:ops",
                       expected_status=TransactionStatus.PENDING_APPROVAL)


def test_writes_stamp_updated_at_from_clock(new_transaction, machine, ledger, clock):
    tx = new_transaction()

    clock.advance(hours=2)
    updated = machine.update(tx.id, {"priority": "HIGH"}, "admin:ops")
    assert updated.updated_at == clock()
    assert machine.get(tx.id).updated_at == clock()

    clock.advance(hours=1)
    cancelled = machine.cancel(tx.id, "admin:ops")
    assert cancelled.updated_at == clock()
    assert ledger.entries_for(tx.id)[-1].timestamp == cancelled.updated_at


# ---------------------------------------------------------------------------
# Deletion
# ---------------------------------------------------------------------------

def test_delete_approved_is_refused(pending_approval, machine, store, make_validation):
    tx = pending_approval(required_approvals=1)
    machine.record_validation(tx.id, make_validation(tx.id))
    assert machine.get(tx.id).status == TransactionStatus.APPROVED
    entries_before = store.count_entries()

    with pytest.raises(InvalidState):
        machine.delete(tx.id, "admin:ops")

    assert store.find_transaction(tx.id) is not None
    assert len(store.list_negotiations(tx.id)) == 1
    assert len(store.list_validations(tx.id)) == 1
    assert store.count_entries() == entries_before


def test_delete_cascades_and_keeps_history(new_transaction, machine, engine, store, ledger):
    tx = new_transaction()
    n = engine.propose(tx.id, INITIATOR, {"price": 1})
    engine.respond(n.id, PROVIDER, "REJECT")

    entry = machine.delete(tx.id, "admin:ops")

    assert entry.event_type == AuditEventType.TRANSACTION_DELETED
    assert entry.security_level == SecurityLevel.CONFIDENTIAL
    assert entry.metadata["negotiations_removed"] == 1
    assert store.find_transaction(tx.id) is None
    assert store.list_negotiations(tx.id) == []

    history = ledger.entries_for(tx.id)
    assert history[-1].id == entry.id
    assert all(ledger.verify(e.id) for e in history)
    assert ledger.verify_chain().valid


# ---------------------------------------------------------------------------
# Atomicity with the ledger
# ---------------------------------------------------------------------------

def test_failed_ledger_append_rolls_back_status(new_transaction, machine, monkeypatch):
    tx = new_transaction()

    def broken_append(*args, **kwargs):
        raise PersistenceFailure("ledger unavailable")

    monkeypatch.setattr(machine.ledger, "append", broken_append)
    with pytest.raises(PersistenceFailure):
        machine.cancel(tx.id, INITIATOR)

    monkeypatch.undo()
    assert machine.get(tx.id).status == TransactionStatus.INITIATED


def test_failed_outcome_rolls_back_negotiation(new_transaction, machine, engine, monkeypatch):
    tx = new_transaction()
    n = engine.propose(tx.id, INITIATOR, {"price": 1})

    original = machine.ledger.append

    def failing_on_response(event_type, *args, **kwargs):
        if event_type == AuditEventType.PROPOSAL_RESPONDED:
            raise PersistenceFailure("ledger unavailable")
        return original(event_type, *args, **kwargs)

    monkeypatch.setattr(machine.ledger, "append", failing_on_response)
    with pytest.raises(PersistenceFailure):
        engine.respond(n.id, PROVIDER, "ACCEPT")

    assert engine.get(n.id).status == NegotiationStatus.OPEN
    assert machine.get(tx.id).status == TransactionStatus.INITIATED


# ---------------------------------------------------------------------------
# Statistics
# ---------------------------------------------------------------------------

def test_statistics(new_transaction, pending_approval, machine, make_validation):
    new_transaction()
    done = pending_approval(required_approvals=1, total_amount=2500.0)
    machine.record_validation(done.id, make_validation(done.id))
    machine.complete(done.id, "admin:ops")
    cancelled = new_transaction()
    machine.cancel(cancelled.id, INITIATOR)

    stats = machine.statistics()
    assert stats["total_transactions"] == 3
    assert stats["pending_transactions"] == 1
    assert stats["completed_transactions"] == 1
    assert stats["failed_transactions"] == 1
    assert stats["total_value"] == 2500.0
    assert stats["success_rate"] == pytest.approx(100 / 3)
    assert stats["validations_by_decision"] == {"APPROVE": 1}
