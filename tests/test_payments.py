"""
Payment settlement tests: initiation guards, payment status steps and the
transaction outcome they drive.
"""

from __future__ import annotations

from unittest.mock import patch

import pytest

from clearinghouse.errors import InvalidInput, InvalidState, NotFound
from clearinghouse.models import (
    AuditEventType,
    PaymentStatus,
    SecurityLevel,
    TransactionStatus,
)
from clearinghouse.payments import PAYMENT_TRANSITIONS

from conftest import CONSUMER, INITIATOR, PROVIDER

BANK = "gateway:bank-mandiri"


def _pay(payments, transaction_id, amount=62500.0, **fields):
    return payments.initiate(transaction_id, CONSUMER, amount, "USD", "BANK_TRANSFER",
                             **fields)


def test_transition_table_shape():
    assert PAYMENT_TRANSITIONS[PaymentStatus.COMPLETED] == frozenset()
    assert PAYMENT_TRANSITIONS[PaymentStatus.FAILED] == frozenset()
    assert PaymentStatus.PENDING not in PAYMENT_TRANSITIONS[PaymentStatus.PROCESSING]


def test_initiate_logs_payment(payments, approved, ledger, clock):
    tx = approved()
    payment = _pay(payments, tx.id, processing_fee=10, network_fee=2.5,
                   payment_reference="INV-2026-0042")

    assert payment.status == PaymentStatus.PENDING
    assert payment.payer_user_id == CONSUMER
    assert payment.payee_user_id == PROVIDER
    assert payment.total_fees == 12.5
    assert payment.requested_at == clock()

    entry = ledger.entries_for(tx.id)[-1]
    assert entry.event_type == AuditEventType.PAYMENT_INITIATED
    assert entry.security_level == SecurityLevel.CONFIDENTIAL
    assert entry.actor_user_id == CONSUMER
    assert entry.metadata["payment_id"] == payment.id
    assert entry.metadata["amount"] == 62500.0
    assert "62500 USD" in entry.event_description


def test_initiate_requires_approved_transaction(payments, pending_approval, ledger, store):
    tx = pending_approval()
    before = store.count_entries()

    with pytest.raises(InvalidState):
        _pay(payments, tx.id)
    assert store.count_entries() == before
    assert store.list_payments(tx.id) == []


@pytest.mark.parametrize("amount", [0, -1, True, "100"])
def test_initiate_rejects_bad_amount(payments, approved, amount):
    tx = approved()
    with pytest.raises(InvalidInput):
        _pay(payments, tx.id, amount=amount)


def test_initiate_rejects_unknown_fields_and_blank_currency(payments, approved):
    tx = approved()
    with pytest.raises(InvalidInput):
        _pay(payments, tx.id, discount=5)
    with pytest.raises(InvalidInput):
        payments.initiate(tx.id, CONSUMER, 10.0, " ", "BANK_TRANSFER")


def test_initiate_unknown_transaction(payments):
    with pytest.raises(NotFound):
        _pay(payments, "missing")


def test_single_payment_settles_transaction(payments, approved, machine, ledger, clock):
    tx = approved()
    payment = _pay(payments, tx.id)

    clock.advance(minutes=5)
    processing = payments.update_status(payment.id, "processing", BANK)
    assert processing.status == PaymentStatus.PROCESSING
    assert processing.processed_at == clock()
    assert machine.get(tx.id).status == TransactionStatus.APPROVED

    clock.advance(minutes=5)
    settled = payments.update_status(payment.id, PaymentStatus.COMPLETED, BANK,
                                     gateway_transaction_id="MDR-778812")
    assert settled.settled_at == clock()
    assert settled.processed_at < settled.settled_at
    assert settled.gateway_transaction_id == "MDR-778812"

    done = machine.get(tx.id)
    assert done.status == TransactionStatus.COMPLETED
    assert done.completed_at == clock()

    entries = ledger.entries_for(tx.id)
    assert [e.event_type for e in entries[-3:]] == [
        AuditEventType.PAYMENT_PROCESSING,
        AuditEventType.PAYMENT_COMPLETED,
        AuditEventType.TRANSACTION_COMPLETED,
    ]
    assert entries[-2].changed_fields == ["status", "gateway_transaction_id", "settled_at"]
    assert entries[-1].metadata["total_payments"] == 1
    assert entries[-1].metadata["final_payment"] is True
    assert entries[-1].event_description == "Transaction completed; all payments settled"


def test_transaction_waits_for_every_payment(payments, approved, machine):
    tx = approved()
    first, second = _pay(payments, tx.id), _pay(payments, tx.id)

    payments.update_status(first.id, "COMPLETED", BANK)
    assert machine.get(tx.id).status == TransactionStatus.APPROVED

    payments.update_status(second.id, "COMPLETED", BANK)
    assert machine.get(tx.id).status == TransactionStatus.COMPLETED
    assert payments.for_transaction(tx.id)[0].id == first.id


def test_failed_payment_cancels_transaction(payments, approved, machine, ledger):
    tx = approved()
    payment = _pay(payments, tx.id)

    failed = payments.update_status(payment.id, "FAILED", BANK,
                                    failure_reason="insufficient funds",
                                    gateway_response={"code": "51"})

    assert failed.failure_reason == "insufficient funds"
    assert failed.processed_at is not None
    assert machine.get(tx.id).status == TransactionStatus.CANCELLED
    cancel = ledger.entries_for(tx.id)[-1]
    assert cancel.event_type == AuditEventType.TRANSACTION_CANCELLED
    assert cancel.metadata["payment_id"] == payment.id
    assert cancel.metadata["failure_reason"] == "insufficient funds"


def test_late_settlement_on_cancelled_transaction_is_recorded(payments, approved, machine,
                                                             ledger, caplog):
    tx = approved()
    failing, late = _pay(payments, tx.id), _pay(payments, tx.id)
    payments.update_status(failing.id, "FAILED", BANK)

    settled = payments.update_status(late.id, "COMPLETED", BANK)

    assert settled.status == PaymentStatus.COMPLETED
    assert machine.get(tx.id).status == TransactionStatus.CANCELLED
    assert ledger.entries_for(tx.id)[-1].event_type == AuditEventType.PAYMENT_COMPLETED
    assert "on CANCELLED transaction" in caplog.text


def test_terminal_payment_cannot_move(payments, approved, store):
    tx = approved()
    payment = _pay(payments, tx.id)
    payments.update_status(payment.id, "COMPLETED", BANK)
    before = store.count_entries()

    with pytest.raises(InvalidState):
        payments.update_status(payment.id, "FAILED", BANK)
    assert store.count_entries() == before


def test_unknown_status_and_payment(payments, approved):
    tx = approved()
    payment = _pay(payments, tx.id)
    with pytest.raises(InvalidInput):
        payments.update_status(payment.id, "SETTLED", BANK)
    with pytest.raises(NotFound):
        payments.update_status("missing", "COMPLETED", BANK)


def test_status_update_locks_transaction_first(payments, approved, store):
    tx = approved()
    payment = _pay(payments, tx.id)
    calls = []
    lock, update = store.lock_transaction, store.update_payment

    with patch.object(store, "lock_transaction",
                      side_effect=lambda i: calls.append("lock") or lock(i)), \
         patch.object(store, "update_payment",
                      side_effect=lambda *a, **k: calls.append("update") or update(*a, **k)):
        payments.update_status(payment.id, "PROCESSING", BANK)

    assert calls[0] == "lock"
    assert "update" in calls


def test_search_by_status_and_payer(payments, approved):
    tx = approved()
    payment = _pay(payments, tx.id)

    assert [p.id for p in payments.search(status="pending")] == [payment.id]
    assert [p.id for p in payments.search(payer_user_id=CONSUMER)] == [payment.id]
    assert payments.search(payee_user_id=INITIATOR) == []


def test_delete_removes_payments(payments, approved, machine, store):
    tx = approved()
    payment = _pay(payments, tx.id)
    payments.update_status(payment.id, "FAILED", BANK)

    entry = machine.delete(tx.id, INITIATOR)

    assert entry.metadata["payments_removed"] == 1
    assert store.find_payment(payment.id) is None


def test_payment_statistics(payments, approved, machine):
    tx = approved()
    _pay(payments, tx.id)
    assert machine.statistics()["payments_by_status"] == {"PENDING": 1}
