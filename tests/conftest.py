"""
Shared fixtures for the clearing house test suite.

Every test gets a fresh in-memory store and engines wired to a fixed,
manually advanced clock, so expiry and report windows are deterministic.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from clearinghouse.compliance import ComplianceReportGenerator
from clearinghouse.ledger import AuditLedger
from clearinghouse.models import (
    Validation,
    ValidationDecision,
    ValidationMethod,
    ValidatorRole,
)
from clearinghouse.negotiation import NegotiationEngine
from clearinghouse.payments import PaymentEngine
from clearinghouse.quorum import ValidationQuorum
from clearinghouse.store import InMemoryStore
from clearinghouse.transactions import TransactionStateMachine
from main import create_app

INITIATOR = "user:initiator"
PROVIDER = "kkks:pertamina-hulu"
CONSUMER = "consumer:skk-migas"
RESOURCE = "resource:seismic-2d-block-7"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def ledger(store, clock):
    return AuditLedger(store, clock=clock)


@pytest.fixture
def quorum(store):
    return ValidationQuorum(store)


@pytest.fixture
def machine(store, ledger, quorum, clock):
    return TransactionStateMachine(store, ledger, quorum, clock=clock)


@pytest.fixture
def engine(store, ledger, machine, clock):
    return NegotiationEngine(store, ledger, machine, clock=clock)


@pytest.fixture
def payments(store, ledger, machine, clock):
    return PaymentEngine(store, ledger, machine, clock=clock)


@pytest.fixture
def reports(ledger, clock):
    return ComplianceReportGenerator(ledger, clock=clock)


@pytest.fixture
def new_transaction(machine):
    """Factory for INITIATED transactions."""
    def _create(required_approvals: int = 2, **fields):
        return machine.create(INITIATOR, PROVIDER, CONSUMER, RESOURCE,
                              required_approvals=required_approvals, **fields)
    return _create


@pytest.fixture
def pending_approval(machine, engine, new_transaction):
    """Factory for transactions whose first proposal was accepted."""
    def _create(required_approvals: int = 2, **fields):
        transaction = new_transaction(required_approvals, **fields)
        negotiation = engine.propose(transaction.id, INITIATOR,
                                     {"price": 125000, "currency": "USD"})
        engine.respond(negotiation.id, PROVIDER, "ACCEPT")
        return machine.get(transaction.id)
    return _create


@pytest.fixture
def make_validation():
    def _make(transaction_id: str, decision=ValidationDecision.APPROVE,
              validator_id: str | None = "regulator:1", **fields):
        fields.setdefault("validation_type", ValidationMethod.MANUAL_REVIEW)
        fields.setdefault("validator_role", ValidatorRole.REGULATOR)
        fields.setdefault("reasoning", "Reviewed data package and contract terms")
        return Validation(
            transaction_id=transaction_id,
            decision=decision,
            validator_id=validator_id,
            **fields,
        )
    return _make


@pytest.fixture
def approved(machine, pending_approval, make_validation):
    """Factory for transactions approved by a two-validator quorum."""
    def _create(**fields):
        transaction = pending_approval(2, **fields)
        for validator in ("regulator:1", "auditor:1"):
            machine.record_validation(
                transaction.id, make_validation(transaction.id, validator_id=validator))
        return machine.get(transaction.id)
    return _create


@pytest.fixture
def app():
    return create_app(InMemoryStore())


@pytest.fixture
def client(app):
    return TestClient(app)
