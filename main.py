"""
Clearing House Gateway
Compliance Reference: PP No. 5/2021 Pasal 9 — Audit trail sistem

HTTP surface over the clearing house workflow. Every endpoint maps to one
engine operation; domain errors are translated to status codes here and
nowhere else. Callers identify themselves with an explicit actor id on
every mutating request.

    uvicorn main:app --port 8000
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict
from datetime import datetime
from typing import Any, Optional

from fastapi import FastAPI, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from clearinghouse.compliance import COMPLIANCE_SAMPLE_SIZE, ComplianceReportGenerator
from clearinghouse.errors import (
    AlreadyResolved,
    ClearingHouseError,
    ConcurrentModification,
    IntegrityMismatch,
    InvalidInput,
    InvalidState,
    NotFound,
    PersistenceFailure,
)
from clearinghouse.expiry import expire_stale_negotiations, get_negotiation_summary
from clearinghouse.ledger import AuditLedger
from clearinghouse.models import (
    Negotiation,
    TransactionStatus,
    Validation,
)
from clearinghouse.negotiation import NegotiationEngine
from clearinghouse.payments import PaymentEngine
from clearinghouse.quorum import QuorumPolicy, ValidationQuorum
from clearinghouse.store import InMemoryStore, Store
from clearinghouse.transactions import TransactionStateMachine

# ---------------------------------------------------------------------------
# Configuration (from env vars with defaults)
# ---------------------------------------------------------------------------

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
CLEARINGHOUSE_STORE = os.environ.get("CLEARINGHOUSE_STORE", "memory")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("clearinghouse.gateway")

# first match wins, so subclasses come before their bases
ERROR_STATUS: list[tuple[type[ClearingHouseError], int]] = [
    (NotFound, 404),
    (InvalidState, 409),
    (AlreadyResolved, 409),
    (ConcurrentModification, 409),
    (IntegrityMismatch, 409),
    (InvalidInput, 400),
    (PersistenceFailure, 503),
]


def status_for(exc: ClearingHouseError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

class TransactionCreate(BaseModel):
    initiator_id: str
    provider_id: str
    consumer_id: str
    resource_id: str
    required_approvals: int = 2
    transaction_type: str = "DATA_ACCESS"
    contract_id: Optional[str] = None
    request_id: Optional[str] = None
    strict_rejection: bool = True
    contract_terms: Optional[dict[str, Any]] = None
    transaction_data: Optional[dict[str, Any]] = None
    total_amount: Optional[float] = None
    currency: Optional[str] = None
    billing_model: Optional[str] = None
    compliance_level: str = "STANDARD"
    security_rating: Optional[str] = None
    risk_score: Optional[float] = None
    priority: str = "NORMAL"
    metadata: Optional[dict[str, Any]] = None
    expected_completion: Optional[datetime] = None
    expires_at: Optional[datetime] = None


class TransactionUpdate(BaseModel):
    actor_id: str
    fields: dict[str, Any]
    expected_status: Optional[str] = None


class ActorRequest(BaseModel):
    actor_id: str
    reason: Optional[str] = None


class ValidationRequest(BaseModel):
    validator_id: Optional[str] = None
    validation_type: str
    validator_role: str
    decision: str
    reasoning: str
    conditions: Optional[dict[str, Any]] = None
    score: Optional[float] = None
    confidence: Optional[float] = None
    evidence_hash: Optional[str] = None
    digital_signature: Optional[str] = None
    validation_data: Optional[dict[str, Any]] = None
    expires_at: Optional[datetime] = None


class ProposalRequest(BaseModel):
    transaction_id: str
    proposed_by: str
    terms: dict[str, Any]
    price: Optional[float] = None
    payment_terms: Optional[str] = None
    contract_id: Optional[str] = None
    changes: Optional[dict[str, Any]] = None
    valid_until: Optional[datetime] = None
    auto_accept: bool = False


class ProposalResponseRequest(BaseModel):
    response_by: str
    response_type: str
    notes: Optional[str] = None
    counter_offer: Optional[dict[str, Any]] = None
    counter_price: Optional[float] = None
    counter_payment_terms: Optional[str] = None
    changes: Optional[dict[str, Any]] = None


class PaymentRequest(BaseModel):
    transaction_id: str
    payer_user_id: str
    amount: float
    currency: str
    payment_method: str
    payment_type: str = "FULL_PAYMENT"
    payee_user_id: Optional[str] = None
    payment_reference: Optional[str] = None
    exchange_rate: Optional[float] = None
    processing_fee: Optional[float] = None
    brokerage_fee: Optional[float] = None
    network_fee: Optional[float] = None
    total_fees: Optional[float] = None


class PaymentStatusRequest(BaseModel):
    actor_id: str
    status: str
    gateway_transaction_id: Optional[str] = None
    gateway_response: Optional[dict[str, Any]] = None
    payment_hash: Optional[str] = None
    digital_signature: Optional[str] = None
    failure_reason: Optional[str] = None


class ComplianceReportRequest(BaseModel):
    actor_id: str
    start_date: datetime
    end_date: datetime
    standard: str = "ISO_27001"
    include_statistics: bool = True
    include_integrity_check: bool = True
    sample_size: Optional[int] = None


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------

def _negotiation_body(negotiation: Negotiation) -> dict[str, Any]:
    return {
        **negotiation.to_record(),
        "effective_status": negotiation.effective_status().value,
    }


def _entry_body(ledger: AuditLedger, record: dict[str, Any]) -> dict[str, Any]:
    return {**record, "integrity_verified": ledger.verify_record(record)}


# ---------------------------------------------------------------------------
# App factory
# ---------------------------------------------------------------------------

def build_store() -> Store:
    if CLEARINGHOUSE_STORE == "postgres":
        from clearinghouse.postgres import PostgresStore

        store = PostgresStore()
        store.init_schema()
        return store
    return InMemoryStore()


def create_app(store: Optional[Store] = None,
               quorum_policy: Optional[QuorumPolicy] = None) -> FastAPI:
    store = store or build_store()
    ledger = AuditLedger(store)
    quorum = ValidationQuorum(store, quorum_policy)
    transactions = TransactionStateMachine(store, ledger, quorum)
    negotiations = NegotiationEngine(store, ledger, transactions)
    payments = PaymentEngine(store, ledger, transactions)
    reports = ComplianceReportGenerator(ledger)

    app = FastAPI(title="Clearing House Gateway", version="1.0.0")
    app.state.store = store
    app.state.ledger = ledger
    app.state.transactions = transactions
    app.state.negotiations = negotiations
    app.state.payments = payments

    @app.exception_handler(ClearingHouseError)
    async def handle_domain_error(request: Request, exc: ClearingHouseError):
        status = status_for(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status,
            content={"error": exc.message, "type": type(exc).__name__},
        )

    # -- health -------------------------------------------------------------

    @app.get("/health")
    def health():
        return {"status": "operational", "service": "clearinghouse-gateway"}

    # -- transactions -------------------------------------------------------

    @app.post("/transactions", status_code=201)
    def create_transaction(body: TransactionCreate):
        fields = body.model_dump(
            exclude={"initiator_id", "provider_id", "consumer_id", "resource_id",
                     "required_approvals"},
            exclude_unset=True,
        )
        transaction = transactions.create(
            body.initiator_id, body.provider_id, body.consumer_id, body.resource_id,
            required_approvals=body.required_approvals, **fields,
        )
        return transaction.to_record()

    @app.get("/transactions/{transaction_id}")
    def get_transaction(transaction_id: str):
        return transactions.get(transaction_id).to_record()

    @app.put("/transactions/{transaction_id}")
    def update_transaction(transaction_id: str, body: TransactionUpdate):
        expected = None
        if body.expected_status is not None:
            try:
                expected = TransactionStatus(body.expected_status)
            except ValueError:
                raise InvalidInput(f"Unknown status {body.expected_status!r}.") from None
        updated = transactions.update(transaction_id, body.fields, body.actor_id,
                                      expected_status=expected)
        return updated.to_record()

    @app.delete("/transactions/{transaction_id}")
    def delete_transaction(transaction_id: str, actor_id: str = Query(...)):
        entry = transactions.delete(transaction_id, actor_id)
        return {"deleted": transaction_id, "audit_entry_id": entry.id}

    @app.post("/transactions/{transaction_id}/cancel")
    def cancel_transaction(transaction_id: str, body: ActorRequest):
        return transactions.cancel(transaction_id, body.actor_id, body.reason).to_record()

    @app.post("/transactions/{transaction_id}/complete")
    def complete_transaction(transaction_id: str, body: ActorRequest):
        return transactions.complete(transaction_id, body.actor_id).to_record()

    @app.post("/transactions/{transaction_id}/validate", status_code=201)
    def validate_transaction(transaction_id: str, body: ValidationRequest):
        validation = Validation(transaction_id=transaction_id, **body.model_dump())
        outcome = transactions.record_validation(transaction_id, validation)
        return {
            "validation": outcome.validation.to_record(),
            "quorum": outcome.quorum.as_dict(),
            "transaction": outcome.transaction.to_record(),
        }

    @app.get("/transactions/{transaction_id}/approvals")
    def approval_status(transaction_id: str):
        state = transactions.approval_status(transaction_id)
        return {
            **state.as_dict(),
            "validations": [v.to_record() for v in state.validations],
        }

    @app.get("/transactions/{transaction_id}/negotiations")
    def negotiation_history(transaction_id: str):
        return {
            "transaction_id": transaction_id,
            "negotiations": [_negotiation_body(n) for n in negotiations.history(transaction_id)],
        }

    @app.get("/transactions/{transaction_id}/audit")
    def transaction_audit(transaction_id: str):
        # entries outlive the transaction, so no existence check
        return {
            "transaction_id": transaction_id,
            "entries": [_entry_body(ledger, e) for e in ledger.records_for(transaction_id)],
        }

    # -- negotiations -------------------------------------------------------

    @app.post("/negotiations", status_code=201)
    def propose(body: ProposalRequest):
        negotiation = negotiations.propose(
            body.transaction_id, body.proposed_by, body.terms,
            body.price, body.payment_terms,
            contract_id=body.contract_id,
            changes=body.changes,
            valid_until=body.valid_until,
            auto_accept=body.auto_accept,
        )
        return _negotiation_body(negotiation)

    @app.post("/negotiations/expire")
    def expire_negotiations():
        expired = expire_stale_negotiations(store, ledger)
        return {"expired": expired, "count": len(expired)}

    @app.get("/negotiations/{negotiation_id}")
    def get_negotiation(negotiation_id: str):
        return _negotiation_body(negotiations.get(negotiation_id))

    @app.post("/negotiations/{negotiation_id}/respond")
    def respond(negotiation_id: str, body: ProposalResponseRequest):
        negotiation = negotiations.respond(
            negotiation_id, body.response_by, body.response_type,
            body.notes, body.counter_offer,
            counter_price=body.counter_price,
            counter_payment_terms=body.counter_payment_terms,
            changes=body.changes,
        )
        return _negotiation_body(negotiation)

    # -- payments -----------------------------------------------------------

    @app.post("/payments", status_code=201)
    def initiate_payment(body: PaymentRequest):
        fields = body.model_dump(
            exclude={"transaction_id", "payer_user_id", "amount", "currency",
                     "payment_method", "payment_type", "payee_user_id"},
            exclude_none=True,
        )
        payment = payments.initiate(
            body.transaction_id, body.payer_user_id, body.amount, body.currency,
            body.payment_method, body.payment_type, body.payee_user_id, **fields,
        )
        return payment.to_record()

    @app.get("/payments")
    def search_payments(status: Optional[str] = None,
                        payer_user_id: Optional[str] = None,
                        payee_user_id: Optional[str] = None):
        found = payments.search(status, payer_user_id, payee_user_id)
        return {"payments": [p.to_record() for p in found]}

    @app.get("/payments/{payment_id}")
    def get_payment(payment_id: str):
        return payments.get(payment_id).to_record()

    @app.post("/payments/{payment_id}/status")
    def update_payment_status(payment_id: str, body: PaymentStatusRequest):
        payment = payments.update_status(
            payment_id, body.status, body.actor_id,
            gateway_transaction_id=body.gateway_transaction_id,
            gateway_response=body.gateway_response,
            payment_hash=body.payment_hash,
            digital_signature=body.digital_signature,
            failure_reason=body.failure_reason,
        )
        return {
            "payment": payment.to_record(),
            "transaction": transactions.get(payment.transaction_id).to_record(),
        }

    @app.get("/transactions/{transaction_id}/payments")
    def transaction_payments(transaction_id: str):
        return {
            "transaction_id": transaction_id,
            "payments": [p.to_record() for p in payments.for_transaction(transaction_id)],
        }

    # -- audit ledger -------------------------------------------------------

    @app.get("/audit/entries")
    def query_entries(
        start: datetime,
        end: datetime,
        transaction_id: Optional[str] = None,
        event_type: Optional[str] = None,
        actor_user_id: Optional[str] = None,
        compliance_flag: Optional[str] = None,
        security_level: Optional[str] = None,
    ):
        filters = {
            "transaction_id": transaction_id,
            "event_type": event_type,
            "actor_user_id": actor_user_id,
            "compliance_flag": compliance_flag,
            "security_level": security_level,
        }
        query = ledger.query_range(
            start, end, **{k: v for k, v in filters.items() if v is not None}
        )
        return {"entries": [_entry_body(ledger, r) for r in query.records()]}

    @app.get("/audit/entries/{entry_id}")
    def get_entry(entry_id: str):
        return ledger.require_intact(entry_id).to_record()

    @app.get("/audit/entries/{entry_id}/verify")
    def verify_entry(entry_id: str):
        record = ledger.store.find_entry_record(entry_id)
        if record is None:
            raise NotFound(f"Ledger entry {entry_id} not found.")
        return {"entry_id": entry_id, "integrity_verified": ledger.verify_record(record)}

    @app.get("/audit/chain/verify")
    def verify_chain():
        result = ledger.verify_chain()
        return {**asdict(result), "valid": result.valid}

    @app.get("/audit/compliance/report")
    def compliance_report(start_date: datetime, end_date: datetime,
                          standard: str = "ISO_27001"):
        report = reports.generate(start_date, end_date, standard)
        return report.model_dump(mode="json")

    @app.post("/audit/compliance/report")
    def custom_compliance_report(body: ComplianceReportRequest):
        sample_size = None
        if body.include_integrity_check:
            sample_size = body.sample_size or COMPLIANCE_SAMPLE_SIZE
        report = reports.generate(
            body.start_date, body.end_date, body.standard,
            sample_size=sample_size,
            include_statistics=body.include_statistics,
        )
        entry = reports.record_generation(report, body.actor_id)
        return {
            "report": report.model_dump(mode="json"),
            "audit_entry_id": entry.id,
        }

    # -- statistics ---------------------------------------------------------

    @app.get("/statistics")
    def statistics():
        return {
            **transactions.statistics(),
            "negotiations": get_negotiation_summary(store),
            "ledger_entries": store.count_entries(),
        }

    logger.info("Clearing house gateway ready (store=%s)", type(store).__name__)
    return app


# Usage: uvicorn main:app --port 8000
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=os.environ.get("CLEARINGHOUSE_HOST", "127.0.0.1"),
                port=int(os.environ.get("CLEARINGHOUSE_PORT", "8000")))
