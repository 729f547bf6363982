"""
Clearing House SDK — Client
Thin synchronous wrapper over the clearing house gateway.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import httpx

from clearinghouse_sdk.models import (
    NegotiationResult,
    PaymentResult,
    ReportResult,
    TransactionResult,
    ValidationResult,
)


def _json(resp: httpx.Response) -> dict:
    """Decoded body, or an error dict when the gateway (or a proxy) sent non-JSON."""
    try:
        body = resp.json()
    except ValueError:
        return {"error": resp.text or resp.reason_phrase}
    return body if isinstance(body, dict) else {"data": body}


def _error(resp: httpx.Response, body: dict) -> str | None:
    if resp.is_success:
        return None
    return body.get("error") or str(body.get("detail", resp.reason_phrase))


class ClearingHouseClient:
    """
    Client for the clearing house gateway.

    Every mutating call is made on behalf of `actor_id`, which the gateway
    records on the audit ledger.
    """

    def __init__(
        self,
        gateway_url: str,
        actor_id: str,
        timeout: float = 10.0,
        http_client: httpx.Client | None = None,
    ):
        """
        Args:
            gateway_url: Base URL of the gateway (e.g. "http://localhost:8000")
            actor_id: User id recorded as the actor on the audit ledger
            timeout: HTTP request timeout in seconds
            http_client: Pre-built httpx.Client (e.g. a FastAPI TestClient)
        """
        self.gateway_url = gateway_url.rstrip("/")
        self.actor_id = actor_id
        self._client = http_client or httpx.Client(timeout=timeout)

    def _url(self, path: str) -> str:
        return f"{self.gateway_url}{path}"

    def _transaction(self, resp: httpx.Response) -> TransactionResult:
        body = _json(resp)
        return TransactionResult(
            success=resp.is_success,
            transaction_id=body.get("id"),
            status=body.get("status"),
            current_approvals=body.get("current_approvals"),
            required_approvals=body.get("required_approvals"),
            error=_error(resp, body),
            raw=body,
        )

    def _negotiation(self, resp: httpx.Response) -> NegotiationResult:
        body = _json(resp)
        return NegotiationResult(
            success=resp.is_success,
            negotiation_id=body.get("id"),
            round=body.get("round"),
            status=body.get("status"),
            effective_status=body.get("effective_status"),
            error=_error(resp, body),
            raw=body,
        )

    # -- transactions ---------------------------------------------------------

    def create_transaction(
        self,
        provider_id: str,
        consumer_id: str,
        resource_id: str,
        required_approvals: int = 2,
        **fields: Any,
    ) -> TransactionResult:
        """
        Create a transaction initiated by this client's actor.

        Args:
            provider_id: Data provider (e.g. a KKKS)
            consumer_id: Data consumer
            resource_id: Resource being exchanged
            required_approvals: Validator approvals needed for APPROVED
            **fields: Optional transaction fields (total_amount, currency, ...)

        Returns:
            TransactionResult with the new transaction id and status.
        """
        resp = self._client.post(
            self._url("/transactions"),
            json={
                "initiator_id": self.actor_id,
                "provider_id": provider_id,
                "consumer_id": consumer_id,
                "resource_id": resource_id,
                "required_approvals": required_approvals,
                **fields,
            },
        )
        return self._transaction(resp)

    def get_transaction(self, transaction_id: str) -> TransactionResult:
        return self._transaction(self._client.get(self._url(f"/transactions/{transaction_id}")))

    def update_transaction(
        self,
        transaction_id: str,
        fields: dict[str, Any],
        expected_status: str | None = None,
    ) -> TransactionResult:
        resp = self._client.put(
            self._url(f"/transactions/{transaction_id}"),
            json={
                "actor_id": self.actor_id,
                "fields": fields,
                "expected_status": expected_status,
            },
        )
        return self._transaction(resp)

    def cancel_transaction(self, transaction_id: str, reason: str | None = None) -> TransactionResult:
        resp = self._client.post(
            self._url(f"/transactions/{transaction_id}/cancel"),
            json={"actor_id": self.actor_id, "reason": reason},
        )
        return self._transaction(resp)

    def complete_transaction(self, transaction_id: str) -> TransactionResult:
        resp = self._client.post(
            self._url(f"/transactions/{transaction_id}/complete"),
            json={"actor_id": self.actor_id},
        )
        return self._transaction(resp)

    def delete_transaction(self, transaction_id: str) -> dict:
        resp = self._client.delete(
            self._url(f"/transactions/{transaction_id}"),
            params={"actor_id": self.actor_id},
        )
        return _json(resp)

    def approval_status(self, transaction_id: str) -> dict:
        resp = self._client.get(self._url(f"/transactions/{transaction_id}/approvals"))
        return _json(resp)

    def validate(
        self,
        transaction_id: str,
        validation_type: str,
        validator_role: str,
        decision: str,
        reasoning: str,
        **extra: Any,
    ) -> ValidationResult:
        """
        Record a validator decision with this client's actor as validator.

        Args:
            validation_type: e.g. "MANUAL_REVIEW", "DIGITAL_SIGNATURE"
            validator_role: e.g. "REGULATOR", "AUDITOR"
            decision: APPROVE | REJECT | CONDITIONAL_APPROVE | REQUEST_MORE_INFO | ESCALATE
            reasoning: Required free-text justification
            **extra: conditions, score, confidence, evidence_hash, ...

        Returns:
            ValidationResult with the quorum outcome and resulting status.
        """
        resp = self._client.post(
            self._url(f"/transactions/{transaction_id}/validate"),
            json={
                "validator_id": self.actor_id,
                "validation_type": validation_type,
                "validator_role": validator_role,
                "decision": decision,
                "reasoning": reasoning,
                **extra,
            },
        )
        body = _json(resp)
        return ValidationResult(
            success=resp.is_success,
            validation_id=body.get("validation", {}).get("id"),
            quorum_reached=body.get("quorum", {}).get("reached", False),
            transaction_status=body.get("transaction", {}).get("status"),
            error=_error(resp, body),
            raw=body,
        )

    # -- negotiations ---------------------------------------------------------

    def propose(
        self,
        transaction_id: str,
        terms: dict[str, Any],
        price: float | None = None,
        payment_terms: str | None = None,
        **extra: Any,
    ) -> NegotiationResult:
        resp = self._client.post(
            self._url("/negotiations"),
            json={
                "transaction_id": transaction_id,
                "proposed_by": self.actor_id,
                "terms": terms,
                "price": price,
                "payment_terms": payment_terms,
                **extra,
            },
        )
        return self._negotiation(resp)

    def respond(
        self,
        negotiation_id: str,
        response_type: str,
        notes: str | None = None,
        counter_offer: dict[str, Any] | None = None,
        **extra: Any,
    ) -> NegotiationResult:
        """
        Respond to an OPEN negotiation round.

        A COUNTER returns the newly opened round; ACCEPT and REJECT return
        the resolved one.
        """
        resp = self._client.post(
            self._url(f"/negotiations/{negotiation_id}/respond"),
            json={
                "response_by": self.actor_id,
                "response_type": response_type,
                "notes": notes,
                "counter_offer": counter_offer,
                **extra,
            },
        )
        return self._negotiation(resp)

    def get_negotiation(self, negotiation_id: str) -> NegotiationResult:
        return self._negotiation(self._client.get(self._url(f"/negotiations/{negotiation_id}")))

    def negotiation_history(self, transaction_id: str) -> list[dict]:
        resp = self._client.get(self._url(f"/transactions/{transaction_id}/negotiations"))
        return _json(resp).get("negotiations", [])

    # -- payments -------------------------------------------------------------

    def _payment(self, resp: httpx.Response) -> PaymentResult:
        body = _json(resp)
        payment = body.get("payment", body)
        return PaymentResult(
            success=resp.is_success,
            payment_id=payment.get("id"),
            status=payment.get("status"),
            transaction_status=body.get("transaction", {}).get("status"),
            error=_error(resp, body),
            raw=body,
        )

    def initiate_payment(
        self,
        transaction_id: str,
        amount: float,
        currency: str,
        payment_method: str,
        **fields: Any,
    ) -> PaymentResult:
        """
        Open a payment against an APPROVED transaction, paid by this client's actor.

        Args:
            amount: Positive amount in `currency`
            payment_method: e.g. "BANK_TRANSFER"
            **fields: payment_type, payee_user_id, payment_reference, fees, ...
        """
        resp = self._client.post(
            self._url("/payments"),
            json={
                "transaction_id": transaction_id,
                "payer_user_id": self.actor_id,
                "amount": amount,
                "currency": currency,
                "payment_method": payment_method,
                **fields,
            },
        )
        return self._payment(resp)

    def update_payment_status(self, payment_id: str, status: str, **details: Any) -> PaymentResult:
        resp = self._client.post(
            self._url(f"/payments/{payment_id}/status"),
            json={"actor_id": self.actor_id, "status": status, **details},
        )
        return self._payment(resp)

    def payments(self, transaction_id: str) -> list[dict]:
        resp = self._client.get(self._url(f"/transactions/{transaction_id}/payments"))
        return _json(resp).get("payments", [])

    # -- audit ----------------------------------------------------------------

    def audit_trail(self, transaction_id: str) -> list[dict]:
        resp = self._client.get(self._url(f"/transactions/{transaction_id}/audit"))
        return _json(resp).get("entries", [])

    def verify_entry(self, entry_id: str) -> bool:
        resp = self._client.get(self._url(f"/audit/entries/{entry_id}/verify"))
        if not resp.is_success:
            return False
        return bool(_json(resp).get("integrity_verified"))

    def verify_chain(self) -> dict:
        return _json(self._client.get(self._url("/audit/chain/verify")))

    def compliance_report(
        self,
        start: datetime,
        end: datetime,
        standard: str = "ISO_27001",
        include_statistics: bool = True,
        include_integrity_check: bool = True,
        sample_size: int | None = None,
    ) -> ReportResult:
        """Generate a compliance report and record its generation on the ledger."""
        resp = self._client.post(
            self._url("/audit/compliance/report"),
            json={
                "actor_id": self.actor_id,
                "start_date": start.isoformat(),
                "end_date": end.isoformat(),
                "standard": standard,
                "include_statistics": include_statistics,
                "include_integrity_check": include_integrity_check,
                "sample_size": sample_size,
            },
        )
        body = _json(resp)
        report = body.get("report", {})
        return ReportResult(
            success=resp.is_success,
            report_id=report.get("report_id"),
            integrity_rate=report.get("integrity_verification", {}).get("integrity_rate"),
            total_entries=report.get("total_entries", 0),
            error=_error(resp, body),
            raw=body,
        )

    def statistics(self) -> dict:
        return _json(self._client.get(self._url("/statistics")))

    def health(self) -> dict:
        """Check gateway health via GET /health."""
        resp = self._client.get(self._url("/health"))
        return _json(resp)
