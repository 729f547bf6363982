"""
Payment Settlement
Compliance Reference: PP No. 5/2021 Pasal 8 — Kontrak dan persetujuan data

Settlement payments for APPROVED transactions. A payment moves
PENDING -> PROCESSING -> COMPLETED, or to FAILED from either open status,
through a conditional update on its status, and every step is written to
the ledger. When the last outstanding payment of a transaction settles the
transaction moves to COMPLETED; a failed payment cancels it. Payment
updates take the transaction's row lock first, so two payments settling
at once cannot both miss that they were the last one.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from clearinghouse.errors import ConcurrentModification, InvalidInput, InvalidState, NotFound
from clearinghouse.ledger import AuditLedger
from clearinghouse.models import (
    Actor,
    AuditEventType,
    Payment,
    PaymentStatus,
    SecurityLevel,
    TransactionStatus,
    resolve_actor,
    utcnow,
)
from clearinghouse.store import Store
from clearinghouse.transactions import TransactionStateMachine, diff_fields

logger = logging.getLogger(__name__)

P = PaymentStatus

PAYMENT_TRANSITIONS: dict[PaymentStatus, frozenset[PaymentStatus]] = {
    P.PENDING: frozenset({P.PROCESSING, P.COMPLETED, P.FAILED}),
    P.PROCESSING: frozenset({P.COMPLETED, P.FAILED}),
    P.COMPLETED: frozenset(),
    P.FAILED: frozenset(),
}

_EVENTS = {
    P.PROCESSING: AuditEventType.PAYMENT_PROCESSING,
    P.COMPLETED: AuditEventType.PAYMENT_COMPLETED,
    P.FAILED: AuditEventType.PAYMENT_FAILED,
}

FEE_FIELDS = ("processing_fee", "brokerage_fee", "network_fee")
OPTIONAL_FIELDS = frozenset({"payment_reference", "exchange_rate", "total_fees", *FEE_FIELDS})


def parse_payment_status(value: Any) -> PaymentStatus:
    if isinstance(value, PaymentStatus):
        return value
    try:
        return PaymentStatus(str(value).upper())
    except ValueError:
        allowed = ", ".join(s.value for s in PaymentStatus)
        raise InvalidInput(
            f"Invalid payment status {value!r}; expected one of: {allowed}"
        ) from None


def _positive(name: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise InvalidInput(f"{name} must be a positive number, got {value!r}.")
    return float(value)


class PaymentEngine:
    def __init__(self, store: Store, ledger: AuditLedger,
                 transactions: TransactionStateMachine,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.ledger = ledger
        self.transactions = transactions
        self._clock = clock or utcnow

    # -- reads ---------------------------------------------------------------

    def get(self, payment_id: str) -> Payment:
        payment = self.store.find_payment(payment_id)
        if payment is None:
            raise NotFound(f"Payment {payment_id} not found.")
        return payment

    def for_transaction(self, transaction_id: str) -> list[Payment]:
        self.transactions.get(transaction_id)
        return self.store.list_payments(transaction_id)

    def search(self, status: Any = None, payer_user_id: Optional[str] = None,
               payee_user_id: Optional[str] = None) -> list[Payment]:
        return self.store.list_payments(
            status=parse_payment_status(status) if status is not None else None,
            payer_user_id=payer_user_id,
            payee_user_id=payee_user_id,
        )

    # -- operations ----------------------------------------------------------

    def initiate(self, transaction_id: str, payer: Actor, amount: float, currency: str,
                 payment_method: str, payment_type: str = "FULL_PAYMENT",
                 payee_user_id: Optional[str] = None, **fields: Any) -> Payment:
        """
        Open a PENDING payment against an APPROVED transaction.

        The payee defaults to the transaction's provider. total_fees, when
        not given, is the sum of whichever individual fees are.
        """
        amount = _positive("amount", amount)
        for label, value in (("currency", currency), ("payment_method", payment_method),
                             ("payment_type", payment_type)):
            if not isinstance(value, str) or not value.strip():
                raise InvalidInput(f"A {label} is required.")
        unknown = set(fields) - OPTIONAL_FIELDS
        if unknown:
            raise InvalidInput(f"Unknown payment fields: {', '.join(sorted(unknown))}.")
        fees = [fields[name] for name in FEE_FIELDS if fields.get(name) is not None]
        if fields.get("total_fees") is None and fees:
            fields["total_fees"] = float(sum(fees))
        payer_user_id, label = resolve_actor(payer)

        with self.store.atomic():
            transaction = self.transactions.get_for_update(transaction_id)
            if transaction.status != TransactionStatus.APPROVED:
                raise InvalidState(
                    f"Transaction {transaction_id} is {transaction.status.value}; "
                    f"payments can only be initiated once it is APPROVED."
                )
            payment = self.store.create_payment(Payment(
                transaction_id=transaction_id,
                payment_type=payment_type,
                payment_method=payment_method,
                amount=amount,
                currency=currency,
                payer_user_id=payer_user_id,
                payee_user_id=payee_user_id or transaction.provider_id,
                requested_at=self._clock(),
                **fields,
            ))
            self.ledger.append(
                AuditEventType.PAYMENT_INITIATED,
                f"Payment of {amount:g} {currency} initiated via {payment_method} by {label}",
                actor=payer,
                transaction_id=transaction_id,
                new_state=payment.to_record(),
                security_level=SecurityLevel.CONFIDENTIAL,
                metadata={
                    "payment_id": payment.id,
                    "payment_method": payment_method,
                    "amount": amount,
                    "currency": currency,
                },
            )
        logger.info("Payment %s initiated for %s: %s %s",
                    payment.id, transaction_id, amount, currency)
        return payment

    def update_status(self, payment_id: str, status: Any, actor: Actor, *,
                      gateway_transaction_id: Optional[str] = None,
                      gateway_response: Optional[dict[str, Any]] = None,
                      payment_hash: Optional[str] = None,
                      digital_signature: Optional[str] = None,
                      failure_reason: Optional[str] = None) -> Payment:
        """
        Move a payment to PROCESSING, COMPLETED or FAILED.

        COMPLETED on the last open payment completes the transaction; FAILED
        cancels it. Both happen in the same unit as the payment update.
        """
        target = parse_payment_status(status)
        resolve_actor(actor)

        with self.store.atomic():
            transaction_id = self.get(payment_id).transaction_id
            transaction = self.transactions.get_for_update(transaction_id)
            payment = self.get(payment_id)
            if target not in PAYMENT_TRANSITIONS[payment.status]:
                logger.warning("Payment %s refused %s -> %s",
                               payment_id, payment.status.value, target.value)
                raise InvalidState(
                    f"Payment {payment_id} cannot move from {payment.status.value} "
                    f"to {target.value}."
                )

            now = self._clock()
            changes: dict[str, Any] = {"status": target}
            for name, value in (("gateway_transaction_id", gateway_transaction_id),
                                ("gateway_response", gateway_response),
                                ("payment_hash", payment_hash),
                                ("digital_signature", digital_signature),
                                ("failure_reason", failure_reason)):
                if value is not None:
                    changes[name] = value
            if payment.processed_at is None:
                changes["processed_at"] = now
            if target == P.COMPLETED:
                changes["settled_at"] = now
            try:
                updated = self.store.update_payment(payment_id, changes,
                                                    expected_status=payment.status)
            except ConcurrentModification as exc:
                raise InvalidState(
                    f"Payment {payment_id} was updated concurrently ({exc})."
                ) from exc

            old, new = payment.to_record(), updated.to_record()
            self.ledger.append(
                _EVENTS[target],
                f"Payment {payment_id} {target.value.lower()} via {payment.payment_method}"
                + (f": {failure_reason}" if failure_reason else ""),
                actor=actor,
                transaction_id=transaction_id,
                previous_state=old,
                new_state=new,
                changed_fields=diff_fields(old, new),
                security_level=SecurityLevel.CONFIDENTIAL,
                metadata={
                    "payment_id": payment_id,
                    "amount": payment.amount,
                    "currency": payment.currency,
                    "gateway_transaction_id": updated.gateway_transaction_id,
                },
            )

            if transaction.status != TransactionStatus.APPROVED:
                logger.warning("Payment %s %s on %s transaction %s", payment_id,
                               target.value, transaction.status.value, transaction_id)
            elif target == P.COMPLETED:
                self._complete_if_settled(transaction_id, payment_id, actor)
            elif target == P.FAILED:
                self.transactions.cancel(
                    transaction_id, actor,
                    reason=f"payment {payment_id} failed",
                    metadata={"payment_id": payment_id, "failure_reason": failure_reason},
                )
        logger.info("Payment %s -> %s", payment_id, target.value)
        return updated

    def _complete_if_settled(self, transaction_id: str, payment_id: str, actor: Actor) -> None:
        payments = self.store.list_payments(transaction_id)
        if any(p.status != P.COMPLETED for p in payments):
            return
        self.transactions.complete(
            transaction_id, actor,
            description="Transaction completed; all payments settled",
            metadata={
                "payment_id": payment_id,
                "final_payment": True,
                "total_payments": len(payments),
                "total_settled": float(sum(p.amount for p in payments)),
            },
        )
