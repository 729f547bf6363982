"""
Negotiation Engine
Compliance Reference: PP No. 5/2021 Pasal 8 — Kontrak dan persetujuan data

Rounds of proposed terms and counter-offers for one transaction. A round
leaves OPEN exactly once, through a conditional update on its status, so of
two concurrent responses to the same round one wins and the other gets
AlreadyResolved. A COUNTER never edits the round it answers: that round
becomes COUNTER_OFFERED and a new round carries the counter terms.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from clearinghouse.errors import (
    AlreadyResolved,
    ConcurrentModification,
    InvalidInput,
    InvalidResponseType,
    InvalidState,
    NotFound,
)
from clearinghouse.ledger import AuditLedger
from clearinghouse.models import (
    Actor,
    AuditEventType,
    Negotiation,
    NegotiationOutcome,
    NegotiationStatus,
    ProposalType,
    ResponseType,
    Transaction,
    parse_datetime,
    resolve_actor,
    utcnow,
)
from clearinghouse.store import Store
from clearinghouse.transactions import NEGOTIABLE_STATES, TransactionStateMachine

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration (from env vars with defaults)
# ---------------------------------------------------------------------------

NEGOTIATION_VALIDITY_DAYS = int(os.environ.get("NEGOTIATION_VALIDITY_DAYS", "7"))


_RESOLUTIONS = {
    ResponseType.ACCEPT: NegotiationStatus.ACCEPTED,
    ResponseType.REJECT: NegotiationStatus.REJECTED,
    ResponseType.COUNTER: NegotiationStatus.COUNTER_OFFERED,
}


def parse_response_type(value: Any) -> ResponseType:
    if isinstance(value, ResponseType):
        return value
    try:
        return ResponseType(str(value).upper())
    except ValueError:
        allowed = ", ".join(r.value for r in ResponseType)
        raise InvalidResponseType(
            f"Invalid response type {value!r}; expected one of: {allowed}"
        ) from None


class NegotiationEngine:
    def __init__(self, store: Store, ledger: AuditLedger,
                 transactions: TransactionStateMachine,
                 clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self.ledger = ledger
        self.transactions = transactions
        self._clock = clock or utcnow

    # -- reads ---------------------------------------------------------------

    def get(self, negotiation_id: str) -> Negotiation:
        negotiation = self.store.find_negotiation(negotiation_id)
        if negotiation is None:
            raise NotFound(f"Negotiation {negotiation_id} not found.")
        return negotiation

    def history(self, transaction_id: str) -> list[Negotiation]:
        """Every round for a transaction, oldest first."""
        self.transactions.get(transaction_id)
        return self.store.list_negotiations(transaction_id)

    def active(self, transaction_id: str) -> Optional[Negotiation]:
        """The round still open for a response, if any."""
        now = self._clock()
        for negotiation in reversed(self.history(transaction_id)):
            if negotiation.effective_status(now) == NegotiationStatus.OPEN:
                return negotiation
        return None

    # -- internals -----------------------------------------------------------

    def _require_negotiable(self, transaction: Transaction) -> None:
        if transaction.status not in NEGOTIABLE_STATES:
            raise InvalidState(
                f"Transaction {transaction.id} is {transaction.status.value}; "
                f"terms can only be negotiated while INITIATED or PENDING_VALIDATION."
            )

    def _open_round(self, transaction_id: str, round_number: int, proposed_by: Actor,
                    terms: dict[str, Any], proposal_type: ProposalType,
                    previous_terms: Optional[dict[str, Any]], price: Optional[float],
                    payment_terms: Optional[str], contract_id: Optional[str],
                    changes: Optional[dict[str, Any]], valid_until: Optional[datetime],
                    auto_accept: bool) -> Negotiation:
        user_id, label = resolve_actor(proposed_by)
        now = self._clock()
        if valid_until is None:
            valid_until = now + timedelta(days=NEGOTIATION_VALIDITY_DAYS)
        else:
            valid_until = parse_datetime(valid_until)
            if valid_until <= now:
                raise InvalidInput(
                    f"valid_until {valid_until.isoformat()} is not in the future."
                )

        negotiation = Negotiation(
            transaction_id=transaction_id,
            round=round_number,
            proposed_by_user_id=user_id,
            proposed_terms=dict(terms),
            valid_until=valid_until,
            proposal_type=proposal_type,
            previous_terms=previous_terms,
            changes=changes,
            contract_id=contract_id,
            proposed_price=price,
            payment_terms=payment_terms,
            auto_accept=auto_accept,
            proposed_at=now,
        )
        try:
            created = self.store.create_negotiation(negotiation)
        except ConcurrentModification as exc:
            raise AlreadyResolved(
                f"Round {round_number} of transaction {transaction_id} was "
                f"opened concurrently.",
                round=round_number,
            ) from exc

        self.ledger.append(
            AuditEventType.PROPOSAL_SUBMITTED,
            f"{proposal_type.value.replace('_', ' ').title()} proposal round "
            f"{round_number} submitted by {label}",
            actor=proposed_by,
            transaction_id=transaction_id,
            previous_state=previous_terms,
            new_state=created.to_record(),
            metadata={
                "negotiation_id": created.id,
                "round": round_number,
                "proposal_type": proposal_type.value,
                "valid_until": valid_until.isoformat(),
            },
        )
        logger.info("Negotiation round %d opened for %s (%s)",
                    round_number, transaction_id, proposal_type.value)
        return created

    # -- operations ----------------------------------------------------------

    def propose(self, transaction_id: str, proposed_by: Actor, terms: dict[str, Any],
                price: Optional[float] = None, payment_terms: Optional[str] = None,
                *, contract_id: Optional[str] = None,
                changes: Optional[dict[str, Any]] = None,
                valid_until: Optional[datetime] = None,
                auto_accept: bool = False) -> Negotiation:
        """
        Open the next round of terms for a transaction.

        Round 1 is INITIAL. If earlier rounds ran out without a response the
        new round follows them and carries the last round's terms as
        previous_terms. Fails with InvalidState while a round is still open.
        """
        if not isinstance(terms, dict) or not terms:
            raise InvalidInput("Proposed terms are required.")

        with self.store.atomic():
            transaction = self.transactions.get(transaction_id)
            self._require_negotiable(transaction)

            rounds = self.store.list_negotiations(transaction_id)
            now = self._clock()
            open_rounds = [n for n in rounds
                           if n.effective_status(now) == NegotiationStatus.OPEN]
            if open_rounds:
                raise InvalidState(
                    f"Transaction {transaction_id} already has round "
                    f"{open_rounds[-1].round} OPEN; respond to it first."
                )
            last = rounds[-1] if rounds else None
            if last is not None and last.effective_status(now) != NegotiationStatus.EXPIRED:
                raise InvalidState(
                    f"Transaction {transaction_id} negotiation is already "
                    f"{last.status.value} at round {last.round}."
                )

            return self._open_round(
                transaction_id,
                round_number=(last.round + 1) if last else 1,
                proposed_by=proposed_by,
                terms=terms,
                proposal_type=ProposalType.INITIAL,
                previous_terms=last.proposed_terms if last else None,
                price=price,
                payment_terms=payment_terms,
                contract_id=contract_id or transaction.contract_id,
                changes=changes,
                valid_until=valid_until,
                auto_accept=auto_accept,
            )

    def respond(self, negotiation_id: str, response_by: Actor, response_type: Any,
                notes: Optional[str] = None,
                counter_offer: Optional[dict[str, Any]] = None,
                *, counter_price: Optional[float] = None,
                counter_payment_terms: Optional[str] = None,
                changes: Optional[dict[str, Any]] = None) -> Negotiation:
        """
        Resolve an OPEN round.

        ACCEPT and REJECT return the resolved round and hand the outcome to
        the transaction state machine. COUNTER returns the new round. The
        whole response commits or rolls back as one unit.
        """
        response = parse_response_type(response_type)
        user_id, label = resolve_actor(response_by)
        if response == ResponseType.COUNTER and not counter_offer:
            raise InvalidInput("A COUNTER response requires counter_offer terms.")

        with self.store.atomic():
            negotiation = self.get(negotiation_id)
            now = self._clock()
            status = negotiation.effective_status(now)
            if status != NegotiationStatus.OPEN:
                raise AlreadyResolved(
                    f"Negotiation {negotiation_id} round {negotiation.round} is "
                    f"already {status.value}.",
                    status=status.value,
                    round=negotiation.round,
                )
            if response == ResponseType.COUNTER:
                self._require_negotiable(self.transactions.get(negotiation.transaction_id))

            try:
                resolved = self.store.update_negotiation(
                    negotiation_id,
                    {
                        "status": _RESOLUTIONS[response],
                        "response_by_user_id": user_id,
                        "response_type": response,
                        "response_notes": notes,
                        "counter_offer": counter_offer,
                        "responded_at": now,
                    },
                    expected_status=NegotiationStatus.OPEN,
                )
            except ConcurrentModification as exc:
                logger.warning("Lost response race on negotiation %s round %d",
                               negotiation_id, negotiation.round)
                raise AlreadyResolved(
                    f"Negotiation {negotiation_id} round {negotiation.round} "
                    f"was resolved by another response.",
                    round=negotiation.round,
                ) from exc

            logger.info("Negotiation %s round %d: %s by %s", negotiation_id,
                        negotiation.round, response.value, label)

            if response == ResponseType.COUNTER:
                return self._open_round(
                    negotiation.transaction_id,
                    round_number=negotiation.round + 1,
                    proposed_by=response_by,
                    terms=counter_offer,
                    proposal_type=ProposalType.COUNTER_OFFER,
                    previous_terms=negotiation.proposed_terms,
                    price=counter_price,
                    payment_terms=counter_payment_terms,
                    contract_id=negotiation.contract_id,
                    changes=changes,
                    valid_until=None,
                    auto_accept=False,
                )

            self.transactions.apply_negotiation_outcome(
                negotiation.transaction_id,
                NegotiationOutcome(
                    status=_RESOLUTIONS[response],
                    negotiation_id=negotiation_id,
                    round=negotiation.round,
                    actor=response_by,
                    terms=negotiation.proposed_terms,
                    notes=notes,
                ),
            )
            return resolved
