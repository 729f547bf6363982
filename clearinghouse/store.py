"""
Persistence Collaborator

The workflow core talks to storage only through the `Store` contract:
find / create / conditional update / delete / count per entity, an
append-only surface for audit entries, and `atomic()` so that a status
change and its ledger entry commit or roll back together.

`InMemoryStore` is the reference implementation used by tests and the
default gateway. `clearinghouse.postgres.PostgresStore` is the production
backend.
"""

from __future__ import annotations

import copy
import threading
from abc import ABC, abstractmethod
from collections import Counter
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Iterator, Optional

from clearinghouse.errors import ConcurrentModification, NotFound
from clearinghouse.models import (
    AuditLogEntry,
    Negotiation,
    NegotiationStatus,
    Payment,
    PaymentStatus,
    Transaction,
    TransactionStatus,
    Validation,
    utcnow,
)


class Store(ABC):
    """Storage contract consumed by the ledger and the workflow engines."""

    # -- unit of work --------------------------------------------------------

    @abstractmethod
    def atomic(self):
        """Context manager; nested use joins the outermost unit."""

    # -- transactions --------------------------------------------------------

    @abstractmethod
    def create_transaction(self, transaction: Transaction) -> Transaction: ...

    @abstractmethod
    def find_transaction(self, transaction_id: str) -> Optional[Transaction]: ...

    @abstractmethod
    def update_transaction(
        self,
        transaction_id: str,
        changes: dict[str, Any],
        expected_status: Optional[TransactionStatus] = None,
    ) -> Transaction:
        """Apply `changes`, bump version and updated_at.

        Raises NotFound for unknown ids and ConcurrentModification when
        `expected_status` is given and no longer matches.
        """

    @abstractmethod
    def lock_transaction(self, transaction_id: str) -> None:
        """Hold the transaction's row lock until the current unit ends.

        Read-then-decide writers (quorum recount, payment settlement) take
        it first, so two of them on one transaction run one after the other.
        """

    @abstractmethod
    def delete_transaction(self, transaction_id: str) -> bool: ...

    @abstractmethod
    def count_transactions(self, status: Optional[TransactionStatus] = None) -> int: ...

    @abstractmethod
    def group_transactions_by_status(self) -> dict[str, int]: ...

    @abstractmethod
    def sum_transaction_amounts(self, status: TransactionStatus) -> float: ...

    # -- negotiations --------------------------------------------------------

    @abstractmethod
    def create_negotiation(self, negotiation: Negotiation) -> Negotiation:
        """Insert a round. A duplicate (transaction_id, round) raises
        ConcurrentModification."""

    @abstractmethod
    def find_negotiation(self, negotiation_id: str) -> Optional[Negotiation]: ...

    @abstractmethod
    def list_negotiations(self, transaction_id: str) -> list[Negotiation]: ...

    @abstractmethod
    def list_open_negotiations(self) -> list[Negotiation]: ...

    @abstractmethod
    def update_negotiation(
        self,
        negotiation_id: str,
        changes: dict[str, Any],
        expected_status: Optional[NegotiationStatus] = None,
    ) -> Negotiation: ...

    @abstractmethod
    def delete_negotiations(self, transaction_id: str) -> int: ...

    # -- validations ---------------------------------------------------------

    @abstractmethod
    def create_validation(self, validation: Validation) -> Validation: ...

    @abstractmethod
    def list_validations(self, transaction_id: str) -> list[Validation]: ...

    @abstractmethod
    def delete_validations(self, transaction_id: str) -> int: ...

    @abstractmethod
    def group_validations_by_decision(
        self, transaction_id: Optional[str] = None
    ) -> dict[str, int]: ...

    # -- payments ------------------------------------------------------------

    @abstractmethod
    def create_payment(self, payment: Payment) -> Payment: ...

    @abstractmethod
    def find_payment(self, payment_id: str) -> Optional[Payment]: ...

    @abstractmethod
    def list_payments(
        self,
        transaction_id: Optional[str] = None,
        status: Optional[PaymentStatus] = None,
        payer_user_id: Optional[str] = None,
        payee_user_id: Optional[str] = None,
    ) -> list[Payment]:
        """Matching payments in request order."""

    @abstractmethod
    def update_payment(
        self,
        payment_id: str,
        changes: dict[str, Any],
        expected_status: Optional[PaymentStatus] = None,
    ) -> Payment: ...

    @abstractmethod
    def delete_payments(self, transaction_id: str) -> int: ...

    @abstractmethod
    def group_payments_by_status(self) -> dict[str, int]: ...

    # -- audit entries (append-only) -----------------------------------------
    #
    # Stores hand back raw records here. Integrity is checked against exactly
    # what was stored, and an entry whose record no longer decodes (tampered
    # enum, timestamp or sequence) must still be reachable to be reported.

    @abstractmethod
    def lock_ledger(self) -> None:
        """Serialize ledger appends for the rest of the current unit."""

    @abstractmethod
    def append_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        """Insert an entry. A duplicate sequence raises ConcurrentModification."""

    @abstractmethod
    def find_entry_record(self, entry_id: str) -> Optional[dict[str, Any]]: ...

    @abstractmethod
    def last_link(self) -> Optional[tuple[int, str]]:
        """(sequence, integrity_digest) of the newest entry, as indexed at append."""

    @abstractmethod
    def iter_entry_records(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        transaction_id: Optional[str] = None,
        event_type: Optional[str] = None,
        actor_user_id: Optional[str] = None,
        compliance_flag: Optional[str] = None,
        security_level: Optional[str] = None,
    ) -> Iterator[dict[str, Any]]:
        """Records with start <= timestamp <= end, by (timestamp, sequence).

        Filtering and ordering use the values indexed at append time.
        """

    @abstractmethod
    def iter_chain_records(self) -> Iterator[dict[str, Any]]:
        """Every record in appended sequence order."""

    @abstractmethod
    def count_entries(self) -> int: ...

    def find_entry(self, entry_id: str) -> Optional[AuditLogEntry]:
        record = self.find_entry_record(entry_id)
        return AuditLogEntry.from_record(record) if record else None

    def iter_entries(self, *args, **kwargs) -> Iterator[AuditLogEntry]:
        for record in self.iter_entry_records(*args, **kwargs):
            yield AuditLogEntry.from_record(record)

    def iter_chain(self) -> Iterator[AuditLogEntry]:
        for record in self.iter_chain_records():
            yield AuditLogEntry.from_record(record)


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class InMemoryStore(Store):
    """
    Dict-backed store holding JSON records, as a database would.

    A re-entrant lock makes each call atomic; `atomic()` holds the lock for
    the whole unit and restores a snapshot of every table on exception.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._depth = 0
        self._tables: dict[str, dict[str, dict[str, Any]]] = {
            "transactions": {},
            "negotiations": {},
            "validations": {},
            "payments": {},
            "audit_entries": {},
            "audit_index": {},
        }

    @contextmanager
    def atomic(self):
        with self._lock:
            outermost = self._depth == 0
            snapshot = copy.deepcopy(self._tables) if outermost else None
            self._depth += 1
            try:
                yield self
            except BaseException:
                if outermost:
                    self._tables = snapshot
                raise
            finally:
                self._depth -= 1

    # -- helpers -------------------------------------------------------------

    def _update(self, table: str, model, kind: str, record_id: str,
                changes: dict[str, Any], expected_status: Any,
                versioned: bool = False) -> dict[str, Any]:
        with self._lock:
            rows = self._tables[table]
            if record_id not in rows:
                raise NotFound(f"{kind} {record_id} not found.")
            current = rows[record_id]
            expected = enum_value(expected_status)
            if expected is not None and current["status"] != expected:
                raise ConcurrentModification(
                    f"{kind} {record_id} is {current['status']}, expected {expected}."
                )
            # round-trip through the model so bad enum values are rejected
            merged = model.from_record({**current, **encode_changes(changes)}).to_record()
            updated = dict(current)
            updated.update({k: merged[k] for k in changes})
            if versioned:
                updated["version"] = current["version"] + 1
                if "updated_at" not in changes:
                    updated["updated_at"] = utcnow().isoformat()
            rows[record_id] = updated
            return updated

    # -- transactions --------------------------------------------------------

    def create_transaction(self, transaction: Transaction) -> Transaction:
        with self._lock:
            if transaction.id in self._tables["transactions"]:
                raise ConcurrentModification(f"Transaction {transaction.id} already exists.")
            self._tables["transactions"][transaction.id] = transaction.to_record()
        return Transaction.from_record(transaction.to_record())

    def find_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self._lock:
            record = self._tables["transactions"].get(transaction_id)
            return Transaction.from_record(record) if record else None

    def update_transaction(self, transaction_id, changes, expected_status=None):
        record = self._update(
            "transactions", Transaction, "Transaction", transaction_id,
            changes, expected_status, versioned=True,
        )
        return Transaction.from_record(record)

    def lock_transaction(self, transaction_id: str) -> None:
        # the re-entrant lock held by atomic() already serializes the unit
        return None

    def delete_transaction(self, transaction_id: str) -> bool:
        with self._lock:
            return self._tables["transactions"].pop(transaction_id, None) is not None

    def count_transactions(self, status=None) -> int:
        with self._lock:
            rows = self._tables["transactions"].values()
            if status is None:
                return len(rows)
            return sum(1 for r in rows if r["status"] == enum_value(status))

    def group_transactions_by_status(self) -> dict[str, int]:
        with self._lock:
            return dict(Counter(r["status"] for r in self._tables["transactions"].values()))

    def sum_transaction_amounts(self, status) -> float:
        with self._lock:
            return float(sum(
                r["total_amount"] or 0
                for r in self._tables["transactions"].values()
                if r["status"] == enum_value(status)
            ))

    # -- negotiations --------------------------------------------------------

    def create_negotiation(self, negotiation: Negotiation) -> Negotiation:
        with self._lock:
            rows = self._tables["negotiations"]
            for r in rows.values():
                if (r["transaction_id"] == negotiation.transaction_id
                        and r["round"] == negotiation.round):
                    raise ConcurrentModification(
                        f"Round {negotiation.round} already exists for "
                        f"transaction {negotiation.transaction_id}."
                    )
            rows[negotiation.id] = negotiation.to_record()
        return Negotiation.from_record(negotiation.to_record())

    def find_negotiation(self, negotiation_id: str) -> Optional[Negotiation]:
        with self._lock:
            record = self._tables["negotiations"].get(negotiation_id)
            return Negotiation.from_record(record) if record else None

    def list_negotiations(self, transaction_id: str) -> list[Negotiation]:
        with self._lock:
            rows = [r for r in self._tables["negotiations"].values()
                    if r["transaction_id"] == transaction_id]
            rows.sort(key=lambda r: r["round"])
            return [Negotiation.from_record(r) for r in rows]

    def list_open_negotiations(self) -> list[Negotiation]:
        with self._lock:
            return [Negotiation.from_record(r)
                    for r in self._tables["negotiations"].values()
                    if r["status"] == NegotiationStatus.OPEN.value]

    def update_negotiation(self, negotiation_id, changes, expected_status=None):
        record = self._update(
            "negotiations", Negotiation, "Negotiation", negotiation_id,
            changes, expected_status,
        )
        return Negotiation.from_record(record)

    def delete_negotiations(self, transaction_id: str) -> int:
        return self._delete_children("negotiations", transaction_id)

    # -- validations ---------------------------------------------------------

    def create_validation(self, validation: Validation) -> Validation:
        with self._lock:
            if validation.id in self._tables["validations"]:
                raise ConcurrentModification(f"Validation {validation.id} already exists.")
            self._tables["validations"][validation.id] = validation.to_record()
        return validation

    def list_validations(self, transaction_id: str) -> list[Validation]:
        # dicts keep insertion order, which is recording order
        with self._lock:
            return [Validation.from_record(r)
                    for r in self._tables["validations"].values()
                    if r["transaction_id"] == transaction_id]

    def delete_validations(self, transaction_id: str) -> int:
        return self._delete_children("validations", transaction_id)

    def group_validations_by_decision(self, transaction_id=None) -> dict[str, int]:
        with self._lock:
            return dict(Counter(
                r["decision"] for r in self._tables["validations"].values()
                if transaction_id is None or r["transaction_id"] == transaction_id
            ))

    # -- payments ------------------------------------------------------------

    def create_payment(self, payment: Payment) -> Payment:
        with self._lock:
            if payment.id in self._tables["payments"]:
                raise ConcurrentModification(f"Payment {payment.id} already exists.")
            self._tables["payments"][payment.id] = payment.to_record()
        return Payment.from_record(payment.to_record())

    def find_payment(self, payment_id: str) -> Optional[Payment]:
        with self._lock:
            record = self._tables["payments"].get(payment_id)
            return Payment.from_record(record) if record else None

    def list_payments(self, transaction_id=None, status=None, payer_user_id=None,
                      payee_user_id=None) -> list[Payment]:
        wanted = {
            "transaction_id": transaction_id,
            "status": enum_value(status),
            "payer_user_id": payer_user_id,
            "payee_user_id": payee_user_id,
        }
        with self._lock:
            return [Payment.from_record(r)
                    for r in self._tables["payments"].values()
                    if all(v is None or r[k] == v for k, v in wanted.items())]

    def update_payment(self, payment_id, changes, expected_status=None):
        record = self._update(
            "payments", Payment, "Payment", payment_id, changes, expected_status,
        )
        return Payment.from_record(record)

    def delete_payments(self, transaction_id: str) -> int:
        return self._delete_children("payments", transaction_id)

    def group_payments_by_status(self) -> dict[str, int]:
        with self._lock:
            return dict(Counter(r["status"] for r in self._tables["payments"].values()))

    # -- audit entries -------------------------------------------------------

    def lock_ledger(self) -> None:
        # the re-entrant lock held by atomic() already serializes appends
        return None

    def append_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._lock:
            if any(i["sequence"] == entry.sequence for _, i in self._indexed_entries()):
                raise ConcurrentModification(
                    f"Ledger sequence {entry.sequence} is already taken."
                )
            self._tables["audit_entries"][entry.id] = entry.to_record()
            # column values as a database would index them on insert
            self._tables["audit_index"][entry.id] = {
                "sequence": entry.sequence,
                "timestamp": entry.timestamp,
                "transaction_id": entry.transaction_id,
                "event_type": entry.event_type.value,
                "actor_user_id": entry.actor_user_id,
                "security_level": entry.security_level.value,
            }
        return entry

    def find_entry_record(self, entry_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            record = self._tables["audit_entries"].get(entry_id)
            return copy.deepcopy(record) if record is not None else None

    def last_link(self) -> Optional[tuple[int, str]]:
        with self._lock:
            indexed = self._indexed_entries()
            if not indexed:
                return None
            entry_id, index = max(indexed, key=lambda item: item[1]["sequence"])
            return index["sequence"], self._tables["audit_entries"][entry_id].get(
                "integrity_digest")

    def iter_entry_records(self, start=None, end=None, transaction_id=None,
                           event_type=None, actor_user_id=None, compliance_flag=None,
                           security_level=None) -> Iterator[dict[str, Any]]:
        with self._lock:
            rows = self._tables["audit_entries"]
            matched = []
            for entry_id, i in self._indexed_entries():
                if start is not None and i["timestamp"] < start:
                    continue
                if end is not None and i["timestamp"] > end:
                    continue
                if transaction_id is not None and i["transaction_id"] != transaction_id:
                    continue
                if event_type is not None and i["event_type"] != enum_value(event_type):
                    continue
                if actor_user_id is not None and i["actor_user_id"] != actor_user_id:
                    continue
                if security_level is not None and (
                        i["security_level"] != enum_value(security_level)):
                    continue
                if compliance_flag is not None and (
                        compliance_flag not in (rows[entry_id].get("compliance_flags") or [])):
                    continue
                matched.append((i["timestamp"], i["sequence"], copy.deepcopy(rows[entry_id])))
        matched.sort(key=lambda item: (item[0], item[1]))
        for _, _, record in matched:
            yield record

    def iter_chain_records(self) -> Iterator[dict[str, Any]]:
        with self._lock:
            rows = self._tables["audit_entries"]
            ordered = sorted(self._indexed_entries(), key=lambda item: item[1]["sequence"])
            records = [copy.deepcopy(rows[entry_id]) for entry_id, _ in ordered]
        yield from records

    def count_entries(self) -> int:
        with self._lock:
            return len(self._tables["audit_entries"])

    def _indexed_entries(self) -> list[tuple[str, dict[str, Any]]]:
        index = self._tables["audit_index"]
        return [(entry_id, index[entry_id]) for entry_id in self._tables["audit_entries"]]

    # -- internals -----------------------------------------------------------

    def _delete_children(self, table: str, transaction_id: str) -> int:
        with self._lock:
            rows = self._tables[table]
            doomed = [k for k, r in rows.items() if r["transaction_id"] == transaction_id]
            for key in doomed:
                del rows[key]
            return len(doomed)


def enum_value(value: Any) -> Optional[str]:
    if isinstance(value, Enum):
        return value.value
    return value


def encode_changes(changes: dict[str, Any]) -> dict[str, Any]:
    encoded = {}
    for key, value in changes.items():
        if isinstance(value, Enum):
            value = value.value
        elif isinstance(value, datetime):
            value = value.isoformat()
        else:
            value = copy.deepcopy(value)
        encoded[key] = value
    return encoded
