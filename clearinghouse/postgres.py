"""
PostgreSQL Store
Compliance Reference: ISO/IEC 27001 A.12.4.2 — Protection of log information

psycopg2 implementation of the `Store` contract. Each entity has one table
with its indexed columns plus the full record as JSONB. Conditional updates
lock the row and re-check status, so of two writers racing on the same
expected status exactly one sees its precondition hold. The audit table is
protected by a trigger that rejects UPDATE and DELETE.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import psycopg2
import psycopg2.errors
from psycopg2.extras import Json

from clearinghouse.errors import ConcurrentModification, NotFound, PersistenceFailure
from clearinghouse.models import (
    AuditLogEntry,
    Negotiation,
    NegotiationStatus,
    Payment,
    Transaction,
    Validation,
    utcnow,
)
from clearinghouse.store import Store, encode_changes, enum_value

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Configuration (from env vars with defaults)
# ---------------------------------------------------------------------------

DB_CONFIG = {
    "host": os.environ.get("CLEARINGHOUSE_DB_HOST", "localhost"),
    "port": int(os.environ.get("CLEARINGHOUSE_DB_PORT", "5432")),
    "dbname": os.environ.get("CLEARINGHOUSE_DB_NAME", "clearinghouse"),
    "user": os.environ.get("CLEARINGHOUSE_DB_USER", "clearinghouse"),
    "password": os.environ.get("CLEARINGHOUSE_DB_PASSWORD", "clearinghouse"),
}

# pg_advisory_xact_lock key serializing ledger appends
LEDGER_LOCK_KEY = 5_2021_27001


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS ch_transactions (
    id            TEXT PRIMARY KEY,
    status        TEXT NOT NULL,
    total_amount  NUMERIC,
    created_at    TIMESTAMPTZ NOT NULL,
    version       INTEGER NOT NULL,
    body          JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS ch_transactions_status_idx ON ch_transactions (status);

CREATE TABLE IF NOT EXISTS ch_negotiations (
    id              TEXT PRIMARY KEY,
    transaction_id  TEXT NOT NULL,
    round           INTEGER NOT NULL,
    status          TEXT NOT NULL,
    body            JSONB NOT NULL,
    UNIQUE (transaction_id, round)
);
CREATE INDEX IF NOT EXISTS ch_negotiations_status_idx ON ch_negotiations (status);

CREATE TABLE IF NOT EXISTS ch_validations (
    seq             BIGSERIAL PRIMARY KEY,
    id              TEXT UNIQUE NOT NULL,
    transaction_id  TEXT NOT NULL,
    decision        TEXT NOT NULL,
    body            JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS ch_validations_tx_idx ON ch_validations (transaction_id);

CREATE TABLE IF NOT EXISTS ch_payments (
    seq             BIGSERIAL PRIMARY KEY,
    id              TEXT UNIQUE NOT NULL,
    transaction_id  TEXT NOT NULL,
    status          TEXT NOT NULL,
    payer_user_id   TEXT,
    payee_user_id   TEXT,
    body            JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS ch_payments_tx_idx ON ch_payments (transaction_id);

CREATE TABLE IF NOT EXISTS ch_audit_entries (
    id              TEXT PRIMARY KEY,
    sequence        BIGINT UNIQUE NOT NULL,
    timestamp       TIMESTAMPTZ NOT NULL,
    transaction_id  TEXT,
    event_type      TEXT NOT NULL,
    actor_user_id   TEXT,
    security_level  TEXT NOT NULL,
    body            JSONB NOT NULL
);
CREATE INDEX IF NOT EXISTS ch_audit_entries_ts_idx ON ch_audit_entries (timestamp, sequence);
CREATE INDEX IF NOT EXISTS ch_audit_entries_tx_idx ON ch_audit_entries (transaction_id);

CREATE OR REPLACE FUNCTION ch_audit_entries_append_only() RETURNS trigger AS $$
BEGIN
    RAISE EXCEPTION 'ch_audit_entries is append-only';
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS ch_audit_entries_no_mutation ON ch_audit_entries;
CREATE TRIGGER ch_audit_entries_no_mutation
    BEFORE UPDATE OR DELETE ON ch_audit_entries
    FOR EACH ROW EXECUTE FUNCTION ch_audit_entries_append_only();
"""


class PostgresStore(Store):
    """
    Store backed by PostgreSQL.

    Outside `atomic()` every call opens, commits and closes its own
    connection. Inside it, calls on the same thread share one connection and
    one database transaction.
    """

    def __init__(self, db_config: dict | None = None):
        self._db_config = db_config or DB_CONFIG
        self._local = threading.local()

    def _connect(self):
        return psycopg2.connect(**self._db_config)

    def init_schema(self) -> None:
        with self._cursor() as cur:
            cur.execute(SCHEMA_SQL)

    # -- connection handling -------------------------------------------------

    @contextmanager
    def atomic(self):
        if getattr(self._local, "conn", None) is not None:
            yield self
            return
        try:
            conn = self._connect()
        except psycopg2.Error as exc:
            logger.error("Database connection failed: %s", exc)
            raise PersistenceFailure(f"Database connection failed: {exc}", cause=exc) from exc
        self._local.conn = conn
        try:
            yield self
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            self._local.conn = None
            conn.close()

    @contextmanager
    def _cursor(self):
        conn = getattr(self._local, "conn", None)
        owned = conn is None
        try:
            if owned:
                conn = self._connect()
            cur = conn.cursor()
            try:
                yield cur
            finally:
                cur.close()
            if owned:
                conn.commit()
        except psycopg2.errors.UniqueViolation as exc:
            if owned and conn is not None:
                conn.rollback()
            raise ConcurrentModification(f"Unique constraint violated: {exc}") from exc
        except psycopg2.Error as exc:
            if owned and conn is not None:
                conn.rollback()
            logger.error("Database operation failed: %s", exc)
            raise PersistenceFailure(f"Database operation failed: {exc}", cause=exc) from exc
        finally:
            if owned and conn is not None:
                conn.close()

    def _fetch_body(self, cur, table: str, kind: str, record_id: str,
                    expected_status: Any) -> dict[str, Any]:
        cur.execute(f"SELECT body FROM {table} WHERE id = %s FOR UPDATE", (record_id,))
        row = cur.fetchone()
        if row is None:
            raise NotFound(f"{kind} {record_id} not found.")
        current = row[0]
        expected = enum_value(expected_status)
        if expected is not None and current["status"] != expected:
            raise ConcurrentModification(
                f"{kind} {record_id} is {current['status']}, expected {expected}."
            )
        return current

    # -- transactions --------------------------------------------------------

    def create_transaction(self, transaction: Transaction) -> Transaction:
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO ch_transactions "
                "(id, status, total_amount, created_at, version, body) "
                "VALUES (%s, %s, %s, %s, %s, %s)",
                (
                    transaction.id,
                    transaction.status.value,
                    transaction.total_amount,
                    transaction.created_at,
                    transaction.version,
                    Json(transaction.to_record()),
                ),
            )
        return transaction

    def find_transaction(self, transaction_id: str) -> Optional[Transaction]:
        with self._cursor() as cur:
            cur.execute("SELECT body FROM ch_transactions WHERE id = %s", (transaction_id,))
            row = cur.fetchone()
        return Transaction.from_record(row[0]) if row else None

    def update_transaction(self, transaction_id, changes, expected_status=None):
        with self._cursor() as cur:
            current = self._fetch_body(cur, "ch_transactions", "Transaction",
                                       transaction_id, expected_status)
            updated = Transaction.from_record({**current, **encode_changes(changes)})
            updated.version = current["version"] + 1
            if "updated_at" not in changes:
                updated.updated_at = utcnow()
            cur.execute(
                "UPDATE ch_transactions SET status = %s, total_amount = %s, "
                "version = %s, body = %s "
                "WHERE id = %s AND status = %s AND version = %s",
                (
                    updated.status.value,
                    updated.total_amount,
                    updated.version,
                    Json(updated.to_record()),
                    transaction_id,
                    current["status"],
                    current["version"],
                ),
            )
            if cur.rowcount != 1:
                raise ConcurrentModification(
                    f"Transaction {transaction_id} changed during update."
                )
        return updated

    def lock_transaction(self, transaction_id: str) -> None:
        with self._cursor() as cur:
            cur.execute("SELECT id FROM ch_transactions WHERE id = %s FOR UPDATE",
                        (transaction_id,))

    def delete_transaction(self, transaction_id: str) -> bool:
        with self._cursor() as cur:
            cur.execute("DELETE FROM ch_transactions WHERE id = %s", (transaction_id,))
            return cur.rowcount == 1

    def count_transactions(self, status=None) -> int:
        with self._cursor() as cur:
            if status is None:
                cur.execute("SELECT COUNT(*) FROM ch_transactions")
            else:
                cur.execute("SELECT COUNT(*) FROM ch_transactions WHERE status = %s",
                            (enum_value(status),))
            return cur.fetchone()[0]

    def group_transactions_by_status(self) -> dict[str, int]:
        with self._cursor() as cur:
            cur.execute("SELECT status, COUNT(*) FROM ch_transactions GROUP BY status")
            return {status: count for status, count in cur.fetchall()}

    def sum_transaction_amounts(self, status) -> float:
        with self._cursor() as cur:
            cur.execute(
                "SELECT COALESCE(SUM(total_amount), 0) FROM ch_transactions WHERE status = %s",
                (enum_value(status),),
            )
            return float(cur.fetchone()[0])

    # -- negotiations --------------------------------------------------------

    def create_negotiation(self, negotiation: Negotiation) -> Negotiation:
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO ch_negotiations (id, transaction_id, round, status, body) "
                "VALUES (%s, %s, %s, %s, %s)",
                (
                    negotiation.id,
                    negotiation.transaction_id,
                    negotiation.round,
                    negotiation.status.value,
                    Json(negotiation.to_record()),
                ),
            )
        return negotiation

    def find_negotiation(self, negotiation_id: str) -> Optional[Negotiation]:
        with self._cursor() as cur:
            cur.execute("SELECT body FROM ch_negotiations WHERE id = %s", (negotiation_id,))
            row = cur.fetchone()
        return Negotiation.from_record(row[0]) if row else None

    def list_negotiations(self, transaction_id: str) -> list[Negotiation]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT body FROM ch_negotiations WHERE transaction_id = %s ORDER BY round",
                (transaction_id,),
            )
            rows = cur.fetchall()
        return [Negotiation.from_record(r[0]) for r in rows]

    def list_open_negotiations(self) -> list[Negotiation]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT body FROM ch_negotiations WHERE status = %s",
                (NegotiationStatus.OPEN.value,),
            )
            rows = cur.fetchall()
        return [Negotiation.from_record(r[0]) for r in rows]

    def update_negotiation(self, negotiation_id, changes, expected_status=None):
        with self._cursor() as cur:
            current = self._fetch_body(cur, "ch_negotiations", "Negotiation",
                                       negotiation_id, expected_status)
            updated = Negotiation.from_record({**current, **encode_changes(changes)})
            cur.execute(
                "UPDATE ch_negotiations SET status = %s, body = %s "
                "WHERE id = %s AND status = %s",
                (
                    updated.status.value,
                    Json(updated.to_record()),
                    negotiation_id,
                    current["status"],
                ),
            )
            if cur.rowcount != 1:
                raise ConcurrentModification(
                    f"Negotiation {negotiation_id} changed during update."
                )
        return updated

    def delete_negotiations(self, transaction_id: str) -> int:
        with self._cursor() as cur:
            cur.execute("DELETE FROM ch_negotiations WHERE transaction_id = %s",
                        (transaction_id,))
            return cur.rowcount

    # -- validations ---------------------------------------------------------

    def create_validation(self, validation: Validation) -> Validation:
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO ch_validations (id, transaction_id, decision, body) "
                "VALUES (%s, %s, %s, %s)",
                (
                    validation.id,
                    validation.transaction_id,
                    validation.decision.value,
                    Json(validation.to_record()),
                ),
            )
        return validation

    def list_validations(self, transaction_id: str) -> list[Validation]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT body FROM ch_validations WHERE transaction_id = %s ORDER BY seq",
                (transaction_id,),
            )
            rows = cur.fetchall()
        return [Validation.from_record(r[0]) for r in rows]

    def delete_validations(self, transaction_id: str) -> int:
        with self._cursor() as cur:
            cur.execute("DELETE FROM ch_validations WHERE transaction_id = %s",
                        (transaction_id,))
            return cur.rowcount

    def group_validations_by_decision(self, transaction_id=None) -> dict[str, int]:
        with self._cursor() as cur:
            if transaction_id is None:
                cur.execute("SELECT decision, COUNT(*) FROM ch_validations GROUP BY decision")
            else:
                cur.execute(
                    "SELECT decision, COUNT(*) FROM ch_validations "
                    "WHERE transaction_id = %s GROUP BY decision",
                    (transaction_id,),
                )
            return {decision: count for decision, count in cur.fetchall()}

    # -- payments ------------------------------------------------------------

    def create_payment(self, payment: Payment) -> Payment:
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO ch_payments "
                "(id, transaction_id, status, payer_user_id, payee_user_id, body) "
                "VALUES (%s, %s, %s, %s, %s, %s)",
                (
                    payment.id,
                    payment.transaction_id,
                    payment.status.value,
                    payment.payer_user_id,
                    payment.payee_user_id,
                    Json(payment.to_record()),
                ),
            )
        return payment

    def find_payment(self, payment_id: str) -> Optional[Payment]:
        with self._cursor() as cur:
            cur.execute("SELECT body FROM ch_payments WHERE id = %s", (payment_id,))
            row = cur.fetchone()
        return Payment.from_record(row[0]) if row else None

    def list_payments(self, transaction_id=None, status=None, payer_user_id=None,
                      payee_user_id=None) -> list[Payment]:
        clauses, params = [], []
        for column, value in (("transaction_id", transaction_id),
                              ("status", enum_value(status)),
                              ("payer_user_id", payer_user_id),
                              ("payee_user_id", payee_user_id)):
            if value is not None:
                clauses.append(f"{column} = %s")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        with self._cursor() as cur:
            cur.execute(f"SELECT body FROM ch_payments {where}ORDER BY seq", tuple(params))
            rows = cur.fetchall()
        return [Payment.from_record(r[0]) for r in rows]

    def update_payment(self, payment_id, changes, expected_status=None):
        with self._cursor() as cur:
            current = self._fetch_body(cur, "ch_payments", "Payment",
                                       payment_id, expected_status)
            updated = Payment.from_record({**current, **encode_changes(changes)})
            cur.execute(
                "UPDATE ch_payments SET status = %s, body = %s "
                "WHERE id = %s AND status = %s",
                (
                    updated.status.value,
                    Json(updated.to_record()),
                    payment_id,
                    current["status"],
                ),
            )
            if cur.rowcount != 1:
                raise ConcurrentModification(f"Payment {payment_id} changed during update.")
        return updated

    def delete_payments(self, transaction_id: str) -> int:
        with self._cursor() as cur:
            cur.execute("DELETE FROM ch_payments WHERE transaction_id = %s",
                        (transaction_id,))
            return cur.rowcount

    def group_payments_by_status(self) -> dict[str, int]:
        with self._cursor() as cur:
            cur.execute("SELECT status, COUNT(*) FROM ch_payments GROUP BY status")
            return {status: count for status, count in cur.fetchall()}

    # -- audit entries -------------------------------------------------------

    def lock_ledger(self) -> None:
        with self._cursor() as cur:
            cur.execute("SELECT pg_advisory_xact_lock(%s)", (LEDGER_LOCK_KEY,))

    def append_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._cursor() as cur:
            cur.execute(
                "INSERT INTO ch_audit_entries "
                "(id, sequence, timestamp, transaction_id, event_type, "
                "actor_user_id, security_level, body) "
                "VALUES (%s, %s, %s, %s, %s, %s, %s, %s)",
                (
                    entry.id,
                    entry.sequence,
                    entry.timestamp,
                    entry.transaction_id,
                    entry.event_type.value,
                    entry.actor_user_id,
                    entry.security_level.value,
                    Json(entry.to_record()),
                ),
            )
        return entry

    def find_entry_record(self, entry_id: str) -> Optional[dict[str, Any]]:
        with self._cursor() as cur:
            cur.execute("SELECT body FROM ch_audit_entries WHERE id = %s", (entry_id,))
            row = cur.fetchone()
        return row[0] if row else None

    def last_link(self) -> Optional[tuple[int, str]]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT sequence, body->>'integrity_digest' FROM ch_audit_entries "
                "ORDER BY sequence DESC LIMIT 1"
            )
            row = cur.fetchone()
        return (row[0], row[1]) if row else None

    def iter_entry_records(self, start=None, end=None, transaction_id=None,
                           event_type=None, actor_user_id=None, compliance_flag=None,
                           security_level=None) -> Iterator[dict[str, Any]]:
        clauses, params = [], []
        if start is not None:
            clauses.append("timestamp >= %s")
            params.append(start)
        if end is not None:
            clauses.append("timestamp <= %s")
            params.append(end)
        if transaction_id is not None:
            clauses.append("transaction_id = %s")
            params.append(transaction_id)
        if event_type is not None:
            clauses.append("event_type = %s")
            params.append(enum_value(event_type))
        if actor_user_id is not None:
            clauses.append("actor_user_id = %s")
            params.append(actor_user_id)
        if compliance_flag is not None:
            clauses.append("body->'compliance_flags' @> %s::jsonb")
            params.append(json.dumps([compliance_flag]))
        if security_level is not None:
            clauses.append("security_level = %s")
            params.append(enum_value(security_level))

        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        with self._cursor() as cur:
            cur.execute(
                f"SELECT body FROM ch_audit_entries {where}ORDER BY timestamp, sequence",
                tuple(params),
            )
            rows = cur.fetchall()
        for row in rows:
            yield row[0]

    def iter_chain_records(self) -> Iterator[dict[str, Any]]:
        with self._cursor() as cur:
            cur.execute("SELECT body FROM ch_audit_entries ORDER BY sequence")
            rows = cur.fetchall()
        for row in rows:
            yield row[0]

    def count_entries(self) -> int:
        with self._cursor() as cur:
            cur.execute("SELECT COUNT(*) FROM ch_audit_entries")
            return cur.fetchone()[0]
