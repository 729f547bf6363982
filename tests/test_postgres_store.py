"""
PostgresStore tests against a mocked psycopg2 connection.

These check the SQL contract (conditional updates, advisory lock, error
translation) without a running database.
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

import psycopg2
import psycopg2.errors
import pytest

from clearinghouse.errors import ConcurrentModification, NotFound, PersistenceFailure
from clearinghouse.models import (
    AuditEventType,
    AuditLogEntry,
    Payment,
    PaymentStatus,
    Transaction,
    TransactionStatus,
)
from clearinghouse.postgres import LEDGER_LOCK_KEY, PostgresStore

from conftest import CONSUMER, INITIATOR, PROVIDER, RESOURCE


@pytest.fixture
def conn():
    connection = MagicMock()
    connection.cursor.return_value = MagicMock()
    return connection


@pytest.fixture
def cursor(conn):
    return conn.cursor.return_value


@pytest.fixture
def pg(conn):
    with patch("clearinghouse.postgres.psycopg2.connect", return_value=conn) as connect:
        store = PostgresStore({"dbname": "test"})
        store.connect_mock = connect
        yield store


def _transaction_record(**overrides):
    record = Transaction(INITIATOR, PROVIDER, CONSUMER, RESOURCE).to_record()
    record.update(overrides)
    return record


def test_find_transaction(pg, cursor, conn):
    record = _transaction_record()
    cursor.fetchone.return_value = (record,)

    found = pg.find_transaction(record["id"])

    assert found.id == record["id"]
    assert found.status == TransactionStatus.INITIATED
    cursor.execute.assert_called_once_with(
        "SELECT body FROM ch_transactions WHERE id = %s", (record["id"],)
    )
    conn.commit.assert_called_once()
    conn.close.assert_called_once()


def test_find_missing_transaction(pg, cursor):
    cursor.fetchone.return_value = None
    assert pg.find_transaction("missing") is None


def test_update_expected_status_mismatch(pg, cursor, conn):
    cursor.fetchone.return_value = (_transaction_record(status="APPROVED"),)

    with pytest.raises(ConcurrentModification):
        pg.update_transaction("tx-1", {"status": TransactionStatus.CANCELLED},
                              expected_status=TransactionStatus.PENDING_APPROVAL)

    # only the locking SELECT ran
    assert cursor.execute.call_count == 1
    assert "FOR UPDATE" in cursor.execute.call_args[0][0]
    conn.commit.assert_not_called()


def test_update_unknown_row(pg, cursor):
    cursor.fetchone.return_value = None
    with pytest.raises(NotFound):
        pg.update_transaction("missing", {"priority": "HIGH"})


def test_update_is_conditional_on_status_and_version(pg, cursor, conn):
    record = _transaction_record()
    cursor.fetchone.return_value = (record,)
    cursor.rowcount = 1

    updated = pg.update_transaction(record["id"], {"status": TransactionStatus.PENDING_APPROVAL},
                                    expected_status=TransactionStatus.INITIATED)

    assert updated.status == TransactionStatus.PENDING_APPROVAL
    assert updated.version == 2
    sql, params = cursor.execute.call_args_list[1][0]
    assert sql.startswith("UPDATE ch_transactions")
    assert "WHERE id = %s AND status = %s AND version = %s" in sql
    assert params[0] == "PENDING_APPROVAL"
    assert params[-3:] == (record["id"], "INITIATED", 1)
    conn.commit.assert_called_once()


def test_update_losing_race_on_write(pg, cursor, conn):
    cursor.fetchone.return_value = (_transaction_record(),)
    cursor.rowcount = 0

    with pytest.raises(ConcurrentModification):
        pg.update_transaction("tx-1", {"priority": "HIGH"})
    conn.commit.assert_not_called()


def test_unique_violation_becomes_concurrent_modification(pg, cursor, conn):
    cursor.execute.side_effect = psycopg2.errors.UniqueViolation("duplicate key")
    entry = AuditLogEntry(
        event_type=AuditEventType.TRANSACTION_CREATED,
        event_description="created",
        sequence=1,
        timestamp=datetime(2026, 3, 2, tzinfo=timezone.utc),
    )

    with pytest.raises(ConcurrentModification):
        pg.append_entry(entry)
    conn.rollback.assert_called_once()
    conn.close.assert_called_once()


def test_database_error_becomes_persistence_failure(pg, cursor, conn, caplog):
    cursor.execute.side_effect = psycopg2.OperationalError("server closed the connection")

    with pytest.raises(PersistenceFailure) as exc:
        pg.count_entries()

    assert isinstance(exc.value.cause, psycopg2.OperationalError)
    conn.rollback.assert_called_once()
    assert "Database operation failed" in caplog.text


def test_connect_failure_in_unit_of_work(pg):
    pg.connect_mock.side_effect = psycopg2.OperationalError("could not connect")
    with pytest.raises(PersistenceFailure):
        with pg.atomic():
            pass


def test_atomic_shares_one_connection(pg, cursor, conn):
    cursor.fetchone.return_value = (0,)

    with pg.atomic():
        pg.lock_ledger()
        pg.count_entries()
        pg.count_transactions()

    assert pg.connect_mock.call_count == 1
    conn.commit.assert_called_once()
    conn.close.assert_called_once()
    cursor.execute.assert_any_call("SELECT pg_advisory_xact_lock(%s)", (LEDGER_LOCK_KEY,))


def test_atomic_rolls_back_on_error(pg, conn):
    with pytest.raises(RuntimeError):
        with pg.atomic():
            pg.lock_ledger()
            raise RuntimeError("boom")

    conn.rollback.assert_called_once()
    conn.commit.assert_not_called()
    conn.close.assert_called_once()


def test_nested_atomic_joins_outer_unit(pg, conn):
    with pg.atomic():
        with pg.atomic():
            pg.lock_ledger()

    assert pg.connect_mock.call_count == 1
    conn.commit.assert_called_once()


def test_iter_entries_builds_filters(pg, cursor):
    cursor.fetchall.return_value = []

    assert list(pg.iter_entries(transaction_id="tx-1", compliance_flag="ISO_27001")) == []

    sql, params = cursor.execute.call_args[0]
    assert ("WHERE transaction_id = %s AND body->'compliance_flags' @> %s::jsonb "
            "ORDER BY timestamp, sequence") in sql
    assert params == ("tx-1", '["ISO_27001"]')


def test_iter_entries_without_filters(pg, cursor):
    cursor.fetchall.return_value = []
    list(pg.iter_entries())
    sql, params = cursor.execute.call_args[0]
    assert "WHERE" not in sql
    assert params == ()


def test_lock_transaction_holds_row_lock_in_unit(pg, cursor, conn):
    with pg.atomic():
        pg.lock_transaction("tx-1")
        pg.count_transactions()

    cursor.execute.assert_any_call(
        "SELECT id FROM ch_transactions WHERE id = %s FOR UPDATE", ("tx-1",)
    )
    first_sql = cursor.execute.call_args_list[0][0][0]
    assert first_sql.endswith("FOR UPDATE")
    conn.commit.assert_called_once()


def test_update_keeps_supplied_updated_at(pg, cursor):
    record = _transaction_record()
    cursor.fetchone.return_value = (record,)
    cursor.rowcount = 1
    stamped = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)

    updated = pg.update_transaction(record["id"], {"priority": "HIGH", "updated_at": stamped})

    assert updated.updated_at == stamped
    body = cursor.execute.call_args_list[1][0][1][3].adapted
    assert body["updated_at"] == stamped.isoformat()


def test_last_link_reads_indexed_sequence(pg, cursor):
    cursor.fetchone.return_value = (7, "ab" * 32)

    assert pg.last_link() == (7, "ab" * 32)
    sql = cursor.execute.call_args[0][0]
    assert "SELECT sequence, body->>'integrity_digest'" in sql
    assert "ORDER BY sequence DESC LIMIT 1" in sql


def test_last_link_on_empty_ledger(pg, cursor):
    cursor.fetchone.return_value = None
    assert pg.last_link() is None


def test_chain_records_are_returned_undecoded(pg, cursor):
    damaged = {"id": "e-1", "sequence": 1, "event_type": "NOT_AN_EVENT",
               "timestamp": "not a timestamp"}
    cursor.fetchall.return_value = [(damaged,)]

    assert list(pg.iter_chain_records()) == [damaged]
    assert cursor.execute.call_args[0][0] == (
        "SELECT body FROM ch_audit_entries ORDER BY sequence"
    )


def test_find_entry_record(pg, cursor):
    cursor.fetchone.return_value = ({"id": "e-1", "security_level": "???"},)
    assert pg.find_entry_record("e-1") == {"id": "e-1", "security_level": "???"}


def test_update_payment_is_conditional_on_status(pg, cursor, conn):
    payment = Payment("tx-1", "FULL_PAYMENT", "BANK_TRANSFER", 1000.0, "IDR")
    cursor.fetchone.return_value = (payment.to_record(),)
    cursor.rowcount = 1

    updated = pg.update_payment(payment.id, {"status": PaymentStatus.PROCESSING},
                                expected_status=PaymentStatus.PENDING)

    assert updated.status == PaymentStatus.PROCESSING
    assert "FROM ch_payments WHERE id = %s FOR UPDATE" in cursor.execute.call_args_list[0][0][0]
    sql, params = cursor.execute.call_args_list[1][0]
    assert "WHERE id = %s AND status = %s" in sql
    assert params[0] == "PROCESSING"
    assert params[-2:] == (payment.id, "PENDING")
    conn.commit.assert_called_once()


def test_list_payments_filters(pg, cursor):
    cursor.fetchall.return_value = []

    assert pg.list_payments("tx-1", status=PaymentStatus.COMPLETED) == []

    sql, params = cursor.execute.call_args[0]
    assert "WHERE transaction_id = %s AND status = %s ORDER BY seq" in sql
    assert params == ("tx-1", "COMPLETED")
