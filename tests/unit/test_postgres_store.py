"""
SQL shape and error mapping of the Postgres store, checked against a fake
psycopg connection so no database is needed.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal

import pytest
from psycopg import errors

from credit_ledger.domain.models import NewTransaction, OwnerRef, TransactionKind
from credit_ledger.exceptions import StoreError, TransactionConflictError
from credit_ledger.store.abstract import ANY_CREDIT_TYPE
from credit_ledger.store.postgres import (
    PostgresLedgerBackend,
    PostgresLedgerStore,
    translate_error,
)

OWNER = OwnerRef.of("user", 5)
CREATED = datetime(2024, 1, 1, tzinfo=timezone.utc)


class FakeCursor:
    def __init__(self, conn: "FakeConnection") -> None:
        self._conn = conn

    def __enter__(self) -> "FakeCursor":
        return self

    def __exit__(self, *exc) -> None:
        return None

    def execute(self, query, params=None) -> None:
        self._conn.executed.append((query, params))
        if self._conn.fail_with is not None:
            raise self._conn.fail_with

    def fetchone(self):
        return self._conn.rows.pop(0) if self._conn.rows else None

    def fetchall(self):
        rows, self._conn.rows = self._conn.rows, []
        return rows


class FakeConnection:
    def __init__(self, rows=None, fail_with=None) -> None:
        self.rows = list(rows or [])
        self.fail_with = fail_with
        self.executed: list = []
        self.row_factories: list = []

    def cursor(self, row_factory=None) -> FakeCursor:
        self.row_factories.append(row_factory)
        return FakeCursor(self)

    @contextmanager
    def transaction(self):
        yield


class FakePool:
    def __init__(self, conn: FakeConnection) -> None:
        self.conn = conn

    @contextmanager
    def connection(self):
        yield self.conn


def _sql(query) -> str:
    return query if isinstance(query, str) else repr(query)


def _row(**overrides):
    row = {
        "id": 1,
        "owner_kind": "user",
        "owner_id": "5",
        "amount": Decimal("10"),
        "kind": "credit",
        "credit_type": None,
        "description": None,
        "metadata": {},
        "running_balance": Decimal("10"),
        "created_at": CREATED,
    }
    row.update(overrides)
    return row


class TestLatestBalance:
    def test_plain_read_takes_no_locks(self):
        conn = FakeConnection(rows=[(Decimal("7.5"),)])

        balance = PostgresLedgerStore(conn).latest_balance(OWNER)

        assert balance == Decimal("7.5")
        ((query, params),) = conn.executed
        assert "FOR UPDATE" not in _sql(query)
        assert "ORDER BY id DESC LIMIT 1" in _sql(query)
        assert params == ["user", "5"]

    def test_for_update_takes_advisory_then_row_lock(self):
        conn = FakeConnection(rows=[None])

        balance = PostgresLedgerStore(conn).latest_balance(OWNER, for_update=True)

        assert balance == Decimal("0")
        (advisory, advisory_params), (select, _params) = conn.executed
        assert "pg_advisory_xact_lock" in advisory
        assert advisory_params == ("user", "5")
        assert "FOR UPDATE" in _sql(select)

    def test_until_bounds_created_at(self):
        conn = FakeConnection(rows=[(Decimal("3"),)])

        PostgresLedgerStore(conn).latest_balance(OWNER, until=CREATED)

        ((query, params),) = conn.executed
        assert "created_at <= %s" in _sql(query)
        assert params == ["user", "5", CREATED]


class TestQuery:
    def test_orders_by_created_at_then_id_in_one_direction(self):
        conn = FakeConnection(rows=[_row(id=2), _row(id=1)])

        records = PostgresLedgerStore(conn).query(OWNER, order="desc", limit=2)

        assert [r.id for r in records] == [2, 1]
        ((query, params),) = conn.executed
        text = _sql(query)
        assert "ORDER BY created_at " in text
        assert text.count("SQL('DESC')") == 2
        assert params == ["user", "5", 2]

    def test_asc_direction(self):
        conn = FakeConnection()

        PostgresLedgerStore(conn).query(OWNER, order="asc")

        ((query, _params),) = conn.executed
        assert _sql(query).count("SQL('ASC')") == 2

    def test_none_credit_type_selects_untyped_rows(self):
        conn = FakeConnection()

        PostgresLedgerStore(conn).query(OWNER, credit_type=None)

        ((query, params),) = conn.executed
        assert "credit_type IS NULL" in _sql(query)
        assert params == ["user", "5", 10]

    def test_named_credit_type_is_a_parameter(self):
        conn = FakeConnection()

        PostgresLedgerStore(conn).query(OWNER, credit_type="paid", kind=TransactionKind.DEBIT)

        ((query, params),) = conn.executed
        assert "credit_type = %s" in _sql(query)
        assert "kind = %s" in _sql(query)
        assert params == ["user", "5", "paid", "debit", 10]

    def test_any_credit_type_adds_no_filter(self):
        conn = FakeConnection()

        PostgresLedgerStore(conn).query(OWNER, credit_type=ANY_CREDIT_TYPE)

        ((query, _params),) = conn.executed
        assert "credit_type" not in _sql(query).split("WHERE", 1)[-1].split("ORDER BY")[0]

    def test_rejects_unknown_order(self):
        with pytest.raises(ValueError):
            PostgresLedgerStore(FakeConnection()).query(OWNER, order="sideways")


class TestAppendAndSums:
    def test_append_returns_stored_row(self):
        conn = FakeConnection(rows=[_row(id=9, metadata={"a": 1}, credit_type="paid")])
        entry = NewTransaction(
            owner_kind="user",
            owner_id="5",
            amount=Decimal("10"),
            kind=TransactionKind.CREDIT,
            credit_type="paid",
            metadata={"a": 1},
            running_balance=Decimal("10"),
        )

        record = PostgresLedgerStore(conn).append(entry)

        assert record.id == 9
        assert record.metadata == {"a": 1}
        ((query, params),) = conn.executed
        assert "RETURNING" in _sql(query)
        assert params[3] == "credit"
        assert params[6].obj == {"a": 1}

    def test_sum_amounts_filters_kind(self):
        conn = FakeConnection(rows=[(Decimal("42"),)])

        total = PostgresLedgerStore(conn).sum_amounts(OWNER, TransactionKind.CREDIT, credit_type=None)

        assert total == Decimal("42")
        ((query, params),) = conn.executed
        assert "COALESCE(SUM(amount), 0)" in _sql(query)
        assert params == ["user", "5", "credit"]


class TestErrors:
    @pytest.mark.parametrize(
        "exc", [errors.DeadlockDetected("x"), errors.SerializationFailure("x"), errors.LockNotAvailable("x")]
    )
    def test_transient_errors_become_conflicts(self, exc):
        assert isinstance(translate_error(exc), TransactionConflictError)

    def test_other_errors_become_store_errors(self):
        assert isinstance(translate_error(errors.UniqueViolation("x")), StoreError)

    def test_session_scopes_timeouts_and_translates(self, test_settings):
        conn = FakeConnection()
        backend = PostgresLedgerBackend(pool=FakePool(conn), settings=test_settings)

        with backend.session() as store:
            assert isinstance(store, PostgresLedgerStore)

        statements = [query for query, _params in conn.executed]
        assert any("statement_timeout" in q for q in statements)
        assert any("lock_timeout" in q for q in statements)

        conn.executed.clear()
        conn.fail_with = errors.DeadlockDetected("deadlock detected")
        with pytest.raises(TransactionConflictError) as excinfo:
            with backend.session():
                pass
        assert isinstance(excinfo.value.__cause__, errors.DeadlockDetected)
