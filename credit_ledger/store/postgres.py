"""
PostgreSQL ledger backend built on psycopg 3 and psycopg_pool.

Each session borrows a pooled connection, opens a transaction, scopes the
statement/lock timeouts to it, and yields a PostgresLedgerStore bound to that
connection. Owner locks are a transaction-level advisory lock on the owner
(which also covers owners with no rows yet) plus `FOR UPDATE` on the owner's
newest row.
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Iterator, List, Optional, Tuple

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from credit_ledger.config import Settings, get_settings
from credit_ledger.domain.models import CreditTransaction, NewTransaction, OwnerRef, TransactionKind
from credit_ledger.exceptions import LedgerError, StoreError, TransactionConflictError
from credit_ledger.infrastructure.db_factory import (
    apply_lock_timeout,
    apply_statement_timeout,
    get_sync_pool,
)
from credit_ledger.infrastructure.schema import TABLE_NAME
from credit_ledger.store.abstract import (
    ANY_CREDIT_TYPE,
    AbstractLedgerStore,
    CreditTypeFilter,
    check_order,
)
from credit_ledger.utils.logging import get_logger

log = get_logger(__name__)

_TABLE = sql.Identifier(TABLE_NAME)
_COLUMNS = sql.SQL(
    "id, owner_kind, owner_id, amount, kind, credit_type, description, "
    "metadata, running_balance, created_at"
)
_ADVISORY_LOCK = "SELECT pg_advisory_xact_lock(hashtext(%s), hashtext(%s))"

TRANSIENT_ERRORS: Tuple[type, ...] = (
    errors.DeadlockDetected,
    errors.SerializationFailure,
    errors.LockNotAvailable,
)


def translate_error(exc: psycopg.Error) -> LedgerError:
    """Map a driver error onto the ledger's transient/terminal error kinds."""
    if isinstance(exc, TRANSIENT_ERRORS):
        return TransactionConflictError(str(exc))
    return StoreError(str(exc))


def _where(
    owner: OwnerRef,
    credit_type: CreditTypeFilter = ANY_CREDIT_TYPE,
    kind: Optional[TransactionKind] = None,
    until: Optional[datetime] = None,
) -> Tuple[sql.Composable, List[Any]]:
    """Build the WHERE clause and its parameters for an owner-scoped query."""
    conditions: List[sql.Composable] = [sql.SQL("owner_kind = %s"), sql.SQL("owner_id = %s")]
    params: List[Any] = [owner.kind, owner.id]
    if credit_type is None:
        conditions.append(sql.SQL("credit_type IS NULL"))
    elif credit_type is not ANY_CREDIT_TYPE:
        conditions.append(sql.SQL("credit_type = %s"))
        params.append(credit_type)
    if kind is not None:
        conditions.append(sql.SQL("kind = %s"))
        params.append(kind.value)
    if until is not None:
        conditions.append(sql.SQL("created_at <= %s"))
        params.append(until)
    return sql.SQL(" AND ").join(conditions), params


class PostgresLedgerStore(AbstractLedgerStore):
    """LedgerStore bound to one open psycopg transaction."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def latest_balance(
        self, owner: OwnerRef, for_update: bool = False, until: Optional[datetime] = None
    ) -> Decimal:
        where, params = _where(owner, until=until)
        query = sql.SQL(
            "SELECT running_balance FROM {table} WHERE {where} ORDER BY id DESC LIMIT 1{lock}"
        ).format(
            table=_TABLE,
            where=where,
            lock=sql.SQL(" FOR UPDATE") if for_update else sql.SQL(""),
        )
        with self._conn.cursor() as cur:
            if for_update:
                cur.execute(_ADVISORY_LOCK, (owner.kind, owner.id))
            cur.execute(query, params)
            row = cur.fetchone()
        return Decimal(row[0]) if row is not None else Decimal("0")

    def append(self, entry: NewTransaction) -> CreditTransaction:
        query = sql.SQL(
            "INSERT INTO {table} "
            "(owner_kind, owner_id, amount, kind, credit_type, description, metadata, running_balance) "
            "VALUES (%s, %s, %s, %s, %s, %s, %s, %s) "
            "RETURNING {columns}"
        ).format(table=_TABLE, columns=_COLUMNS)
        params = (
            entry.owner_kind,
            entry.owner_id,
            entry.amount,
            entry.kind.value,
            entry.credit_type,
            entry.description,
            Jsonb(entry.metadata),
            entry.running_balance,
        )
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, params)
            row = cur.fetchone()
        if row is None:  # pragma: no cover - INSERT ... RETURNING always yields a row
            raise StoreError("INSERT returned no row")
        return CreditTransaction.model_validate(row)

    def query(
        self,
        owner: OwnerRef,
        credit_type: CreditTypeFilter = ANY_CREDIT_TYPE,
        kind: Optional[TransactionKind] = None,
        order: str = "desc",
        limit: int = 10,
    ) -> List[CreditTransaction]:
        direction = sql.SQL(check_order(order).upper())
        if limit < 1:
            raise ValueError(f"limit must be positive, got {limit}")
        where, params = _where(owner, credit_type=credit_type, kind=kind)
        query = sql.SQL(
            "SELECT {columns} FROM {table} WHERE {where} "
            "ORDER BY created_at {direction}, id {direction} LIMIT %s"
        ).format(columns=_COLUMNS, table=_TABLE, where=where, direction=direction)
        with self._conn.cursor(row_factory=dict_row) as cur:
            cur.execute(query, [*params, limit])
            rows = cur.fetchall()
        return [CreditTransaction.model_validate(row) for row in rows]

    def sum_amounts(
        self,
        owner: OwnerRef,
        kind: TransactionKind,
        credit_type: CreditTypeFilter = ANY_CREDIT_TYPE,
        until: Optional[datetime] = None,
    ) -> Decimal:
        where, params = _where(owner, credit_type=credit_type, kind=kind, until=until)
        query = sql.SQL("SELECT COALESCE(SUM(amount), 0) FROM {table} WHERE {where}").format(
            table=_TABLE, where=where
        )
        with self._conn.cursor() as cur:
            cur.execute(query, params)
            row = cur.fetchone()
        return Decimal(row[0]) if row is not None else Decimal("0")


class PostgresLedgerBackend:
    """
    Session factory over a psycopg ConnectionPool.

    Parameters
    ----------
    pool : ConnectionPool, optional
        Pool to borrow connections from. Defaults to the shared PoolManager pool.
    dsn_override : str, optional
        Build a private pool for this DSN instead (useful for tests).
    settings : Settings, optional
        Source of statement/lock timeouts; defaults to get_settings().
    """

    def __init__(
        self,
        pool: Optional[ConnectionPool] = None,
        dsn_override: Optional[str] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings
        self._dsn_override = dsn_override
        self._pool: Optional[ConnectionPool] = pool
        self._owns_pool = False

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    def pool(self) -> ConnectionPool:
        if self._pool is not None:
            return self._pool
        if self._dsn_override:
            self._pool = ConnectionPool(
                conninfo=self._dsn_override,
                min_size=self.settings.db_pool_min_size,
                max_size=self.settings.db_pool_max_size,
                open=True,
            )
            self._owns_pool = True
        else:
            self._pool = get_sync_pool()
        return self._pool

    @contextmanager
    def session(self) -> Iterator[PostgresLedgerStore]:
        settings = self.settings
        try:
            with self.pool().connection() as conn:
                with conn.transaction():
                    with conn.cursor() as cur:
                        apply_statement_timeout(cur, settings.db_statement_timeout_ms)
                        apply_lock_timeout(cur, settings.db_lock_timeout_ms)
                    yield PostgresLedgerStore(conn)
        except psycopg.Error as exc:
            translated = translate_error(exc)
            log.debug(
                "Ledger session failed",
                extra={"error": type(exc).__name__, "sqlstate": exc.sqlstate},
            )
            raise translated from exc

    def close(self) -> None:
        """Close the pool if this backend created it."""
        if self._owns_pool and self._pool is not None:
            self._pool.close()
            self._pool = None
            self._owns_pool = False


__all__ = [
    "PostgresLedgerBackend",
    "PostgresLedgerStore",
    "TRANSIENT_ERRORS",
    "translate_error",
]
