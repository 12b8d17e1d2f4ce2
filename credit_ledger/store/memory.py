"""
In-process ledger backend.

Keeps the same transactional contract as the Postgres backend so the engine
can be exercised, and embedded, without a database:

- each session buffers its appends and publishes them only on commit;
- `for_update` reads and appends take a per-owner exclusive lock held until
  the session ends, acquired with a timeout that surfaces as
  TransactionConflictError (the analogue of Postgres' lock_timeout);
- ids come from one process-wide counter, and created_at never runs
  backwards, so (created_at, id) order always agrees with id order.
"""

from __future__ import annotations

import copy
import itertools
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, DefaultDict, Dict, Iterator, List, Optional

from credit_ledger.domain.models import CreditTransaction, NewTransaction, OwnerRef, TransactionKind
from credit_ledger.exceptions import TransactionConflictError
from credit_ledger.store.abstract import (
    ANY_CREDIT_TYPE,
    AbstractLedgerStore,
    CreditTypeFilter,
    check_order,
)
from credit_ledger.utils.logging import get_logger

log = get_logger(__name__)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryLedgerBackend:
    """
    Thread-safe, transactional in-memory backend.

    Parameters
    ----------
    lock_timeout : float
        Seconds to wait for an owner lock before raising TransactionConflictError.
    clock : callable, optional
        Source of created_at timestamps (tz-aware). Defaults to UTC now.
    """

    def __init__(self, lock_timeout: float = 5.0, clock: Optional[Clock] = None) -> None:
        self.lock_timeout = lock_timeout
        self._clock = clock or _utcnow
        self._state_lock = threading.Lock()
        self._records: DefaultDict[OwnerRef, List[CreditTransaction]] = defaultdict(list)
        self._owner_locks: Dict[OwnerRef, threading.Lock] = {}
        self._ids = itertools.count(1)
        self._last_created_at: Optional[datetime] = None

    @contextmanager
    def session(self) -> Iterator["InMemoryLedgerStore"]:
        store = InMemoryLedgerStore(self)
        try:
            yield store
        except BaseException:
            store.rollback()
            raise
        else:
            store.commit()
        finally:
            store.release_locks()

    def owner_lock(self, owner: OwnerRef) -> threading.Lock:
        with self._state_lock:
            lock = self._owner_locks.get(owner)
            if lock is None:
                lock = self._owner_locks[owner] = threading.Lock()
            return lock

    def committed(self, owner: OwnerRef) -> List[CreditTransaction]:
        with self._state_lock:
            return list(self._records.get(owner, ()))

    def stamp(self) -> tuple[int, datetime]:
        """Allocate the next id and a created_at that never precedes earlier ones."""
        with self._state_lock:
            now = self._clock()
            if self._last_created_at is not None and now < self._last_created_at:
                now = self._last_created_at
            self._last_created_at = now
            return next(self._ids), now

    def publish(self, records: List[CreditTransaction]) -> None:
        with self._state_lock:
            for record in records:
                self._records[record.owner].append(record)

    def count(self, owner: Optional[OwnerRef] = None) -> int:
        with self._state_lock:
            if owner is not None:
                return len(self._records.get(owner, ()))
            return sum(len(records) for records in self._records.values())


class InMemoryLedgerStore(AbstractLedgerStore):
    """Store view bound to one in-memory session."""

    def __init__(self, backend: InMemoryLedgerBackend) -> None:
        self._backend = backend
        self._pending: List[CreditTransaction] = []
        self._held: Dict[OwnerRef, threading.Lock] = {}

    # -- session lifecycle -------------------------------------------------

    def commit(self) -> None:
        pending, self._pending = self._pending, []
        self._backend.publish(pending)

    def rollback(self) -> None:
        if self._pending:
            log.debug("Discarding uncommitted records", extra={"records": len(self._pending)})
        self._pending = []

    def release_locks(self) -> None:
        held, self._held = self._held, {}
        for lock in held.values():
            lock.release()

    def _lock(self, owner: OwnerRef) -> None:
        if owner in self._held:
            return
        lock = self._backend.owner_lock(owner)
        if not lock.acquire(timeout=self._backend.lock_timeout):
            raise TransactionConflictError(f"Timed out waiting for lock on {owner}")
        self._held[owner] = lock

    def _visible(self, owner: OwnerRef) -> List[CreditTransaction]:
        own = [record for record in self._pending if record.owner == owner]
        return self._backend.committed(owner) + own

    # -- LedgerStore -------------------------------------------------------

    def latest_balance(
        self, owner: OwnerRef, for_update: bool = False, until: Optional[datetime] = None
    ) -> Decimal:
        if for_update:
            self._lock(owner)
        records = self._visible(owner)
        if until is not None:
            records = [record for record in records if record.created_at <= until]
        if not records:
            return Decimal("0")
        return max(records, key=lambda record: record.id).running_balance

    def append(self, entry: NewTransaction) -> CreditTransaction:
        self._lock(entry.owner)
        record_id, created_at = self._backend.stamp()
        payload = entry.model_dump()
        payload["metadata"] = copy.deepcopy(entry.metadata)
        record = CreditTransaction(id=record_id, created_at=created_at, **payload)
        self._pending.append(record)
        return record

    def query(
        self,
        owner: OwnerRef,
        credit_type: CreditTypeFilter = ANY_CREDIT_TYPE,
        kind: Optional[TransactionKind] = None,
        order: str = "desc",
        limit: int = 10,
    ) -> List[CreditTransaction]:
        check_order(order)
        if limit < 1:
            raise ValueError(f"limit must be positive, got {limit}")
        matches = [
            record
            for record in self._visible(owner)
            if _matches(record, credit_type=credit_type, kind=kind)
        ]
        matches.sort(key=lambda record: (record.created_at, record.id), reverse=order == "desc")
        return [record.model_copy(deep=True) for record in matches[:limit]]

    def sum_amounts(
        self,
        owner: OwnerRef,
        kind: TransactionKind,
        credit_type: CreditTypeFilter = ANY_CREDIT_TYPE,
        until: Optional[datetime] = None,
    ) -> Decimal:
        return sum(
            (
                record.amount
                for record in self._visible(owner)
                if _matches(record, credit_type=credit_type, kind=kind, until=until)
            ),
            Decimal("0"),
        )


def _matches(
    record: CreditTransaction,
    credit_type: CreditTypeFilter,
    kind: Optional[TransactionKind],
    until: Optional[datetime] = None,
) -> bool:
    if credit_type is not ANY_CREDIT_TYPE and record.credit_type != credit_type:
        return False
    if kind is not None and record.kind != kind:
        return False
    if until is not None and record.created_at > until:
        return False
    return True


__all__ = ["InMemoryLedgerBackend", "InMemoryLedgerStore"]
