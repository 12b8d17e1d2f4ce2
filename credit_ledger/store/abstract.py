"""
Abstract store interfaces for the credit ledger.

A LedgerBackend hands out sessions; each session is one transactional scope
and exposes the LedgerStore operations bound to it. Concrete backends
(Postgres, in-memory) implement both protocols so the engine never depends on
a particular driver.
"""

from __future__ import annotations

import abc
import enum
from contextlib import AbstractContextManager
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Protocol, Union, runtime_checkable

from credit_ledger.domain.models import CreditTransaction, NewTransaction, OwnerRef, TransactionKind


class _AnyCreditType(enum.Enum):
    ANY = "any"

    def __repr__(self) -> str:
        return "ANY_CREDIT_TYPE"


ANY_CREDIT_TYPE = _AnyCreditType.ANY
"""Credit-type filter meaning "do not filter"; distinct from None (the untyped bucket)."""

CreditTypeFilter = Union[str, None, _AnyCreditType]

SORT_ORDERS = ("asc", "desc")


@runtime_checkable
class LedgerStore(Protocol):
    """
    Operations available inside one transactional scope.

    Every method runs within the session that produced the store; writes become
    visible to other sessions only once that session commits.
    """

    def latest_balance(
        self,
        owner: OwnerRef,
        for_update: bool = False,
        until: Optional[datetime] = None,
    ) -> Decimal:
        """
        Return the running balance of the owner's newest record (by id), or 0.

        Parameters
        ----------
        owner : OwnerRef
            Whose tail to read.
        for_update : bool
            Take the owner's exclusive lock and hold it until the session ends.
        until : datetime, optional
            Only consider records with created_at <= until.
        """
        ...

    def append(self, entry: NewTransaction) -> CreditTransaction:
        """Insert a record and return it with id and created_at assigned."""
        ...

    def query(
        self,
        owner: OwnerRef,
        credit_type: CreditTypeFilter = ANY_CREDIT_TYPE,
        kind: Optional[TransactionKind] = None,
        order: str = "desc",
        limit: int = 10,
    ) -> List[CreditTransaction]:
        """Return records ordered by (created_at, id) jointly in `order`."""
        ...

    def sum_amounts(
        self,
        owner: OwnerRef,
        kind: TransactionKind,
        credit_type: CreditTypeFilter = ANY_CREDIT_TYPE,
        until: Optional[datetime] = None,
    ) -> Decimal:
        """Sum `amount` over matching records; 0 when nothing matches."""
        ...


@runtime_checkable
class LedgerBackend(Protocol):
    """
    Factory of transactional sessions.

    `session()` commits when the block exits cleanly and rolls back when it
    raises. Driver errors leave the block as TransactionConflictError
    (transient) or StoreError (anything else).
    """

    def session(self) -> AbstractContextManager[LedgerStore]:
        ...


class AbstractLedgerStore(abc.ABC):
    """
    Optional ABC helper for class-based store implementations.
    """

    @abc.abstractmethod
    def latest_balance(
        self, owner: OwnerRef, for_update: bool = False, until: Optional[datetime] = None
    ) -> Decimal:  # pragma: no cover - interface only
        raise NotImplementedError

    @abc.abstractmethod
    def append(self, entry: NewTransaction) -> CreditTransaction:  # pragma: no cover
        raise NotImplementedError

    @abc.abstractmethod
    def query(
        self,
        owner: OwnerRef,
        credit_type: CreditTypeFilter = ANY_CREDIT_TYPE,
        kind: Optional[TransactionKind] = None,
        order: str = "desc",
        limit: int = 10,
    ) -> List[CreditTransaction]:  # pragma: no cover
        raise NotImplementedError

    @abc.abstractmethod
    def sum_amounts(
        self,
        owner: OwnerRef,
        kind: TransactionKind,
        credit_type: CreditTypeFilter = ANY_CREDIT_TYPE,
        until: Optional[datetime] = None,
    ) -> Decimal:  # pragma: no cover
        raise NotImplementedError


def check_order(order: str) -> str:
    """Validate a store-level sort direction."""
    if order not in SORT_ORDERS:
        raise ValueError(f"order must be one of {SORT_ORDERS}, got {order!r}")
    return order


__all__ = [
    "ANY_CREDIT_TYPE",
    "CreditTypeFilter",
    "SORT_ORDERS",
    "LedgerStore",
    "LedgerBackend",
    "AbstractLedgerStore",
    "check_order",
]
