"""
Credit ledger engine.

CreditLedger implements the balance-changing operations (add, deduct,
transfer) and the balance-reconstruction queries on top of any LedgerBackend.
Every write follows the same shape inside one transactional scope: lock the
owner's tail, read the last running balance, compute the new one, append,
queue the domain event. The scope retries on transient conflicts and events
leave the outbox only after commit.

Usage:
    from credit_ledger import CreditLedger, OwnerRef
    from credit_ledger.store import PostgresLedgerBackend

    ledger = CreditLedger(PostgresLedgerBackend())
    user = OwnerRef.of("user", 42)
    ledger.add(user, 100, description="Signup bonus")
    ledger.balance(user)  # Decimal("100")
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Mapping, Optional, Tuple, TypeVar, Union

from pydantic import ValidationError
from tenacity.wait import wait_base

from credit_ledger.config import Settings, get_settings
from credit_ledger.domain.models import (
    CreditTransaction,
    NewTransaction,
    OwnerRef,
    TransactionKind,
    TransferResult,
    coerce_amount,
)
from credit_ledger.events import (
    CreditsAdded,
    CreditsDeducted,
    CreditsTransferred,
    EventDispatcher,
    Outbox,
)
from credit_ledger.exceptions import InsufficientCreditsError, InvalidArgumentError
from credit_ledger.store.abstract import ANY_CREDIT_TYPE, CreditTypeFilter, LedgerBackend, LedgerStore
from credit_ledger.transactions import UnitOfWork, run_in_transaction
from credit_ledger.utils.logging import get_logger
from credit_ledger.utils.timestamps import PointInTime, to_utc_datetime

log = get_logger(__name__)

T = TypeVar("T")

HISTORY_DEFAULT_LIMIT = 10
HISTORY_MAX_LIMIT = 1000

OwnerLike = Union[OwnerRef, Tuple[str, Union[str, int]]]


def as_owner(owner: OwnerLike) -> OwnerRef:
    """Accept an OwnerRef or a (kind, id) pair."""
    if isinstance(owner, OwnerRef):
        return owner
    # A two-character string would otherwise unpack into (kind, id).
    if isinstance(owner, (str, bytes)):
        raise InvalidArgumentError(f"Expected OwnerRef or (kind, id), got {owner!r}.")
    try:
        kind, owner_id = owner
    except (TypeError, ValueError):
        raise InvalidArgumentError(f"Expected OwnerRef or (kind, id), got {owner!r}.") from None
    try:
        return OwnerRef.of(kind, owner_id)
    except ValidationError as exc:
        raise InvalidArgumentError(f"Invalid owner {owner!r}: {exc.error_count()} error(s).") from exc


def lock_order(*owners: OwnerRef) -> List[OwnerRef]:
    """
    Return the distinct owners in global lock-acquisition order.

    The order depends only on (kind, id), never on the roles the owners play,
    so transfers A->B and B->A request their locks in the same sequence.
    """
    return sorted(set(owners), key=lambda owner: owner.sort_key)


def normalize_order(order: str) -> str:
    """Lower-case `order`; anything other than asc/desc becomes desc."""
    normalized = str(order).lower()
    return normalized if normalized in ("asc", "desc") else "desc"


def clamp_limit(limit: int) -> int:
    if isinstance(limit, bool):
        raise InvalidArgumentError(f"Limit must be an integer, got {limit!r}.")
    try:
        value = int(limit)
    except (TypeError, ValueError):
        raise InvalidArgumentError(f"Limit must be an integer, got {limit!r}.") from None
    return min(max(value, 1), HISTORY_MAX_LIMIT)


class CreditLedger:
    """
    Append-only credit ledger over a transactional backend.

    Parameters
    ----------
    backend : LedgerBackend
        Where records live (Postgres in production, in-memory for tests).
    settings : Settings, optional
        Policy source; when omitted the process-wide get_settings() is read on
        every call, so `allow_negative_balance` is evaluated at deduct time.
    dispatcher : EventDispatcher, optional
        Receives CreditsAdded / CreditsDeducted / CreditsTransferred after commit.
    retry_wait : tenacity wait strategy, optional
        Backoff between conflict retries.
    """

    def __init__(
        self,
        backend: LedgerBackend,
        settings: Optional[Settings] = None,
        dispatcher: Optional[EventDispatcher] = None,
        retry_wait: Optional[wait_base] = None,
    ) -> None:
        self._backend = backend
        self._settings = settings
        self.dispatcher = dispatcher if dispatcher is not None else EventDispatcher()
        self._retry_wait = retry_wait

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    def _transact(self, work: UnitOfWork[T]) -> T:
        return run_in_transaction(
            self._backend,
            work,
            max_attempts=self.settings.transaction_attempts,
            dispatcher=self.dispatcher,
            wait=self._retry_wait,
        )

    # -- writes ------------------------------------------------------------

    def add(
        self,
        owner: OwnerLike,
        amount: Any,
        description: Optional[str] = None,
        credit_type: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> CreditTransaction:
        """
        Credit `amount` to the owner and return the appended record.

        Raises
        ------
        InvalidAmountError
            If amount is not greater than zero (nothing is written).
        """
        owner = as_owner(owner)
        value = coerce_amount(amount)
        meta = dict(metadata or {})

        def work(store: LedgerStore, outbox: Outbox) -> CreditTransaction:
            return self._apply(
                store, outbox, owner, value, TransactionKind.CREDIT, description, credit_type, meta
            )

        return self._transact(work)

    def deduct(
        self,
        owner: OwnerLike,
        amount: Any,
        description: Optional[str] = None,
        credit_type: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> CreditTransaction:
        """
        Debit `amount` from the owner and return the appended record.

        Raises
        ------
        InvalidAmountError
            If amount is not greater than zero (nothing is written).
        InsufficientCreditsError
            If the balance would go negative and negative balances are disallowed.
        """
        owner = as_owner(owner)
        value = coerce_amount(amount)
        meta = dict(metadata or {})

        def work(store: LedgerStore, outbox: Outbox) -> CreditTransaction:
            return self._apply(
                store, outbox, owner, value, TransactionKind.DEBIT, description, credit_type, meta
            )

        return self._transact(work)

    def transfer(
        self,
        sender: OwnerLike,
        recipient: OwnerLike,
        amount: Any,
        description: Optional[str] = None,
        credit_type: Optional[str] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> TransferResult:
        """
        Move `amount` from sender to recipient atomically.

        Both owners are locked in lock_order() before either side is touched,
        then the sender is debited and the recipient credited in the same
        scope. If the debit is refused nothing is written for either party.
        The returned balances are read while both locks are still held.
        """
        sender = as_owner(sender)
        recipient = as_owner(recipient)
        value = coerce_amount(amount)
        if sender == recipient:
            raise InvalidArgumentError("Sender and recipient must be different owners.")
        meta = dict(metadata or {})

        def work(store: LedgerStore, outbox: Outbox) -> TransferResult:
            for owner in lock_order(sender, recipient):
                store.latest_balance(owner, for_update=True)

            self._apply(
                store, outbox, sender, value, TransactionKind.DEBIT, description, credit_type, meta
            )
            credit = self._apply(
                store, outbox, recipient, value, TransactionKind.CREDIT, description, credit_type, meta
            )

            result = TransferResult(
                sender_balance=store.latest_balance(sender),
                recipient_balance=store.latest_balance(recipient),
            )
            outbox.add(
                CreditsTransferred(
                    transaction_id=credit.id,
                    sender=sender,
                    recipient=recipient,
                    amount=value,
                    sender_new_balance=result.sender_balance,
                    recipient_new_balance=result.recipient_balance,
                    description=description,
                    metadata=meta,
                    credit_type=credit_type,
                )
            )
            return result

        return self._transact(work)

    def _apply(
        self,
        store: LedgerStore,
        outbox: Outbox,
        owner: OwnerRef,
        amount: Decimal,
        kind: TransactionKind,
        description: Optional[str],
        credit_type: Optional[str],
        metadata: Dict[str, Any],
    ) -> CreditTransaction:
        last_balance = store.latest_balance(owner, for_update=True)
        if kind is TransactionKind.CREDIT:
            new_balance = last_balance + amount
        else:
            new_balance = last_balance - amount
            if new_balance < 0 and not self.settings.allow_negative_balance:
                log.info(
                    "Deduction refused: insufficient credits",
                    extra={"owner": str(owner), "requested": str(amount), "available": str(last_balance)},
                )
                raise InsufficientCreditsError(amount, last_balance)

        record = store.append(
            NewTransaction(
                owner_kind=owner.kind,
                owner_id=owner.id,
                amount=amount,
                kind=kind,
                credit_type=credit_type,
                description=description,
                metadata=metadata,
                running_balance=new_balance,
            )
        )
        event_cls = CreditsAdded if kind is TransactionKind.CREDIT else CreditsDeducted
        outbox.add(
            event_cls(
                owner=owner,
                transaction_id=record.id,
                amount=amount,
                new_balance=new_balance,
                description=description,
                metadata=metadata,
                credit_type=credit_type,
            )
        )
        log.debug(
            f"[{kind.value.upper()}] {owner}",
            extra={
                "owner": str(owner),
                "transaction_id": record.id,
                "amount": str(amount),
                "running_balance": str(new_balance),
            },
        )
        return record

    # -- queries -----------------------------------------------------------

    def balance(self, owner: OwnerLike) -> Decimal:
        """Current total balance: the newest record's running balance, or 0."""
        owner = as_owner(owner)
        return self._transact(lambda store, _outbox: store.latest_balance(owner))

    def balance_by_type(self, owner: OwnerLike, credit_type: Optional[str]) -> Decimal:
        """
        Recomputed balance of one credit-type bucket.

        `None` selects the records stored without a credit type. The result is
        sum(credits) - sum(debits) over that bucket only, not the grand total.
        """
        owner = as_owner(owner)
        return self._transact(
            lambda store, _outbox: _net(store, owner, credit_type=credit_type)
        )

    def balance_at(self, owner: OwnerLike, point_in_time: PointInTime) -> Decimal:
        """
        Total balance as of `point_in_time` (datetime or Unix seconds/milliseconds).
        """
        owner = as_owner(owner)
        until = to_utc_datetime(point_in_time)
        return self._transact(lambda store, _outbox: store.latest_balance(owner, until=until))

    def balance_at_by_type(
        self, owner: OwnerLike, point_in_time: PointInTime, credit_type: Optional[str]
    ) -> Decimal:
        """Recomputed balance of one credit-type bucket as of `point_in_time`."""
        owner = as_owner(owner)
        until = to_utc_datetime(point_in_time)
        return self._transact(
            lambda store, _outbox: _net(store, owner, credit_type=credit_type, until=until)
        )

    def history(
        self,
        owner: OwnerLike,
        limit: int = HISTORY_DEFAULT_LIMIT,
        order: str = "desc",
        credit_type: Optional[str] = None,
    ) -> List[CreditTransaction]:
        """
        Transactions ordered by (created_at, id).

        `order` is case-insensitive and falls back to "desc"; `limit` is clamped
        to 1..1000; `credit_type` narrows to one named type (None = all types).
        """
        owner = as_owner(owner)
        direction = normalize_order(order)
        bounded = clamp_limit(limit)
        type_filter: CreditTypeFilter = ANY_CREDIT_TYPE if credit_type is None else credit_type
        return self._transact(
            lambda store, _outbox: store.query(
                owner, credit_type=type_filter, order=direction, limit=bounded
            )
        )

    def has_credits(
        self, owner: OwnerLike, amount: Any, credit_type: CreditTypeFilter = ANY_CREDIT_TYPE
    ) -> bool:
        """
        Whether the owner's balance covers `amount`.

        Uses the total balance by default, or the recomputed bucket balance when
        a credit type (including None) is passed.
        """
        try:
            required = Decimal(str(amount))
        except (InvalidOperation, ValueError):
            required = None
        if required is None or isinstance(amount, bool) or not required.is_finite():
            raise InvalidArgumentError(f"Amount must be numeric, got {amount!r}.")
        if credit_type is ANY_CREDIT_TYPE:
            return self.balance(owner) >= required
        return self.balance_by_type(owner, credit_type) >= required


def _net(
    store: LedgerStore,
    owner: OwnerRef,
    credit_type: Optional[str],
    until: Optional[datetime] = None,
) -> Decimal:
    credits = store.sum_amounts(owner, TransactionKind.CREDIT, credit_type=credit_type, until=until)
    debits = store.sum_amounts(owner, TransactionKind.DEBIT, credit_type=credit_type, until=until)
    return credits - debits


__all__ = [
    "CreditLedger",
    "HISTORY_MAX_LIMIT",
    "OwnerLike",
    "as_owner",
    "clamp_limit",
    "lock_order",
    "normalize_order",
]
