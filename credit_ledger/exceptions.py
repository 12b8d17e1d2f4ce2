"""
Exception hierarchy for the credit ledger.

Every error the engine raises derives from LedgerError so callers can tell
"the ledger refused this" apart from bugs, while the individual kinds keep
business refusals (insufficient credits) separate from infrastructure
failures (conflicts, store errors).
"""

from __future__ import annotations

from decimal import Decimal


class LedgerError(Exception):
    """Base class for all ledger errors."""


class InvalidArgumentError(LedgerError, ValueError):
    """A caller-supplied argument was rejected before any transactional work."""


class InvalidAmountError(InvalidArgumentError):
    """Amount is not a finite number greater than zero."""

    def __init__(self, amount: object) -> None:
        self.amount = amount
        super().__init__(f"Amount must be greater than 0, got {amount!r}.")


class InsufficientCreditsError(LedgerError):
    """
    A debit would drive the balance below zero while negative balances are disallowed.

    Attributes
    ----------
    requested : Decimal
        The amount the caller tried to deduct.
    available : Decimal
        The balance observed while holding the owner's lock.
    """

    def __init__(self, requested: Decimal, available: Decimal) -> None:
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient credits: requested {requested}, available {available}."
        )


class TransactionConflictError(LedgerError):
    """Transient lock contention, deadlock or serialization failure in the store."""


class StoreError(LedgerError):
    """Any non-transient failure reported by the storage backend."""


__all__ = [
    "LedgerError",
    "InvalidArgumentError",
    "InvalidAmountError",
    "InsufficientCreditsError",
    "TransactionConflictError",
    "StoreError",
]
