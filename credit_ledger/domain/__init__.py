"""
Domain package for the credit ledger.

Exports the core domain models used by the engine and the stores.
Keep this package focused on data definitions and validation concerns.
"""

from credit_ledger.domain.models import (
    CreditTransaction,
    NewTransaction,
    OwnerRef,
    TransactionKind,
    TransferResult,
    coerce_amount,
)

__all__ = [
    "CreditTransaction",
    "NewTransaction",
    "OwnerRef",
    "TransactionKind",
    "TransferResult",
    "coerce_amount",
]
