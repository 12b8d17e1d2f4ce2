"""
Domain models for the credit ledger.

Defines the owner reference, the append-only transaction record matching
`infrastructure.schema`, and the small value types passed between the engine and the
stores. All models are frozen: a stored record is never changed after insert.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field, field_validator

from credit_ledger.exceptions import InvalidAmountError


class TransactionKind(str, Enum):
    """Direction of a ledger movement."""

    CREDIT = "credit"
    DEBIT = "debit"


class OwnerRef(BaseModel):
    """
    Polymorphic reference to any entity that can hold a balance.

    The ledger never looks past this pair; integer ids are stored in their
    string form so every owner kind shares one column type.
    """

    kind: str = Field(..., min_length=1, description="Owner type name, e.g. 'user'.")
    id: str = Field(..., min_length=1, description="Owner identifier within its kind.")

    model_config = {"frozen": True}

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value: Any) -> Any:
        if isinstance(value, int) and not isinstance(value, bool):
            return str(value)
        return value

    @classmethod
    def of(cls, kind: str, id: str | int) -> "OwnerRef":
        return cls(kind=kind, id=id)

    @property
    def sort_key(self) -> Tuple[str, str]:
        return (self.kind, self.id)

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


class NewTransaction(BaseModel):
    """
    Insert payload for a transaction record; the store assigns id and created_at.
    """

    owner_kind: str = Field(..., description="Owner type name.")
    owner_id: str = Field(..., description="Owner identifier.")
    amount: Decimal = Field(..., ge=0, description="Magnitude of the movement.")
    kind: TransactionKind = Field(..., description="credit increases, debit decreases.")
    credit_type: Optional[str] = Field(None, description="Optional category bucket.")
    description: Optional[str] = Field(None, description="Free text.")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Opaque payload.")
    running_balance: Decimal = Field(..., description="Balance right after this record.")

    model_config = {"frozen": True}

    @property
    def owner(self) -> OwnerRef:
        return OwnerRef(kind=self.owner_kind, id=self.owner_id)


class CreditTransaction(NewTransaction):
    """
    Representation of a single row in the `credit_transactions` table.
    """

    id: int = Field(..., description="Primary key (BIGSERIAL).")
    created_at: datetime = Field(..., description="Insert timestamp.")


class TransferResult(BaseModel):
    """Balances of both parties once a transfer has been applied."""

    sender_balance: Decimal
    recipient_balance: Decimal

    model_config = {"frozen": True}


def coerce_amount(value: Any) -> Decimal:
    """
    Convert a caller-supplied amount to Decimal, rejecting anything not strictly positive.

    Floats go through `str` so 0.1 becomes Decimal("0.1") rather than its binary
    expansion. Booleans, NaN and infinities are refused.
    """
    if isinstance(value, bool):
        raise InvalidAmountError(value)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmountError(value) from None
    if not amount.is_finite() or amount <= 0:
        raise InvalidAmountError(value)
    return amount


__all__ = [
    "TransactionKind",
    "OwnerRef",
    "NewTransaction",
    "CreditTransaction",
    "TransferResult",
    "coerce_amount",
]
