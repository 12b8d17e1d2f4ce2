"""
Credit Ledger - append-only, balance-consistent credit accounting on PostgreSQL.

This package records credits and debits against arbitrary owners, keeps a
running balance on every record, and provides:

- Locked read-modify-append writes (add, deduct) with bounded conflict retry
- Deadlock-free two-party transfers via deterministic lock ordering
- Current, per-credit-type and point-in-time balance queries
- Domain events delivered only after commit

Backends are pluggable: PostgreSQL (psycopg 3 + psycopg_pool) for production
and a transactional in-memory store for tests and embedding.
"""

from __future__ import annotations

__version__ = "0.1.0"
__license__ = "MIT"

# Public API exports
from credit_ledger.config import Settings, get_settings
from credit_ledger.domain.models import (
    CreditTransaction,
    NewTransaction,
    OwnerRef,
    TransactionKind,
    TransferResult,
)
from credit_ledger.events import (
    CreditsAdded,
    CreditsDeducted,
    CreditsTransferred,
    EventDispatcher,
    LedgerEvent,
)
from credit_ledger.exceptions import (
    InsufficientCreditsError,
    InvalidAmountError,
    InvalidArgumentError,
    LedgerError,
    StoreError,
    TransactionConflictError,
)
from credit_ledger.ledger import CreditLedger, lock_order
from credit_ledger.store import (
    ANY_CREDIT_TYPE,
    InMemoryLedgerBackend,
    LedgerBackend,
    LedgerStore,
    PostgresLedgerBackend,
)
from credit_ledger.transactions import run_in_transaction
from credit_ledger.utils.logging import configure_logging, get_logger

__all__ = [
    # Version info
    "__version__",
    "__license__",
    # Configuration
    "Settings",
    "get_settings",
    # Engine
    "CreditLedger",
    "lock_order",
    "run_in_transaction",
    # Domain
    "CreditTransaction",
    "NewTransaction",
    "OwnerRef",
    "TransactionKind",
    "TransferResult",
    # Events
    "LedgerEvent",
    "CreditsAdded",
    "CreditsDeducted",
    "CreditsTransferred",
    "EventDispatcher",
    # Errors
    "LedgerError",
    "InvalidArgumentError",
    "InvalidAmountError",
    "InsufficientCreditsError",
    "TransactionConflictError",
    "StoreError",
    # Stores
    "ANY_CREDIT_TYPE",
    "LedgerBackend",
    "LedgerStore",
    "InMemoryLedgerBackend",
    "PostgresLedgerBackend",
    # Logging
    "configure_logging",
    "get_logger",
]
