"""
Store package for the credit ledger.

Re-exports the store protocols and the concrete backends so downstream code
can import from `credit_ledger.store` directly.
"""

from credit_ledger.store.abstract import (
    ANY_CREDIT_TYPE,
    AbstractLedgerStore,
    CreditTypeFilter,
    LedgerBackend,
    LedgerStore,
)
from credit_ledger.store.memory import InMemoryLedgerBackend, InMemoryLedgerStore
from credit_ledger.store.postgres import PostgresLedgerBackend, PostgresLedgerStore

__all__ = [
    # Abstracts
    "ANY_CREDIT_TYPE",
    "AbstractLedgerStore",
    "CreditTypeFilter",
    "LedgerBackend",
    "LedgerStore",
    # Concrete backends
    "InMemoryLedgerBackend",
    "InMemoryLedgerStore",
    "PostgresLedgerBackend",
    "PostgresLedgerStore",
]
