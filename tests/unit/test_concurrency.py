"""Concurrency behaviour of the engine over the in-memory backend."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest
from tenacity import wait_none

from credit_ledger.domain.models import OwnerRef
from credit_ledger.exceptions import TransactionConflictError
from credit_ledger.ledger import CreditLedger
from credit_ledger.store.memory import InMemoryLedgerBackend

OWNER = OwnerRef.of("wallet", 7)
ALICE = OwnerRef.of("user", "alice")
BOB = OwnerRef.of("user", "bob")

WRITERS = 50
TRANSFER_ROUNDS = 40


@pytest.fixture
def threaded_ledger(test_settings):
    backend = InMemoryLedgerBackend(lock_timeout=5.0)
    return CreditLedger(backend, settings=test_settings, retry_wait=wait_none()), backend


def test_concurrent_adds_serialize_per_owner(threaded_ledger):
    ledger, backend = threaded_ledger
    start = threading.Barrier(WRITERS)

    def add_one(_):
        start.wait()
        return ledger.add(OWNER, 1)

    with ThreadPoolExecutor(max_workers=WRITERS) as pool:
        records = list(pool.map(add_one, range(WRITERS)))

    assert ledger.balance(OWNER) == Decimal(WRITERS)
    assert backend.count(OWNER) == WRITERS

    history = ledger.history(OWNER, limit=1000, order="asc")
    ids = [r.id for r in history]
    balances = [r.running_balance for r in history]
    assert ids == sorted(ids) and len(set(ids)) == WRITERS
    assert balances == [Decimal(n) for n in range(1, WRITERS + 1)]
    assert {r.id for r in records} == set(ids)


@pytest.mark.slow
def test_opposite_transfers_do_not_deadlock(threaded_ledger):
    ledger, backend = threaded_ledger
    ledger.add(ALICE, 1000)
    ledger.add(BOB, 1000)
    start = threading.Barrier(2)

    def shuttle(sender, recipient):
        start.wait()
        for _ in range(TRANSFER_ROUNDS):
            ledger.transfer(sender, recipient, 5)

    with ThreadPoolExecutor(max_workers=2) as pool:
        futures = [pool.submit(shuttle, ALICE, BOB), pool.submit(shuttle, BOB, ALICE)]
        for future in futures:
            future.result(timeout=30)

    assert ledger.balance(ALICE) == Decimal("1000")
    assert ledger.balance(BOB) == Decimal("1000")
    assert backend.count() == 2 + 2 * 2 * TRANSFER_ROUNDS


def test_lock_timeout_surfaces_as_conflict_after_retries(test_settings):
    backend = InMemoryLedgerBackend(lock_timeout=0.01)
    settings = test_settings.model_copy(update={"transaction_attempts": 3})
    ledger = CreditLedger(backend, settings=settings, retry_wait=wait_none())

    with backend.session() as blocker:
        blocker.latest_balance(OWNER, for_update=True)
        with pytest.raises(TransactionConflictError):
            ledger.add(OWNER, 1)

    assert backend.count(OWNER) == 0
    assert ledger.add(OWNER, 1).running_balance == Decimal("1")
