"""
Retrying transactional scope for ledger units of work.

A unit of work is a callable taking the session's store and an Outbox. It is
re-executed from scratch, in a new session with fresh reads and an empty
outbox, whenever the backend reports a TransactionConflictError. Every other
exception propagates on the first occurrence. Events queued by the attempt
that commits are dispatched after the session has closed; events of
rolled-back attempts are discarded with their outbox.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional, TypeVar

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)
from tenacity.wait import wait_base

from credit_ledger.events import EventDispatcher, Outbox
from credit_ledger.exceptions import TransactionConflictError
from credit_ledger.store.abstract import LedgerBackend, LedgerStore
from credit_ledger.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")
UnitOfWork = Callable[[LedgerStore, Outbox], T]

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_WAIT = wait_random_exponential(multiplier=0.01, max=0.25)


def run_in_transaction(
    backend: LedgerBackend,
    work: UnitOfWork[T],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    dispatcher: Optional[EventDispatcher] = None,
    wait: Optional[wait_base] = None,
) -> T:
    """
    Run `work` inside a backend session, retrying on transient conflicts.

    Parameters
    ----------
    backend : LedgerBackend
        Source of transactional sessions.
    work : callable
        Unit of work; receives the session's store and a fresh Outbox.
    max_attempts : int
        Total attempts before the last TransactionConflictError is re-raised.
    dispatcher : EventDispatcher, optional
        Receives the committed attempt's events.
    wait : tenacity wait strategy, optional
        Backoff between attempts (short randomized exponential by default).

    Returns
    -------
    T
        Whatever the committed attempt of `work` returned.
    """
    retrying = Retrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait if wait is not None else DEFAULT_WAIT,
        retry=retry_if_exception_type(TransactionConflictError),
        before_sleep=before_sleep_log(log, logging.WARNING),
        reraise=True,
    )
    for attempt in retrying:
        with attempt:
            outbox = Outbox()
            with backend.session() as store:
                result = work(store, outbox)

    attempts = attempt.retry_state.attempt_number
    if attempts > 1:
        log.info("Transaction committed after retry", extra={"attempts": attempts})
    outbox.flush(dispatcher)
    return result


__all__ = ["DEFAULT_MAX_ATTEMPTS", "UnitOfWork", "run_in_transaction"]
