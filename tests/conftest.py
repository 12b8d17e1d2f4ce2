"""
Pytest configuration for the credit ledger.

Provides fixtures for:
- Settings overrides (policy switches, database coordinates)
- An in-memory backend and ledger for unit tests
- Database connection management and table cleanup for integration tests
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from typing import Generator, List

import psycopg
import pytest
from tenacity import wait_none

from credit_ledger.config import Settings
from credit_ledger.events import EventDispatcher, LedgerEvent
from credit_ledger.infrastructure.schema import TABLE_NAME, ensure_schema
from credit_ledger.ledger import CreditLedger
from credit_ledger.store.memory import InMemoryLedgerBackend


class FakeClock:
    """Deterministic, manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


class RecordingHandler:
    """Collects every dispatched event."""

    def __init__(self) -> None:
        self.events: List[LedgerEvent] = []

    def __call__(self, event: LedgerEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> List[LedgerEvent]:
        return [event for event in self.events if isinstance(event, event_type)]


@pytest.fixture(scope="session")
def test_settings() -> Settings:
    """
    Settings fixture with test-specific overrides.

    Can be overridden via environment variables in CI or local testing.
    """
    return Settings(
        db_host=os.getenv("DB_HOST", "localhost"),
        db_port=int(os.getenv("DB_PORT", "5432")),
        db_user=os.getenv("DB_USER", "postgres"),
        db_password=os.getenv("DB_PASSWORD", "postgres"),
        db_name=os.getenv("DB_NAME", "credit_ledger"),
        log_level="DEBUG",
        allow_negative_balance=False,
        transaction_attempts=5,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def memory_backend(clock: FakeClock) -> InMemoryLedgerBackend:
    return InMemoryLedgerBackend(lock_timeout=2.0, clock=clock)


@pytest.fixture
def recorder() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def dispatcher(recorder: RecordingHandler) -> EventDispatcher:
    dispatcher = EventDispatcher()
    dispatcher.subscribe(LedgerEvent, recorder)
    return dispatcher


@pytest.fixture
def ledger(
    memory_backend: InMemoryLedgerBackend, test_settings: Settings, dispatcher: EventDispatcher
) -> CreditLedger:
    """Ledger over the in-memory backend with negative balances disallowed."""
    return CreditLedger(
        memory_backend, settings=test_settings, dispatcher=dispatcher, retry_wait=wait_none()
    )


@pytest.fixture
def lenient_ledger(
    memory_backend: InMemoryLedgerBackend, test_settings: Settings, dispatcher: EventDispatcher
) -> CreditLedger:
    """Ledger over the same backend with negative balances allowed."""
    settings = test_settings.model_copy(update={"allow_negative_balance": True})
    return CreditLedger(
        memory_backend, settings=settings, dispatcher=dispatcher, retry_wait=wait_none()
    )


@pytest.fixture(scope="session")
def test_dsn(test_settings: Settings) -> str:
    """
    Database connection string for tests.
    """
    return test_settings.dsn


@pytest.fixture(scope="session")
def db_connection_available(test_dsn: str) -> bool:
    """
    Check if database is reachable.

    Used to conditionally skip integration tests when DB is not available.
    """
    try:
        with psycopg.connect(test_dsn, connect_timeout=5) as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1;")
                cur.fetchone()
        return True
    except psycopg.Error:
        return False


@pytest.fixture(scope="session")
def db_connection(
    test_dsn: str, db_connection_available: bool
) -> Generator[psycopg.Connection, None, None]:
    """
    Provide a session-scoped database connection for integration tests.

    Skips tests if database is not available.
    """
    if not db_connection_available:
        pytest.skip("Database not available for integration tests")

    conn = psycopg.connect(test_dsn)
    try:
        yield conn
    finally:
        conn.close()


@pytest.fixture(scope="session")
def db_schema_initialized(db_connection: psycopg.Connection) -> bool:
    """
    Ensure the ledger table, indexes and trigger exist.
    """
    ensure_schema(db_connection)
    return True


@pytest.fixture(scope="function")
def clean_ledger_table(db_connection: psycopg.Connection, db_schema_initialized: bool):
    """
    Empty the ledger table before and after each test function.

    TRUNCATE bypasses the row-level append-only trigger.
    """
    with db_connection.cursor() as cur:
        cur.execute(f"TRUNCATE TABLE {TABLE_NAME} RESTART IDENTITY;")
    db_connection.commit()
    yield
    with db_connection.cursor() as cur:
        cur.execute(f"TRUNCATE TABLE {TABLE_NAME} RESTART IDENTITY;")
    db_connection.commit()
