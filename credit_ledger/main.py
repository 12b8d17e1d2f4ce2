from __future__ import annotations

import json
import sys
from datetime import datetime
from typing import Any, Callable, Dict, Optional, TypeVar, Union

import psycopg
import typer

from credit_ledger.config import get_settings
from credit_ledger.domain.models import CreditTransaction, OwnerRef
from credit_ledger.exceptions import LedgerError
from credit_ledger.infrastructure.db_factory import get_sync_connection
from credit_ledger.infrastructure.schema import TABLE_NAME, ensure_schema
from credit_ledger.ledger import CreditLedger
from credit_ledger.reporter import print_balance, print_history
from credit_ledger.store.postgres import PostgresLedgerBackend, translate_error
from credit_ledger.utils.logging import configure_logging, get_logger

app = typer.Typer(help="Credit ledger CLI.")
log = get_logger(__name__)

R = TypeVar("R")


def _build_ledger() -> CreditLedger:
    return CreditLedger(PostgresLedgerBackend())


def _parse_owner(value: str) -> OwnerRef:
    kind, sep, owner_id = value.partition(":")
    if not sep or not kind or not owner_id:
        raise typer.BadParameter(f"Owner must look like KIND:ID, got {value!r}.")
    return OwnerRef.of(kind, owner_id)


def _parse_metadata(value: Optional[str]) -> Dict[str, Any]:
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        raise typer.BadParameter(f"--meta must be a JSON object: {exc}") from exc
    if not isinstance(parsed, dict):
        raise typer.BadParameter("--meta must be a JSON object.")
    return parsed


def _parse_point_in_time(value: str) -> Union[datetime, int, float]:
    try:
        return int(value)
    except ValueError:
        pass
    try:
        return float(value)
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(value)
    except ValueError as exc:
        raise typer.BadParameter(f"--at must be a Unix timestamp or ISO datetime, got {value!r}.") from exc


def _run(action: Callable[[], R]) -> R:
    """Run a ledger action, turning ledger errors into a clean non-zero exit."""
    settings = get_settings()
    configure_logging(level=settings.log_level, json_logs=settings.log_json)
    try:
        return action()
    except LedgerError as exc:
        log.debug("Command failed", exc_info=True)
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from exc


def _echo_record(record: CreditTransaction) -> None:
    typer.echo(record.model_dump_json())


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    typer.echo(
        f"DB={settings.db_user}@{settings.db_host}:{settings.db_port}/{settings.db_name} | "
        f"allow_negative_balance={settings.allow_negative_balance} "
        f"attempts={settings.transaction_attempts} "
        f"lock_timeout_ms={settings.db_lock_timeout_ms}"
    )


@app.command("init-db")
def init_db() -> None:
    """
    Create the ledger table, indexes and append-only trigger if missing.
    """

    def action() -> None:
        try:
            conn = get_sync_connection()
            try:
                ensure_schema(conn)
            finally:
                conn.close()
        except psycopg.Error as exc:
            raise translate_error(exc) from exc

    _run(action)
    typer.echo(f"Schema ready: {TABLE_NAME}")


@app.command()
def add(
    owner: str = typer.Argument(..., help="Owner as KIND:ID, e.g. user:42."),
    amount: str = typer.Argument(..., help="Amount to credit (> 0)."),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    credit_type: Optional[str] = typer.Option(None, "--type", "-t", help="Credit type bucket."),
    meta: Optional[str] = typer.Option(None, "--meta", help="JSON object stored with the record."),
) -> None:
    """
    Credit an owner and print the stored record.
    """
    target = _parse_owner(owner)
    metadata = _parse_metadata(meta)
    ledger = _build_ledger()
    record = _run(lambda: ledger.add(target, amount, description, credit_type, metadata))
    _echo_record(record)


@app.command()
def deduct(
    owner: str = typer.Argument(..., help="Owner as KIND:ID, e.g. user:42."),
    amount: str = typer.Argument(..., help="Amount to debit (> 0)."),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    credit_type: Optional[str] = typer.Option(None, "--type", "-t", help="Credit type bucket."),
    meta: Optional[str] = typer.Option(None, "--meta", help="JSON object stored with the record."),
) -> None:
    """
    Debit an owner and print the stored record.
    """
    target = _parse_owner(owner)
    metadata = _parse_metadata(meta)
    ledger = _build_ledger()
    record = _run(lambda: ledger.deduct(target, amount, description, credit_type, metadata))
    _echo_record(record)


@app.command()
def transfer(
    sender: str = typer.Argument(..., help="Sender as KIND:ID."),
    recipient: str = typer.Argument(..., help="Recipient as KIND:ID."),
    amount: str = typer.Argument(..., help="Amount to move (> 0)."),
    description: Optional[str] = typer.Option(None, "--description", "-d"),
    credit_type: Optional[str] = typer.Option(None, "--type", "-t", help="Credit type bucket."),
    meta: Optional[str] = typer.Option(None, "--meta", help="JSON object stored with both records."),
) -> None:
    """
    Move credits between two owners atomically and print both balances.
    """
    source = _parse_owner(sender)
    target = _parse_owner(recipient)
    metadata = _parse_metadata(meta)
    ledger = _build_ledger()
    result = _run(
        lambda: ledger.transfer(source, target, amount, description, credit_type, metadata)
    )
    typer.echo(result.model_dump_json())


@app.command()
def balance(
    owner: str = typer.Argument(..., help="Owner as KIND:ID."),
    credit_type: Optional[str] = typer.Option(None, "--type", "-t", help="Only this credit type."),
    untyped: bool = typer.Option(False, "--untyped", help="Only records without a credit type."),
    at: Optional[str] = typer.Option(
        None, "--at", help="Balance as of a Unix timestamp (s or ms) or ISO datetime."
    ),
) -> None:
    """
    Print an owner's balance, optionally per credit type and/or as of a point in time.
    """
    if credit_type is not None and untyped:
        raise typer.BadParameter("--type and --untyped are mutually exclusive.")
    target = _parse_owner(owner)
    point = _parse_point_in_time(at) if at is not None else None
    by_type = credit_type is not None or untyped
    ledger = _build_ledger()

    def action():
        if point is None:
            return ledger.balance_by_type(target, credit_type) if by_type else ledger.balance(target)
        if by_type:
            return ledger.balance_at_by_type(target, point, credit_type)
        return ledger.balance_at(target, point)

    print_balance(str(target), _run(action))


@app.command()
def history(
    owner: str = typer.Argument(..., help="Owner as KIND:ID."),
    limit: int = typer.Option(10, "--limit", "-n", help="Rows to show (1..1000)."),
    order: str = typer.Option("desc", "--order", help="asc or desc."),
    credit_type: Optional[str] = typer.Option(None, "--type", "-t", help="Only this credit type."),
    as_json: bool = typer.Option(False, "--json", help="Emit JSON lines instead of a table."),
) -> None:
    """
    Show an owner's transaction history.
    """
    target = _parse_owner(owner)
    ledger = _build_ledger()
    records = _run(lambda: ledger.history(target, limit=limit, order=order, credit_type=credit_type))
    if as_json:
        for record in records:
            _echo_record(record)
        return
    print_history(records, owner_label=str(target))


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
