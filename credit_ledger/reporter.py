from __future__ import annotations

from decimal import Decimal
from typing import Optional, Sequence

from rich import box
from rich.console import Console
from rich.table import Table

from credit_ledger.domain.models import CreditTransaction, TransactionKind


def _signed(record: CreditTransaction) -> str:
    sign = "+" if record.kind is TransactionKind.CREDIT else "-"
    return f"{sign}{record.amount:,}"


def _balance(value: Decimal) -> str:
    return f"{value:,}"


def print_history(
    records: Sequence[CreditTransaction],
    owner_label: str,
    console: Optional[Console] = None,
) -> None:
    """
    Render transaction history as a rich table.

    Rows are shown in the order given; credits are green and debits red.
    """
    console = console or Console()

    if not records:
        console.print(f"[yellow]No transactions for {owner_label}.[/yellow]")
        return

    table = Table(
        title=f"Credit history for {owner_label}",
        box=box.ROUNDED,
        caption=f"{len(records)} transaction(s)",
    )

    table.add_column("ID", justify="right", style="cyan", no_wrap=True)
    table.add_column("Created", style="dim", no_wrap=True)
    table.add_column("Kind", style="magenta")
    table.add_column("Amount", justify="right")
    table.add_column("Balance", justify="right", style="bold")
    table.add_column("Type", style="blue")
    table.add_column("Description")

    for record in records:
        amount_style = "green" if record.kind is TransactionKind.CREDIT else "red"
        table.add_row(
            str(record.id),
            record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            record.kind.value,
            f"[{amount_style}]{_signed(record)}[/{amount_style}]",
            _balance(record.running_balance),
            record.credit_type or "-",
            record.description or "",
        )

    console.print(table)


def print_balance(owner_label: str, balance: Decimal, console: Optional[Console] = None) -> None:
    console = console or Console()
    style = "red" if balance < 0 else "green"
    console.print(f"{owner_label}: [{style}]{_balance(balance)}[/{style}]")
