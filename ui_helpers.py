import json
import os
from typing import Any, Dict, List

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

# Environment variable to control CLI output mode
# Allowed values: 'plain' (default), 'json', 'rich'
OUTPUT_MODE_ENV = "LEDGER_CLI_OUTPUT"

_console = Console()

def set_output_mode(mode: str) -> None:
    mode = (mode or "").lower().strip()
    if mode in {"plain", "json", "rich"}:
        os.environ[OUTPUT_MODE_ENV] = mode

def get_output_mode() -> str:
    return os.environ.get(OUTPUT_MODE_ENV, "plain").lower()

def print_books_result(books: List[Any]) -> None:
    """Print the catalog in the current output mode.
    - plain: '<id> - Title by Author (available/total)' lines, or 'No books in catalog.'
    - json: JSON array of book dicts
    - rich: Rich table
    """
    mode = get_output_mode()

    if not books:
        print("No books in catalog.")
        return

    if mode == "json":
        print(json.dumps([b.to_dict() for b in books], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📚 Catalog", show_lines=True, header_style="bold cyan")
        table.add_column("ID", style="magenta", no_wrap=True)
        table.add_column("Title", style="white")
        table.add_column("Author", style="white")
        table.add_column("Available", justify="right")
        for b in books:
            style = "green" if b.copies_available else "red"
            table.add_row(str(b.book_id), b.title, b.author,
                          f"[{style}]{b.copies_available}/{b.total_copies}[/]")
        _console.print(table)
    else:
        for b in books:
            print(f"{b.book_id} - {b.title} by {b.author} ({b.copies_available}/{b.total_copies} available)")

def print_loans_result(loans: List[Any], empty_message: str = "No loans found.") -> None:
    """Print loans in the current output mode."""
    mode = get_output_mode()

    if not loans:
        print(empty_message)
        return

    if mode == "json":
        print(json.dumps([loan.to_dict() for loan in loans], ensure_ascii=False))
    elif mode == "rich":
        table = Table(title="📖 Loans", show_lines=True, header_style="bold cyan")
        table.add_column("Loan", style="magenta", no_wrap=True)
        table.add_column("User")
        table.add_column("Book", justify="right")
        table.add_column("Due")
        table.add_column("Status")
        table.add_column("Fine", justify="right")
        for loan in loans:
            status = "[green]RETURNED[/]" if loan.returned else ("[red]OVERDUE[/]" if loan.is_overdue() else "BORROWED")
            table.add_row(str(loan.loan_id), loan.user_id, str(loan.book_id), loan.due_date.date().isoformat(),
                          status, str(loan.fine))
        _console.print(table)
    else:
        for loan in loans:
            print(f"#{loan.loan_id} user={loan.user_id} book={loan.book_id} due={loan.due_date.date().isoformat()} "
                  f"{loan.status} fine={loan.fine}")

def print_stats_result(stats: Dict[str, Any]) -> None:
    """Print statistics in the current output mode."""
    mode = get_output_mode()

    if not stats:
        print("No statistics available.")
        return

    labels = [
        ("total_books", "Total Books"),
        ("total_copies", "Total Copies"),
        ("copies_available", "Copies Available"),
        ("total_loans", "Total Loans"),
        ("active_loans", "Active Loans"),
        ("overdue_loans", "Overdue Loans"),
        ("total_fines", "Total Fines"),
    ]

    if mode == "json":
        print(json.dumps(stats, ensure_ascii=False))
    elif mode == "rich":
        content = "\n".join(f"[bold]{label}:[/] {stats.get(key, 0)}" for key, label in labels)
        _console.print(Panel.fit(content, title="📊 Stats", border_style="blue"))
    else:
        for key, label in labels:
            print(f"{label}: {stats.get(key, 0)}")
