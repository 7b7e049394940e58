import csv
import json
import os
import subprocess
import sys
from functools import wraps
from typing import Optional

import typer

from config import settings
from database import resolve_database_file
from errors import LedgerError
from library import Library
from ui_helpers import print_books_result, print_loans_result, print_stats_result, set_output_mode

APP_NAME = "Lending Ledger CLI"

# Library instance, rebuilt when the database file changes (e.g. per-test databases)
class LibraryManager:
    _instance: Optional[Library] = None
    _db_file_snapshot: Optional[str] = None

    @classmethod
    def get_instance(cls) -> Library:
        current_db = resolve_database_file()
        if cls._instance is None or current_db != cls._db_file_snapshot:
            cls._instance = Library(current_db)
            cls._db_file_snapshot = current_db
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None
        cls._db_file_snapshot = None

# Turn ledger rejections into a message and a non-zero exit code
def report_errors(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except LedgerError as e:
            print(f"Error [{e.code}]: {e}")
            raise typer.Exit(code=1)
        except ValueError as e:
            print(f"Error: {e}")
            raise typer.Exit(code=1)
    return wrapper

# --- Typer CLI application ---
app = typer.Typer(help=APP_NAME)

@app.callback()
def _global_options(
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    )
):
    """Global CLI options (e.g. output mode)."""
    if output:
        set_output_mode(output)

@app.command("add-book")
@report_errors
def cli_add_book(
    title: str,
    author: str,
    copies: int = typer.Option(1, "--copies", "-c", help="Number of copies owned"),
    isbn: Optional[str] = typer.Option(None, "--isbn", help="ISBN-10 or ISBN-13"),
):
    """Add a title to the catalog."""
    book = LibraryManager.get_instance().catalog.add_book(title, author, copies, isbn=isbn)
    print(f"Added book {book.book_id}: {book.title} by {book.author} ({book.total_copies} copies)")

@app.command("set-copies")
@report_errors
def cli_set_copies(book_id: int, total: int):
    """Change how many copies of a title the library owns."""
    book = LibraryManager.get_instance().catalog.set_total_copies(book_id, total)
    print(f"Book {book.book_id} now has {book.total_copies} copies ({book.copies_available} available)")

@app.command("remove-book")
@report_errors
def cli_remove_book(book_id: int):
    """Remove a title that has no copies on loan."""
    LibraryManager.get_instance().catalog.remove_book(book_id)
    print(f"Book {book_id} has been removed.")

@app.command("books")
@report_errors
def cli_books(available: bool = typer.Option(False, "--available", "-a", help="Only titles with a copy on the shelf")):
    """List the catalog with copy counts."""
    print_books_result(LibraryManager.get_instance().catalog.list_books(available_only=available))

@app.command("borrow")
@report_errors
def cli_borrow(user_id: str, book_id: int):
    """Lend a copy of BOOK_ID to USER_ID."""
    loan = LibraryManager.get_instance().ledger.borrow(user_id, book_id)
    print(f"Loan {loan.loan_id} created, due {loan.due_date.date().isoformat()}")

@app.command("return")
@report_errors
def cli_return(loan_id: int, user_id: str):
    """Return loan LOAN_ID on behalf of USER_ID and show the fine."""
    loan = LibraryManager.get_instance().ledger.return_loan(loan_id, user_id)
    print(f"Loan {loan.loan_id} returned, fine: {loan.fine}")

@app.command("loans")
@report_errors
def cli_loans(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Only this user's loans"),
    active: bool = typer.Option(False, "--active", help="Only loans not yet returned"),
):
    """List loans, for one user or for everyone."""
    ledger = LibraryManager.get_instance().ledger
    if active and user:
        loans = ledger.list_active_loans(user)
    else:
        loans = ledger.list_all_loans(user)
        if active:
            loans = [loan for loan in loans if loan.active]
    print_loans_result(loans)

@app.command("overdue")
@report_errors
def cli_overdue():
    """List active loans past their due date."""
    print_loans_result(LibraryManager.get_instance().ledger.list_overdue_loans(), "No overdue loans.")

@app.command("summary")
@report_errors
def cli_summary(user_id: str):
    """Show borrow count, active loans and fines for a user."""
    summary = LibraryManager.get_instance().ledger.user_summary(user_id)
    print(f"User: {summary['user_id']}")
    print(f"Loans: {summary['borrow_count']}")
    print(f"Active: {summary['active_loans']}")
    print(f"Fines: {summary['total_fines']}")

@app.command("stats")
@report_errors
def cli_stats():
    """Show catalog and loan statistics."""
    print_stats_result(LibraryManager.get_instance().get_statistics())

@app.command("export")
@report_errors
def cli_export(format: str = "csv", output: str = "loans_export"):
    """Export every loan to a file (csv or json)."""
    loans = LibraryManager.get_instance().ledger.list_all_loans()
    if not loans:
        print("No loans to export.")
        return

    rows = [loan.to_dict() for loan in loans]
    if format.lower() == "csv":
        filename = f"{output}.csv"
        with open(filename, 'w', newline='', encoding='utf-8') as csvfile:
            writer = csv.DictWriter(csvfile, fieldnames=list(rows[0].keys()))
            writer.writeheader()
            writer.writerows(rows)
    elif format.lower() == "json":
        filename = f"{output}.json"
        with open(filename, 'w', encoding='utf-8') as jsonfile:
            json.dump(rows, jsonfile, indent=2, ensure_ascii=False)
    else:
        print(f"Unsupported format: {format}. Use csv or json.")
        raise typer.Exit(code=1)
    print(f"Exported {len(rows)} loans to {filename}")

@app.command("serve")
def cli_serve(reload: bool = typer.Option(False, "--reload", help="Restart on code changes")):
    """Start the HTTP API with uvicorn."""
    host = settings.api_host
    port = int(settings.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    subprocess.run(args, env=os.environ.copy())


if __name__ == "__main__":
    app()
