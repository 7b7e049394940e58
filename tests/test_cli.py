import json
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from main import LibraryManager, app
from ui_helpers import OUTPUT_MODE_ENV

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(env_db, monkeypatch):
    # --output json writes to the environment; start every test in plain mode
    monkeypatch.setenv(OUTPUT_MODE_ENV, "plain")
    LibraryManager.reset()
    yield env_db
    LibraryManager.reset()


def add(title="Dune", copies=1):
    result = runner.invoke(app, ["add-book", title, "Frank Herbert", "--copies", str(copies)])
    assert result.exit_code == 0
    return result


def test_books_empty():
    result = runner.invoke(app, ["books"])
    assert result.exit_code == 0
    assert "No books in catalog." in result.stdout

def test_add_and_list_books():
    result = add(copies=2)
    assert "Added book 1: Dune by Frank Herbert (2 copies)" in result.stdout

    result = runner.invoke(app, ["books"])
    assert "1 - Dune by Frank Herbert (2/2 available)" in result.stdout

def test_add_book_invalid_copies():
    result = runner.invoke(app, ["add-book", "Dune", "Frank Herbert", "--copies=-1"])
    assert result.exit_code == 1
    assert "Error:" in result.stdout

def test_borrow_and_return():
    add()

    result = runner.invoke(app, ["borrow", "alice", "1"])
    assert result.exit_code == 0
    assert "Loan 1 created, due" in result.stdout

    result = runner.invoke(app, ["books", "--available"])
    assert "No books in catalog." in result.stdout

    result = runner.invoke(app, ["return", "1", "alice"])
    assert result.exit_code == 0
    assert "Loan 1 returned, fine: 0" in result.stdout

def test_borrow_rejections_exit_non_zero():
    add()
    runner.invoke(app, ["borrow", "alice", "1"])

    again = runner.invoke(app, ["borrow", "alice", "1"])
    assert again.exit_code == 1
    assert "Error [already_borrowed]" in again.stdout

    taken = runner.invoke(app, ["borrow", "bob", "1"])
    assert taken.exit_code == 1
    assert "Error [unavailable]" in taken.stdout

    missing = runner.invoke(app, ["borrow", "bob", "42"])
    assert "Error [book_not_found]" in missing.stdout

def test_return_by_wrong_user():
    add()
    runner.invoke(app, ["borrow", "alice", "1"])

    result = runner.invoke(app, ["return", "1", "bob"])
    assert result.exit_code == 1
    assert "Error [not_found]" in result.stdout

def test_loans_listing():
    add("Dune")
    add("Emma")
    runner.invoke(app, ["borrow", "alice", "1"])
    runner.invoke(app, ["borrow", "bob", "2"])
    runner.invoke(app, ["return", "1", "alice"])

    everyone = runner.invoke(app, ["loans"])
    assert "#1 user=alice book=1" in everyone.stdout
    assert "RETURNED" in everyone.stdout
    assert "#2 user=bob book=2" in everyone.stdout

    active = runner.invoke(app, ["loans", "--active"])
    assert "#1 " not in active.stdout
    assert "#2 user=bob" in active.stdout

    alice_active = runner.invoke(app, ["loans", "--user", "alice", "--active"])
    assert "No loans found." in alice_active.stdout

    assert "No overdue loans." in runner.invoke(app, ["overdue"]).stdout

def test_loans_json_output():
    add()
    runner.invoke(app, ["borrow", "alice", "1"])

    result = runner.invoke(app, ["--output", "json", "loans"])
    assert result.exit_code == 0
    loans = json.loads(result.stdout)
    assert loans[0]["user_id"] == "alice"
    assert loans[0]["status"] == "BORROWED"

def test_set_copies_and_remove():
    add(copies=2)
    runner.invoke(app, ["borrow", "alice", "1"])

    result = runner.invoke(app, ["set-copies", "1", "4"])
    assert "Book 1 now has 4 copies (3 available)" in result.stdout

    shrink = runner.invoke(app, ["set-copies", "1", "0"])
    assert shrink.exit_code == 1
    assert "Error [copies_outstanding]" in shrink.stdout

    blocked = runner.invoke(app, ["remove-book", "1"])
    assert blocked.exit_code == 1
    assert "Error [book_has_active_loans]" in blocked.stdout

    runner.invoke(app, ["return", "1", "alice"])
    removed = runner.invoke(app, ["remove-book", "1"])
    assert removed.exit_code == 0
    assert "Book 1 has been removed." in removed.stdout

def test_summary_and_stats():
    add(copies=3)
    runner.invoke(app, ["borrow", "alice", "1"])

    summary = runner.invoke(app, ["summary", "alice"])
    assert "User: alice" in summary.stdout
    assert "Loans: 1" in summary.stdout
    assert "Active: 1" in summary.stdout
    assert "Fines: 0" in summary.stdout

    stats = runner.invoke(app, ["stats"])
    assert "Total Books: 1" in stats.stdout
    assert "Copies Available: 2" in stats.stdout
    assert "Active Loans: 1" in stats.stdout

def test_export(tmp_path):
    target = tmp_path / "loans"
    assert "No loans to export." in runner.invoke(app, ["export", "--output", str(target)]).stdout

    add()
    runner.invoke(app, ["borrow", "alice", "1"])

    result = runner.invoke(app, ["export", "--format", "json", "--output", str(target)])
    assert result.exit_code == 0
    assert "Exported 1 loans" in result.stdout
    exported = json.loads((tmp_path / "loans.json").read_text(encoding="utf-8"))
    assert exported[0]["user_id"] == "alice"

    result = runner.invoke(app, ["export", "--format", "csv", "--output", str(target)])
    assert (tmp_path / "loans.csv").read_text(encoding="utf-8").startswith("loan_id,")

    bad = runner.invoke(app, ["export", "--format", "xml", "--output", str(target)])
    assert bad.exit_code == 1

@patch("subprocess.run")
def test_serve_command(mock_subprocess_run):
    result = runner.invoke(app, ["serve"])
    assert result.exit_code == 0
    assert "Starting API on" in result.stdout
    args = mock_subprocess_run.call_args[0][0]
    assert "api:app" in args

def test_library_manager_follows_database_file(tmp_path, monkeypatch):
    first = LibraryManager.get_instance()
    assert LibraryManager.get_instance() is first
    add()

    other_db = str(tmp_path / "other.db")
    monkeypatch.setenv("LIBRARY_DB_FILE", other_db)
    second = LibraryManager.get_instance()

    assert second is not first
    assert second.db_file == other_db
    assert "No books in catalog." in runner.invoke(app, ["books"]).stdout
