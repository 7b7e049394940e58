import threading
from datetime import timedelta

import pytest

from errors import AlreadyBorrowed, LoanNotFound, Unavailable


def run_concurrently(*calls):
    """Start every call at the same moment and collect ('ok', value) / ('err', exc) per call."""
    barrier = threading.Barrier(len(calls))
    results = [None] * len(calls)

    def worker(index, call):
        barrier.wait()
        try:
            results[index] = ("ok", call())
        except Exception as exc:
            results[index] = ("err", exc)

    threads = [threading.Thread(target=worker, args=(i, c)) for i, c in enumerate(calls)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)
    return results


def test_last_copy_goes_to_exactly_one_borrower(ledger, catalog, day0):
    book = catalog.add_book("Last Copy", "Author", 1)

    results = run_concurrently(
        lambda: ledger.borrow("alice", book.book_id, now=day0),
        lambda: ledger.borrow("bob", book.book_id, now=day0),
    )

    successes = [r for r in results if r[0] == "ok"]
    failures = [r[1] for r in results if r[0] == "err"]
    assert len(successes) == 1
    assert len(failures) == 1 and isinstance(failures[0], Unavailable)
    assert catalog.get_book(book.book_id).copies_available == 0
    assert len(ledger.list_all_loans()) == 1

@pytest.mark.parametrize("copies,borrowers", [(3, 8), (5, 5)])
def test_never_over_lends(ledger, catalog, day0, copies, borrowers):
    book = catalog.add_book("Popular", "Author", copies)

    results = run_concurrently(*[
        (lambda uid=f"user{i}": ledger.borrow(uid, book.book_id, now=day0)) for i in range(borrowers)
    ])

    successes = [r for r in results if r[0] == "ok"]
    failures = [r[1] for r in results if r[0] == "err"]
    assert len(successes) == min(copies, borrowers)
    assert all(isinstance(e, Unavailable) for e in failures)
    stored = catalog.get_book(book.book_id)
    assert stored.copies_available == copies - len(successes)
    assert 0 <= stored.copies_available <= stored.total_copies

def test_same_user_racing_for_same_book_gets_one_loan(ledger, catalog, day0):
    book = catalog.add_book("Two Copies", "Author", 2)

    results = run_concurrently(
        lambda: ledger.borrow("alice", book.book_id, now=day0),
        lambda: ledger.borrow("alice", book.book_id, now=day0),
    )

    assert sorted(r[0] for r in results) == ["err", "ok"]
    error = next(r[1] for r in results if r[0] == "err")
    assert isinstance(error, AlreadyBorrowed)
    assert len(ledger.list_active_loans("alice")) == 1
    assert catalog.get_book(book.book_id).copies_available == 1

def test_double_return_releases_once(ledger, catalog, day0):
    book = catalog.add_book("Returned Twice", "Author", 1)
    loan = ledger.borrow("alice", book.book_id, now=day0)
    later = day0 + timedelta(days=20)

    results = run_concurrently(
        lambda: ledger.return_loan(loan.loan_id, "alice", now=later),
        lambda: ledger.return_loan(loan.loan_id, "alice", now=later),
    )

    assert sorted(r[0] for r in results) == ["err", "ok"]
    assert isinstance(next(r[1] for r in results if r[0] == "err"), LoanNotFound)
    assert catalog.get_book(book.book_id).copies_available == 1
    assert ledger.get_loan(loan.loan_id).fine == 60
    assert [e.action for e in ledger.list_events(loan_id=loan.loan_id)] == ["borrowed", "returned"]
