"""Loan ledger: the borrow / return state machine and its read projections.

Per (user, book) pair a loan goes NoActiveLoan -> Active -> Closed. A closed
loan is never reopened or deleted; borrowing again creates a new record.

Each write runs in one ``BEGIN IMMEDIATE`` transaction that spans the
active-loan check, the copy counter and the loan row. A failure anywhere in
the block rolls the whole unit back, releasing any copy reserved earlier.
"""

import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from catalog import Catalog
from config import settings
from database import connection, transaction
from errors import AlreadyBorrowed, BusinessRuleError, LoanNotFound
from loan import Loan, LoanEvent, compute_fine, format_timestamp, to_utc, utcnow

# Configure logging
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

LOAN_COLUMNS = "id, user_id, book_id, borrow_date, due_date, return_date, returned, fine"


class LoanLedger:
    """Records who has which copy, until when, and what they owed on return."""

    def __init__(self, catalog: Catalog, loan_period_days: Optional[int] = None,
                 fine_per_day: Optional[int] = None) -> None:
        period_days = settings.loan_period_days if loan_period_days is None else loan_period_days
        fine_per_day = settings.fine_per_day if fine_per_day is None else fine_per_day
        if period_days < 1:
            raise ValueError(f"Loan period must be at least one day, got {period_days}.")
        if fine_per_day < 0:
            raise ValueError(f"Fine per day cannot be negative, got {fine_per_day}.")

        self.catalog = catalog
        self.db_file = catalog.db_file
        self.loan_period = timedelta(days=period_days)
        self.fine_per_day = fine_per_day

    # ------------------------- State transitions ------------------------- #
    def borrow(self, user_id: str, book_id: int, now: Optional[datetime] = None) -> Loan:
        """Lend one copy of ``book_id`` to ``user_id``.

        Raises ``AlreadyBorrowed`` if the user already holds this book,
        ``BookNotFound`` / ``Unavailable`` from the copy tracker. On any
        rejection ``copies_available`` is left as it was.
        """
        now = to_utc(now or utcnow())
        due = now + self.loan_period
        hint = f"borrow user_id={user_id} book_id={book_id}: reserved copy may need release"

        with connection(self.db_file) as conn:
            try:
                with transaction(conn, reconcile_hint=hint):
                    if self._active_loan_id(conn, user_id, book_id) is not None:
                        raise AlreadyBorrowed(user_id, book_id)
                    self.catalog.reserve_copy(book_id, conn=conn)
                    cursor = conn.execute(
                        "INSERT INTO loans (user_id, book_id, borrow_date, due_date, returned, fine) "
                        "VALUES (?, ?, ?, ?, 0, 0)",
                        (user_id, book_id, format_timestamp(now), format_timestamp(due)),
                    )
                    loan_id = cursor.lastrowid
                    self._record_event(conn, loan_id, user_id, book_id, "borrowed", now,
                                       f"due {format_timestamp(due)}")
                    loan = self._fetch(conn, loan_id)
            except sqlite3.IntegrityError as exc:
                # the partial unique index caught a duplicate the check above missed
                if "loans.user_id" not in str(exc):
                    raise
                logger.warning(f"Borrow rejected by storage: user {user_id} already has book {book_id}")
                raise AlreadyBorrowed(user_id, book_id) from exc
            except BusinessRuleError as exc:
                logger.warning(f"Borrow rejected: {exc}")
                raise

        logger.info(f"Loan {loan.loan_id} opened: user={user_id}, book={book_id}, due={loan.due_date.isoformat()}")
        return loan

    def return_loan(self, loan_id: int, user_id: str, now: Optional[datetime] = None) -> Loan:
        """Close an active loan, freeze its fine and put the copy back.

        The fine is computed from the due date stored at borrow time. A second
        return of the same loan raises ``LoanNotFound`` and changes nothing.
        """
        now = to_utc(now or utcnow())
        hint = f"return loan_id={loan_id} user_id={user_id}"

        with connection(self.db_file) as conn:
            with transaction(conn, reconcile_hint=hint):
                row = conn.execute(
                    f"SELECT {LOAN_COLUMNS} FROM loans WHERE id = ? AND user_id = ? AND returned = 0",
                    (loan_id, user_id),
                ).fetchone()
                if row is None:
                    logger.warning(f"Return rejected: no active loan {loan_id} for user {user_id}")
                    raise LoanNotFound(loan_id, user_id)
                loan = Loan.from_row(row)
                fine = compute_fine(loan.due_date, now, self.fine_per_day)

                cursor = conn.execute(
                    "UPDATE loans SET return_date = ?, returned = 1, fine = ? WHERE id = ? AND returned = 0",
                    (format_timestamp(now), fine, loan_id),
                )
                if cursor.rowcount != 1:
                    raise LoanNotFound(loan_id, user_id)
                self.catalog.release_copy(loan.book_id, conn=conn)
                self._record_event(conn, loan_id, user_id, loan.book_id, "returned", now, f"fine {fine}")
                closed = self._fetch(conn, loan_id)

        logger.info(f"Loan {loan_id} closed: user={user_id}, book={closed.book_id}, fine={fine}")
        return closed

    # ------------------------- Read projections ------------------------- #
    def get_loan(self, loan_id: int, user_id: Optional[str] = None) -> Loan:
        """Fetch one loan; with ``user_id`` a loan owned by someone else is not found."""
        with connection(self.db_file) as conn:
            loan = self._fetch(conn, loan_id)
        if user_id is not None and loan.user_id != user_id:
            raise LoanNotFound(loan_id)
        return loan

    def list_active_loans(self, user_id: str) -> List[Loan]:
        return self._query(
            f"SELECT {LOAN_COLUMNS} FROM loans WHERE user_id = ? AND returned = 0 ORDER BY borrow_date, id",
            (user_id,),
        )

    def list_all_loans(self, user_id: Optional[str] = None) -> List[Loan]:
        """Every loan, active or closed; ``None`` means all users."""
        if user_id is None:
            return self._query(f"SELECT {LOAN_COLUMNS} FROM loans ORDER BY borrow_date, id", ())
        return self._query(
            f"SELECT {LOAN_COLUMNS} FROM loans WHERE user_id = ? ORDER BY borrow_date, id", (user_id,)
        )

    def list_overdue_loans(self, now: Optional[datetime] = None) -> List[Loan]:
        now = to_utc(now or utcnow())
        return self._query(
            f"SELECT {LOAN_COLUMNS} FROM loans WHERE returned = 0 AND due_date < ? ORDER BY due_date, id",
            (format_timestamp(now),),
        )

    def accrued_fine(self, loan: Loan, now: Optional[datetime] = None) -> int:
        """Fine owed if ``loan`` were returned at ``now``; the frozen fine once it is closed."""
        if loan.returned:
            return loan.fine
        return compute_fine(loan.due_date, to_utc(now or utcnow()), self.fine_per_day)

    def user_summary(self, user_id: str) -> Dict[str, Any]:
        with connection(self.db_file) as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS borrow_count,
                       COALESCE(SUM(CASE WHEN returned = 0 THEN 1 ELSE 0 END), 0) AS active_loans,
                       COALESCE(SUM(fine), 0) AS total_fines
                FROM loans WHERE user_id = ?
                """,
                (user_id,),
            ).fetchone()
        return {
            "user_id": user_id,
            "borrow_count": row["borrow_count"],
            "active_loans": row["active_loans"],
            "total_fines": row["total_fines"],
        }

    def statistics(self, now: Optional[datetime] = None) -> Dict[str, int]:
        now = to_utc(now or utcnow())
        with connection(self.db_file) as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total_loans,
                       COALESCE(SUM(CASE WHEN returned = 0 THEN 1 ELSE 0 END), 0) AS active_loans,
                       COALESCE(SUM(CASE WHEN returned = 0 AND due_date < ? THEN 1 ELSE 0 END), 0) AS overdue_loans,
                       COALESCE(SUM(fine), 0) AS total_fines
                FROM loans
                """,
                (format_timestamp(now),),
            ).fetchone()
        return dict(row)

    def list_events(self, user_id: Optional[str] = None, loan_id: Optional[int] = None) -> List[LoanEvent]:
        clauses = []
        params: list = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if loan_id is not None:
            clauses.append("loan_id = ?")
            params.append(loan_id)
        query = "SELECT id, loan_id, user_id, book_id, action, occurred_at, details FROM loan_events"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id"
        with connection(self.db_file) as conn:
            rows = conn.execute(query, params).fetchall()
        return [LoanEvent.from_row(row) for row in rows]

    # ------------------------- Internals ------------------------- #
    def _query(self, query: str, params: tuple) -> List[Loan]:
        with connection(self.db_file) as conn:
            rows = conn.execute(query, params).fetchall()
        return [Loan.from_row(row) for row in rows]

    @staticmethod
    def _active_loan_id(conn: sqlite3.Connection, user_id: str, book_id: int) -> Optional[int]:
        row = conn.execute(
            "SELECT id FROM loans WHERE user_id = ? AND book_id = ? AND returned = 0", (user_id, book_id)
        ).fetchone()
        return row["id"] if row else None

    @staticmethod
    def _fetch(conn: sqlite3.Connection, loan_id: int) -> Loan:
        row = conn.execute(f"SELECT {LOAN_COLUMNS} FROM loans WHERE id = ?", (loan_id,)).fetchone()
        if row is None:
            raise LoanNotFound(loan_id)
        return Loan.from_row(row)

    @staticmethod
    def _record_event(conn: sqlite3.Connection, loan_id: int, user_id: str, book_id: int, action: str,
                      occurred_at: datetime, details: Optional[str] = None) -> None:
        conn.execute(
            "INSERT INTO loan_events (loan_id, user_id, book_id, action, occurred_at, details) VALUES (?, ?, ?, ?, ?, ?)",
            (loan_id, user_id, book_id, action, format_timestamp(occurred_at), details),
        )
