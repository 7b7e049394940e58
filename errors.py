"""Error taxonomy shared by the catalog and the loan ledger.

Three families are kept apart so callers can react differently:

- ``BusinessRuleError``: an expected outcome (nothing to lend, already lent,
  nothing to return). Report it to the user as-is and do not retry.
- ``InvariantViolation``: the copy counters and the ledger disagree. The
  operation is aborted and nothing is written.
- ``StorageError``: the database was busy or failed. Safe to retry.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base class for every error raised by the lending core."""

    code = "ledger_error"
    retryable = False

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code}


class BusinessRuleError(LedgerError):
    code = "rejected"


class BookNotFound(BusinessRuleError, LookupError):
    code = "book_not_found"

    def __init__(self, book_id: int) -> None:
        super().__init__(f"Book {book_id} not found.", book_id=book_id)
        self.book_id = book_id


class Unavailable(BusinessRuleError):
    """No copy of the book is left to lend."""

    code = "unavailable"

    def __init__(self, book_id: int) -> None:
        super().__init__(f"No copies of book {book_id} are available.", book_id=book_id)
        self.book_id = book_id


class AlreadyBorrowed(BusinessRuleError):
    """The user already holds an active loan for this book."""

    code = "already_borrowed"

    def __init__(self, user_id: str, book_id: int) -> None:
        super().__init__(
            f"User {user_id} already has book {book_id} on loan.",
            user_id=user_id,
            book_id=book_id,
        )
        self.user_id = user_id
        self.book_id = book_id


class LoanNotFound(BusinessRuleError, LookupError):
    """No active loan with that id belongs to that user."""

    code = "not_found"

    def __init__(self, loan_id: int, user_id: Optional[str] = None) -> None:
        if user_id is None:
            message = f"Loan {loan_id} not found."
        else:
            message = f"No active loan {loan_id} found for user {user_id}."
        super().__init__(message, loan_id=loan_id, user_id=user_id)
        self.loan_id = loan_id
        self.user_id = user_id


class CopiesOutstanding(BusinessRuleError):
    code = "copies_outstanding"

    def __init__(self, book_id: int, new_total: int, lent_out: int) -> None:
        super().__init__(
            f"Cannot set total copies of book {book_id} to {new_total}: {lent_out} copies are on loan.",
            book_id=book_id,
            new_total=new_total,
            lent_out=lent_out,
        )
        self.book_id = book_id
        self.new_total = new_total
        self.lent_out = lent_out


class BookHasActiveLoans(BusinessRuleError):
    code = "book_has_active_loans"

    def __init__(self, book_id: int, lent_out: int) -> None:
        super().__init__(
            f"Cannot remove book {book_id}: {lent_out} copies are on loan.",
            book_id=book_id,
            lent_out=lent_out,
        )
        self.book_id = book_id
        self.lent_out = lent_out


class InvariantViolation(LedgerError):
    """Copy counters would leave ``0 <= copies_available <= total_copies``."""

    code = "invariant_violation"


class StorageError(LedgerError):
    """Transient storage failure (locked database, I/O error)."""

    code = "storage_unavailable"
    retryable = True
