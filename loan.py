"""Loan records, the activity-log row, and the late-return fine policy.

All timestamps are timezone-aware UTC ``datetime`` objects in memory and
ISO-8601 strings with microseconds on disk, so that string comparison in
SQL matches time order.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

ONE_DAY = timedelta(days=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_utc(moment: datetime) -> datetime:
    """Naive datetimes are taken to already be in UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def format_timestamp(moment: datetime) -> str:
    return to_utc(moment).isoformat(timespec="microseconds")


def parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    if raw is None:
        return None
    return to_utc(datetime.fromisoformat(raw))


def days_late(due_date: datetime, returned_at: datetime) -> int:
    """Whole days past the due date, any started day counting as a full one."""
    late = to_utc(returned_at) - to_utc(due_date)
    if late <= timedelta(0):
        return 0
    days, remainder = divmod(late, ONE_DAY)
    return days + 1 if remainder else days


def compute_fine(due_date: datetime, returned_at: datetime, fine_per_day: int) -> int:
    """Flat per-day rate; returning exactly at the due instant costs nothing."""
    return days_late(due_date, returned_at) * fine_per_day


class Loan:
    """One borrow event. Active until returned, then frozen."""

    def __init__(self, loan_id: int, user_id: str, book_id: int, borrow_date: datetime, due_date: datetime,
                 return_date: Optional[datetime] = None, returned: bool = False, fine: int = 0) -> None:
        self.loan_id = loan_id
        self.user_id = user_id
        self.book_id = book_id
        self.borrow_date = to_utc(borrow_date)
        self.due_date = to_utc(due_date)
        self.return_date = to_utc(return_date) if return_date else None
        self.returned = bool(returned)
        self.fine = fine

    @property
    def active(self) -> bool:
        return not self.returned

    @property
    def status(self) -> str:
        return "RETURNED" if self.returned else "BORROWED"

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        if self.returned:
            return False
        return to_utc(now or utcnow()) > self.due_date

    def __repr__(self) -> str:  # pragma: no cover
        return f"Loan(loan_id={self.loan_id!r}, user_id={self.user_id!r}, book_id={self.book_id!r}, status={self.status})"

    def to_dict(self) -> dict:
        return {
            "loan_id": self.loan_id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "borrow_date": format_timestamp(self.borrow_date),
            "due_date": format_timestamp(self.due_date),
            "return_date": format_timestamp(self.return_date) if self.return_date else None,
            "returned": self.returned,
            "fine": self.fine,
            "status": self.status,
        }

    @staticmethod
    def from_row(row) -> "Loan":
        data = dict(row)
        return Loan(
            loan_id=data["id"],
            user_id=data["user_id"],
            book_id=data["book_id"],
            borrow_date=parse_timestamp(data["borrow_date"]),
            due_date=parse_timestamp(data["due_date"]),
            return_date=parse_timestamp(data.get("return_date")),
            returned=bool(data["returned"]),
            fine=data["fine"],
        )


class LoanEvent:
    """A row of the activity log."""

    def __init__(self, event_id: int, loan_id: int, user_id: str, book_id: int, action: str,
                 occurred_at: datetime, details: Optional[str] = None) -> None:
        self.event_id = event_id
        self.loan_id = loan_id
        self.user_id = user_id
        self.book_id = book_id
        self.action = action
        self.occurred_at = to_utc(occurred_at)
        self.details = details

    def to_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "loan_id": self.loan_id,
            "user_id": self.user_id,
            "book_id": self.book_id,
            "action": self.action,
            "occurred_at": format_timestamp(self.occurred_at),
            "details": self.details,
        }

    @staticmethod
    def from_row(row) -> "LoanEvent":
        data = dict(row)
        return LoanEvent(
            event_id=data["id"],
            loan_id=data["loan_id"],
            user_id=data["user_id"],
            book_id=data["book_id"],
            action=data["action"],
            occurred_at=parse_timestamp(data["occurred_at"]),
            details=data.get("details"),
        )
