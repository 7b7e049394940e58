from datetime import datetime
from typing import Any, Dict, Optional

from catalog import Catalog
from database import connection, resolve_database_file
from ledger import LoanLedger


class Library:
    """Wires the catalog and the loan ledger to one database."""

    def __init__(self, db_file: Optional[str] = None, loan_period_days: Optional[int] = None,
                 fine_per_day: Optional[int] = None) -> None:
        self.db_file = resolve_database_file(db_file)
        self.catalog = Catalog(self.db_file)
        self.ledger = LoanLedger(self.catalog, loan_period_days=loan_period_days, fine_per_day=fine_per_day)

    def get_statistics(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Catalog counters plus loan totals."""
        with connection(self.db_file) as conn:
            row = conn.execute(
                """
                SELECT COUNT(*) AS total_books,
                       COALESCE(SUM(total_copies), 0) AS total_copies,
                       COALESCE(SUM(copies_available), 0) AS copies_available
                FROM books
                """
            ).fetchone()
        stats: Dict[str, Any] = dict(row)
        stats.update(self.ledger.statistics(now))
        return stats
