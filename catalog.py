import logging
import sqlite3
from typing import List, Optional

from book import Book
from config import settings
from database import connection, initialize_database, resolve_database_file, transaction
from errors import BookHasActiveLoans, BookNotFound, CopiesOutstanding, InvariantViolation, Unavailable
from validators import CopyCountValidator, validate_new_book

# Configure logging
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

BOOK_COLUMNS = "id, title, author, isbn, total_copies, copies_available, created_at"


class Catalog:
    """Owns the per-book copy counters.

    Every change to ``copies_available`` is a single conditional UPDATE, so
    ``0 <= copies_available <= total_copies`` holds under concurrent callers
    without any read-then-write window. The catalog knows nothing about loans.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = resolve_database_file(db_file)
        initialize_database(self.db_file)

    # ------------------------- Catalog collaborator ------------------------- #
    def add_book(self, title: str, author: str, total_copies: int, isbn: Optional[str] = None) -> Book:
        """Add a title with all of its copies available."""
        title, author, isbn = validate_new_book(title, author, total_copies, isbn)
        with connection(self.db_file) as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO books (title, author, isbn, total_copies, copies_available) VALUES (?, ?, ?, ?, ?)",
                    (title, author, isbn, total_copies, total_copies),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"Book with ISBN {isbn} already exists.") from e
            book = self._fetch(conn, cursor.lastrowid)
        logger.info(f"Book added: id={book.book_id}, title={book.title!r}, copies={book.total_copies}")
        return book

    def get_book(self, book_id: int) -> Book:
        with connection(self.db_file) as conn:
            return self._fetch(conn, book_id)

    def find_book(self, book_id: int) -> Optional[Book]:
        try:
            return self.get_book(book_id)
        except BookNotFound:
            return None

    def book_exists(self, book_id: int) -> bool:
        with connection(self.db_file) as conn:
            return self._exists(conn, book_id)

    def list_books(self, available_only: bool = False) -> List[Book]:
        query = f"SELECT {BOOK_COLUMNS} FROM books"
        if available_only:
            query += " WHERE copies_available > 0"
        query += " ORDER BY title, id"
        with connection(self.db_file) as conn:
            rows = conn.execute(query).fetchall()
        return [Book.from_dict(dict(row)) for row in rows]

    def remove_book(self, book_id: int) -> None:
        """Delete a title. Refused while any of its copies is on loan."""
        with connection(self.db_file) as conn:
            with transaction(conn, reconcile_hint=f"remove book_id={book_id}"):
                cursor = conn.execute(
                    "DELETE FROM books WHERE id = ? AND copies_available = total_copies", (book_id,)
                )
                if cursor.rowcount == 0:
                    book = self._fetch(conn, book_id)
                    logger.warning(f"Refused to remove book {book_id}: {book.lent_out} copies on loan")
                    raise BookHasActiveLoans(book_id, book.lent_out)
        logger.info(f"Book removed: id={book_id}")

    # ------------------------- Copy tracker ------------------------- #
    def set_total_copies(self, book_id: int, new_total: int) -> Book:
        """Change the number of copies owned, keeping every lent-out copy accounted for.

        ``copies_available`` becomes ``new_total - lent_out``. A total below the
        number of copies currently on loan is rejected.
        """
        if not CopyCountValidator.validate_total(new_total):
            raise ValueError("Total copies must be a non-negative integer.")
        with connection(self.db_file) as conn:
            with transaction(conn, reconcile_hint=f"set_total_copies book_id={book_id}"):
                # SET expressions read the pre-update column values
                cursor = conn.execute(
                    """
                    UPDATE books
                    SET copies_available = ? - (total_copies - copies_available),
                        total_copies = ?
                    WHERE id = ? AND total_copies - copies_available <= ?
                    """,
                    (new_total, new_total, book_id, new_total),
                )
                if cursor.rowcount == 0:
                    book = self._fetch(conn, book_id)
                    logger.warning(
                        f"Refused to set total copies of book {book_id} to {new_total}: {book.lent_out} on loan"
                    )
                    raise CopiesOutstanding(book_id, new_total, book.lent_out)
                book = self._fetch(conn, book_id)
        logger.info(f"Book {book_id} total copies set to {new_total} ({book.copies_available} available)")
        return book

    def reserve_copy(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> None:
        """Take one copy off the shelf, or raise ``Unavailable``.

        Pass ``conn`` to take part in the caller's open transaction.
        """
        if conn is None:
            with connection(self.db_file) as own:
                with transaction(own, reconcile_hint=f"reserve book_id={book_id}"):
                    self._reserve(own, book_id)
            return
        self._reserve(conn, book_id)

    def release_copy(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> None:
        """Put one copy back on the shelf.

        A release that would exceed ``total_copies`` means the ledger and the
        counters disagree. It is logged and rejected, never clamped.
        """
        if conn is None:
            with connection(self.db_file) as own:
                with transaction(own, reconcile_hint=f"release book_id={book_id}"):
                    self._release(own, book_id)
            return
        self._release(conn, book_id)

    # ------------------------- Internals ------------------------- #
    def _reserve(self, conn: sqlite3.Connection, book_id: int) -> None:
        cursor = conn.execute(
            "UPDATE books SET copies_available = copies_available - 1 WHERE id = ? AND copies_available >= 1",
            (book_id,),
        )
        if cursor.rowcount == 1:
            return
        if not self._exists(conn, book_id):
            raise BookNotFound(book_id)
        raise Unavailable(book_id)

    def _release(self, conn: sqlite3.Connection, book_id: int) -> None:
        cursor = conn.execute(
            "UPDATE books SET copies_available = copies_available + 1 WHERE id = ? AND copies_available < total_copies",
            (book_id,),
        )
        if cursor.rowcount == 1:
            return
        row = conn.execute(
            "SELECT total_copies, copies_available FROM books WHERE id = ?", (book_id,)
        ).fetchone()
        if row is None:
            logger.error(f"Invariant violation: release of book {book_id} which is not in the catalog")
            raise InvariantViolation(f"Release of unknown book {book_id}.", book_id=book_id)
        logger.error(
            f"Invariant violation: release of book {book_id} would exceed total "
            f"(available={row['copies_available']}, total={row['total_copies']})"
        )
        raise InvariantViolation(
            f"Release of book {book_id} would exceed its {row['total_copies']} copies.",
            book_id=book_id,
            total_copies=row["total_copies"],
            copies_available=row["copies_available"],
        )

    @staticmethod
    def _exists(conn: sqlite3.Connection, book_id: int) -> bool:
        return conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone() is not None

    @staticmethod
    def _fetch(conn: sqlite3.Connection, book_id: int) -> Book:
        row = conn.execute(f"SELECT {BOOK_COLUMNS} FROM books WHERE id = ?", (book_id,)).fetchone()
        if row is None:
            raise BookNotFound(book_id)
        return Book.from_dict(dict(row))
