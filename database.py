import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from dotenv import load_dotenv

from config import settings
from errors import InvariantViolation, StorageError

# Make sure .env is loaded before LIBRARY_DB_FILE is read below.
load_dotenv()

logger = logging.getLogger(__name__)


def resolve_database_file(db_file: Optional[str] = None) -> str:
    """Pick the database file to use.

    Priority:
    1) an explicit ``db_file`` argument
    2) LIBRARY_DB_FILE from the environment, read at call time so tests can switch it
    3) ``settings.database_file``
    """
    return db_file or os.environ.get("LIBRARY_DB_FILE") or settings.database_file


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    The connection runs in autocommit mode; writers open their own
    ``BEGIN IMMEDIATE`` transaction through :func:`transaction`.
    """
    conn = sqlite3.connect(
        resolve_database_file(db_file),
        timeout=settings.database_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


@contextmanager
def connection(db_file: Optional[str] = None) -> Iterator[sqlite3.Connection]:
    """Open a connection, close it afterwards and map sqlite errors onto the ledger taxonomy.

    Errors raised by the caller's own code (business rejections) pass through untouched.
    """
    try:
        conn = get_db_connection(db_file)
    except sqlite3.Error as exc:
        logger.error(f"Could not open database: {exc}")
        raise StorageError(f"Database unavailable: {exc}") from exc
    try:
        yield conn
    except sqlite3.IntegrityError as exc:
        # CHECK constraints on the copy counters are the last line of defence
        logger.error(f"Integrity check failed: {exc}")
        raise InvariantViolation(f"Storage constraint violated: {exc}") from exc
    except sqlite3.Error as exc:
        logger.warning(f"Transient storage failure: {exc}")
        raise StorageError(f"Storage operation failed: {exc}") from exc
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection, reconcile_hint: str = "") -> Iterator[sqlite3.Connection]:
    """Run a block inside ``BEGIN IMMEDIATE`` ... ``COMMIT``.

    Any exception rolls back, which undoes a copy reservation made earlier in
    the block. If the rollback itself fails the inconsistency is logged for
    reconciliation and the original error is re-raised.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        try:
            conn.rollback()
        except sqlite3.Error as rollback_exc:
            logger.critical(
                f"Rollback failed, manual reconciliation needed ({reconcile_hint or 'no context'}): {rollback_exc}"
            )
        raise
    else:
        conn.commit()


def create_tables(db_file: Optional[str] = None) -> None:
    """Creates the necessary tables in the database if they don't exist."""
    conn = get_db_connection(db_file)
    try:
        cursor = conn.cursor()
        # WAL is persistent per file; readers proceed while a borrow or return holds the write lock
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT UNIQUE,
                total_copies INTEGER NOT NULL,
                copies_available INTEGER NOT NULL,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                CHECK (total_copies >= 0),
                CHECK (copies_available >= 0 AND copies_available <= total_copies)
            )
        """)

        # book_id is a weak reference: no foreign key, loans outlive catalog edits
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS loans (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                book_id INTEGER NOT NULL,
                borrow_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                returned INTEGER NOT NULL DEFAULT 0 CHECK (returned IN (0, 1)),
                fine INTEGER NOT NULL DEFAULT 0 CHECK (fine >= 0)
            )
        """)

        # Activity log; append-only
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS loan_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                loan_id INTEGER NOT NULL,
                user_id TEXT NOT NULL,
                book_id INTEGER NOT NULL,
                action TEXT NOT NULL CHECK (action IN ('borrowed', 'returned')),
                occurred_at TEXT NOT NULL,
                details TEXT
            )
        """)

        # At most one active loan per (user, book)
        cursor.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_loans_active_user_book "
            "ON loans(user_id, book_id) WHERE returned = 0"
        )
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_user_id ON loans(user_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_book_id ON loans(book_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loans_due_date ON loans(returned, due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loan_events_loan_id ON loan_events(loan_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_loan_events_user_id ON loan_events(user_id)")
    finally:
        conn.close()


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initializes the database, creating tables if needed."""
    try:
        create_tables(db_file)
    except sqlite3.Error as exc:
        raise StorageError(f"Could not initialize database: {exc}") from exc
