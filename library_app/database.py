import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from config import settings

logger = logging.getLogger(__name__)

# Default database file. Library(db_file=...) and the LIBRARY_DB_FILE
# environment variable (through settings) both override it.
DATABASE_FILE = settings.database_file


def get_db_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode (``isolation_level=None``); multi-statement
    work goes through :func:`transaction` so the boundaries are explicit.
    """
    conn = sqlite3.connect(
        db_file or DATABASE_FILE,
        timeout=settings.database_timeout,
        isolation_level=None,
        check_same_thread=False,
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Run a block inside one write transaction.

    ``BEGIN IMMEDIATE`` takes the database write lock up front, so concurrent
    writers queue behind each other instead of failing at commit time.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def create_tables(db_file: Optional[str] = None) -> None:
    """Create the required tables if they do not exist yet."""
    conn = get_db_connection(db_file)
    try:
        # WAL persists in the database file
        conn.execute("PRAGMA journal_mode=WAL;")
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                category TEXT NOT NULL,
                stock INTEGER NOT NULL DEFAULT 0 CHECK(stock >= 0),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS members (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT NOT NULL UNIQUE COLLATE NOCASE,
                member_code TEXT NOT NULL UNIQUE,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS borrowings (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                member_id INTEGER NOT NULL,
                borrow_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                return_date TEXT,
                status TEXT NOT NULL DEFAULT 'borrowed'
                    CHECK(status IN ('borrowed', 'returned', 'overdue')),
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE RESTRICT
            )
        """)

        # Borrowing-book link table
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS borrowing_books (
                borrowing_id INTEGER NOT NULL,
                book_id INTEGER NOT NULL,
                PRIMARY KEY (borrowing_id, book_id),
                FOREIGN KEY (borrowing_id) REFERENCES borrowings(id) ON DELETE CASCADE,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE RESTRICT
            )
        """)

        # Database-level counters (member codes)
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS sequences (
                name TEXT PRIMARY KEY,
                value INTEGER NOT NULL DEFAULT 0
            )
        """)
        cursor.execute("INSERT OR IGNORE INTO sequences (name, value) VALUES ('member_code', 0)")

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_category ON books(category)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrowings_member_id ON borrowings(member_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrowings_status ON borrowings(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_borrowing_books_book_id ON borrowing_books(book_id)")
    finally:
        conn.close()


def next_sequence_value(conn: sqlite3.Connection, name: str) -> int:
    """Increment and return a named counter. Call inside a transaction."""
    cursor = conn.execute("UPDATE sequences SET value = value + 1 WHERE name = ?", (name,))
    if cursor.rowcount == 0:
        conn.execute("INSERT INTO sequences (name, value) VALUES (?, 1)", (name,))
        return 1
    row = conn.execute("SELECT value FROM sequences WHERE name = ?", (name,)).fetchone()
    return row[0]


def initialize_database(db_file: Optional[str] = None) -> None:
    """Initialize the database, creating tables where needed."""
    create_tables(db_file)
    logger.debug("Database ready at %s", db_file or DATABASE_FILE)
