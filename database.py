import logging
import os
import sqlite3
import tempfile
from contextlib import contextmanager
from typing import Iterator

from dotenv import load_dotenv

# Make sure .env is loaded before the environment is read, whatever the import order.
load_dotenv()

logger = logging.getLogger(__name__)

# Default database file.
# Priority:
# 1) LIBRARY_DB_FILE (explicit override)
# 2) LIBRARY_DATA_FILE (legacy name)
# 3) per-process temp file
DATABASE_FILE = (
    os.environ.get("LIBRARY_DB_FILE")
    or os.environ.get("LIBRARY_DATA_FILE")
    or os.path.join(tempfile.gettempdir(), f"library_{os.getpid()}.db")
)


def get_db_connection() -> sqlite3.Connection:
    """Open a connection to the SQLite database.

    Connections run in autocommit mode; writes that must stay together go
    through :func:`transaction`.
    """
    conn = sqlite3.connect(DATABASE_FILE, isolation_level=None, check_same_thread=False, timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON;")
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    return conn


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """Scoped write transaction: commit on success, roll back on any exit path.

    ``BEGIN IMMEDIATE`` takes the database write lock up front, so two
    requests touching the same loan are serialized and the second one sees
    the first one's committed state.
    """
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.rollback()
        logger.debug("Transaction rolled back")
        raise
    try:
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        raise


def create_tables() -> None:
    """Create the tables if they do not exist yet."""
    conn = get_db_connection()
    try:
        cursor = conn.cursor()
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                email TEXT UNIQUE NOT NULL,
                role TEXT NOT NULL CHECK (role IN ('librarian', 'student', 'faculty')),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                title TEXT NOT NULL,
                author TEXT NOT NULL,
                isbn TEXT UNIQUE,
                category TEXT,
                available_quantity INTEGER NOT NULL DEFAULT 0,
                total_quantity INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                CHECK (available_quantity >= 0 AND available_quantity <= total_quantity)
            )
        """)

        # One row per physical copy lent out
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS issued_books (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                book_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                issue_date TEXT NOT NULL,
                due_date TEXT NOT NULL,
                actual_return_date TEXT,
                status TEXT NOT NULL DEFAULT 'issued' CHECK (status IN ('issued', 'returned', 'overdue')),
                fine_cents INTEGER NOT NULL DEFAULT 0 CHECK (fine_cents >= 0),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (book_id) REFERENCES books(id) ON DELETE CASCADE,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS fines (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                issued_book_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
                reason TEXT,
                status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending', 'paid')),
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (issued_book_id) REFERENCES issued_books(id) ON DELETE CASCADE,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS payments (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                fine_id INTEGER NOT NULL,
                user_id INTEGER NOT NULL,
                amount_cents INTEGER NOT NULL,
                payment_date TEXT NOT NULL,
                payment_method TEXT,
                receipt_number TEXT UNIQUE,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (fine_id) REFERENCES fines(id) ON DELETE CASCADE,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS notifications (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                message TEXT NOT NULL,
                is_read INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                FOREIGN KEY (user_id) REFERENCES users(id) ON DELETE CASCADE
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_books_title ON books(title)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_issued_books_status ON issued_books(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_issued_books_due_date ON issued_books(due_date)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_issued_books_user ON issued_books(user_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_fines_user_status ON fines(user_id, status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, is_read)")
    finally:
        conn.close()


def initialize_database() -> None:
    """Initialize the database, creating tables when needed."""
    create_tables()
