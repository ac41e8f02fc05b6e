import logging
import sqlite3
from typing import List, Optional, Dict, Any

import database
from database import get_db_connection, initialize_database, transaction
from fines import total_unpaid_fines
from models import Book, Member, OPEN_LOAN_STATUSES, Role
from utils.validators import ISBNValidator, TextValidator

logger = logging.getLogger(__name__)


class InventoryError(Exception):
    """A copy-count change would leave a book outside 0 <= available <= total."""


def adjust_inventory(conn: sqlite3.Connection, book_id: int, delta: int) -> int:
    """Shift a book's available copies by ``delta`` and return the new count.

    Runs inside the caller's transaction. The update is conditional, so a
    change that would break the bounds touches nothing and raises
    :class:`InventoryError`.
    """
    cursor = conn.execute(
        """
        UPDATE books
        SET available_quantity = available_quantity + ?, updated_at = CURRENT_TIMESTAMP
        WHERE id = ?
          AND available_quantity + ? >= 0
          AND available_quantity + ? <= total_quantity
        """,
        (delta, book_id, delta, delta),
    )
    if cursor.rowcount == 0:
        row = conn.execute(
            "SELECT available_quantity, total_quantity FROM books WHERE id = ?", (book_id,)
        ).fetchone()
        if row is None:
            raise InventoryError(f"Book {book_id} does not exist.")
        raise InventoryError(
            f"Cannot change available copies of book {book_id} by {delta:+d} "
            f"({row['available_quantity']}/{row['total_quantity']} available)."
        )
    row = conn.execute("SELECT available_quantity FROM books WHERE id = ?", (book_id,)).fetchone()
    return row["available_quantity"]


class Library:
    """Manages the catalog, the members and their persistence."""

    def __init__(self, db_file: Optional[str] = None) -> None:
        # Callers (and tests) can point the module-level helpers in database.py
        # at another file before the schema is created.
        if db_file:
            database.DATABASE_FILE = db_file
        initialize_database()

    # ------------------------- Catalog ------------------------- #
    def add_book(self, book: Book) -> Book:
        """Add a title with its copies. Prevent duplicates by ISBN."""
        if not TextValidator.validate_title(book.title):
            raise ValueError("Title cannot be empty.")
        if not TextValidator.validate_author(book.author):
            raise ValueError("Author cannot be empty.")
        if book.isbn:
            book.isbn = ISBNValidator.normalize_isbn(book.isbn)
            if not ISBNValidator.is_valid_isbn(book.isbn):
                raise ValueError("Invalid ISBN format.")
        else:
            book.isbn = None
        if book.total_quantity < 1:
            raise ValueError("A book needs at least one copy.")
        book.available_quantity = book.total_quantity

        conn = get_db_connection()
        try:
            cursor = conn.execute(
                """
                INSERT INTO books (title, author, isbn, category, available_quantity, total_quantity)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (book.title, book.author, book.isbn, book.category, book.available_quantity, book.total_quantity),
            )
            book.id = cursor.lastrowid
            logger.info("Book %s added: %s (%d copies)", book.id, book.title, book.total_quantity)
            return book
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Book with ISBN {book.isbn} already exists.") from e
        finally:
            conn.close()

    def find_book(self, book_id: int) -> Optional[Book]:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
            return Book.from_row(row) if row else None
        finally:
            conn.close()

    def find_book_by_isbn(self, isbn: str) -> Optional[Book]:
        norm = ISBNValidator.normalize_isbn(isbn)
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM books WHERE isbn = ?", (norm,)).fetchone()
            return Book.from_row(row) if row else None
        finally:
            conn.close()

    def list_books(self) -> List[Book]:
        conn = get_db_connection()
        try:
            rows = conn.execute("SELECT * FROM books ORDER BY title").fetchall()
            return [Book.from_row(row) for row in rows]
        finally:
            conn.close()

    def search_books(self, query: str) -> List[Book]:
        """Search for books by title or author."""
        conn = get_db_connection()
        try:
            rows = conn.execute(
                "SELECT * FROM books WHERE title LIKE ? OR author LIKE ? ORDER BY title",
                (f"%{query}%", f"%{query}%"),
            ).fetchall()
            return [Book.from_row(row) for row in rows]
        finally:
            conn.close()

    def update_book(
        self,
        book_id: int,
        *,
        title: Optional[str] = None,
        author: Optional[str] = None,
        category: Optional[str] = None,
        total_quantity: Optional[int] = None,
    ) -> Optional[Book]:
        """Update catalog fields of a book. Returns the updated book or None if not found.

        Changing ``total_quantity`` shifts the available copies by the same
        amount; copies that are currently lent out cannot be removed.
        """
        if title is None and author is None and category is None and total_quantity is None:
            raise ValueError("Nothing to update.")

        conn = get_db_connection()
        try:
            with transaction(conn):
                row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
                if row is None:
                    return None
                book = Book.from_row(row)
                if title is not None and title.strip():
                    book.title = title.strip()
                if author is not None and author.strip():
                    book.author = author.strip()
                if category is not None:
                    book.category = category.strip() or None
                if total_quantity is not None:
                    lent_out = book.total_quantity - book.available_quantity
                    if total_quantity < lent_out:
                        raise ValueError(
                            f"Cannot reduce copies to {total_quantity}: {lent_out} are currently issued."
                        )
                    book.available_quantity = total_quantity - lent_out
                    book.total_quantity = total_quantity
                conn.execute(
                    """
                    UPDATE books
                    SET title = ?, author = ?, category = ?, total_quantity = ?, available_quantity = ?,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE id = ?
                    """,
                    (book.title, book.author, book.category, book.total_quantity, book.available_quantity, book_id),
                )
            return book
        finally:
            conn.close()

    def remove_book(self, book_id: int) -> bool:
        conn = get_db_connection()
        try:
            with transaction(conn):
                placeholders = ", ".join("?" for _ in OPEN_LOAN_STATUSES)
                open_loans = conn.execute(
                    f"SELECT COUNT(*) FROM issued_books WHERE book_id = ? AND status IN ({placeholders})",
                    (book_id, *OPEN_LOAN_STATUSES),
                ).fetchone()[0]
                if open_loans:
                    raise ValueError(f"Book {book_id} has {open_loans} copies on loan.")
                cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
            return cursor.rowcount > 0
        finally:
            conn.close()

    # ------------------------- Members ------------------------- #
    def add_member(self, member: Member) -> Member:
        if not TextValidator.validate_author(member.name):
            raise ValueError("Name cannot be empty.")
        if not TextValidator.validate_email(member.email):
            raise ValueError(f"Invalid email address: {member.email}")
        member.name = member.name.strip()
        member.email = member.email.strip().lower()
        role = Role(member.role)

        conn = get_db_connection()
        try:
            cursor = conn.execute(
                "INSERT INTO users (name, email, role) VALUES (?, ?, ?)",
                (member.name, member.email, role.value),
            )
            member.id = cursor.lastrowid
            member.role = role
            return member
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Member with email {member.email} already exists.") from e
        finally:
            conn.close()

    def find_member(self, member_id: int) -> Optional[Member]:
        conn = get_db_connection()
        try:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (member_id,)).fetchone()
            return Member.from_row(row) if row else None
        finally:
            conn.close()

    def list_members(self) -> List[Member]:
        conn = get_db_connection()
        try:
            rows = conn.execute("SELECT * FROM users ORDER BY name").fetchall()
            return [Member.from_row(row) for row in rows]
        finally:
            conn.close()

    # ------------------------- Statistics ------------------------- #
    def get_statistics(self) -> Dict[str, Any]:
        """Dashboard counters."""
        conn = get_db_connection()
        try:
            cursor = conn.cursor()
            cursor.execute("SELECT COUNT(*), COALESCE(SUM(total_quantity), 0) FROM books")
            total_titles, total_copies = cursor.fetchone()

            placeholders = ", ".join("?" for _ in OPEN_LOAN_STATUSES)
            cursor.execute(
                f"SELECT COUNT(*) FROM issued_books WHERE status IN ({placeholders})", OPEN_LOAN_STATUSES
            )
            issued_copies = cursor.fetchone()[0]

            cursor.execute("SELECT COUNT(*) FROM users WHERE role != ?", (Role.LIBRARIAN.value,))
            total_members = cursor.fetchone()[0]

            return {
                "total_titles": total_titles,
                "total_copies": total_copies,
                "issued_copies": issued_copies,
                "total_members": total_members,
                "unpaid_fines": str(total_unpaid_fines(conn)),
            }
        finally:
            conn.close()
