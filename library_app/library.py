import logging
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence

import library_app.database as database
from config import settings
from library_app.book import Book
from library_app.borrowing import Borrowing, BorrowingStatus, as_utc, format_timestamp, utcnow
from library_app.database import get_db_connection, initialize_database, next_sequence_value, transaction
from library_app.errors import NotFoundError, ValidationError
from library_app.loans import LoanStore
from library_app.member import Member, format_member_code
from library_app.stock import StockLedger
from library_app.validators import BookValidator, MemberValidator, is_record_id

logger = logging.getLogger(__name__)

BOOK_SORT_FIELDS = {"title", "author", "category", "stock", "created_at"}
MEMBER_SORT_FIELDS = {"name", "email", "member_code", "created_at"}


class Library:
    """Manages the catalogue, the members and the borrowing lifecycle.

    Every operation opens its own connection, so one instance can be shared by
    the request handlers of a threaded server.
    """

    def __init__(self, db_file: Optional[str] = None, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.db_file = db_file or database.DATABASE_FILE
        # Ensure the schema is current on every start-up
        initialize_database(self.db_file)
        self.clock = clock or utcnow
        self.stock = StockLedger(self.db_file)
        self.loans = LoanStore(self.stock)

    def _connect(self) -> sqlite3.Connection:
        return get_db_connection(self.db_file)

    def now(self) -> datetime:
        return as_utc(self.clock())

    @staticmethod
    def _order_clause(sort_by: str, order: str, allowed: set) -> str:
        if sort_by not in allowed:
            raise ValidationError.single("sort_by", f"Must be one of: {', '.join(sorted(allowed))}.")
        if order not in ("asc", "desc"):
            raise ValidationError.single("order", "Must be 'asc' or 'desc'.")
        collate = " COLLATE NOCASE" if sort_by not in ("stock", "created_at") else ""
        return f" ORDER BY {sort_by}{collate} {order.upper()}, id ASC"

    # ------------------------- Books ------------------------- #
    def add_book(self, book: Book) -> Book:
        """Validate and store a pre-constructed Book. Fills in its id and timestamps."""
        BookValidator.validate(book.to_dict())
        stamp = format_timestamp(self.now())
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                INSERT INTO books (title, author, category, stock, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (book.title, book.author, book.category, book.stock, stamp, stamp),
            )
            book.id = cursor.lastrowid
            book.created_at = book.updated_at = stamp
        finally:
            conn.close()
        logger.info("Book %s added: %s (stock %d)", book.id, book.title, book.stock)
        return book

    def find_book(self, book_id: int) -> Optional[Book]:
        if not is_record_id(book_id):
            return None
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM books WHERE id = ?", (book_id,)).fetchone()
            return Book.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def get_book(self, book_id: int) -> Book:
        book = self.find_book(book_id)
        if book is None:
            raise NotFoundError("book", book_id)
        return book

    def list_books(self, q: Optional[str] = None, category: Optional[str] = None,
                   sort_by: str = "title", order: str = "asc", available: bool = False) -> List[Book]:
        """List books, optionally searching title/author and filtering by category.

        With ``available=True`` only books with a copy on the shelf are listed.
        """
        query = "SELECT * FROM books WHERE 1 = 1"
        params: List[Any] = []
        if q:
            query += " AND (title LIKE ? ESCAPE '\\' OR author LIKE ? ESCAPE '\\')"
            params.extend([_like_pattern(q)] * 2)
        if category:
            query += " AND category = ? COLLATE NOCASE"
            params.append(category)
        query += self._order_clause(sort_by, order, BOOK_SORT_FIELDS)
        conn = self._connect()
        try:
            books = [Book.from_dict(dict(row)) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()
        if available:
            books = [b for b in books if b.available]
        return books

    def update_book(self, book_id: int, changes: Dict[str, Any], partial: bool = False) -> Book:
        """Replace (or, with ``partial=True``, patch) the fields of a book."""
        cleaned = BookValidator.validate(changes, partial=partial)
        if not is_record_id(book_id):
            raise NotFoundError("book", book_id)
        conn = self._connect()
        try:
            with transaction(conn):
                if conn.execute("SELECT 1 FROM books WHERE id = ?", (book_id,)).fetchone() is None:
                    raise NotFoundError("book", book_id)
                assignments = ", ".join(f"{name} = ?" for name in cleaned)
                conn.execute(
                    f"UPDATE books SET {assignments}, updated_at = ? WHERE id = ?",
                    [*cleaned.values(), format_timestamp(self.now()), book_id],
                )
        finally:
            conn.close()
        logger.info("Book %s updated: %s", book_id, sorted(cleaned))
        return self.get_book(book_id)

    def remove_book(self, book_id: int) -> bool:
        """Delete a book. Returns False when it does not exist.

        Books that appear in any borrowing are kept, since borrowings are never deleted.
        """
        if not is_record_id(book_id):
            return False
        conn = self._connect()
        try:
            with transaction(conn):
                if conn.execute("SELECT 1 FROM borrowing_books WHERE book_id = ?", (book_id,)).fetchone():
                    raise ValidationError.single("id", "Book has borrowing history and cannot be deleted.")
                cursor = conn.execute("DELETE FROM books WHERE id = ?", (book_id,))
                removed = cursor.rowcount > 0
        finally:
            conn.close()
        if removed:
            logger.info("Book %s removed", book_id)
        return removed

    # ------------------------- Members ------------------------- #
    def add_member(self, member: Member) -> Member:
        """Validate and store a member, assigning the next member code."""
        MemberValidator.validate({"name": member.name, "email": member.email})
        stamp = format_timestamp(self.now())
        conn = self._connect()
        try:
            with transaction(conn):
                self._ensure_email_free(conn, member.email)
                number = next_sequence_value(conn, "member_code")
                code = format_member_code(number, settings.member_code_prefix, settings.member_code_width)
                cursor = conn.execute(
                    """
                    INSERT INTO members (name, email, member_code, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (member.name, member.email, code, stamp, stamp),
                )
            member.id = cursor.lastrowid
            member.member_code = code
            member.created_at = member.updated_at = stamp
        except sqlite3.IntegrityError as e:
            raise ValidationError.single("email", "This email is already registered.") from e
        finally:
            conn.close()
        logger.info("Member %s registered as %s", member.id, member.member_code)
        return member

    @staticmethod
    def _ensure_email_free(conn: sqlite3.Connection, email: str, member_id: Optional[int] = None) -> None:
        row = conn.execute("SELECT id FROM members WHERE email = ? COLLATE NOCASE", (email,)).fetchone()
        if row is not None and row["id"] != member_id:
            raise ValidationError.single("email", "This email is already registered.")

    def find_member(self, member_id: int) -> Optional[Member]:
        if not is_record_id(member_id):
            return None
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM members WHERE id = ?", (member_id,)).fetchone()
            return Member.from_dict(dict(row)) if row else None
        finally:
            conn.close()

    def get_member(self, member_id: int) -> Member:
        member = self.find_member(member_id)
        if member is None:
            raise NotFoundError("member", member_id)
        return member

    def list_members(self, q: Optional[str] = None, sort_by: str = "member_code", order: str = "asc") -> List[Member]:
        query = "SELECT * FROM members"
        params: List[Any] = []
        if q:
            query += (" WHERE name LIKE ? ESCAPE '\\' OR email LIKE ? ESCAPE '\\'"
                      " OR member_code LIKE ? ESCAPE '\\'")
            params.extend([_like_pattern(q)] * 3)
        query += self._order_clause(sort_by, order, MEMBER_SORT_FIELDS)
        conn = self._connect()
        try:
            return [Member.from_dict(dict(row)) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def update_member(self, member_id: int, changes: Dict[str, Any], partial: bool = False) -> Member:
        """Update name and/or email. The member code never changes."""
        cleaned = MemberValidator.validate(changes, partial=partial)
        if not is_record_id(member_id):
            raise NotFoundError("member", member_id)
        if "email" in cleaned:
            cleaned["email"] = cleaned["email"].lower()
        conn = self._connect()
        try:
            with transaction(conn):
                if conn.execute("SELECT 1 FROM members WHERE id = ?", (member_id,)).fetchone() is None:
                    raise NotFoundError("member", member_id)
                if "email" in cleaned:
                    self._ensure_email_free(conn, cleaned["email"], member_id)
                assignments = ", ".join(f"{name} = ?" for name in cleaned)
                conn.execute(
                    f"UPDATE members SET {assignments}, updated_at = ? WHERE id = ?",
                    [*cleaned.values(), format_timestamp(self.now()), member_id],
                )
        finally:
            conn.close()
        logger.info("Member %s updated: %s", member_id, sorted(cleaned))
        return self.get_member(member_id)

    def remove_member(self, member_id: int) -> bool:
        if not is_record_id(member_id):
            return False
        conn = self._connect()
        try:
            with transaction(conn):
                if conn.execute("SELECT 1 FROM borrowings WHERE member_id = ?", (member_id,)).fetchone():
                    raise ValidationError.single("id", "Member has borrowing history and cannot be deleted.")
                cursor = conn.execute("DELETE FROM members WHERE id = ?", (member_id,))
                removed = cursor.rowcount > 0
        finally:
            conn.close()
        if removed:
            logger.info("Member %s removed", member_id)
        return removed

    # ------------------------- Borrowings ------------------------- #
    def borrow(self, member_id: int, book_ids: Sequence[int], borrow_date: Optional[datetime] = None,
               due_date: Optional[datetime] = None) -> Borrowing:
        """Lend one copy of each book to a member, all or nothing.

        ``borrow_date`` defaults to now and ``due_date`` to the configured loan
        period after it.
        """
        borrow_date = as_utc(borrow_date) if borrow_date is not None else self.now()
        if due_date is None:
            due_date = borrow_date + timedelta(days=settings.default_loan_days)
        conn = self._connect()
        try:
            with transaction(conn):
                borrowing_id = self.loans.create(conn, member_id, list(book_ids), borrow_date,
                                                 as_utc(due_date), self.now())
            return self.loans.get(conn, borrowing_id, self.now())
        finally:
            conn.close()

    def return_borrowing(self, borrowing_id: int, return_date: Optional[datetime] = None) -> Borrowing:
        """Mark a borrowing returned and put its books back in stock."""
        return_date = as_utc(return_date) if return_date is not None else self.now()
        conn = self._connect()
        try:
            with transaction(conn):
                self.loans.mark_returned(conn, borrowing_id, return_date, self.now())
            return self.loans.get(conn, borrowing_id, self.now())
        finally:
            conn.close()

    def get_borrowing(self, borrowing_id: int) -> Borrowing:
        conn = self._connect()
        try:
            return self.loans.get(conn, borrowing_id, self.now())
        finally:
            conn.close()

    def list_borrowings(self, status: Optional[str] = None, member_id: Optional[int] = None) -> List[Borrowing]:
        if status is not None:
            try:
                status = BorrowingStatus(status)
            except ValueError:
                raise ValidationError.single(
                    "status", f"Must be one of: {', '.join(s.value for s in BorrowingStatus)}."
                ) from None
        if member_id is not None and not is_record_id(member_id):
            return []
        conn = self._connect()
        try:
            return self.loans.list(conn, self.now(), status=status, member_id=member_id)
        finally:
            conn.close()

    # ------------------------- Statistics ------------------------- #
    def get_statistics(self) -> Dict[str, Any]:
        conn = self._connect()
        try:
            books = conn.execute("SELECT COUNT(*), COALESCE(SUM(stock), 0) FROM books").fetchone()
            members = conn.execute("SELECT COUNT(*) FROM members").fetchone()[0]
            borrowings = self.loans.count_by_status(conn, self.now())
            return {
                "total_books": books[0],
                "copies_in_stock": books[1],
                "total_members": members,
                "total_borrowings": sum(borrowings.values()),
                "borrowings_by_status": borrowings,
            }
        finally:
            conn.close()

    def close(self) -> None:
        """Connections are opened per operation, so there is nothing to release."""
        return None


def _like_pattern(term: str) -> str:
    """Substring pattern for ``LIKE ... ESCAPE '\\'`` matching ``term`` literally."""
    escaped = term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"
