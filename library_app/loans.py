import logging
import sqlite3
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from library_app.book import Book
from library_app.borrowing import (
    Borrowing,
    BorrowingStatus,
    as_utc,
    format_timestamp,
    parse_timestamp,
)
from library_app.errors import AlreadyReturnedError, NotFoundError, ValidationError
from library_app.member import Member
from library_app.stock import StockLedger
from library_app.validators import is_record_id

logger = logging.getLogger(__name__)


class LoanStore:
    """Borrowing records and their book links.

    Methods take the caller's connection. ``create`` and ``mark_returned`` must
    run inside a transaction: when they raise, the caller rolls back and any
    reservation already made in the same request is undone with it.
    """

    def __init__(self, ledger: StockLedger) -> None:
        self.ledger = ledger

    # ------------------------- Writes ------------------------- #
    def create(self, conn: sqlite3.Connection, member_id: int, book_ids: Sequence[int],
               borrow_date: datetime, due_date: datetime, now: datetime) -> int:
        """Insert a borrowing, reserving one copy of every book. Returns its id.

        ``now`` stamps ``created_at`` and ``updated_at``.
        """
        errors: Dict[str, List[str]] = {}
        if not is_record_id(member_id):
            errors["member_id"] = ["Must be a positive record id."]
        if not book_ids:
            errors["book_ids"] = ["Select at least one book."]
        elif not all(is_record_id(book_id) for book_id in book_ids):
            errors["book_ids"] = ["Must be positive record ids."]
        elif len(set(book_ids)) != len(book_ids):
            errors["book_ids"] = ["A book may only appear once per borrowing."]
        if as_utc(due_date) <= as_utc(borrow_date):
            errors["due_date"] = ["Must be after the borrow date."]
        if errors:
            raise ValidationError(errors)

        if conn.execute("SELECT 1 FROM members WHERE id = ?", (member_id,)).fetchone() is None:
            raise NotFoundError("member", member_id)

        for book_id in book_ids:
            self.ledger.reserve(book_id, conn=conn)

        stamp = format_timestamp(now)
        cursor = conn.execute(
            """
            INSERT INTO borrowings (member_id, borrow_date, due_date, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (member_id, format_timestamp(borrow_date), format_timestamp(due_date),
             BorrowingStatus.BORROWED.value, stamp, stamp),
        )
        borrowing_id = cursor.lastrowid
        conn.executemany(
            "INSERT INTO borrowing_books (borrowing_id, book_id) VALUES (?, ?)",
            [(borrowing_id, book_id) for book_id in book_ids],
        )
        logger.info("Borrowing %s created for member %s with books %s", borrowing_id, member_id, list(book_ids))
        return borrowing_id

    def mark_returned(self, conn: sqlite3.Connection, borrowing_id: int, return_date: datetime,
                      now: datetime) -> None:
        if not is_record_id(borrowing_id):
            raise NotFoundError("borrowing", borrowing_id)
        row = conn.execute(
            "SELECT id, borrow_date, return_date, status FROM borrowings WHERE id = ?", (borrowing_id,)
        ).fetchone()
        if row is None:
            raise NotFoundError("borrowing", borrowing_id)
        if row["return_date"] is not None or row["status"] == BorrowingStatus.RETURNED.value:
            logger.warning("Borrowing %s returned twice", borrowing_id)
            raise AlreadyReturnedError(borrowing_id)
        if as_utc(return_date) < parse_timestamp(row["borrow_date"]):
            raise ValidationError.single("return_date", "Must not be before the borrow date.")

        stamp = format_timestamp(return_date)
        cursor = conn.execute(
            """
            UPDATE borrowings SET return_date = ?, status = ?, updated_at = ?
            WHERE id = ? AND return_date IS NULL
            """,
            (stamp, BorrowingStatus.RETURNED.value, format_timestamp(now), borrowing_id),
        )
        if cursor.rowcount == 0:
            raise AlreadyReturnedError(borrowing_id)

        for book_id in self._book_ids(conn, borrowing_id):
            self.ledger.release(book_id, conn=conn)
        logger.info("Borrowing %s returned at %s", borrowing_id, stamp)

    # ------------------------- Reads ------------------------- #
    def get(self, conn: sqlite3.Connection, borrowing_id: int, now: datetime) -> Borrowing:
        if not is_record_id(borrowing_id):
            raise NotFoundError("borrowing", borrowing_id)
        row = conn.execute("SELECT * FROM borrowings WHERE id = ?", (borrowing_id,)).fetchone()
        if row is None:
            raise NotFoundError("borrowing", borrowing_id)
        return self._load(conn, row, now)

    def list(self, conn: sqlite3.Connection, now: datetime, status: Optional[BorrowingStatus] = None,
             member_id: Optional[int] = None) -> List[Borrowing]:
        """All borrowings, newest first, with their status projected at ``now``.

        The status filter applies to the projected status, so a stale
        'borrowed' row past its due date is listed under 'overdue'.
        """
        query = "SELECT * FROM borrowings"
        params: list = []
        if member_id is not None:
            query += " WHERE member_id = ?"
            params.append(member_id)
        query += " ORDER BY borrow_date DESC, id DESC"
        borrowings = [self._load(conn, row, now) for row in conn.execute(query, params).fetchall()]
        if status is not None:
            borrowings = [b for b in borrowings if b.status is BorrowingStatus(status)]
        return borrowings

    def count_by_status(self, conn: sqlite3.Connection, now: datetime) -> Dict[str, int]:
        counts = {s.value: 0 for s in BorrowingStatus}
        for borrowing in self.list(conn, now):
            counts[borrowing.status.value] += 1
        return counts

    # ------------------------- Helpers ------------------------- #
    @staticmethod
    def _book_ids(conn: sqlite3.Connection, borrowing_id: int) -> List[int]:
        rows = conn.execute(
            "SELECT book_id FROM borrowing_books WHERE borrowing_id = ? ORDER BY book_id", (borrowing_id,)
        ).fetchall()
        return [r["book_id"] for r in rows]

    def _load(self, conn: sqlite3.Connection, row: sqlite3.Row, now: datetime) -> Borrowing:
        book_rows = conn.execute(
            """
            SELECT b.* FROM books b
            JOIN borrowing_books bb ON bb.book_id = b.id
            WHERE bb.borrowing_id = ? ORDER BY b.id
            """,
            (row["id"],),
        ).fetchall()
        member_row = conn.execute("SELECT * FROM members WHERE id = ?", (row["member_id"],)).fetchone()

        borrowing = Borrowing(
            id=row["id"],
            member_id=row["member_id"],
            book_ids=[r["id"] for r in book_rows],
            borrow_date=parse_timestamp(row["borrow_date"]),
            due_date=parse_timestamp(row["due_date"]),
            return_date=parse_timestamp(row["return_date"]),
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            member=Member.from_dict(dict(member_row)) if member_row else None,
            books=[Book.from_dict(dict(r)) for r in book_rows],
        )
        if borrowing.refresh(now):
            # Persist the projection so the stored status does not lag behind
            conn.execute(
                "UPDATE borrowings SET status = ? WHERE id = ? AND return_date IS NULL",
                (borrowing.status.value, borrowing.id),
            )
        return borrowing
