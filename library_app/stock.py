import logging
import sqlite3
from contextlib import contextmanager
from typing import Iterator, Optional

from library_app.database import get_db_connection, transaction
from library_app.errors import NotFoundError, OutOfStockError, ValidationError

logger = logging.getLogger(__name__)


class StockLedger:
    """Available copies per book title.

    Every method accepts an optional connection so it can take part in the
    caller's transaction; without one it runs in a short transaction of its own.
    """

    def __init__(self, db_file: Optional[str] = None) -> None:
        self.db_file = db_file

    @contextmanager
    def _connection(self, conn: Optional[sqlite3.Connection]) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        own = get_db_connection(self.db_file)
        try:
            with transaction(own):
                yield own
        finally:
            own.close()

    @staticmethod
    def _check_qty(qty: int) -> None:
        if isinstance(qty, bool) or not isinstance(qty, int) or qty < 1:
            raise ValidationError.single("qty", "Must be a positive integer.")

    @staticmethod
    def _current(conn: sqlite3.Connection, book_id: int) -> sqlite3.Row:
        row = conn.execute("SELECT id, title, stock FROM books WHERE id = ?", (book_id,)).fetchone()
        if row is None:
            raise NotFoundError("book", book_id)
        return row

    def available(self, book_id: int, conn: Optional[sqlite3.Connection] = None) -> int:
        with self._connection(conn) as c:
            return self._current(c, book_id)["stock"]

    def reserve(self, book_id: int, qty: int = 1, conn: Optional[sqlite3.Connection] = None) -> int:
        """Take ``qty`` copies of a book and return the new stock level.

        The decrement is one conditional UPDATE, so concurrent reservations can
        never push stock below zero.
        """
        self._check_qty(qty)
        with self._connection(conn) as c:
            cursor = c.execute(
                "UPDATE books SET stock = stock - ? WHERE id = ? AND stock >= ?",
                (qty, book_id, qty),
            )
            row = self._current(c, book_id)
            if cursor.rowcount == 0:
                logger.warning("Reservation of %d cop(ies) of book %s refused, stock is %d",
                               qty, book_id, row["stock"])
                raise OutOfStockError(book_id, row["title"], requested=qty, available=row["stock"])
            logger.debug("Reserved %d cop(ies) of book %s, stock now %d", qty, book_id, row["stock"])
            return row["stock"]

    def release(self, book_id: int, qty: int = 1, conn: Optional[sqlite3.Connection] = None) -> int:
        """Put ``qty`` copies back and return the new stock level. No upper bound."""
        self._check_qty(qty)
        with self._connection(conn) as c:
            cursor = c.execute("UPDATE books SET stock = stock + ? WHERE id = ?", (qty, book_id))
            if cursor.rowcount == 0:
                raise NotFoundError("book", book_id)
            stock = self._current(c, book_id)["stock"]
            logger.debug("Released %d cop(ies) of book %s, stock now %d", qty, book_id, stock)
            return stock
