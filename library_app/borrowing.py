from __future__ import annotations

import math
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from library_app.book import Book
from library_app.member import Member


class BorrowingStatus(str, Enum):
    BORROWED = "borrowed"
    RETURNED = "returned"
    OVERDUE = "overdue"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    # fromisoformat() before 3.11 does not understand a trailing 'Z'
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(value))


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_utc(value).isoformat()


def derive_status(status: BorrowingStatus | str, due_date: datetime, return_date: Optional[datetime],
                  now: datetime) -> BorrowingStatus:
    """Project the status a borrowing has at ``now``.

    Returned is terminal. An open borrowing turns overdue once ``now`` passes the
    due date; the comparison is strict, so at the due instant it is still
    borrowed.
    """
    if return_date is not None or BorrowingStatus(status) is BorrowingStatus.RETURNED:
        return BorrowingStatus.RETURNED
    if as_utc(now) > as_utc(due_date):
        return BorrowingStatus.OVERDUE
    return BorrowingStatus.BORROWED


def days_overdue(due_date: datetime, return_date: Optional[datetime], now: datetime) -> int:
    """Number of started days past the due date (0 when not late).

    Returned borrowings are measured up to their return date, open ones up to ``now``.
    """
    reference = as_utc(return_date) if return_date is not None else as_utc(now)
    late = (reference - as_utc(due_date)).total_seconds()
    if late <= 0:
        return 0
    return math.ceil(late / 86400)


class Borrowing:
    """One borrowing transaction: a member taking one or more books for a period."""

    def __init__(self, member_id: int, book_ids: List[int], borrow_date: datetime, due_date: datetime,
                 return_date: Optional[datetime] = None,
                 status: BorrowingStatus | str = BorrowingStatus.BORROWED,
                 id: Optional[int] = None, created_at: Optional[str] = None, updated_at: Optional[str] = None,
                 member: Optional[Member] = None, books: Optional[List[Book]] = None) -> None:
        self.id = id
        self.member_id = member_id
        self.book_ids = list(book_ids)
        self.borrow_date = as_utc(borrow_date)
        self.due_date = as_utc(due_date)
        self.return_date = as_utc(return_date) if return_date is not None else None
        self.status = BorrowingStatus(status)
        self.created_at = created_at
        self.updated_at = updated_at
        # Denormalized view data, filled in by the loan store
        self.member = member
        self.books = books or []
        self.days_overdue = 0

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"Borrowing #{self.id} member={self.member_id} books={self.book_ids} [{self.status.value}]"

    def status_at(self, now: datetime) -> BorrowingStatus:
        return derive_status(self.status, self.due_date, self.return_date, now)

    def refresh(self, now: datetime) -> bool:
        """Apply the read-time status projection. Returns True when the status changed."""
        self.days_overdue = days_overdue(self.due_date, self.return_date, now)
        new_status = self.status_at(now)
        if new_status is self.status:
            return False
        self.status = new_status
        return True

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "member_id": self.member_id,
            "member_name": self.member.name if self.member else None,
            "member_email": self.member.email if self.member else None,
            "member_code": self.member.member_code if self.member else None,
            "book_ids": list(self.book_ids),
            "books": [{"id": b.id, "title": b.title, "author": b.author} for b in self.books],
            "borrow_date": format_timestamp(self.borrow_date),
            "due_date": format_timestamp(self.due_date),
            "return_date": format_timestamp(self.return_date),
            "status": self.status.value,
            "days_overdue": self.days_overdue,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
