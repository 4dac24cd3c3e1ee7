"""Demo catalogue, members and borrowings for a fresh database."""

import logging
from datetime import timedelta
from typing import Dict

from library_app.book import Book
from library_app.library import Library
from library_app.member import Member

logger = logging.getLogger(__name__)

DEMO_BOOKS = [
    ("Test Book", "Test Author", "Fiction", 10),
    ("Belajar React", "Developer A", "Programming", 5),
    ("PHP untuk Pemula", "Developer B", "Programming", 3),
    ("Database MySQL", "Developer C", "Database", 2),
    ("Pemrograman Laravel", "Developer D", "Programming", 4),
]

DEMO_MEMBERS = [
    ("John Doe", "john@example.com"),
    ("Jane Smith", "jane@example.com"),
    ("Bob Johnson", "bob@example.com"),
]


def seed_demo_data(library: Library) -> Dict[str, int]:
    """Fill an empty database with demo data. Does nothing when books already exist.

    The three borrowings are dated relative to now so that one is open, one is
    returned and one is overdue.
    """
    if library.list_books():
        logger.info("Database already has books, skipping demo data")
        return {"books": 0, "members": 0, "borrowings": 0}

    books = [library.add_book(Book(title, author, category, stock)) for title, author, category, stock in DEMO_BOOKS]
    members = [library.add_member(Member(name, email)) for name, email in DEMO_MEMBERS]

    now = library.now()
    john, jane, bob = members
    library.borrow(john.id, [books[1].id, books[2].id], borrow_date=now - timedelta(days=1),
                   due_date=now + timedelta(days=6))
    returned = library.borrow(jane.id, [books[3].id], borrow_date=now - timedelta(days=6),
                              due_date=now + timedelta(days=1))
    library.return_borrowing(returned.id, return_date=now - timedelta(days=1))
    library.borrow(bob.id, [books[4].id], borrow_date=now - timedelta(days=11),
                   due_date=now - timedelta(days=4))

    logger.info("Seeded %d books, %d members and 3 borrowings", len(books), len(members))
    return {"books": len(books), "members": len(members), "borrowings": 3}
