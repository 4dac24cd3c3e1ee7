import os
import tempfile

# Point the default database at a throwaway file before config is imported, so
# importing api (which builds a module-level Library) never touches library.db.
os.environ.setdefault("LIBRARY_DB_FILE", os.path.join(tempfile.gettempdir(), f"library_test_{os.getpid()}.db"))

from datetime import datetime, timedelta, timezone

import pytest

from library_app.book import Book
from library_app.library import Library
from library_app.member import Member


class FakeClock:
    """A settable clock for status and overdue checks."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2025, 7, 20, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def lib(tmp_path, request, clock):
    # A unique database file for every test
    db_file = str(tmp_path / f"test_{request.node.name}.db")
    lib = Library(db_file=db_file, clock=clock)
    yield lib
    lib.close()


@pytest.fixture
def member(lib):
    return lib.add_member(Member("John Doe", "john@example.com"))


@pytest.fixture
def make_book(lib):
    def _make(title="Belajar React", author="Developer A", category="Programming", stock=1):
        return lib.add_book(Book(title, author, category, stock))
    return _make
