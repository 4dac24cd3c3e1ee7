from datetime import timedelta

import pytest

from library_app.database import get_db_connection
from library_app.errors import AlreadyReturnedError, NotFoundError, OutOfStockError, ValidationError
from library_app.member import Member


def _borrowing_count(lib):
    conn = get_db_connection(lib.db_file)
    try:
        return conn.execute("SELECT COUNT(*) FROM borrowings").fetchone()[0]
    finally:
        conn.close()


def _stored_status(lib, borrowing_id):
    conn = get_db_connection(lib.db_file)
    try:
        return conn.execute("SELECT status FROM borrowings WHERE id = ?", (borrowing_id,)).fetchone()[0]
    finally:
        conn.close()


def test_borrow_reserves_every_book(lib, member, make_book, clock):
    react = make_book(title="Belajar React", stock=5)
    php = make_book(title="PHP untuk Pemula", author="Developer B", stock=3)

    borrowing = lib.borrow(member.id, [react.id, php.id])

    assert borrowing.status.value == "borrowed"
    assert borrowing.book_ids == [react.id, php.id]
    assert borrowing.borrow_date == clock.now
    assert borrowing.due_date == clock.now + timedelta(days=7)
    assert borrowing.return_date is None
    assert lib.get_book(react.id).stock == 4
    assert lib.get_book(php.id).stock == 2

    data = borrowing.to_dict()
    assert data["member_name"] == "John Doe"
    assert data["member_code"] == "MBR001"
    assert [b["title"] for b in data["books"]] == ["Belajar React", "PHP untuk Pemula"]


def test_borrow_out_of_stock_leaves_no_partial_state(lib, member, make_book):
    available = make_book(title="Belajar React", stock=2)
    empty = make_book(title="Database MySQL", stock=0)

    with pytest.raises(OutOfStockError, match="Database MySQL") as exc_info:
        lib.borrow(member.id, [available.id, empty.id])

    assert exc_info.value.book_id == empty.id
    # The reservation of the first book was rolled back with the request
    assert lib.get_book(available.id).stock == 2
    assert lib.get_book(empty.id).stock == 0
    assert _borrowing_count(lib) == 0
    assert lib.list_borrowings() == []


def test_borrow_unknown_book_rolls_back(lib, member, make_book):
    book = make_book(stock=1)
    with pytest.raises(NotFoundError):
        lib.borrow(member.id, [book.id, 999])
    assert lib.get_book(book.id).stock == 1
    assert _borrowing_count(lib) == 0


def test_borrow_unknown_member(lib, make_book):
    book = make_book(stock=1)
    with pytest.raises(NotFoundError, match="Member 42 not found"):
        lib.borrow(42, [book.id])
    assert lib.get_book(book.id).stock == 1


def test_due_date_must_follow_borrow_date(lib, member, make_book, clock):
    book = make_book(stock=1)
    with pytest.raises(ValidationError) as exc_info:
        lib.borrow(member.id, [book.id], borrow_date=clock.now, due_date=clock.now)
    assert "due_date" in exc_info.value.errors
    assert lib.get_book(book.id).stock == 1


def test_book_list_must_be_non_empty_and_unique(lib, member, make_book):
    book = make_book(stock=3)
    with pytest.raises(ValidationError) as exc_info:
        lib.borrow(member.id, [])
    assert "book_ids" in exc_info.value.errors

    with pytest.raises(ValidationError):
        lib.borrow(member.id, [book.id, book.id])
    assert lib.get_book(book.id).stock == 3


def test_return_releases_stock_once(lib, member, make_book, clock):
    book = make_book(stock=1)
    borrowing = lib.borrow(member.id, [book.id])
    assert lib.get_book(book.id).stock == 0

    clock.advance(days=2)
    returned = lib.return_borrowing(borrowing.id)
    assert returned.status.value == "returned"
    assert returned.return_date == clock.now
    assert lib.get_book(book.id).stock == 1

    with pytest.raises(AlreadyReturnedError):
        lib.return_borrowing(borrowing.id)
    assert lib.get_book(book.id).stock == 1


def test_return_unknown_borrowing(lib):
    with pytest.raises(NotFoundError):
        lib.return_borrowing(123)


def test_return_before_borrow_date_is_rejected(lib, member, make_book, clock):
    book = make_book(stock=1)
    borrowing = lib.borrow(member.id, [book.id])
    with pytest.raises(ValidationError):
        lib.return_borrowing(borrowing.id, return_date=clock.now - timedelta(days=1))
    assert lib.get_borrowing(borrowing.id).status.value == "borrowed"
    assert lib.get_book(book.id).stock == 0


def test_overdue_is_derived_on_read_and_refreshed(lib, member, make_book, clock):
    book = make_book(stock=1)
    borrowing = lib.borrow(member.id, [book.id], due_date=clock.now + timedelta(days=7))

    clock.advance(days=10)
    loaded = lib.get_borrowing(borrowing.id)
    assert loaded.status.value == "overdue"
    assert loaded.days_overdue == 3
    assert _stored_status(lib, borrowing.id) == "overdue"

    returned = lib.return_borrowing(borrowing.id)
    assert returned.status.value == "returned"
    assert returned.days_overdue == 3
    assert _stored_status(lib, borrowing.id) == "returned"

    clock.advance(days=30)
    assert lib.get_borrowing(borrowing.id).status.value == "returned"


def test_returned_exactly_on_due_date(lib, member, make_book, clock):
    book = make_book(stock=1)
    due = clock.now + timedelta(days=7)
    borrowing = lib.borrow(member.id, [book.id], due_date=due)

    returned = lib.return_borrowing(borrowing.id, return_date=due)
    clock.advance(days=8)
    loaded = lib.get_borrowing(returned.id)
    assert loaded.status.value == "returned"
    assert loaded.days_overdue == 0


def test_list_borrowings_filters(lib, member, make_book, clock):
    other = lib.add_member(Member("Jane Smith", "jane@example.com"))
    book = make_book(stock=5)

    late = lib.borrow(member.id, [book.id], borrow_date=clock.now - timedelta(days=10),
                      due_date=clock.now - timedelta(days=3))
    current = lib.borrow(other.id, [book.id])
    done = lib.borrow(other.id, [book.id], borrow_date=clock.now - timedelta(days=2))
    lib.return_borrowing(done.id)

    assert [b.id for b in lib.list_borrowings(status="overdue")] == [late.id]
    assert [b.id for b in lib.list_borrowings(status="borrowed")] == [current.id]
    assert [b.id for b in lib.list_borrowings(status="returned")] == [done.id]
    assert {b.id for b in lib.list_borrowings(member_id=other.id)} == {current.id, done.id}
    # Newest borrow date first
    assert [b.id for b in lib.list_borrowings()] == [current.id, done.id, late.id]

    with pytest.raises(ValidationError):
        lib.list_borrowings(status="lost")


def test_statistics_count_projected_statuses(lib, member, make_book, clock):
    book = make_book(stock=3)
    lib.borrow(member.id, [book.id], borrow_date=clock.now - timedelta(days=9),
               due_date=clock.now - timedelta(days=2))
    lib.borrow(member.id, [book.id])

    stats = lib.get_statistics()
    assert stats["total_books"] == 1
    assert stats["copies_in_stock"] == 1
    assert stats["total_members"] == 1
    assert stats["total_borrowings"] == 2
    assert stats["borrowings_by_status"] == {"borrowed": 1, "returned": 0, "overdue": 1}


def test_record_timestamps_follow_the_library_clock(lib, member, make_book, clock):
    book = make_book(stock=1)
    borrowing = lib.borrow(member.id, [book.id], borrow_date=clock.now - timedelta(days=3))
    assert borrowing.created_at == borrowing.updated_at == clock.now.isoformat()

    # A backdated return still records when the change was made
    clock.advance(days=2)
    returned = lib.return_borrowing(borrowing.id, return_date=clock.now - timedelta(days=1))
    assert returned.return_date == clock.now - timedelta(days=1)
    assert returned.updated_at == clock.now.isoformat()
    assert returned.created_at == borrowing.created_at


def test_out_of_range_ids(lib, member, make_book):
    book = make_book(stock=1)
    huge = 10**20

    with pytest.raises(ValidationError) as exc_info:
        lib.borrow(huge, [book.id])
    assert "member_id" in exc_info.value.errors
    with pytest.raises(ValidationError) as exc_info:
        lib.borrow(member.id, [book.id, huge])
    assert "book_ids" in exc_info.value.errors
    assert lib.get_book(book.id).stock == 1

    with pytest.raises(NotFoundError):
        lib.get_borrowing(huge)
    with pytest.raises(NotFoundError):
        lib.return_borrowing(huge)
    assert lib.list_borrowings(member_id=huge) == []
