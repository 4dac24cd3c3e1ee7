import random

import pytest

from library_app.errors import NotFoundError, OutOfStockError, ValidationError


def test_reserve_decrements_and_returns_new_level(lib, make_book):
    book = make_book(stock=3)
    assert lib.stock.reserve(book.id) == 2
    assert lib.stock.reserve(book.id, qty=2) == 0
    assert lib.get_book(book.id).stock == 0


def test_reserve_fails_when_stock_is_short(lib, make_book):
    book = make_book(title="Database MySQL", stock=1)

    with pytest.raises(OutOfStockError, match="Database MySQL") as exc_info:
        lib.stock.reserve(book.id, qty=2)

    assert exc_info.value.book_id == book.id
    assert exc_info.value.available == 1
    assert lib.stock.available(book.id) == 1


def test_reserve_on_empty_stock(lib, make_book):
    book = make_book(stock=0)
    with pytest.raises(OutOfStockError):
        lib.stock.reserve(book.id)
    assert lib.stock.available(book.id) == 0


def test_release_has_no_upper_bound(lib, make_book):
    book = make_book(stock=2)
    assert lib.stock.release(book.id) == 3
    assert lib.stock.release(book.id, qty=5) == 8


def test_unknown_book(lib):
    with pytest.raises(NotFoundError):
        lib.stock.reserve(999)
    with pytest.raises(NotFoundError):
        lib.stock.release(999)
    with pytest.raises(NotFoundError):
        lib.stock.available(999)


@pytest.mark.parametrize("qty", [0, -1, True, 1.5])
def test_quantity_must_be_positive_integer(lib, make_book, qty):
    book = make_book(stock=5)
    with pytest.raises(ValidationError):
        lib.stock.reserve(book.id, qty=qty)
    assert lib.stock.available(book.id) == 5


def test_stock_never_negative_over_random_sequence(lib, make_book):
    book = make_book(stock=2)
    rng = random.Random(42)
    expected = 2
    for _ in range(200):
        qty = rng.randint(1, 3)
        if rng.random() < 0.6:
            try:
                lib.stock.reserve(book.id, qty=qty)
                expected -= qty
            except OutOfStockError:
                assert expected < qty
        else:
            lib.stock.release(book.id, qty=qty)
            expected += qty
        current = lib.stock.available(book.id)
        assert current >= 0
        assert current == expected
