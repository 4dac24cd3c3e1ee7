from typing import Dict, List, Optional


class LibraryError(Exception):
    """Base class for every error raised by the lending core."""

    kind = "library_error"

    def to_dict(self) -> dict:
        return {"error": self.kind, "message": str(self)}


class ValidationError(LibraryError):
    """Malformed input. Carries field-level messages."""

    kind = "validation_error"

    def __init__(self, errors: Dict[str, List[str]]) -> None:
        self.errors = {field: list(messages) for field, messages in errors.items()}
        summary = "; ".join(
            f"{field}: {', '.join(messages)}" for field, messages in self.errors.items()
        )
        super().__init__(f"Invalid input ({summary})")

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls({field: [message]})

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["errors"] = self.errors
        return data


class NotFoundError(LibraryError):
    kind = "not_found"

    def __init__(self, entity: str, identifier) -> None:
        self.entity = entity
        self.identifier = identifier
        super().__init__(f"{entity.capitalize()} {identifier} not found.")


class OutOfStockError(LibraryError):
    kind = "out_of_stock"

    def __init__(self, book_id: int, title: Optional[str] = None, requested: int = 1, available: int = 0) -> None:
        self.book_id = book_id
        self.title = title
        self.requested = requested
        self.available = available
        name = f"'{title}' (id {book_id})" if title else f"id {book_id}"
        super().__init__(
            f"Book {name} is out of stock: requested {requested}, available {available}."
        )

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["book_id"] = self.book_id
        return data


class AlreadyReturnedError(LibraryError):
    kind = "already_returned"

    def __init__(self, borrowing_id: int) -> None:
        self.borrowing_id = borrowing_id
        super().__init__(f"Borrowing {borrowing_id} has already been returned.")
