from __future__ import annotations


class Book:
    """A single book title in the catalogue together with its available stock."""

    def __init__(self, title: str, author: str, category: str, stock: int = 0, id: int | None = None,
                 created_at: str | None = None, updated_at: str | None = None) -> None:
        self.id = id
        self.title = title.strip()
        self.author = author.strip()
        self.category = category.strip()
        self.stock = stock
        self.created_at = created_at
        self.updated_at = updated_at

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.category}, stock: {self.stock})"

    @property
    def available(self) -> bool:
        return self.stock > 0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "category": self.category,
            "stock": self.stock,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        return Book(
            id=data.get("id"),
            title=data["title"],
            author=data["author"],
            category=data["category"],
            stock=int(data.get("stock") or 0),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )
