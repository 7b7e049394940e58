from __future__ import annotations


class Book:
    """A lendable title in the catalog together with its copy counters."""

    def __init__(self, title: str, author: str, total_copies: int, copies_available: int | None = None,
                 book_id: int | None = None, isbn: str | None = None, created_at: str | None = None) -> None:
        self.book_id = book_id
        self.title = title.strip()
        self.author = author.strip()
        self.isbn = isbn.strip() if isbn else None
        self.total_copies = int(total_copies)
        self.copies_available = self.total_copies if copies_available is None else int(copies_available)
        self.created_at = created_at

    @property
    def lent_out(self) -> int:
        return self.total_copies - self.copies_available

    def __str__(self) -> str:  # pragma: no cover - string formatting trivial
        return f"{self.title} by {self.author} ({self.copies_available}/{self.total_copies} available)"

    def to_dict(self) -> dict:
        return {
            "book_id": self.book_id,
            "title": self.title,
            "author": self.author,
            "isbn": self.isbn,
            "total_copies": self.total_copies,
            "copies_available": self.copies_available,
            "created_at": self.created_at,
        }

    @staticmethod
    def from_dict(data: dict) -> "Book":
        # Rows from SQLite use "id"; serialized books use "book_id"
        book_id = data.get("book_id", data.get("id"))
        return Book(
            title=data["title"],
            author=data["author"],
            total_copies=data["total_copies"],
            copies_available=data.get("copies_available"),
            book_id=book_id,
            isbn=data.get("isbn"),
            created_at=data.get("created_at"),
        )
