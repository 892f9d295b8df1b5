"""
Book repository for the Library Circulation server.

Catalog management proper lives elsewhere; this repository only registers
books with their copy counts, looks them up, and deactivates them. Copy
counters are never written here after creation - that is the inventory
ledger's job.
"""

from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

from ..database.schema import Book as BookDB
from ..models.book import Book as BookModel
from .repository import BaseRepository, NotFoundError
from .session import safe_commit


class BookCreateSchema(BaseModel):
    """Schema for registering a book with the circulation core."""

    id: str | None = Field(default=None, pattern=r"^book_[a-zA-Z0-9_]{3,}$")
    title: str = Field(..., min_length=1, max_length=500)
    author: str | None = None
    isbn: str | None = Field(default=None, pattern=r"^\d{13}$")
    total_copies: int = Field(..., ge=1)
    available_copies: int | None = Field(
        default=None,
        description="Defaults to total_copies",
        ge=0,
    )

    @model_validator(mode="after")
    def fill_available(self) -> "BookCreateSchema":
        if self.available_copies is None:
            self.available_copies = self.total_copies
        if self.available_copies > self.total_copies:
            raise ValueError("Available copies cannot exceed total copies")
        return self


class BookRepository(BaseRepository[BookDB, BookCreateSchema, BookModel]):
    """Repository for book lookups and registration."""

    @property
    def model_class(self):
        return BookDB

    @property
    def response_schema(self):
        return BookModel

    def create(self, data: BookCreateSchema) -> BookModel:
        """Register a book, generating an ID when none is given."""
        if data.id is None:
            data = data.model_copy(update={"id": f"book_{uuid4().hex[:12]}"})
        return super().create(data)

    def get_book(self, book_id: str) -> BookModel:
        """Get a book or raise NotFoundError."""
        book = self.get_by_id(book_id)
        if book is None:
            raise NotFoundError(f"Book {book_id} not found")
        return book

    def deactivate(self, book_id: str) -> BookModel:
        """Take a book out of circulation. Books are never deleted."""
        book = self._get_db_obj(book_id)
        book.is_active = False
        safe_commit(self.session, "deactivate book")
        self.session.refresh(book)
        return self._to_response_model(book)
