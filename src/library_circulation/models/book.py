"""
Book model for the Library Circulation server.

Only the inventory-relevant part of a catalog entry lives here. Titles and
authors are kept for readable messages; everything else about the catalog
belongs to catalog management.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Book(BaseModel):
    """Inventory view of a book: how many copies exist and how many are on the shelf."""

    id: str = Field(
        ...,
        description="Unique identifier for the book",
        pattern=r"^book_[a-zA-Z0-9_]{3,}$",
        examples=["book_gatsby001", "book_3f9a1c2d7e8b"],
    )

    title: str = Field(
        ...,
        description="Title of the book",
        min_length=1,
        max_length=500,
    )

    author: str | None = Field(
        default=None,
        description="Author name, for display only",
        max_length=200,
    )

    isbn: str | None = Field(
        default=None,
        description="ISBN-13 without hyphens",
        pattern=r"^\d{13}$",
    )

    total_copies: int = Field(
        ...,
        description="Total number of copies owned by the library",
        ge=1,
    )

    available_copies: int = Field(
        ...,
        description="Copies currently on the shelf",
        ge=0,
    )

    total_borrows: int = Field(default=0, ge=0)

    total_reservations: int = Field(
        default=0,
        description="Active reservations, kept for reporting only",
        ge=0,
    )

    is_active: bool = Field(
        default=True,
        description="Deactivated books cannot be borrowed",
    )

    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @model_validator(mode="after")
    def validate_copies(self) -> "Book":
        """Available copies can never exceed the total."""
        if self.available_copies > self.total_copies:
            raise ValueError("Available copies cannot exceed total copies")
        return self

    @property
    def is_available(self) -> bool:
        """A copy can be borrowed right now."""
        return self.is_active and self.available_copies > 0

    @property
    def checked_out_copies(self) -> int:
        return self.total_copies - self.available_copies

    model_config = ConfigDict(
        validate_assignment=True,
        from_attributes=True,
        json_schema_extra={
            "example": {
                "id": "book_gatsby001",
                "title": "The Great Gatsby",
                "author": "F. Scott Fitzgerald",
                "isbn": "9780743273565",
                "total_copies": 3,
                "available_copies": 1,
                "total_borrows": 42,
                "total_reservations": 0,
                "is_active": True,
            }
        },
    )
