"""
Reservation model for the Library Circulation server.

A reservation is a place in one book's waitlist. ``priority`` 1 is next in
line; among active reservations for a book the priorities are always exactly
1..N. A reservation leaves the queue by being fulfilled, cancelled or expired,
and never comes back.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator


class ReservationStatus(str, Enum):
    """Status of a reservation."""

    ACTIVE = "active"
    FULFILLED = "fulfilled"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class Reservation(BaseModel):
    """A queued request for a currently unavailable book."""

    id: str = Field(
        ...,
        description="Unique identifier for the reservation",
        pattern=r"^reservation_[a-zA-Z0-9]{6,}$",
        examples=["reservation_8b2e0d4c1a7f"],
    )

    user_id: str = Field(..., description="User waiting for the book")

    book_id: str = Field(..., description="Reserved book")

    reservation_date: datetime = Field(default_factory=datetime.now)

    expiry_date: datetime = Field(
        ...,
        description="Reservation lapses if still active after this moment",
    )

    status: ReservationStatus = Field(default=ReservationStatus.ACTIVE)

    priority: int = Field(
        ...,
        description="Position in the book's waitlist; 1 is next",
        ge=1,
    )

    fulfilled_at: datetime | None = None

    fulfilled_by: str | None = None

    loan_id: str | None = Field(
        None,
        description="Loan created when the reservation was fulfilled",
    )

    notes: str | None = Field(None, max_length=500)

    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @model_validator(mode="after")
    def validate_dates(self) -> "Reservation":
        if self.expiry_date <= self.reservation_date:
            raise ValueError("Expiry date must be after reservation date")
        return self

    @property
    def is_active(self) -> bool:
        return self.status == ReservationStatus.ACTIVE

    def is_expired(self, now: datetime) -> bool:
        """Active but past its expiry date."""
        return self.is_active and now > self.expiry_date

    model_config = ConfigDict(
        validate_assignment=True,
        use_enum_values=True,
        from_attributes=True,
        json_schema_extra={
            "example": {
                "id": "reservation_8b2e0d4c1a7f",
                "user_id": "user_jane001",
                "book_id": "book_gatsby001",
                "reservation_date": "2024-03-01T10:30:00",
                "expiry_date": "2024-03-04T10:30:00",
                "status": "active",
                "priority": 1,
            }
        },
    )
