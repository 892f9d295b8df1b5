"""
Loan models for the Library Circulation server.

A loan moves through ``borrowed -> overdue -> returned`` (or straight from
borrowed to returned). ``overdue`` is never scheduled; it is derived from
``(due_date, now)`` whenever a loan is read or written, and the fine is a
pure function of the same inputs:

    days_overdue = ceil((cutoff - due_date) / 1 day), clamped to >= 0
    fine         = min(days_overdue * fine_per_day, max_fine)

The cutoff is the current time for open loans and the return time for
returned ones, so evaluating the fine twice never accrues anything extra.
"""

import math
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator

SECONDS_PER_DAY = 24 * 60 * 60


class LoanStatus(str, Enum):
    """Status of a loan."""

    BORROWED = "borrowed"
    OVERDUE = "overdue"
    RETURNED = "returned"


OPEN_LOAN_STATUSES = (LoanStatus.BORROWED, LoanStatus.OVERDUE)


def days_overdue(due_date: datetime, cutoff: datetime) -> int:
    """Number of started days between the due date and the cutoff."""
    elapsed = (cutoff - due_date).total_seconds()
    if elapsed <= 0:
        return 0
    return math.ceil(elapsed / SECONDS_PER_DAY)


def calculate_fine(
    due_date: datetime,
    cutoff: datetime,
    fine_per_day: float,
    max_fine: float,
) -> float:
    """
    Fine owed for a loan evaluated at ``cutoff``.

    Args:
        due_date: When the loan was due
        cutoff: Evaluation time (return time for returned loans)
        fine_per_day: Amount charged per started day overdue
        max_fine: Upper bound for the fine

    Returns:
        Fine amount rounded to cents
    """
    days = days_overdue(due_date, cutoff)
    if days == 0:
        return 0.0
    return round(min(days * fine_per_day, max_fine), 2)


def derive_status(status: str, due_date: datetime, now: datetime) -> LoanStatus:
    """Current status of a loan whose stored status may be stale."""
    status = LoanStatus(status)
    if status == LoanStatus.BORROWED and now > due_date:
        return LoanStatus.OVERDUE
    return status


class RenewalEntry(BaseModel):
    """One entry in a loan's append-only renewal history."""

    renewal_date: datetime
    new_due_date: datetime
    renewed_by: str

    model_config = ConfigDict(from_attributes=True)


class Loan(BaseModel):
    """
    Represents a book loan.

    Created when a borrow succeeds (or a reservation is fulfilled) and
    finalized exactly once by a return. After the return only the fine-paid
    bookkeeping may change.
    """

    id: str = Field(
        ...,
        description="Unique identifier for the loan",
        pattern=r"^loan_[a-zA-Z0-9]{6,}$",
        examples=["loan_3f9a1c2d7e8b"],
    )

    user_id: str = Field(..., description="User holding the loan")

    book_id: str = Field(..., description="Borrowed book")

    borrow_date: datetime = Field(
        default_factory=datetime.now,
        description="When the copy left the shelf",
    )

    due_date: datetime = Field(..., description="When the copy must be back")

    return_date: datetime | None = Field(
        None,
        description="When the copy was returned",
    )

    status: LoanStatus = Field(default=LoanStatus.BORROWED)

    fine_amount: float = Field(
        default=0.0,
        description="Fine as of the last status refresh (final once returned)",
        ge=0.0,
    )

    fine_paid: bool = Field(default=False)

    fine_paid_date: datetime | None = None

    renewal_count: int = Field(
        default=0,
        description="Number of times this loan has been renewed",
        ge=0,
    )

    renewal_history: list[RenewalEntry] = Field(default_factory=list)

    borrowed_by: str | None = None

    returned_by: str | None = None

    notes: str | None = Field(None, max_length=500)

    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @model_validator(mode="after")
    def validate_dates(self) -> "Loan":
        """Validate date relationships."""
        if self.due_date <= self.borrow_date:
            raise ValueError("Due date must be after borrow date")

        if self.return_date and self.return_date < self.borrow_date:
            raise ValueError("Return date cannot be before borrow date")

        return self

    @property
    def is_open(self) -> bool:
        return self.status != LoanStatus.RETURNED

    @property
    def is_overdue(self) -> bool:
        return self.status == LoanStatus.OVERDUE

    @property
    def loan_period_days(self) -> int:
        return (self.due_date - self.borrow_date).days

    def days_overdue(self, now: datetime) -> int:
        """Days overdue at ``now`` (or at the return for returned loans)."""
        if self.status == LoanStatus.RETURNED:
            if self.return_date is None:
                return 0
            return days_overdue(self.due_date, self.return_date)
        return days_overdue(self.due_date, now)

    def can_renew(self, now: datetime, max_renewals: int) -> bool:
        """Only a borrowed loan, before its due date and under the renewal limit."""
        return (
            self.status == LoanStatus.BORROWED
            and self.renewal_count < max_renewals
            and now < self.due_date
        )

    model_config = ConfigDict(
        validate_assignment=True,
        use_enum_values=True,
        from_attributes=True,
        json_schema_extra={
            "example": {
                "id": "loan_3f9a1c2d7e8b",
                "user_id": "user_jane001",
                "book_id": "book_gatsby001",
                "borrow_date": "2024-03-01T10:30:00",
                "due_date": "2024-03-15T10:30:00",
                "status": "borrowed",
                "fine_amount": 0.0,
                "fine_paid": False,
                "renewal_count": 0,
                "renewal_history": [],
            }
        },
    )
