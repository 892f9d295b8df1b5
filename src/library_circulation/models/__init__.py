"""
Library Circulation Models.

Pydantic models returned by the repositories and serialized into tool and
resource responses:

- Book: inventory-relevant view of a catalog item
- Loan: a borrow record from checkout to return, with its renewal history
- Reservation: a queued request for a currently unavailable book
- Notification: a polled message addressed to one user
- Principal: the authenticated identity supplied with every operation
"""

from .book import Book
from .loan import (
    Loan,
    LoanStatus,
    RenewalEntry,
    calculate_fine,
    days_overdue,
    derive_status,
)
from .notification import Notification, NotificationPriority, NotificationType
from .principal import Principal, UserRole
from .reservation import Reservation, ReservationStatus

__all__ = [
    "Book",
    "Loan",
    "LoanStatus",
    "Notification",
    "NotificationPriority",
    "NotificationType",
    "Principal",
    "RenewalEntry",
    "Reservation",
    "ReservationStatus",
    "UserRole",
    "calculate_fine",
    "days_overdue",
    "derive_status",
]
