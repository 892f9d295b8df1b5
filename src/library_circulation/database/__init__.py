"""
Database package for the Library Circulation server.

This package provides:
- SQLAlchemy schema definitions (schema.py)
- Session management and connection handling (session.py)
- The inventory ledger and the loan, reservation and notification
  repositories
- CirculationRepository, the transactional entry point used by tools and
  resources
"""

from .book_repository import BookCreateSchema, BookRepository
from .errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PolicyLimitExceededError,
    RepositoryException,
    UnavailableError,
)
from .inventory import InventoryLedger
from .loan_repository import LoanRepository, LoanStats, UserLoanSummary
from .notification_repository import NotificationRepository
from .circulation_repository import CirculationRepository, CirculationStats, ReturnOutcome
from .repository import BaseRepository, PaginatedResponse, PaginationParams
from .reservation_repository import ReservationRepository
from .schema import Base, Book, Loan, LoanRenewal, Notification, Reservation
from .session import (
    DatabaseManager,
    get_db_manager,
    get_session,
    safe_commit,
    safe_query,
    session_scope,
    set_db_manager,
)

__all__ = [
    "Base",
    "BaseRepository",
    "Book",
    "BookCreateSchema",
    "BookRepository",
    "CirculationRepository",
    "CirculationStats",
    "ConflictError",
    "DatabaseManager",
    "ForbiddenError",
    "InventoryLedger",
    "Loan",
    "LoanRenewal",
    "LoanRepository",
    "LoanStats",
    "NotFoundError",
    "Notification",
    "NotificationRepository",
    "PaginatedResponse",
    "PaginationParams",
    "PolicyLimitExceededError",
    "RepositoryException",
    "Reservation",
    "ReservationRepository",
    "ReturnOutcome",
    "UnavailableError",
    "UserLoanSummary",
    "get_db_manager",
    "get_session",
    "safe_commit",
    "safe_query",
    "session_scope",
    "set_db_manager",
]
