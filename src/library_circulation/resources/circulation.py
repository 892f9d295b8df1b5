"""Circulation Resources - read-only views of queues, loans and notifications

Resources:
- library://books/{book_id}/queue - A book's waitlist in queue order
- library://users/{user_id}/loans - A user's loans with current status and fines
- library://users/{user_id}/notifications - A user's unexpired notifications
- library://circulation/stats - Library-wide circulation counters

Reading a queue or a loan list also applies the lazy transitions (expired
reservations, overdue loans), so what clients see is never stale.
"""

import logging
from datetime import datetime
from typing import Any

from fastmcp.exceptions import ResourceError
from pydantic import BaseModel, Field

from ..database.circulation_repository import CirculationRepository
from ..database.notification_repository import NotificationRepository
from ..database.repository import NotFoundError, PaginationParams, RepositoryException
from ..database.session import session_scope
from ..models.loan import Loan
from ..models.notification import Notification
from ..models.principal import Principal
from ..models.reservation import Reservation

logger = logging.getLogger(__name__)

LOANS_PAGE_SIZE = 100


class BookQueueResponse(BaseModel):
    """A book's waitlist."""

    book_id: str
    available_copies: int = Field(..., description="Copies on the shelf right now")
    queue_length: int
    queue: list[Reservation] = Field(..., description="Active reservations, next in line first")


class UserLoansResponse(BaseModel):
    """A user's loans."""

    user_id: str
    total: int
    open_loans: int
    overdue_loans: int
    outstanding_fines: float = Field(..., description="Unpaid fines over every loan of the user")
    loans: list[Loan] = Field(..., description="The most recent loans, newest first")


class UserNotificationsResponse(BaseModel):
    """A user's notifications, newest first."""

    user_id: str
    unread_count: int
    notifications: list[Notification]


async def get_book_queue_handler(book_id: str) -> dict[str, Any]:
    """Client requests library://books/{book_id}/queue to see who is waiting."""
    try:
        logger.debug("MCP Resource Request - books/%s/queue", book_id)
        with session_scope() as session:
            repo = CirculationRepository(session)
            queue = repo.get_reservation_queue(book_id)
            book = repo.ledger.get_book(book_id)
            response = BookQueueResponse(
                book_id=book_id,
                available_copies=book.available_copies,
                queue_length=len(queue),
                queue=queue,
            )
            return response.model_dump(mode="json")

    except NotFoundError as e:
        raise ResourceError(f"Book not found: {book_id}") from e
    except RepositoryException as e:
        logger.exception("Error in books/{id}/queue resource")
        raise ResourceError(f"Failed to retrieve reservation queue: {e!s}") from e


async def get_user_loans_handler(user_id: str) -> dict[str, Any]:
    """Client requests library://users/{user_id}/loans for a user's loans."""
    try:
        logger.debug("MCP Resource Request - users/%s/loans", user_id)
        with session_scope() as session:
            repo = CirculationRepository(session)
            principal = Principal(user_id=user_id)
            page = repo.list_loans(
                principal, pagination=PaginationParams(page=1, page_size=LOANS_PAGE_SIZE)
            )
            summary = repo.get_loan_summary(principal)
            response = UserLoansResponse(
                user_id=user_id,
                total=summary.total_loans,
                open_loans=summary.open_loans,
                overdue_loans=summary.overdue_loans,
                outstanding_fines=summary.outstanding_fines,
                loans=page.items,
            )
            return response.model_dump(mode="json")

    except RepositoryException as e:
        logger.exception("Error in users/{id}/loans resource")
        raise ResourceError(f"Failed to retrieve loans: {e!s}") from e


async def get_user_notifications_handler(user_id: str) -> dict[str, Any]:
    """Client requests library://users/{user_id}/notifications to poll for messages."""
    try:
        logger.debug("MCP Resource Request - users/%s/notifications", user_id)
        with session_scope() as session:
            repo = NotificationRepository(session)
            response = UserNotificationsResponse(
                user_id=user_id,
                unread_count=repo.unread_count(user_id),
                notifications=repo.list_for_user(user_id, limit=50),
            )
            return response.model_dump(mode="json")

    except RepositoryException as e:
        logger.exception("Error in users/{id}/notifications resource")
        raise ResourceError(f"Failed to retrieve notifications: {e!s}") from e


async def get_circulation_stats_handler() -> dict[str, Any]:
    """Returns current loan and reservation counters."""
    try:
        with session_scope() as session:
            repo = CirculationRepository(session)
            stats = repo.get_circulation_stats()
            return {
                "timestamp": datetime.now().isoformat(),
                **stats.model_dump(mode="json"),
                "policy": repo.config.policy,
            }

    except RepositoryException as e:
        logger.exception("Error in circulation/stats resource")
        raise ResourceError(f"Failed to calculate circulation statistics: {e!s}") from e


circulation_resources: list[dict[str, Any]] = [
    {
        "uri_template": "library://books/{book_id}/queue",
        "name": "Book Reservation Queue",
        "description": (
            "The waitlist of a book in queue order, with the number of copies currently "
            "on the shelf. Lapsed reservations are expired before the queue is listed."
        ),
        "mime_type": "application/json",
        "handler": get_book_queue_handler,
    },
    {
        "uri_template": "library://users/{user_id}/loans",
        "name": "User Loans",
        "description": (
            "Every loan of a user, newest first, with current status, fines and "
            "renewal history."
        ),
        "mime_type": "application/json",
        "handler": get_user_loans_handler,
    },
    {
        "uri_template": "library://users/{user_id}/notifications",
        "name": "User Notifications",
        "description": (
            "Unexpired notifications of a user, newest first, such as a reserved book "
            "being ready for pickup."
        ),
        "mime_type": "application/json",
        "handler": get_user_notifications_handler,
    },
    {
        "uri": "library://circulation/stats",
        "name": "Circulation Statistics",
        "description": "Loan and reservation counters, overdue loans and outstanding fines.",
        "mime_type": "application/json",
        "handler": get_circulation_stats_handler,
    },
]
