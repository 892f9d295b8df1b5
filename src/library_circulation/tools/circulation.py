"""
Circulation tools for the Library Circulation MCP Server.

Tools are the operations with side effects:
1. borrow_book / return_loan / renew_loan: the loan lifecycle
2. reserve_book / cancel_reservation: joining and leaving a waitlist
3. pay_fine, expire_reservations, sweep_overdue: staff operations
4. send_due_reminders, send_overdue_notices, list_overdue_loans: staff
   follow-up of loans falling due or overdue
5. mark_notifications_read: acknowledging polled notifications

Every input carries the principal (``user_id`` and ``role``) as supplied by
the identity layer in front of this server; the circulation repository
decides what that principal may do.

Failures are returned, never raised, as::

    {
        "isError": True,
        "error": {"kind": "conflict", "status_code": 409, "message": "..."},
        "content": [{"type": "text", "text": "..."}],
    }
"""

import logging
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from ..database.circulation_repository import CirculationRepository
from ..database.notification_repository import NotificationRepository
from ..database.repository import ForbiddenError, PaginationParams, RepositoryException
from ..database.session import session_scope
from ..models.principal import Principal, UserRole

logger = logging.getLogger(__name__)

VALIDATION_STATUS_CODE = 422


# =============================================================================
# SHARED INPUT AND RESPONSE HELPERS
# =============================================================================


class PrincipalInput(BaseModel):
    """Fields identifying who is calling; every tool input extends this."""

    user_id: str = Field(
        ...,
        description="Authenticated user performing the operation",
        min_length=1,
        max_length=50,
        examples=["user_jane001"],
    )

    role: UserRole = Field(
        default=UserRole.MEMBER,
        description="Role of the authenticated user (member, librarian, admin)",
    )

    @property
    def principal(self) -> Principal:
        return Principal(user_id=self.user_id, role=self.role)


def _text(message: str) -> list[dict[str, str]]:
    return [{"type": "text", "text": message}]


def _error_response(kind: str, status_code: int, message: str) -> dict[str, Any]:
    return {
        "isError": True,
        "error": {"kind": kind, "status_code": status_code, "message": message},
        "content": _text(message),
    }


def _validation_error(tool: str, error: ValidationError) -> dict[str, Any]:
    logger.warning("Invalid %s parameters: %s", tool, error)
    return _error_response(
        "validation_error", VALIDATION_STATUS_CODE, f"Invalid {tool} parameters: {error}"
    )


def _repository_error(tool: str, error: RepositoryException) -> dict[str, Any]:
    if error.status_code >= 500:
        logger.error("%s failed: %s", tool, error)
    else:
        logger.info("%s rejected (%s): %s", tool, error.kind, error)
    return _error_response(error.kind, error.status_code, str(error))


def _unexpected_error(tool: str, error: Exception) -> dict[str, Any]:
    logger.exception("Unexpected error in %s tool", tool)
    return _error_response("error", 500, f"An unexpected error occurred: {error!s}")


# =============================================================================
# LOAN TOOLS
# =============================================================================


class BorrowBookInput(PrincipalInput):
    """Input schema for the borrow_book tool."""

    book_id: str = Field(
        ...,
        description="Book to borrow",
        pattern=r"^book_[a-zA-Z0-9_]{3,}$",
        examples=["book_gatsby001"],
    )

    borrower_id: str | None = Field(
        default=None,
        description="Staff only: lend the book to this user instead of the caller",
        max_length=50,
    )

    notes: str | None = Field(default=None, max_length=500)


async def borrow_book_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """
    Handler for the borrow_book tool.

    Claims a copy, creates a loan due after the standard loan period and
    returns the loan.
    """
    try:
        params = BorrowBookInput.model_validate(arguments)
    except ValidationError as e:
        return _validation_error("borrow_book", e)

    try:
        with session_scope() as session:
            loan = CirculationRepository(session).borrow_book(
                params.principal, params.book_id, user_id=params.borrower_id, notes=params.notes
            )
    except RepositoryException as e:
        return _repository_error("borrow_book", e)
    except Exception as e:
        return _unexpected_error("borrow_book", e)

    return {
        "content": _text(
            f"Book '{loan.book_id}' borrowed by '{loan.user_id}'. "
            f"Due date: {loan.due_date.strftime('%B %d, %Y')}"
        ),
        "data": {"loan": loan.model_dump(mode="json")},
    }


class LoanActionInput(PrincipalInput):
    """Input schema for tools acting on an existing loan."""

    loan_id: str = Field(
        ...,
        description="Loan to act on",
        pattern=r"^loan_[a-zA-Z0-9]{6,}$",
        examples=["loan_3f9a1c2d7e8b"],
    )


class ReturnLoanInput(LoanActionInput):
    """Input schema for the return_loan tool."""

    notes: str | None = Field(
        default=None,
        description="Optional notes about the return",
        max_length=500,
    )


async def return_loan_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """
    Handler for the return_loan tool.

    The fine is fixed at the return time. If someone is waiting for the
    book, the copy goes straight to the head of the queue and the response
    says so.
    """
    try:
        params = ReturnLoanInput.model_validate(arguments)
    except ValidationError as e:
        return _validation_error("return_loan", e)

    try:
        with session_scope() as session:
            outcome = CirculationRepository(session).return_loan(
                params.principal, params.loan_id, notes=params.notes
            )
    except RepositoryException as e:
        return _repository_error("return_loan", e)
    except Exception as e:
        return _unexpected_error("return_loan", e)

    loan = outcome.loan
    message = f"Loan '{loan.id}' returned."
    if loan.fine_amount > 0:
        message += f" Fine assessed: ${loan.fine_amount:.2f}"
    else:
        message += " Returned on time - no fine."
    if outcome.fulfilled_reservation is not None:
        message += (
            f" The copy was handed to reservation '{outcome.fulfilled_reservation.id}'"
            f" of user '{outcome.fulfilled_reservation.user_id}'."
        )

    return {
        "content": _text(message),
        "data": {
            "loan": loan.model_dump(mode="json"),
            "fulfilled_reservation": (
                outcome.fulfilled_reservation.model_dump(mode="json")
                if outcome.fulfilled_reservation
                else None
            ),
            "new_loan": outcome.new_loan.model_dump(mode="json") if outcome.new_loan else None,
        },
    }


async def renew_loan_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Handler for the renew_loan tool."""
    try:
        params = LoanActionInput.model_validate(arguments)
    except ValidationError as e:
        return _validation_error("renew_loan", e)

    try:
        with session_scope() as session:
            loan = CirculationRepository(session).renew_loan(params.principal, params.loan_id)
    except RepositoryException as e:
        return _repository_error("renew_loan", e)
    except Exception as e:
        return _unexpected_error("renew_loan", e)

    return {
        "content": _text(
            f"Loan '{loan.id}' renewed ({loan.renewal_count} renewals used). "
            f"New due date: {loan.due_date.strftime('%B %d, %Y')}"
        ),
        "data": {"loan": loan.model_dump(mode="json")},
    }


async def pay_fine_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Handler for the pay_fine tool. Staff record payments taken at the desk."""
    try:
        params = LoanActionInput.model_validate(arguments)
    except ValidationError as e:
        return _validation_error("pay_fine", e)

    try:
        with session_scope() as session:
            loan = CirculationRepository(session).pay_fine(params.principal, params.loan_id)
    except RepositoryException as e:
        return _repository_error("pay_fine", e)
    except Exception as e:
        return _unexpected_error("pay_fine", e)

    return {
        "content": _text(f"Fine of ${loan.fine_amount:.2f} on loan '{loan.id}' marked paid."),
        "data": {"loan": loan.model_dump(mode="json")},
    }


# =============================================================================
# RESERVATION TOOLS
# =============================================================================


class ReserveBookInput(PrincipalInput):
    """Input schema for the reserve_book tool."""

    book_id: str = Field(
        ...,
        description="Book to reserve; only books with no copy on the shelf can be reserved",
        pattern=r"^book_[a-zA-Z0-9_]{3,}$",
        examples=["book_gatsby001"],
    )

    reserver_id: str | None = Field(
        default=None,
        description="Staff only: reserve for this user instead of the caller",
        max_length=50,
    )

    notes: str | None = Field(default=None, max_length=500)


async def reserve_book_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Handler for the reserve_book tool."""
    try:
        params = ReserveBookInput.model_validate(arguments)
    except ValidationError as e:
        return _validation_error("reserve_book", e)

    try:
        with session_scope() as session:
            reservation = CirculationRepository(session).reserve_book(
                params.principal, params.book_id, user_id=params.reserver_id, notes=params.notes
            )
    except RepositoryException as e:
        return _repository_error("reserve_book", e)
    except Exception as e:
        return _unexpected_error("reserve_book", e)

    return {
        "content": _text(
            f"Book '{reservation.book_id}' reserved for '{reservation.user_id}'. "
            f"Queue position: {reservation.priority}. "
            f"Reservation expires on {reservation.expiry_date.strftime('%B %d, %Y')}"
        ),
        "data": {"reservation": reservation.model_dump(mode="json")},
    }


class CancelReservationInput(PrincipalInput):
    """Input schema for the cancel_reservation tool."""

    reservation_id: str = Field(
        ...,
        description="Reservation to cancel",
        pattern=r"^reservation_[a-zA-Z0-9]{6,}$",
        examples=["reservation_8b2e0d4c1a7f"],
    )


async def cancel_reservation_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Handler for the cancel_reservation tool."""
    try:
        params = CancelReservationInput.model_validate(arguments)
    except ValidationError as e:
        return _validation_error("cancel_reservation", e)

    try:
        with session_scope() as session:
            reservation = CirculationRepository(session).cancel_reservation(
                params.principal, params.reservation_id
            )
    except RepositoryException as e:
        return _repository_error("cancel_reservation", e)
    except Exception as e:
        return _unexpected_error("cancel_reservation", e)

    return {
        "content": _text(f"Reservation '{reservation.id}' cancelled."),
        "data": {"reservation": reservation.model_dump(mode="json")},
    }


# =============================================================================
# MAINTENANCE TOOLS
# =============================================================================


async def expire_reservations_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Handler for the expire_reservations tool. Staff only."""
    try:
        params = PrincipalInput.model_validate(arguments)
    except ValidationError as e:
        return _validation_error("expire_reservations", e)

    try:
        if not params.principal.is_staff:
            raise ForbiddenError("Only library staff may perform this operation")
        with session_scope() as session:
            expired = CirculationRepository(session).expire_reservations()
    except RepositoryException as e:
        return _repository_error("expire_reservations", e)
    except Exception as e:
        return _unexpected_error("expire_reservations", e)

    return {
        "content": _text(f"Expired {expired} reservations."),
        "data": {"expired": expired},
    }


async def sweep_overdue_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Handler for the sweep_overdue tool. Staff only."""
    try:
        params = PrincipalInput.model_validate(arguments)
    except ValidationError as e:
        return _validation_error("sweep_overdue", e)

    try:
        if not params.principal.is_staff:
            raise ForbiddenError("Only library staff may perform this operation")
        with session_scope() as session:
            flipped = CirculationRepository(session).sweep_overdue()
    except RepositoryException as e:
        return _repository_error("sweep_overdue", e)
    except Exception as e:
        return _unexpected_error("sweep_overdue", e)

    return {
        "content": _text(f"Marked {flipped} loans overdue."),
        "data": {"overdue": flipped},
    }


class SendDueRemindersInput(PrincipalInput):
    """Input schema for the send_due_reminders tool."""

    within_days: int = Field(
        default=2,
        description="Remind borrowers whose loans fall due within this many days",
        ge=1,
        le=14,
    )


async def send_due_reminders_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Handler for the send_due_reminders tool. Staff only."""
    try:
        params = SendDueRemindersInput.model_validate(arguments)
    except ValidationError as e:
        return _validation_error("send_due_reminders", e)

    try:
        if not params.principal.is_staff:
            raise ForbiddenError("Only library staff may perform this operation")
        with session_scope() as session:
            sent = CirculationRepository(session).send_due_reminders(params.within_days)
    except RepositoryException as e:
        return _repository_error("send_due_reminders", e)
    except Exception as e:
        return _unexpected_error("send_due_reminders", e)

    return {
        "content": _text(f"Due date reminders sent for {sent} loans."),
        "data": {"notifications_sent": sent},
    }


async def send_overdue_notices_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Handler for the send_overdue_notices tool. Staff only."""
    try:
        params = PrincipalInput.model_validate(arguments)
    except ValidationError as e:
        return _validation_error("send_overdue_notices", e)

    try:
        if not params.principal.is_staff:
            raise ForbiddenError("Only library staff may perform this operation")
        with session_scope() as session:
            sent = CirculationRepository(session).send_overdue_notices()
    except RepositoryException as e:
        return _repository_error("send_overdue_notices", e)
    except Exception as e:
        return _unexpected_error("send_overdue_notices", e)

    return {
        "content": _text(f"Overdue notices sent for {sent} loans."),
        "data": {"notifications_sent": sent},
    }


class ListOverdueLoansInput(PrincipalInput):
    """Input schema for the list_overdue_loans tool."""

    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=20, ge=1, le=100)


async def list_overdue_loans_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """
    Handler for the list_overdue_loans tool.

    Staff only: lists every overdue loan, longest overdue first, with the
    fine owed so far.
    """
    try:
        params = ListOverdueLoansInput.model_validate(arguments)
    except ValidationError as e:
        return _validation_error("list_overdue_loans", e)

    try:
        with session_scope() as session:
            page = CirculationRepository(session).list_overdue(
                params.principal,
                PaginationParams(page=params.page, page_size=params.page_size),
            )
    except RepositoryException as e:
        return _repository_error("list_overdue_loans", e)
    except Exception as e:
        return _unexpected_error("list_overdue_loans", e)

    return {
        "content": _text(
            f"{page.total} overdue loans (page {page.page} of {max(page.total_pages, 1)})."
        ),
        "data": page.model_dump(mode="json"),
    }


class MarkNotificationsReadInput(PrincipalInput):
    """Input schema for the mark_notifications_read tool."""

    notification_id: str | None = Field(
        default=None,
        description="Notification to acknowledge; omit to acknowledge all of the caller's",
        pattern=r"^notification_[a-zA-Z0-9]{6,}$",
    )


async def mark_notifications_read_handler(arguments: dict[str, Any]) -> dict[str, Any]:
    """Handler for the mark_notifications_read tool."""
    try:
        params = MarkNotificationsReadInput.model_validate(arguments)
    except ValidationError as e:
        return _validation_error("mark_notifications_read", e)

    try:
        with session_scope() as session:
            repo = NotificationRepository(session)
            if params.notification_id:
                repo.mark_read(params.notification_id, params.principal)
                marked = 1
            else:
                marked = repo.mark_all_read(params.user_id)
    except RepositoryException as e:
        return _repository_error("mark_notifications_read", e)
    except Exception as e:
        return _unexpected_error("mark_notifications_read", e)

    return {
        "content": _text(f"Marked {marked} notifications read."),
        "data": {"marked": marked},
    }


# =============================================================================
# TOOL REGISTRATION
# =============================================================================

borrow_book = {
    "name": "borrow_book",
    "description": (
        "Borrow a book. Claims one available copy and creates a loan due after the "
        "standard loan period. Fails if no copy is available, if the user already has "
        "the book, or if the user is at the concurrent loan limit."
    ),
    "inputSchema": BorrowBookInput.model_json_schema(),
    "handler": borrow_book_handler,
}

return_loan = {
    "name": "return_loan",
    "description": (
        "Return a borrowed book. Finalizes the loan, assesses any late fine and puts the "
        "copy back on the shelf, or hands it to the next user waiting for the book."
    ),
    "inputSchema": ReturnLoanInput.model_json_schema(),
    "handler": return_loan_handler,
}

renew_loan = {
    "name": "renew_loan",
    "description": (
        "Renew a loan before its due date, extending it by the renewal period. "
        "Loans can be renewed a limited number of times and never once overdue."
    ),
    "inputSchema": LoanActionInput.model_json_schema(),
    "handler": renew_loan_handler,
}

pay_fine = {
    "name": "pay_fine",
    "description": "Staff only: record that the fine on a loan has been paid.",
    "inputSchema": LoanActionInput.model_json_schema(),
    "handler": pay_fine_handler,
}

reserve_book = {
    "name": "reserve_book",
    "description": (
        "Join the waitlist of a book with no copy available. The user gets the next "
        "returned copy in queue order and is notified when it is ready for pickup."
    ),
    "inputSchema": ReserveBookInput.model_json_schema(),
    "handler": reserve_book_handler,
}

cancel_reservation = {
    "name": "cancel_reservation",
    "description": "Leave a book's waitlist. Everyone behind moves up one place.",
    "inputSchema": CancelReservationInput.model_json_schema(),
    "handler": cancel_reservation_handler,
}

expire_reservations = {
    "name": "expire_reservations",
    "description": "Staff only: expire every reservation whose pickup window has passed.",
    "inputSchema": PrincipalInput.model_json_schema(),
    "handler": expire_reservations_handler,
}

sweep_overdue = {
    "name": "sweep_overdue",
    "description": "Staff only: mark every loan past its due date as overdue.",
    "inputSchema": PrincipalInput.model_json_schema(),
    "handler": sweep_overdue_handler,
}

mark_notifications_read = {
    "name": "mark_notifications_read",
    "description": "Acknowledge one notification, or all of the caller's notifications.",
    "inputSchema": MarkNotificationsReadInput.model_json_schema(),
    "handler": mark_notifications_read_handler,
}

send_due_reminders = {
    "name": "send_due_reminders",
    "description": (
        "Staff only: notify every borrower whose loan falls due within the given "
        "number of days (default 2)."
    ),
    "inputSchema": SendDueRemindersInput.model_json_schema(),
    "handler": send_due_reminders_handler,
}

send_overdue_notices = {
    "name": "send_overdue_notices",
    "description": (
        "Staff only: notify every borrower with an overdue loan of the days overdue "
        "and the fine owed so far."
    ),
    "inputSchema": PrincipalInput.model_json_schema(),
    "handler": send_overdue_notices_handler,
}

list_overdue_loans = {
    "name": "list_overdue_loans",
    "description": "Staff only: page through every overdue loan, longest overdue first.",
    "inputSchema": ListOverdueLoansInput.model_json_schema(),
    "handler": list_overdue_loans_handler,
}
