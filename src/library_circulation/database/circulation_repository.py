"""
Circulation repository - the entry point for every circulation operation.

Composes the inventory ledger, the loan lifecycle and the reservation queues
over one session and adds the two things they leave out:

- Access: a member may only act on their own loans and reservations; staff
  (librarian, admin) may act on anyone's, and only staff record fine payments
- Transactions: each public method commits once on success and rolls back
  everything on failure

A return and the reservation fulfillment it triggers share a transaction,
but the fulfillment runs inside a SAVEPOINT: if it fails, the return still
commits and the reservation stays in the queue for the next return.
"""

import logging
from collections.abc import Callable, Generator
from contextlib import contextmanager
from datetime import datetime

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..config import CirculationConfig, get_config
from ..models.loan import Loan as LoanModel
from ..models.loan import LoanStatus
from ..models.principal import Principal
from ..models.reservation import Reservation as ReservationModel
from ..models.reservation import ReservationStatus
from ..notifications import DatabaseNotificationSink, NotificationSink
from .inventory import InventoryLedger
from .loan_repository import LoanRepository, LoanStats, UserLoanSummary
from .repository import ForbiddenError, PaginatedResponse, PaginationParams, RepositoryException
from .reservation_repository import ReservationRepository
from .session import safe_commit

logger = logging.getLogger(__name__)


class ReturnOutcome(BaseModel):
    """A finalized loan and, if the copy went to the waitlist, where it went."""

    loan: LoanModel
    fulfilled_reservation: ReservationModel | None = None
    new_loan: LoanModel | None = None


class CirculationStats(BaseModel):
    """Library-wide circulation counters."""

    loans: LoanStats
    reservations: dict[str, int]


class CirculationRepository:
    """Borrow, return, renew and reserve on behalf of a principal."""

    def __init__(
        self,
        session: Session,
        config: CirculationConfig | None = None,
        clock: Callable[[], datetime] | None = None,
        notification_sink: NotificationSink | None = None,
    ):
        self.session = session
        self.config = config or get_config()
        self.clock = clock or datetime.now
        self.notification_sink = notification_sink or DatabaseNotificationSink(session, self.clock)

        self.ledger = InventoryLedger(session)
        self.loans = LoanRepository(
            session, self.config, self.notification_sink, self.clock, self.ledger
        )
        self.reservations = ReservationRepository(
            session,
            self.config,
            self.loans,
            self.notification_sink,
            self.clock,
            self.ledger,
        )

    @contextmanager
    def _unit_of_work(self, operation: str) -> Generator[None, None, None]:
        try:
            yield
        except Exception:
            self.session.rollback()
            raise
        safe_commit(self.session, operation)

    @staticmethod
    def _authorize(principal: Principal, owner_id: str) -> None:
        if not principal.can_act_for(owner_id):
            logger.warning("%s denied access to a record of %s", principal.user_id, owner_id)
            raise ForbiddenError("Access denied")

    @staticmethod
    def _require_staff(principal: Principal) -> None:
        if not principal.is_staff:
            raise ForbiddenError("Only library staff may perform this operation")

    # --- loans ---

    def borrow_book(
        self,
        principal: Principal,
        book_id: str,
        user_id: str | None = None,
        notes: str | None = None,
    ) -> LoanModel:
        """
        Borrow a book for the principal, or for ``user_id`` when staff lend it.

        A reservation the borrower held on the same book is marked fulfilled
        by the new loan.
        """
        user_id = user_id or principal.user_id
        self._authorize(principal, user_id)

        with self._unit_of_work("borrow book"):
            loan = self.loans.borrow(user_id, book_id, borrowed_by=principal.user_id, notes=notes)
            if self.reservations.close_for_loan(user_id, book_id, loan.id) is not None:
                logger.info("Loan %s fulfilled %s's own reservation", loan.id, user_id)
            result = self.loans.to_model(loan)
        return result

    def return_loan(
        self, principal: Principal, loan_id: str, notes: str | None = None
    ) -> ReturnOutcome:
        """Return a loan, then offer the copy to the head of the book's waitlist."""
        with self._unit_of_work("return book"):
            loan = self.loans.get_loan_row(loan_id)
            self._authorize(principal, loan.user_id)

            self.loans.return_loan(loan, returned_by=principal.user_id, notes=notes)
            outcome = ReturnOutcome(loan=self.loans.to_model(loan))

            fulfillment = self._fulfill_waitlist(loan.book_id, principal.user_id)
            if fulfillment is not None:
                reservation, new_loan = fulfillment
                outcome.fulfilled_reservation = self.reservations.to_model(reservation)
                outcome.new_loan = new_loan
        return outcome

    def _fulfill_waitlist(self, book_id: str, actor: str):
        try:
            with self.session.begin_nested():
                return self.reservations.fulfill_next(book_id, fulfilled_by=actor)
        except (RepositoryException, SQLAlchemyError):
            logger.exception("Reservation fulfillment for %s failed; the return stands", book_id)
            return None

    def renew_loan(self, principal: Principal, loan_id: str) -> LoanModel:
        with self._unit_of_work("renew loan"):
            loan = self.loans.get_loan_row(loan_id)
            self._authorize(principal, loan.user_id)
            self.loans.renew(loan, renewed_by=principal.user_id)
            result = self.loans.to_model(loan)
        return result

    def pay_fine(self, principal: Principal, loan_id: str) -> LoanModel:
        """Record that a loan's fine was paid at the desk. Staff only."""
        self._require_staff(principal)
        with self._unit_of_work("pay fine"):
            loan = self.loans.mark_fine_paid(self.loans.get_loan_row(loan_id))
            result = self.loans.to_model(loan)
        return result

    def get_loan(self, principal: Principal, loan_id: str) -> LoanModel:
        with self._unit_of_work("get loan"):
            loan = self.loans.get_loan_row(loan_id)
            self._authorize(principal, loan.user_id)
            result = self.loans.to_model(loan)
        return result

    def list_loans(
        self,
        principal: Principal,
        user_id: str | None = None,
        status: LoanStatus | None = None,
        pagination: PaginationParams | None = None,
    ) -> PaginatedResponse[LoanModel]:
        user_id = user_id or principal.user_id
        self._authorize(principal, user_id)
        with self._unit_of_work("list loans"):
            result = self.loans.list_user_loans(user_id, status, pagination)
        return result

    def list_overdue(
        self, principal: Principal, pagination: PaginationParams | None = None
    ) -> PaginatedResponse[LoanModel]:
        self._require_staff(principal)
        with self._unit_of_work("list overdue loans"):
            result = self.loans.list_overdue(pagination)
        return result

    def get_loan_summary(self, principal: Principal, user_id: str | None = None) -> UserLoanSummary:
        """Loan counts and unpaid fines over every loan of a user."""
        user_id = user_id or principal.user_id
        self._authorize(principal, user_id)
        with self._unit_of_work("loan summary"):
            summary = self.loans.get_user_summary(user_id)
        return summary

    def sweep_overdue(self) -> int:
        """Flip every past-due loan to overdue. Run by the scheduler, not by users."""
        with self._unit_of_work("sweep overdue loans"):
            flipped = self.loans.sweep_overdue()
        return flipped

    def send_due_reminders(self, within_days: int = 2) -> int:
        """Remind borrowers whose loans fall due soon. Run by the scheduler or by staff."""
        with self._unit_of_work("send due date reminders"):
            sent = self.loans.send_due_reminders(within_days)
        return sent

    def send_overdue_notices(self) -> int:
        """Notify every borrower with an overdue loan. Run by the scheduler or by staff."""
        with self._unit_of_work("send overdue notices"):
            sent = self.loans.send_overdue_notices()
        return sent

    # --- reservations ---

    def reserve_book(
        self,
        principal: Principal,
        book_id: str,
        user_id: str | None = None,
        notes: str | None = None,
    ) -> ReservationModel:
        user_id = user_id or principal.user_id
        self._authorize(principal, user_id)

        with self._unit_of_work("reserve book"):
            reservation = self.reservations.reserve(user_id, book_id, notes=notes)
            result = self.reservations.to_model(reservation)
        return result

    def cancel_reservation(self, principal: Principal, reservation_id: str) -> ReservationModel:
        with self._unit_of_work("cancel reservation"):
            reservation = self.reservations.get_reservation_row(reservation_id)
            self._authorize(principal, reservation.user_id)
            self.reservations.cancel(reservation)
            result = self.reservations.to_model(reservation)
        return result

    def get_reservation(self, principal: Principal, reservation_id: str) -> ReservationModel:
        with self._unit_of_work("get reservation"):
            reservation = self.reservations.get_reservation_row(reservation_id)
            self._authorize(principal, reservation.user_id)
            result = self.reservations.to_model(reservation)
        return result

    def get_reservation_queue(self, book_id: str) -> list[ReservationModel]:
        with self._unit_of_work("get reservation queue"):
            queue = self.reservations.get_queue(book_id)
        return queue

    def list_reservations(
        self,
        principal: Principal,
        user_id: str | None = None,
        status: ReservationStatus | None = None,
    ) -> list[ReservationModel]:
        user_id = user_id or principal.user_id
        self._authorize(principal, user_id)
        with self._unit_of_work("list reservations"):
            result = self.reservations.list_user_reservations(user_id, status)
        return result

    def expire_reservations(self) -> int:
        """Expire every lapsed reservation. Run by the scheduler or by staff."""
        with self._unit_of_work("expire reservations"):
            expired = self.reservations.expire_stale()
        if expired:
            logger.info("Expired %d reservations", expired)
        return expired

    # --- reporting ---

    def get_circulation_stats(self) -> CirculationStats:
        with self._unit_of_work("circulation stats"):
            stats = CirculationStats(
                loans=self.loans.get_loan_stats(),
                reservations=self.reservations.count_by_status(),
            )
        return stats
