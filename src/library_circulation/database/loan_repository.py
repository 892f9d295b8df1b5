"""
Loan repository - the loan lifecycle.

Handles borrowing, returning and renewing a copy of a book:
- Borrow: availability, duplicate and loan-cap checks, then a copy claim
  through the inventory ledger
- Return: the fine is fixed at the return time and the copy goes back
- Renew: the due date moves forward while renewals remain
- Overdue: never scheduled; every read and write refreshes the status and
  fine of the loans it touches, and ``sweep_overdue`` does the same in bulk
- Notices: due-date reminders and overdue notices go to the notification
  sink; a loan flipped by the sweep gets its overdue notice right away

Methods stage their changes in the caller's transaction (flush only). The
circulation facade commits, so a borrow or a return commits as one unit.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import and_, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import CirculationConfig
from ..database.schema import Loan as LoanDB
from ..database.schema import LoanRenewal
from ..models.loan import (
    OPEN_LOAN_STATUSES,
    Loan as LoanModel,
    LoanStatus,
    RenewalEntry,
    calculate_fine,
    days_overdue,
    derive_status,
)
from ..models.notification import NotificationPriority, NotificationType
from ..notifications import NotificationSink
from .inventory import InventoryLedger
from .repository import (
    ConflictError,
    NotFoundError,
    PaginatedResponse,
    PaginationParams,
    PolicyLimitExceededError,
    UnavailableError,
)
from .session import safe_query

logger = logging.getLogger(__name__)


class LoanStats(BaseModel):
    """Loan counts and outstanding fines."""

    total_loans: int
    active_loans: int
    overdue_loans: int
    returned_loans: int
    outstanding_fines: float
    collected_fines: float


class UserLoanSummary(BaseModel):
    """Loan counts and unpaid fines of one user."""

    user_id: str
    total_loans: int
    open_loans: int
    overdue_loans: int
    outstanding_fines: float


UNPAID_FINE = and_(LoanDB.fine_paid.is_(False), LoanDB.fine_amount > 0)


class LoanRepository:
    """Repository for the loan lifecycle."""

    def __init__(
        self,
        session: Session,
        config: CirculationConfig,
        notification_sink: NotificationSink,
        clock: Callable[[], datetime] = datetime.now,
        ledger: InventoryLedger | None = None,
    ):
        self.session = session
        self.config = config
        self.notification_sink = notification_sink
        self.clock = clock
        self.ledger = ledger or InventoryLedger(session)

    # --- lifecycle ---

    def borrow(
        self,
        user_id: str,
        book_id: str,
        borrowed_by: str | None = None,
        notes: str | None = None,
    ) -> LoanDB:
        """
        Lend one copy of a book to a user.

        Raises:
            NotFoundError: If the book does not exist
            UnavailableError: If no copy is on the shelf
            ConflictError: If the user already holds an open loan on the book
            PolicyLimitExceededError: If the user is at the loan cap
        """
        book = self.ledger.get_book(book_id)
        if not self.ledger.is_book_available(book):
            raise UnavailableError(f"Book '{book.title}' is not available for borrowing")

        if self.find_open_loan(user_id, book_id) is not None:
            raise ConflictError("User already has this book borrowed")

        cap = self.config.max_concurrent_loans
        if self.count_active_loans(user_id) >= cap:
            raise PolicyLimitExceededError(
                f"User has reached the maximum borrowing limit ({cap} books)", limit=cap
            )

        # Another borrower may have taken the last copy since the check above
        if not self.ledger.try_decrement(book_id):
            raise UnavailableError(f"Book '{book.title}' is not available for borrowing")

        loan = self.create_loan(user_id, book_id, borrowed_by=borrowed_by or user_id, notes=notes)
        logger.info("Loan %s: %s borrowed %s, due %s", loan.id, user_id, book_id, loan.due_date)
        return loan

    def create_loan(
        self,
        user_id: str,
        book_id: str,
        borrowed_by: str,
        notes: str | None = None,
    ) -> LoanDB:
        """
        Insert a loan for a copy the caller has already claimed.

        Raises:
            ConflictError: If the user already holds an open loan on the book
        """
        now = self.clock()
        loan = LoanDB(
            id=f"loan_{uuid4().hex[:12]}",
            user_id=user_id,
            book_id=book_id,
            borrow_date=now,
            due_date=now + timedelta(days=self.config.borrow_duration_days),
            status=LoanStatus.BORROWED,
            fine_amount=0.0,
            fine_paid=False,
            renewal_count=0,
            borrowed_by=borrowed_by,
            notes=notes,
        )
        self.session.add(loan)
        try:
            self.session.flush()
        except IntegrityError as e:
            raise ConflictError("User already has this book borrowed") from e
        return loan

    def return_loan(self, loan: LoanDB, returned_by: str, notes: str | None = None) -> LoanDB:
        """
        Finalize a loan and put the copy back on the shelf.

        Raises:
            ConflictError: If the loan is already returned
        """
        now = self.clock()
        self.refresh_status(loan, now)
        if loan.status == LoanStatus.RETURNED:
            raise ConflictError("Book is already returned")

        if not loan.fine_paid:
            loan.fine_amount = self._fine_at(loan, now)
        loan.status = LoanStatus.RETURNED
        loan.return_date = now
        loan.returned_by = returned_by
        if notes is not None:
            loan.notes = notes
        self.session.flush()

        self.ledger.increment(loan.book_id)
        logger.info("Loan %s returned by %s, fine %.2f", loan.id, returned_by, loan.fine_amount)
        return loan

    def renew(self, loan: LoanDB, renewed_by: str) -> LoanDB:
        """
        Extend the due date of a loan by the renewal period.

        The renewal limit is checked before the due date, so a loan that has
        used all its renewals reports the limit even when it is also overdue.

        Raises:
            ConflictError: If the loan is returned, overdue or past due
            PolicyLimitExceededError: If the loan has no renewals left
        """
        now = self.clock()
        self.refresh_status(loan, now)
        if loan.status == LoanStatus.RETURNED:
            raise ConflictError("Returned loans cannot be renewed")

        max_renewals = self.config.max_renewals
        if loan.renewal_count >= max_renewals:
            raise PolicyLimitExceededError(
                f"Maximum renewals ({max_renewals}) reached", limit=max_renewals
            )

        if not self.to_model(loan).can_renew(now, max_renewals):
            raise ConflictError("Overdue loans cannot be renewed")

        new_due_date = loan.due_date + timedelta(days=self.config.renewal_duration_days)
        loan.due_date = new_due_date
        loan.renewal_count += 1
        loan.renewals.append(
            LoanRenewal(renewal_date=now, new_due_date=new_due_date, renewed_by=renewed_by)
        )
        self.session.flush()

        logger.info(
            "Loan %s renewed (%d/%d), due %s",
            loan.id,
            loan.renewal_count,
            max_renewals,
            new_due_date,
        )
        return loan

    def mark_fine_paid(self, loan: LoanDB) -> LoanDB:
        """
        Record payment of a loan's fine. A paid fine stops accruing.

        Raises:
            ConflictError: If there is no fine or it is already paid
        """
        now = self.clock()
        self.refresh_status(loan, now)
        if loan.fine_paid:
            raise ConflictError("Fine is already paid")
        if loan.fine_amount <= 0:
            raise ConflictError("Loan has no fine to pay")

        loan.fine_paid = True
        loan.fine_paid_date = now
        self.session.flush()
        logger.info("Fine of %.2f paid on loan %s", loan.fine_amount, loan.id)
        return loan

    # --- overdue derivation ---

    def refresh_status(self, loan: LoanDB, now: datetime | None = None) -> bool:
        """
        Bring a loan's cached status and fine up to date.

        Returns:
            True if anything changed
        """
        if loan.status == LoanStatus.RETURNED:
            return False
        now = now or self.clock()

        changed = False
        status = derive_status(loan.status, loan.due_date, now)
        if status != loan.status:
            logger.info("Loan %s is overdue (due %s)", loan.id, loan.due_date)
            loan.status = status
            changed = True

        if status == LoanStatus.OVERDUE and not loan.fine_paid:
            fine = self._fine_at(loan, now)
            if fine != loan.fine_amount:
                loan.fine_amount = fine
                changed = True
        return changed

    def sweep_overdue(self) -> int:
        """
        Flip every borrowed loan past its due date to overdue.

        Each flipped loan's borrower gets an overdue notice.

        Returns:
            Number of loans flipped
        """
        now = self.clock()
        loans = self._load_open(LoanDB.due_date < now)
        flipped = []
        for loan in loans:
            was_borrowed = loan.status == LoanStatus.BORROWED
            self.refresh_status(loan, now)
            if was_borrowed and loan.status == LoanStatus.OVERDUE:
                flipped.append(loan)
        self.session.flush()

        for loan in flipped:
            self._notify_overdue(loan, now)
        if flipped:
            logger.info("Overdue sweep flipped %d loans", len(flipped))
        return len(flipped)

    # --- notices ---

    def send_due_reminders(self, within_days: int = 2) -> int:
        """
        Remind borrowers of loans falling due within the next ``within_days``.

        Returns:
            Number of reminders sent
        """
        now = self.clock()
        horizon = now + timedelta(days=within_days)
        loans = safe_query(
            self.session,
            lambda s: s.execute(
                select(LoanDB)
                .where(
                    LoanDB.status == LoanStatus.BORROWED,
                    LoanDB.due_date >= now,
                    LoanDB.due_date <= horizon,
                )
                .order_by(LoanDB.due_date, LoanDB.id)
            )
            .scalars()
            .all(),
            "Failed to find loans falling due",
        )

        for loan in loans:
            title = loan.book.title
            self.notification_sink.notify(
                loan.user_id,
                NotificationType.DUE_DATE,
                "Book Due Date Reminder",
                f'Your book "{title}" is due on {loan.due_date.strftime("%B %d, %Y")}. '
                "Please return it on time to avoid late fees.",
                priority=NotificationPriority.MEDIUM,
                related_entity=("loan", loan.id),
                payload={
                    "book_id": loan.book_id,
                    "book_title": title,
                    "due_date": loan.due_date.isoformat(),
                },
            )
        logger.info("Sent %d due date reminders (within %d days)", len(loans), within_days)
        return len(loans)

    def send_overdue_notices(self) -> int:
        """
        Send an overdue notice, with the fine owed so far, for every overdue loan.

        Returns:
            Number of notices sent
        """
        now = self.clock()
        self._refresh_open()
        loans = self._load_open(LoanDB.status == LoanStatus.OVERDUE)
        for loan in sorted(loans, key=lambda row: (row.due_date, row.id)):
            self._notify_overdue(loan, now)
        logger.info("Sent %d overdue notices", len(loans))
        return len(loans)

    def _notify_overdue(self, loan: LoanDB, now: datetime) -> None:
        days = days_overdue(loan.due_date, now)
        title = loan.book.title
        self.notification_sink.notify(
            loan.user_id,
            NotificationType.OVERDUE,
            "Overdue Book Notice",
            f'Your book "{title}" is overdue by {days} day{"s" if days != 1 else ""}. '
            f"Fine amount: ${loan.fine_amount:.2f}. Please return the book immediately.",
            priority=NotificationPriority.HIGH,
            related_entity=("loan", loan.id),
            payload={
                "book_id": loan.book_id,
                "book_title": title,
                "days_overdue": days,
                "fine_amount": loan.fine_amount,
            },
        )

    def _fine_at(self, loan: LoanDB, cutoff: datetime) -> float:
        return calculate_fine(
            loan.due_date, cutoff, self.config.fine_per_day, self.config.max_fine_amount
        )

    def _load_open(self, *criteria) -> list[LoanDB]:
        return safe_query(
            self.session,
            lambda s: s.execute(
                select(LoanDB).where(LoanDB.status.in_(OPEN_LOAN_STATUSES), *criteria)
            )
            .scalars()
            .all(),
            "Failed to load open loans",
        )

    def _refresh_open(self, *criteria) -> None:
        now = self.clock()
        for loan in self._load_open(LoanDB.due_date < now, *criteria):
            self.refresh_status(loan, now)
        self.session.flush()

    # --- queries ---

    def get_loan_row(self, loan_id: str) -> LoanDB:
        """Load a loan with its status refreshed, or raise NotFoundError."""
        loan = safe_query(
            self.session,
            lambda s: s.execute(select(LoanDB).where(LoanDB.id == loan_id)).scalar_one_or_none(),
            "Failed to get loan",
        )
        if loan is None:
            raise NotFoundError(f"Loan {loan_id} not found")
        if self.refresh_status(loan):
            self.session.flush()
        return loan

    def get_loan(self, loan_id: str) -> LoanModel:
        return self.to_model(self.get_loan_row(loan_id))

    def find_open_loan(self, user_id: str, book_id: str) -> LoanDB | None:
        return safe_query(
            self.session,
            lambda s: s.execute(
                select(LoanDB).where(
                    LoanDB.user_id == user_id,
                    LoanDB.book_id == book_id,
                    LoanDB.status.in_(OPEN_LOAN_STATUSES),
                )
            ).scalar_one_or_none(),
            "Failed to check existing loans",
        )

    def count_active_loans(self, user_id: str) -> int:
        """Open loans of a user, overdue ones included."""
        return (
            safe_query(
                self.session,
                lambda s: s.execute(
                    select(func.count())
                    .select_from(LoanDB)
                    .where(LoanDB.user_id == user_id, LoanDB.status.in_(OPEN_LOAN_STATUSES))
                ).scalar(),
                "Failed to count active loans",
            )
            or 0
        )

    def list_user_loans(
        self,
        user_id: str,
        status: LoanStatus | None = None,
        pagination: PaginationParams | None = None,
    ) -> PaginatedResponse[LoanModel]:
        """A user's loans, newest first, with statuses refreshed."""
        self._refresh_open(LoanDB.user_id == user_id)
        criteria = [LoanDB.user_id == user_id]
        if status is not None:
            criteria.append(LoanDB.status == LoanStatus(status))
        return self._paginate(criteria, LoanDB.borrow_date.desc(), pagination)

    def list_overdue(self, pagination: PaginationParams | None = None) -> PaginatedResponse[LoanModel]:
        """Every overdue loan, longest overdue first."""
        self._refresh_open()
        return self._paginate(
            [LoanDB.status == LoanStatus.OVERDUE], LoanDB.due_date.asc(), pagination
        )

    def get_loan_stats(self) -> LoanStats:
        self._refresh_open()
        return LoanStats(
            total_loans=self._count(),
            active_loans=self._count(LoanDB.status.in_(OPEN_LOAN_STATUSES)),
            overdue_loans=self._count(LoanDB.status == LoanStatus.OVERDUE),
            returned_loans=self._count(LoanDB.status == LoanStatus.RETURNED),
            outstanding_fines=self._sum_fines(UNPAID_FINE),
            collected_fines=self._sum_fines(LoanDB.fine_paid.is_(True)),
        )

    def get_user_summary(self, user_id: str) -> UserLoanSummary:
        """Loan counts and unpaid fines of one user, over every loan they have."""
        self._refresh_open(LoanDB.user_id == user_id)
        mine = LoanDB.user_id == user_id
        return UserLoanSummary(
            user_id=user_id,
            total_loans=self._count(mine),
            open_loans=self._count(mine, LoanDB.status.in_(OPEN_LOAN_STATUSES)),
            overdue_loans=self._count(mine, LoanDB.status == LoanStatus.OVERDUE),
            outstanding_fines=self._sum_fines(mine, UNPAID_FINE),
        )

    def _count(self, *criteria) -> int:
        return (
            safe_query(
                self.session,
                lambda s: s.execute(
                    select(func.count()).select_from(LoanDB).where(*criteria)
                ).scalar(),
                "Failed to count loans",
            )
            or 0
        )

    def _sum_fines(self, *criteria) -> float:
        total = safe_query(
            self.session,
            lambda s: s.execute(
                select(func.coalesce(func.sum(LoanDB.fine_amount), 0.0)).where(*criteria)
            ).scalar(),
            "Failed to sum fines",
        )
        return round(float(total or 0.0), 2)

    def _paginate(self, criteria, order_by, pagination: PaginationParams | None):
        if not pagination:
            pagination = PaginationParams()
        pagination.validate_params()

        total = (
            safe_query(
                self.session,
                lambda s: s.execute(
                    select(func.count()).select_from(LoanDB).where(*criteria)
                ).scalar(),
                "Failed to count loans",
            )
            or 0
        )
        rows = safe_query(
            self.session,
            lambda s: s.execute(
                select(LoanDB)
                .where(*criteria)
                .order_by(order_by, LoanDB.id)
                .offset(pagination.offset)
                .limit(pagination.page_size)
            )
            .scalars()
            .all(),
            "Failed to list loans",
        )
        return PaginatedResponse.build([self.to_model(row) for row in rows], total, pagination)

    def to_model(self, loan: LoanDB) -> LoanModel:
        """Convert a loan row, renewal history included, to its Pydantic model."""
        return LoanModel(
            id=loan.id,
            user_id=loan.user_id,
            book_id=loan.book_id,
            borrow_date=loan.borrow_date,
            due_date=loan.due_date,
            return_date=loan.return_date,
            status=loan.status,
            fine_amount=loan.fine_amount,
            fine_paid=loan.fine_paid,
            fine_paid_date=loan.fine_paid_date,
            renewal_count=loan.renewal_count,
            renewal_history=[RenewalEntry.model_validate(entry) for entry in loan.renewals],
            borrowed_by=loan.borrowed_by,
            returned_by=loan.returned_by,
            notes=loan.notes,
            created_at=loan.created_at,
            updated_at=loan.updated_at,
        )
