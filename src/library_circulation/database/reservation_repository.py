"""
Reservation repository - per-book waitlists.

A reservation is only accepted while no copy is on the shelf. The queue of a
book is ordered by ``priority`` and kept contiguous: whenever a reservation
leaves it (fulfilled, cancelled or expired), everyone behind moves up by one.

Fulfillment hands the next copy straight to the head of the queue:

1. Lapsed reservations of the book are expired first
2. A copy is claimed through the inventory ledger (nothing happens if the
   claim fails)
3. The reservation is marked fulfilled and a loan is created for its user
4. The reservation holder is notified that the book is ready for pickup

Like the loan repository, methods only flush; the circulation facade commits.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..config import CirculationConfig
from ..database.schema import Reservation as ReservationDB
from ..models.loan import Loan as LoanModel
from ..models.notification import NotificationPriority, NotificationType
from ..models.reservation import Reservation as ReservationModel
from ..models.reservation import ReservationStatus
from ..notifications import NotificationSink
from .inventory import InventoryLedger
from .loan_repository import LoanRepository
from .repository import ConflictError, NotFoundError, UnavailableError
from .session import safe_query

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class ReservationRepository:
    """Repository for reservation queues."""

    def __init__(
        self,
        session: Session,
        config: CirculationConfig,
        loans: LoanRepository,
        notification_sink: NotificationSink,
        clock: Callable[[], datetime] = datetime.now,
        ledger: InventoryLedger | None = None,
    ):
        self.session = session
        self.config = config
        self.loans = loans
        self.notification_sink = notification_sink
        self.clock = clock
        self.ledger = ledger or loans.ledger

    def reserve(self, user_id: str, book_id: str, notes: str | None = None) -> ReservationDB:
        """
        Join the waitlist of a book that has no copy on the shelf.

        Raises:
            NotFoundError: If the book does not exist
            UnavailableError: If a copy can be borrowed right away, or the
                book is out of circulation
            ConflictError: If the user already waits for, or holds, the book
        """
        book = self.ledger.get_book(book_id)
        if not book.is_active:
            raise UnavailableError(f"Book '{book.title}' is not in circulation")
        if self.ledger.is_book_available(book):
            raise UnavailableError("Book is available for immediate borrowing")

        self.expire_stale(book_id)

        if self.find_active(user_id, book_id) is not None:
            raise ConflictError("User already has an active reservation for this book")
        if self.loans.find_open_loan(user_id, book_id) is not None:
            raise ConflictError("User already has this book borrowed")

        now = self.clock()
        reservation = ReservationDB(
            id=f"reservation_{uuid4().hex[:12]}",
            user_id=user_id,
            book_id=book_id,
            reservation_date=now,
            expiry_date=now + timedelta(days=self.config.pickup_window_days),
            status=ReservationStatus.ACTIVE,
            priority=self.queue_length(book_id) + 1,
            notes=notes,
        )
        self.session.add(reservation)
        try:
            self.session.flush()
        except IntegrityError as e:
            raise ConflictError("User already has an active reservation for this book") from e

        self.ledger.mark_reserved(book_id)
        logger.info(
            "Reservation %s: %s queued for %s at position %d",
            reservation.id,
            user_id,
            book_id,
            reservation.priority,
        )
        return reservation

    def cancel(self, reservation: ReservationDB) -> ReservationDB:
        """
        Withdraw an active reservation and close the gap it leaves.

        Raises:
            ConflictError: If the reservation is no longer active
        """
        self.expire_stale(reservation.book_id)
        if reservation.status != ReservationStatus.ACTIVE:
            raise ConflictError(
                f"Only active reservations can be cancelled (status: {reservation.status.value})"
            )

        self._leave_queue(reservation, ReservationStatus.CANCELLED)
        logger.info("Reservation %s cancelled", reservation.id)
        return reservation

    def fulfill_next(
        self, book_id: str, fulfilled_by: str | None = None
    ) -> tuple[ReservationDB, LoanModel] | None:
        """
        Hand a copy of the book to the head of its queue.

        Returns:
            The fulfilled reservation and the loan created for it, or None
            when the queue is empty or no copy could be claimed
        """
        self.expire_stale(book_id)

        reservation = safe_query(
            self.session,
            lambda s: s.execute(
                select(ReservationDB)
                .where(
                    ReservationDB.book_id == book_id,
                    ReservationDB.status == ReservationStatus.ACTIVE,
                )
                .order_by(ReservationDB.priority, ReservationDB.reservation_date)
                .limit(1)
            ).scalar_one_or_none(),
            "Failed to get next reservation",
        )
        if reservation is None:
            return None

        if not self.ledger.try_decrement(book_id):
            logger.info("No copy of %s to hand to reservation %s", book_id, reservation.id)
            return None

        loan = self.loans.create_loan(
            reservation.user_id, book_id, borrowed_by=fulfilled_by or SYSTEM_ACTOR
        )
        reservation.loan_id = loan.id
        reservation.fulfilled_at = self.clock()
        reservation.fulfilled_by = fulfilled_by or SYSTEM_ACTOR
        self._leave_queue(reservation, ReservationStatus.FULFILLED)
        logger.info("Reservation %s fulfilled with loan %s", reservation.id, loan.id)

        self._notify_ready(reservation, loan.id)
        return reservation, self.loans.to_model(loan)

    def close_for_loan(self, user_id: str, book_id: str, loan_id: str) -> ReservationDB | None:
        """Mark a user's reservation fulfilled when they borrowed the book directly."""
        reservation = self.find_active(user_id, book_id)
        if reservation is None:
            return None
        reservation.loan_id = loan_id
        reservation.fulfilled_at = self.clock()
        reservation.fulfilled_by = user_id
        self._leave_queue(reservation, ReservationStatus.FULFILLED)
        return reservation

    def expire_stale(self, book_id: str | None = None) -> int:
        """
        Expire active reservations whose expiry date has passed.

        Reservations of a book are processed front to back, so each removal
        renumbers against the queue as it stands at that moment.

        Returns:
            Number of reservations expired
        """
        now = self.clock()
        query = select(ReservationDB).where(
            ReservationDB.status == ReservationStatus.ACTIVE,
            ReservationDB.expiry_date < now,
        )
        if book_id is not None:
            query = query.where(ReservationDB.book_id == book_id)
        query = query.order_by(ReservationDB.book_id, ReservationDB.priority)

        stale = safe_query(
            self.session,
            lambda s: s.execute(query).scalars().all(),
            "Failed to find expired reservations",
        )
        for reservation in stale:
            self._leave_queue(reservation, ReservationStatus.EXPIRED)
            logger.info("Reservation %s expired (expiry %s)", reservation.id, reservation.expiry_date)
        return len(stale)

    def _leave_queue(self, reservation: ReservationDB, status: ReservationStatus) -> None:
        """Take a reservation out of its queue and move everyone behind it up."""
        removed_priority = reservation.priority
        reservation.status = status
        self.session.flush()

        safe_query(
            self.session,
            lambda s: s.execute(
                update(ReservationDB)
                .where(
                    ReservationDB.book_id == reservation.book_id,
                    ReservationDB.status == ReservationStatus.ACTIVE,
                    ReservationDB.priority > removed_priority,
                )
                .values(priority=ReservationDB.priority - 1),
                execution_options={"synchronize_session": "fetch"},
            ),
            "Failed to renumber reservation queue",
        )

        self.ledger.unmark_reserved(reservation.book_id)

    def _notify_ready(self, reservation: ReservationDB, loan_id: str) -> None:
        days = self.config.pickup_window_days
        pickup_deadline = self.clock() + timedelta(days=days)
        title = self.ledger.get_book(reservation.book_id).title
        self.notification_sink.notify(
            reservation.user_id,
            NotificationType.RESERVATION_AVAILABLE,
            "Reserved Book Available",
            f'Your reserved book "{title}" is now available for pickup. '
            f"You have {days} days to collect it.",
            priority=NotificationPriority.HIGH,
            related_entity=("reservation", reservation.id),
            payload={
                "book_id": reservation.book_id,
                "book_title": title,
                "loan_id": loan_id,
                "pickup_deadline": pickup_deadline.isoformat(),
            },
        )

    # --- queries ---

    def get_reservation_row(self, reservation_id: str) -> ReservationDB:
        """Load a reservation, expiring it first if it has lapsed."""
        reservation = safe_query(
            self.session,
            lambda s: s.execute(
                select(ReservationDB).where(ReservationDB.id == reservation_id)
            ).scalar_one_or_none(),
            "Failed to get reservation",
        )
        if reservation is None:
            raise NotFoundError(f"Reservation {reservation_id} not found")
        if self.to_model(reservation).is_expired(self.clock()):
            self.expire_stale(reservation.book_id)
        return reservation

    def get_reservation(self, reservation_id: str) -> ReservationModel:
        return self.to_model(self.get_reservation_row(reservation_id))

    def find_active(self, user_id: str, book_id: str) -> ReservationDB | None:
        return safe_query(
            self.session,
            lambda s: s.execute(
                select(ReservationDB).where(
                    ReservationDB.user_id == user_id,
                    ReservationDB.book_id == book_id,
                    ReservationDB.status == ReservationStatus.ACTIVE,
                )
            ).scalar_one_or_none(),
            "Failed to check existing reservations",
        )

    def queue_length(self, book_id: str) -> int:
        return (
            safe_query(
                self.session,
                lambda s: s.execute(
                    select(func.count())
                    .select_from(ReservationDB)
                    .where(
                        ReservationDB.book_id == book_id,
                        ReservationDB.status == ReservationStatus.ACTIVE,
                    )
                ).scalar(),
                "Failed to count reservation queue",
            )
            or 0
        )

    def get_queue(self, book_id: str) -> list[ReservationModel]:
        """Active reservations of a book in queue order."""
        self.ledger.get_book(book_id)
        self.expire_stale(book_id)
        rows = safe_query(
            self.session,
            lambda s: s.execute(
                select(ReservationDB)
                .where(
                    ReservationDB.book_id == book_id,
                    ReservationDB.status == ReservationStatus.ACTIVE,
                )
                .order_by(ReservationDB.priority, ReservationDB.reservation_date)
            )
            .scalars()
            .all(),
            "Failed to get reservation queue",
        )
        return [self.to_model(row) for row in rows]

    def list_user_reservations(
        self, user_id: str, status: ReservationStatus | None = None
    ) -> list[ReservationModel]:
        """A user's reservations, newest first."""
        self._expire_for_user(user_id)
        query = select(ReservationDB).where(ReservationDB.user_id == user_id)
        if status is not None:
            query = query.where(ReservationDB.status == ReservationStatus(status))
        query = query.order_by(ReservationDB.reservation_date.desc(), ReservationDB.id)

        rows = safe_query(
            self.session,
            lambda s: s.execute(query).scalars().all(),
            "Failed to list reservations",
        )
        return [self.to_model(row) for row in rows]

    def count_by_status(self) -> dict[str, int]:
        rows = safe_query(
            self.session,
            lambda s: s.execute(
                select(ReservationDB.status, func.count()).group_by(ReservationDB.status)
            ).all(),
            "Failed to count reservations",
        )
        counts = {status.value: 0 for status in ReservationStatus}
        for status, count in rows:
            counts[ReservationStatus(status).value] = count
        return counts

    def _expire_for_user(self, user_id: str) -> None:
        lapsed_books = safe_query(
            self.session,
            lambda s: s.execute(
                select(ReservationDB.book_id)
                .where(
                    ReservationDB.user_id == user_id,
                    ReservationDB.status == ReservationStatus.ACTIVE,
                    ReservationDB.expiry_date < self.clock(),
                )
                .distinct()
            )
            .scalars()
            .all(),
            "Failed to find lapsed reservations",
        )
        for book_id in lapsed_books:
            self.expire_stale(book_id)

    def to_model(self, reservation: ReservationDB) -> ReservationModel:
        return ReservationModel.model_validate(reservation)
