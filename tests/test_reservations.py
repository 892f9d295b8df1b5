"""
Tests for reservation queues.

The queue of every book must stay contiguous (priorities 1..N) through
fulfillment, cancellation and expiry, and a returned copy must go to the
head of the queue rather than back on the shelf.
"""

import logging
import random
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from library_circulation.database.repository import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    RepositoryException,
    UnavailableError,
)
from library_circulation.database.schema import Book as BookDB
from library_circulation.database.schema import Loan as LoanDB
from library_circulation.database.schema import Reservation as ReservationDB
from library_circulation.models.loan import LoanStatus
from library_circulation.models.principal import Principal
from library_circulation.models.notification import NotificationPriority, NotificationType
from library_circulation.models.reservation import ReservationStatus


def _book(session, book_id: str) -> BookDB:
    session.expire_all()
    return session.get(BookDB, book_id)


def _queue(circulation, book_id: str) -> list[tuple[str, int]]:
    return [(r.user_id, r.priority) for r in circulation.get_reservation_queue(book_id)]


@pytest.fixture
def checked_out(circulation, single_copy_book, alice):
    """The only copy of the book is out with alice."""
    return circulation.borrow_book(alice, single_copy_book.id)


class TestReserve:
    def test_available_book_cannot_be_reserved(self, circulation, single_copy_book, alice):
        with pytest.raises(UnavailableError, match="available for immediate borrowing"):
            circulation.reserve_book(alice, single_copy_book.id)

    def test_unknown_book(self, circulation, alice):
        with pytest.raises(NotFoundError):
            circulation.reserve_book(alice, "book_missing001")

    def test_priorities_follow_arrival(
        self, circulation, test_db_session, single_copy_book, checked_out, bob, carol, dave
    ):
        for principal in (bob, carol, dave):
            circulation.reserve_book(principal, single_copy_book.id)

        assert _queue(circulation, single_copy_book.id) == [
            ("user_bob", 1),
            ("user_carol", 2),
            ("user_dave", 3),
        ]
        assert _book(test_db_session, single_copy_book.id).total_reservations == 3

    def test_expiry_is_pickup_window(self, circulation, single_copy_book, checked_out, bob, clock):
        reservation = circulation.reserve_book(bob, single_copy_book.id)

        assert reservation.reservation_date == clock.now
        assert (reservation.expiry_date - reservation.reservation_date).days == 3
        assert reservation.status == ReservationStatus.ACTIVE

    def test_duplicate_reservation_conflicts(self, circulation, single_copy_book, checked_out, bob):
        circulation.reserve_book(bob, single_copy_book.id)

        with pytest.raises(ConflictError, match="active reservation"):
            circulation.reserve_book(bob, single_copy_book.id)

    def test_holder_cannot_reserve_own_book(self, circulation, single_copy_book, checked_out, alice):
        with pytest.raises(ConflictError, match="already has this book"):
            circulation.reserve_book(alice, single_copy_book.id)


class TestFulfillment:
    def test_return_hands_copy_to_head_of_queue(
        self,
        circulation,
        test_db_session,
        single_copy_book,
        checked_out,
        alice,
        bob,
        carol,
        dave,
        sink,
    ):
        first = circulation.reserve_book(bob, single_copy_book.id)
        circulation.reserve_book(carol, single_copy_book.id)
        circulation.reserve_book(dave, single_copy_book.id)

        outcome = circulation.return_loan(alice, checked_out.id)

        assert outcome.fulfilled_reservation.id == first.id
        assert outcome.fulfilled_reservation.status == ReservationStatus.FULFILLED
        assert outcome.fulfilled_reservation.fulfilled_by == alice.user_id
        assert outcome.new_loan.user_id == "user_bob"
        assert outcome.new_loan.status == LoanStatus.BORROWED
        assert outcome.fulfilled_reservation.loan_id == outcome.new_loan.id

        assert _queue(circulation, single_copy_book.id) == [("user_carol", 1), ("user_dave", 2)]
        book = _book(test_db_session, single_copy_book.id)
        assert book.available_copies == 0
        assert book.total_reservations == 2

        assert len(sink.sent) == 1
        note = sink.sent[0]
        assert note.user_id == "user_bob"
        assert note.kind == NotificationType.RESERVATION_AVAILABLE
        assert note.priority == NotificationPriority.HIGH
        assert '"The Last Copy" is now available for pickup' in note.message
        assert note.payload["loan_id"] == outcome.new_loan.id
        assert "pickup_deadline" in note.payload

    def test_return_with_empty_queue_restocks(
        self, circulation, test_db_session, single_copy_book, checked_out, alice, sink
    ):
        outcome = circulation.return_loan(alice, checked_out.id)

        assert outcome.fulfilled_reservation is None
        assert _book(test_db_session, single_copy_book.id).available_copies == 1
        assert sink.sent == []

    def test_failed_fulfillment_keeps_the_return(
        self,
        circulation,
        test_db_session,
        single_copy_book,
        checked_out,
        alice,
        bob,
        monkeypatch,
        caplog,
    ):
        reservation = circulation.reserve_book(bob, single_copy_book.id)

        def broken_fulfill(book_id, fulfilled_by=None):
            raise RepositoryException("queue unavailable")

        monkeypatch.setattr(circulation.reservations, "fulfill_next", broken_fulfill)

        with caplog.at_level(logging.ERROR):
            outcome = circulation.return_loan(alice, checked_out.id)

        assert outcome.loan.status == LoanStatus.RETURNED
        assert outcome.fulfilled_reservation is None
        assert "fulfillment" in caplog.text
        assert _book(test_db_session, single_copy_book.id).available_copies == 1
        assert circulation.get_reservation(bob, reservation.id).status == ReservationStatus.ACTIVE

        monkeypatch.undo()
        loan = circulation.borrow_book(bob, single_copy_book.id)
        closed = circulation.get_reservation(bob, reservation.id)
        assert closed.status == ReservationStatus.FULFILLED
        assert closed.loan_id == loan.id
        assert circulation.get_reservation_queue(single_copy_book.id) == []


    def test_head_already_holding_a_copy_keeps_the_return(
        self, circulation, test_db_session, make_book, alice, bob, carol, clock, caplog
    ):
        book = make_book("book_twocopy01", total_copies=2)
        returning = circulation.borrow_book(alice, book.id)
        circulation.borrow_book(carol, book.id)
        reservation = circulation.reserve_book(bob, book.id)

        # A loan recorded outside the circulation path
        test_db_session.add(
            LoanDB(
                id="loan_outside001",
                user_id=bob.user_id,
                book_id=book.id,
                borrow_date=clock.now,
                due_date=clock.now + timedelta(days=14),
                status=LoanStatus.BORROWED,
                fine_amount=0.0,
                fine_paid=False,
                renewal_count=0,
                borrowed_by="staff_lee",
            )
        )
        test_db_session.commit()

        with caplog.at_level(logging.ERROR):
            outcome = circulation.return_loan(alice, returning.id)

        assert outcome.loan.status == LoanStatus.RETURNED
        assert outcome.fulfilled_reservation is None
        assert outcome.new_loan is None
        assert "fulfillment" in caplog.text
        assert circulation.get_loan(alice, returning.id).status == LoanStatus.RETURNED
        assert _book(test_db_session, book.id).available_copies == 1

        kept = circulation.get_reservation(bob, reservation.id)
        assert kept.status == ReservationStatus.ACTIVE
        assert kept.priority == 1


class TestCancel:
    def test_cancel_middle_closes_gap(
        self, circulation, test_db_session, single_copy_book, checked_out, bob, carol, dave
    ):
        circulation.reserve_book(bob, single_copy_book.id)
        middle = circulation.reserve_book(carol, single_copy_book.id)
        circulation.reserve_book(dave, single_copy_book.id)

        cancelled = circulation.cancel_reservation(carol, middle.id)

        assert cancelled.status == ReservationStatus.CANCELLED
        assert _queue(circulation, single_copy_book.id) == [("user_bob", 1), ("user_dave", 2)]
        assert _book(test_db_session, single_copy_book.id).total_reservations == 2

    def test_cancel_twice_conflicts(self, circulation, single_copy_book, checked_out, bob):
        reservation = circulation.reserve_book(bob, single_copy_book.id)
        circulation.cancel_reservation(bob, reservation.id)

        with pytest.raises(ConflictError):
            circulation.cancel_reservation(bob, reservation.id)

    def test_cancel_someone_elses_reservation(
        self, circulation, single_copy_book, checked_out, bob, carol, librarian
    ):
        reservation = circulation.reserve_book(bob, single_copy_book.id)

        with pytest.raises(ForbiddenError):
            circulation.cancel_reservation(carol, reservation.id)
        assert circulation.cancel_reservation(librarian, reservation.id).status == (
            ReservationStatus.CANCELLED
        )

    def test_reserve_again_after_cancel(self, circulation, single_copy_book, checked_out, bob, carol):
        first = circulation.reserve_book(bob, single_copy_book.id)
        circulation.reserve_book(carol, single_copy_book.id)
        circulation.cancel_reservation(bob, first.id)

        again = circulation.reserve_book(bob, single_copy_book.id)
        assert again.priority == 2
        assert _queue(circulation, single_copy_book.id) == [("user_carol", 1), ("user_bob", 2)]


class TestExpiry:
    def test_lapsed_reservation_leaves_queue_on_read(
        self, circulation, single_copy_book, checked_out, bob, carol, dave, clock
    ):
        stale = circulation.reserve_book(bob, single_copy_book.id)
        clock.advance(days=2)
        circulation.reserve_book(carol, single_copy_book.id)
        circulation.reserve_book(dave, single_copy_book.id)
        clock.advance(days=1, hours=12)

        assert _queue(circulation, single_copy_book.id) == [("user_carol", 1), ("user_dave", 2)]
        assert circulation.get_reservation(bob, stale.id).status == ReservationStatus.EXPIRED

    def test_expire_reservations_batch(
        self, circulation, make_book, alice, bob, carol, dave, clock
    ):
        first = make_book("book_batch001")
        second = make_book("book_batch002")
        circulation.borrow_book(alice, first.id)
        circulation.borrow_book(alice, second.id)
        circulation.reserve_book(bob, first.id)
        circulation.reserve_book(carol, first.id)
        circulation.reserve_book(bob, second.id)
        clock.advance(days=2)
        circulation.reserve_book(dave, first.id)
        clock.advance(days=2)

        assert circulation.expire_reservations() == 3
        assert circulation.expire_reservations() == 0
        assert _queue(circulation, first.id) == [("user_dave", 1)]
        assert _queue(circulation, second.id) == []

    def test_expired_reservation_cannot_be_cancelled(
        self, circulation, single_copy_book, checked_out, bob, clock
    ):
        reservation = circulation.reserve_book(bob, single_copy_book.id)
        clock.advance(days=4)

        with pytest.raises(ConflictError):
            circulation.cancel_reservation(bob, reservation.id)

    def test_expired_head_is_skipped_on_return(
        self, circulation, single_copy_book, checked_out, alice, bob, carol, clock
    ):
        circulation.reserve_book(bob, single_copy_book.id)
        clock.advance(days=2)
        waiting = circulation.reserve_book(carol, single_copy_book.id)
        clock.advance(days=2)

        outcome = circulation.return_loan(alice, checked_out.id)
        assert outcome.fulfilled_reservation.id == waiting.id
        assert outcome.new_loan.user_id == "user_carol"


def test_list_reservations(circulation, make_book, alice, bob, librarian):
    first = make_book("book_list0001")
    second = make_book("book_list0002")
    circulation.borrow_book(alice, first.id)
    circulation.borrow_book(alice, second.id)
    one = circulation.reserve_book(bob, first.id)
    circulation.reserve_book(bob, second.id)
    circulation.cancel_reservation(bob, one.id)

    assert len(circulation.list_reservations(bob)) == 2
    active = circulation.list_reservations(bob, status=ReservationStatus.ACTIVE)
    assert [r.book_id for r in active] == [second.id]

    with pytest.raises(ForbiddenError):
        circulation.list_reservations(alice, user_id=bob.user_id)
    assert len(circulation.list_reservations(librarian, user_id=bob.user_id)) == 2


def test_reservation_stats(circulation, single_copy_book, checked_out, bob, carol):
    circulation.reserve_book(bob, single_copy_book.id)
    cancelled = circulation.reserve_book(carol, single_copy_book.id)
    circulation.cancel_reservation(carol, cancelled.id)

    counts = circulation.get_circulation_stats().reservations
    assert counts["active"] == 1
    assert counts["cancelled"] == 1
    assert counts["fulfilled"] == 0


def _check_book(session, book_id: str) -> None:
    session.expire_all()
    book = session.get(BookDB, book_id)
    open_loans = session.execute(
        select(func.count())
        .select_from(LoanDB)
        .where(LoanDB.book_id == book_id, LoanDB.status != LoanStatus.RETURNED)
    ).scalar()
    priorities = (
        session.execute(
            select(ReservationDB.priority)
            .where(
                ReservationDB.book_id == book_id,
                ReservationDB.status == ReservationStatus.ACTIVE,
            )
            .order_by(ReservationDB.priority)
        )
        .scalars()
        .all()
    )
    session.commit()

    assert 0 <= book.available_copies <= book.total_copies
    assert book.available_copies + open_loans == book.total_copies
    assert priorities == list(range(1, len(priorities) + 1))
    assert book.total_reservations == len(priorities)


def test_mixed_operations_keep_books_and_queues_consistent(
    circulation, test_db_session, make_book, librarian, clock
):
    books = [make_book("book_mixed001", total_copies=2).id, make_book("book_mixed002").id]
    members = [Principal(user_id=f"user_mixed{n}") for n in range(5)]
    rng = random.Random(20240301)

    def open_ids(model, *criteria):
        ids = test_db_session.execute(select(model.id).where(*criteria)).scalars().all()
        test_db_session.commit()
        return sorted(ids)

    for _ in range(200):
        action = rng.choice(["borrow", "borrow", "return", "reserve", "cancel", "expire", "wait"])
        try:
            if action == "borrow":
                circulation.borrow_book(rng.choice(members), rng.choice(books))
            elif action == "return":
                loans = open_ids(LoanDB, LoanDB.status != LoanStatus.RETURNED)
                if loans:
                    circulation.return_loan(librarian, rng.choice(loans))
            elif action == "reserve":
                circulation.reserve_book(rng.choice(members), rng.choice(books))
            elif action == "cancel":
                reservations = open_ids(
                    ReservationDB, ReservationDB.status == ReservationStatus.ACTIVE
                )
                if reservations:
                    circulation.cancel_reservation(librarian, rng.choice(reservations))
            elif action == "expire":
                circulation.expire_reservations()
            else:
                clock.advance(days=1)
        except RepositoryException:
            pass

        for book_id in books:
            _check_book(test_db_session, book_id)
