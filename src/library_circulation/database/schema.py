"""
SQLAlchemy database schema for the Library Circulation server.

These tables back the Pydantic models in ``library_circulation.models``:

1. ``books`` carries the copy counters owned by the inventory ledger
2. ``loans`` and ``loan_renewals`` hold the loan lifecycle
3. ``reservations`` holds every book's waitlist
4. ``notifications`` is the polled message store behind the notification sink

Two partial unique indexes are part of the concurrency contract: at most one
open loan and at most one active reservation per (user, book). A concurrent
duplicate insert fails with an IntegrityError instead of slipping through a
check-then-act race.
"""

import enum

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

from ..models.loan import LoanStatus
from ..models.reservation import ReservationStatus

Base = declarative_base()


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Persist enum values ("borrowed") rather than member names ("BORROWED")."""
    return [member.value for member in enum_cls]


class Book(Base):
    """
    Books table - inventory-relevant fields of the catalog.

    ``available_copies`` is only ever written by ``InventoryLedger``; the
    CHECK constraints keep ``0 <= available_copies <= total_copies`` true
    even if a caller gets it wrong.
    """

    __tablename__ = "books"

    id = Column(String(50), primary_key=True)
    title = Column(String(500), nullable=False, index=True)
    author = Column(String(200), nullable=True)
    isbn = Column(String(13), nullable=True, unique=True)
    total_copies = Column(Integer, nullable=False)
    available_copies = Column(Integer, nullable=False)
    total_borrows = Column(Integer, nullable=False, default=0)
    total_reservations = Column(Integer, nullable=False, default=0)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    loans = relationship("Loan", back_populates="book")
    reservations = relationship("Reservation", back_populates="book")

    __table_args__ = (
        Index("idx_book_availability", "available_copies"),
        CheckConstraint("id LIKE 'book_%'", name="check_book_id_format"),
        CheckConstraint("total_copies > 0", name="check_total_copies_positive"),
        CheckConstraint("available_copies >= 0", name="check_available_copies_non_negative"),
        CheckConstraint(
            "available_copies <= total_copies", name="check_available_not_exceed_total"
        ),
        CheckConstraint("total_reservations >= 0", name="check_total_reservations_non_negative"),
    )


class Loan(Base):
    """
    Loans table - one row per borrow, from checkout to return.

    ``status`` is a cached projection of ``(due_date, now, return_date)``;
    the loan repository refreshes it on every read and write.
    """

    __tablename__ = "loans"

    id = Column(String(50), primary_key=True)
    user_id = Column(String(50), nullable=False)
    book_id = Column(String(50), ForeignKey("books.id"), nullable=False)
    borrow_date = Column(DateTime, nullable=False)
    due_date = Column(DateTime, nullable=False)
    return_date = Column(DateTime, nullable=True)
    status = Column(
        Enum(LoanStatus, values_callable=_enum_values),
        nullable=False,
        default=LoanStatus.BORROWED,
    )
    fine_amount = Column(Float, nullable=False, default=0.0)
    fine_paid = Column(Boolean, nullable=False, default=False)
    fine_paid_date = Column(DateTime, nullable=True)
    renewal_count = Column(Integer, nullable=False, default=0)
    borrowed_by = Column(String(50), nullable=True)
    returned_by = Column(String(50), nullable=True)
    notes = Column(String(500), nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    book = relationship("Book", back_populates="loans")
    renewals = relationship(
        "LoanRenewal",
        back_populates="loan",
        order_by="LoanRenewal.renewal_date",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("idx_loan_user_status", "user_id", "status"),
        Index("idx_loan_book_status", "book_id", "status"),
        Index("idx_loan_due_date", "due_date"),
        Index(
            "uq_loan_open_per_user_book",
            "user_id",
            "book_id",
            unique=True,
            sqlite_where=text("status IN ('borrowed', 'overdue')"),
            postgresql_where=text("status IN ('borrowed', 'overdue')"),
        ),
        CheckConstraint("id LIKE 'loan_%'", name="check_loan_id_format"),
        CheckConstraint("renewal_count >= 0", name="check_renewal_count_non_negative"),
        CheckConstraint("fine_amount >= 0", name="check_fine_non_negative"),
    )


class LoanRenewal(Base):
    """Renewal history - append-only, one row per successful renewal."""

    __tablename__ = "loan_renewals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    loan_id = Column(String(50), ForeignKey("loans.id"), nullable=False, index=True)
    renewal_date = Column(DateTime, nullable=False)
    new_due_date = Column(DateTime, nullable=False)
    renewed_by = Column(String(50), nullable=False)

    loan = relationship("Loan", back_populates="renewals")


class Reservation(Base):
    """
    Reservations table - per-book waitlists.

    Among ``active`` rows of one book, ``priority`` is always 1..N with no
    gaps; the reservation repository renumbers on every removal.
    """

    __tablename__ = "reservations"

    id = Column(String(50), primary_key=True)
    user_id = Column(String(50), nullable=False)
    book_id = Column(String(50), ForeignKey("books.id"), nullable=False)
    reservation_date = Column(DateTime, nullable=False)
    expiry_date = Column(DateTime, nullable=False)
    status = Column(
        Enum(ReservationStatus, values_callable=_enum_values),
        nullable=False,
        default=ReservationStatus.ACTIVE,
    )
    priority = Column(Integer, nullable=False)
    fulfilled_at = Column(DateTime, nullable=True)
    fulfilled_by = Column(String(50), nullable=True)
    loan_id = Column(String(50), ForeignKey("loans.id"), nullable=True)
    notes = Column(String(500), nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())
    updated_at = Column(DateTime, nullable=False, default=func.now(), onupdate=func.now())

    book = relationship("Book", back_populates="reservations")

    __table_args__ = (
        Index("idx_reservation_user_status", "user_id", "status"),
        Index("idx_reservation_queue", "book_id", "status", "priority"),
        Index("idx_reservation_expiry", "expiry_date"),
        Index(
            "uq_reservation_active_per_user_book",
            "user_id",
            "book_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
        CheckConstraint("id LIKE 'reservation_%'", name="check_reservation_id_format"),
        CheckConstraint("priority > 0", name="check_priority_positive"),
    )


class Notification(Base):
    """Notifications table - the store clients poll for messages."""

    __tablename__ = "notifications"

    id = Column(String(50), primary_key=True)
    user_id = Column(String(50), nullable=False)
    type = Column(String(50), nullable=False)
    title = Column(String(200), nullable=False)
    message = Column(String(1000), nullable=False)
    priority = Column(String(20), nullable=False, default="medium")
    is_read = Column(Boolean, nullable=False, default=False)
    read_at = Column(DateTime, nullable=True)
    related_entity_type = Column(String(50), nullable=True)
    related_entity_id = Column(String(50), nullable=True)
    # JSON object serialized as text for SQLite compatibility
    payload = Column(Text, nullable=True)
    expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, nullable=False, default=func.now())

    __table_args__ = (
        Index("idx_notification_user_created", "user_id", "created_at"),
        Index("idx_notification_user_read", "user_id", "is_read"),
        CheckConstraint("id LIKE 'notification_%'", name="check_notification_id_format"),
    )
