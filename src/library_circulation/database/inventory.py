"""
Inventory ledger - the single owner of a book's copy counters.

Borrowing, returning and reservation fulfillment all contend for
``available_copies``. Every change goes through one conditional UPDATE
statement, so the database decides who gets the last copy:

    UPDATE books SET available_copies = available_copies - 1
    WHERE id = :id AND available_copies > 0 AND is_active

Exactly one of two concurrent callers sees a changed row; the other gets
``False`` and reports the book as unavailable. No ledger method raises for
"no copy" or "already full" conditions.
"""

import logging

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..database.schema import Book as BookDB
from .errors import NotFoundError
from .session import safe_query

logger = logging.getLogger(__name__)


class InventoryLedger:
    """Atomic-in-intent adjustments of availability and reservation counters."""

    def __init__(self, session: Session):
        self.session = session

    def get_book(self, book_id: str) -> BookDB:
        """Load a book row or raise NotFoundError."""
        book = safe_query(
            self.session,
            lambda s: s.execute(select(BookDB).where(BookDB.id == book_id)).scalar_one_or_none(),
            "Failed to get book",
        )
        if book is None:
            raise NotFoundError(f"Book {book_id} not found")
        return book

    @staticmethod
    def is_book_available(book: BookDB) -> bool:
        """A copy is on the shelf and the book is in circulation."""
        return bool(book.is_active) and book.available_copies > 0

    def try_decrement(self, book_id: str) -> bool:
        """
        Claim one copy of a book.

        Returns:
            True if a copy was claimed, False if none was available
        """
        claimed = self._execute(
            update(BookDB)
            .where(
                BookDB.id == book_id,
                BookDB.available_copies > 0,
                BookDB.is_active.is_(True),
            )
            .values(
                available_copies=BookDB.available_copies - 1,
                total_borrows=BookDB.total_borrows + 1,
            ),
            book_id,
            "Failed to claim a copy",
        )
        if not claimed:
            logger.debug("No copy of %s available to claim", book_id)
        return claimed

    def increment(self, book_id: str) -> None:
        """Put one copy back on the shelf, never exceeding total_copies."""
        released = self._execute(
            update(BookDB)
            .where(BookDB.id == book_id, BookDB.available_copies < BookDB.total_copies)
            .values(available_copies=BookDB.available_copies + 1),
            book_id,
            "Failed to release a copy",
        )
        if not released:
            logger.warning("Copy count of %s already at total; increment clamped", book_id)

    def mark_reserved(self, book_id: str) -> None:
        """Count a new active reservation (reporting only)."""
        self._execute(
            update(BookDB)
            .where(BookDB.id == book_id)
            .values(total_reservations=BookDB.total_reservations + 1),
            book_id,
            "Failed to count reservation",
        )

    def unmark_reserved(self, book_id: str) -> None:
        """Uncount a reservation that left the queue, never going below zero."""
        self._execute(
            update(BookDB)
            .where(BookDB.id == book_id, BookDB.total_reservations > 0)
            .values(total_reservations=BookDB.total_reservations - 1),
            book_id,
            "Failed to uncount reservation",
        )

    def _execute(self, stmt, book_id: str, error_msg: str) -> bool:
        """Run a counter UPDATE and report whether a row changed."""
        # Pending ORM changes must reach the database before the statement
        self.session.flush()
        result = safe_query(
            self.session,
            lambda s: s.execute(stmt, execution_options={"synchronize_session": False}),
            error_msg,
        )
        self._expire_cached(book_id)
        return result.rowcount == 1

    def _expire_cached(self, book_id: str) -> None:
        """Drop stale counter values of an already loaded Book row."""
        key = Session.identity_key(BookDB, book_id)
        cached = self.session.identity_map.get(key)
        if cached is not None:
            self.session.expire(cached)
