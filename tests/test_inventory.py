"""Tests for the inventory ledger's copy counters."""

from library_circulation.database.inventory import InventoryLedger
from library_circulation.database.schema import Book as BookDB


def _counters(session, book_id: str) -> tuple[int, int, int]:
    session.expire_all()
    book = session.get(BookDB, book_id)
    return book.available_copies, book.total_borrows, book.total_reservations


def test_decrement_until_empty(test_db_session, make_book):
    make_book("book_pair001", total_copies=2)
    ledger = InventoryLedger(test_db_session)

    assert ledger.try_decrement("book_pair001") is True
    assert ledger.try_decrement("book_pair001") is True
    assert ledger.try_decrement("book_pair001") is False

    assert _counters(test_db_session, "book_pair001")[:2] == (0, 2)


def test_increment_never_exceeds_total(test_db_session, make_book):
    make_book("book_pair001", total_copies=2)
    ledger = InventoryLedger(test_db_session)

    ledger.try_decrement("book_pair001")
    ledger.increment("book_pair001")
    ledger.increment("book_pair001")

    assert _counters(test_db_session, "book_pair001")[0] == 2


def test_inactive_book_cannot_be_claimed(test_db_session, make_book):
    make_book("book_retired01", total_copies=3)
    book = test_db_session.get(BookDB, "book_retired01")
    book.is_active = False
    test_db_session.commit()

    ledger = InventoryLedger(test_db_session)
    assert not ledger.is_book_available(ledger.get_book("book_retired01"))
    assert ledger.try_decrement("book_retired01") is False


def test_reservation_counter_never_negative(test_db_session, make_book):
    make_book("book_pair001", total_copies=2)
    ledger = InventoryLedger(test_db_session)

    ledger.mark_reserved("book_pair001")
    ledger.unmark_reserved("book_pair001")
    ledger.unmark_reserved("book_pair001")

    assert _counters(test_db_session, "book_pair001")[2] == 0


def test_loaded_book_sees_new_counts(test_db_session, make_book):
    make_book("book_pair001", total_copies=2)
    ledger = InventoryLedger(test_db_session)

    book = ledger.get_book("book_pair001")
    assert book.available_copies == 2
    ledger.try_decrement("book_pair001")
    assert book.available_copies == 1
