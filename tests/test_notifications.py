"""Tests for the notification store and sinks."""

from datetime import timedelta

import pytest

from library_circulation.database.circulation_repository import CirculationRepository
from library_circulation.database.notification_repository import NotificationRepository
from library_circulation.database.repository import ForbiddenError, NotFoundError
from library_circulation.models.notification import NotificationPriority, NotificationType
from library_circulation.models.principal import Principal
from library_circulation.notifications import DatabaseNotificationSink


@pytest.fixture
def notifications(test_db_session, clock) -> NotificationRepository:
    return NotificationRepository(test_db_session, clock)


def _notify(session, clock, user_id: str, kind: NotificationType, title: str = "Hello") -> None:
    DatabaseNotificationSink(session, clock).notify(user_id, kind, title, f"{title} message")
    session.commit()


def test_sink_records_notification(test_db_session, notifications, clock):
    DatabaseNotificationSink(test_db_session, clock).notify(
        "user_bob",
        NotificationType.RESERVATION_AVAILABLE,
        "Reserved Book Available",
        "Come and get it",
        priority=NotificationPriority.HIGH,
        related_entity=("reservation", "reservation_abc123"),
        payload={"loan_id": "loan_abc123def456"},
    )
    test_db_session.commit()

    [notification] = notifications.list_for_user("user_bob")
    assert notification.type == NotificationType.RESERVATION_AVAILABLE
    assert notification.priority == NotificationPriority.HIGH
    assert notification.related_entity_id == "reservation_abc123"
    assert notification.payload == {"loan_id": "loan_abc123def456"}
    assert notification.expires_at == clock.now + timedelta(days=3)
    assert notification.is_read is False


def test_expiry_depends_on_type(test_db_session, notifications, clock):
    _notify(test_db_session, clock, "user_bob", NotificationType.DUE_DATE, "Due soon")
    _notify(test_db_session, clock, "user_bob", NotificationType.GENERAL, "News")

    clock.advance(days=8)
    assert [n.title for n in notifications.list_for_user("user_bob")] == ["News"]

    clock.advance(days=30)
    assert notifications.list_for_user("user_bob") == []


def test_newest_first_and_unread_count(test_db_session, notifications, clock):
    _notify(test_db_session, clock, "user_bob", NotificationType.GENERAL, "First")
    clock.advance(hours=1)
    _notify(test_db_session, clock, "user_bob", NotificationType.GENERAL, "Second")
    _notify(test_db_session, clock, "user_carol", NotificationType.GENERAL, "Other")

    assert [n.title for n in notifications.list_for_user("user_bob")] == ["Second", "First"]
    assert notifications.unread_count("user_bob") == 2


def test_mark_read(test_db_session, notifications, clock):
    _notify(test_db_session, clock, "user_bob", NotificationType.GENERAL)
    [notification] = notifications.list_for_user("user_bob")

    with pytest.raises(ForbiddenError):
        notifications.mark_read(notification.id, Principal(user_id="user_carol"))

    read = notifications.mark_read(notification.id, Principal(user_id="user_bob"))
    assert read.is_read is True
    assert read.read_at == clock.now
    assert notifications.unread_count("user_bob") == 0
    assert notifications.list_for_user("user_bob", unread_only=True) == []


def test_mark_read_unknown(notifications):
    with pytest.raises(NotFoundError):
        notifications.mark_read("notification_missing1", Principal(user_id="user_bob"))


def test_mark_all_read(test_db_session, notifications, clock):
    for title in ("One", "Two", "Three"):
        _notify(test_db_session, clock, "user_bob", NotificationType.GENERAL, title)

    assert notifications.mark_all_read("user_bob") == 3
    assert notifications.mark_all_read("user_bob") == 0
    assert notifications.unread_count("user_bob") == 0


def test_fulfillment_writes_to_database_sink(
    test_db_session, test_config, clock, single_copy_book, notifications
):
    repo = CirculationRepository(test_db_session, test_config, clock)
    alice = Principal(user_id="user_alice")
    loan = repo.borrow_book(alice, single_copy_book.id)
    repo.reserve_book(Principal(user_id="user_bob"), single_copy_book.id)

    repo.return_loan(alice, loan.id)

    [notification] = notifications.list_for_user("user_bob")
    assert notification.type == NotificationType.RESERVATION_AVAILABLE
    assert "The Last Copy" in notification.message
    assert notification.payload["book_id"] == single_copy_book.id
