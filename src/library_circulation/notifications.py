"""
Notification sinks.

The circulation core hands messages to a sink and moves on: it never waits
for delivery and never retries. A failing sink is logged and ignored so a
notification problem cannot undo a return or a fulfilled reservation.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .database.notification_repository import NotificationRepository
from .models.notification import NotificationPriority, NotificationType

logger = logging.getLogger(__name__)


class NotificationSink(Protocol):
    """Fire-and-forget delivery of a message to one user."""

    def notify(
        self,
        user_id: str,
        kind: NotificationType,
        title: str,
        message: str,
        *,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        related_entity: tuple[str, str] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None: ...


class DatabaseNotificationSink:
    """Records notifications in the notifications table for clients to poll.

    Each message is written inside its own SAVEPOINT of the caller's
    transaction, so a failed insert is rolled back on its own.
    """

    def __init__(self, session: Session, clock: Callable[[], datetime] = datetime.now):
        self.session = session
        self.repository = NotificationRepository(session, clock)

    def notify(
        self,
        user_id: str,
        kind: NotificationType,
        title: str,
        message: str,
        *,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        related_entity: tuple[str, str] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        try:
            with self.session.begin_nested():
                self.repository.create(
                    user_id,
                    kind,
                    title,
                    message,
                    priority=priority,
                    related_entity=related_entity,
                    payload=payload,
                )
        except SQLAlchemyError:
            logger.exception("Failed to record %s notification for %s", kind, user_id)
            return
        logger.debug("Recorded %s notification for %s", kind, user_id)


@dataclass
class SentNotification:
    user_id: str
    kind: NotificationType
    title: str
    message: str
    priority: NotificationPriority
    related_entity: tuple[str, str] | None = None
    payload: dict[str, Any] = field(default_factory=dict)


class RecordingNotificationSink:
    """Keeps notifications in memory; used by tests and dry runs."""

    def __init__(self):
        self.sent: list[SentNotification] = []

    def notify(
        self,
        user_id: str,
        kind: NotificationType,
        title: str,
        message: str,
        *,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        related_entity: tuple[str, str] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        self.sent.append(
            SentNotification(
                user_id=user_id,
                kind=kind,
                title=title,
                message=message,
                priority=priority,
                related_entity=related_entity,
                payload=payload or {},
            )
        )
