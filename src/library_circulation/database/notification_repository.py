"""
Notification repository - the polled message store.

There is no push channel: the circulation core records a row and clients
poll ``list_for_user`` / ``unread_count``. Rows carry an expiry that depends
on their type and stop being listed once it passes.
"""

import json
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from ..database.schema import Notification as NotificationDB
from ..models.notification import Notification as NotificationModel
from ..models.notification import NotificationPriority, NotificationType
from ..models.principal import Principal
from .repository import ForbiddenError, NotFoundError
from .session import safe_commit, safe_query

NOTIFICATION_TTL_DAYS = {
    NotificationType.DUE_DATE: 7,
    NotificationType.OVERDUE: 30,
    NotificationType.RESERVATION_AVAILABLE: 3,
}
DEFAULT_TTL_DAYS = 30


class NotificationRepository:
    """Create, list and acknowledge user notifications."""

    def __init__(self, session: Session, clock: Callable[[], datetime] = datetime.now):
        self.session = session
        self.clock = clock

    def create(
        self,
        user_id: str,
        kind: NotificationType,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        related_entity: tuple[str, str] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> NotificationModel:
        """
        Record a notification in the current transaction.

        The row is flushed but not committed; it becomes visible together
        with the operation that produced it.
        """
        now = self.clock()
        kind = NotificationType(kind)
        ttl_days = NOTIFICATION_TTL_DAYS.get(kind, DEFAULT_TTL_DAYS)
        entity_type, entity_id = related_entity or (None, None)

        notification = NotificationDB(
            id=f"notification_{uuid4().hex[:12]}",
            user_id=user_id,
            type=kind.value,
            title=title,
            message=message,
            priority=NotificationPriority(priority).value,
            related_entity_type=entity_type,
            related_entity_id=entity_id,
            payload=json.dumps(payload or {}, default=str),
            expires_at=now + timedelta(days=ttl_days),
            created_at=now,
        )
        self.session.add(notification)
        self.session.flush()
        return self._to_model(notification)

    def list_for_user(
        self,
        user_id: str,
        unread_only: bool = False,
        limit: int = 20,
        offset: int = 0,
    ) -> list[NotificationModel]:
        """Newest first, excluding expired notifications."""
        query = select(NotificationDB).where(self._visible_to(user_id))
        if unread_only:
            query = query.where(NotificationDB.is_read.is_(False))
        query = (
            query.order_by(NotificationDB.created_at.desc(), NotificationDB.id)
            .offset(offset)
            .limit(limit)
        )

        rows = safe_query(
            self.session,
            lambda s: s.execute(query).scalars().all(),
            "Failed to list notifications",
        )
        return [self._to_model(row) for row in rows]

    def unread_count(self, user_id: str) -> int:
        return (
            safe_query(
                self.session,
                lambda s: s.execute(
                    select(func.count())
                    .select_from(NotificationDB)
                    .where(self._visible_to(user_id), NotificationDB.is_read.is_(False))
                ).scalar(),
                "Failed to count unread notifications",
            )
            or 0
        )

    def mark_read(self, notification_id: str, principal: Principal) -> NotificationModel:
        """Mark one notification read; only its recipient or staff may do so."""
        notification = safe_query(
            self.session,
            lambda s: s.get(NotificationDB, notification_id),
            "Failed to get notification",
        )
        if notification is None:
            raise NotFoundError(f"Notification {notification_id} not found")
        if not principal.can_act_for(notification.user_id):
            raise ForbiddenError("Access denied")

        if not notification.is_read:
            notification.is_read = True
            notification.read_at = self.clock()
            safe_commit(self.session, "mark notification read")
        return self._to_model(notification)

    def mark_all_read(self, user_id: str) -> int:
        """Mark every unread notification of a user read; returns how many changed."""
        result = safe_query(
            self.session,
            lambda s: s.execute(
                update(NotificationDB)
                .where(NotificationDB.user_id == user_id, NotificationDB.is_read.is_(False))
                .values(is_read=True, read_at=self.clock()),
                execution_options={"synchronize_session": False},
            ),
            "Failed to mark notifications read",
        )
        safe_commit(self.session, "mark all notifications read")
        return result.rowcount

    def _visible_to(self, user_id: str):
        return and_(
            NotificationDB.user_id == user_id,
            or_(NotificationDB.expires_at.is_(None), NotificationDB.expires_at > self.clock()),
        )

    def _to_model(self, row: NotificationDB) -> NotificationModel:
        return NotificationModel(
            id=row.id,
            user_id=row.user_id,
            type=row.type,
            title=row.title,
            message=row.message,
            priority=row.priority,
            is_read=row.is_read,
            read_at=row.read_at,
            related_entity_type=row.related_entity_type,
            related_entity_id=row.related_entity_id,
            payload=json.loads(row.payload) if row.payload else {},
            expires_at=row.expires_at,
            created_at=row.created_at,
        )
