"""Notification model - messages recorded for users and polled by clients."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class NotificationType(str, Enum):
    """Kinds of circulation notifications."""

    DUE_DATE = "due_date"
    OVERDUE = "overdue"
    FINE = "fine"
    RESERVATION = "reservation"
    RESERVATION_AVAILABLE = "reservation_available"
    GENERAL = "general"


class NotificationPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Notification(BaseModel):
    """A message addressed to one user."""

    id: str = Field(..., pattern=r"^notification_[a-zA-Z0-9]{6,}$")
    user_id: str
    type: NotificationType
    title: str = Field(..., max_length=200)
    message: str = Field(..., max_length=1000)
    priority: NotificationPriority = NotificationPriority.MEDIUM
    is_read: bool = False
    read_at: datetime | None = None
    related_entity_type: str | None = None
    related_entity_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    expires_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.now)

    model_config = ConfigDict(use_enum_values=True, from_attributes=True)
