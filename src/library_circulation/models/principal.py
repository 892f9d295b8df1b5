"""Authenticated identity supplied by the access layer."""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class UserRole(str, Enum):
    """Roles known to the circulation core."""

    MEMBER = "member"
    LIBRARIAN = "librarian"
    ADMIN = "admin"


STAFF_ROLES = frozenset({UserRole.LIBRARIAN, UserRole.ADMIN})


class Principal(BaseModel):
    """The user on whose behalf an operation runs.

    The core trusts this value as given; it only decides whether the
    principal may act on a particular loan or reservation.
    """

    user_id: str = Field(..., min_length=1, max_length=50)
    role: UserRole = Field(default=UserRole.MEMBER)

    model_config = ConfigDict(frozen=True)

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

    def can_act_for(self, owner_id: str) -> bool:
        """Staff may act on any record, everyone else only on their own."""
        return self.is_staff or self.user_id == owner_id
