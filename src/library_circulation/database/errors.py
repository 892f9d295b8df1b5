"""
Error taxonomy for circulation operations.

Every operation either succeeds or raises exactly one of these. Each carries
the HTTP-equivalent status the API layer should surface.
"""


class RepositoryException(Exception):
    """Base exception for repository operations."""

    status_code = 500
    kind = "error"


class NotFoundError(RepositoryException):
    """Referenced book, loan or reservation does not exist."""

    status_code = 404
    kind = "not_found"


class ConflictError(RepositoryException):
    """Uniqueness invariant or state-machine rule violated.

    Retrying is pointless until the precondition changes.
    """

    status_code = 409
    kind = "conflict"


class UnavailableError(RepositoryException):
    """No copy to borrow, or a copy is available so reserving makes no sense."""

    status_code = 400
    kind = "unavailable"


class ForbiddenError(RepositoryException):
    """Actor lacks ownership or a staff role for this record."""

    status_code = 403
    kind = "forbidden"


class PolicyLimitExceededError(RepositoryException):
    """User reached the loan cap or a loan reached its renewal limit."""

    status_code = 400
    kind = "policy_limit_exceeded"

    def __init__(self, message: str, limit: int | None = None):
        super().__init__(message)
        self.limit = limit
