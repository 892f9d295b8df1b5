"""
Repository pattern implementation for the Library Circulation server.

Repositories keep SQLAlchemy out of the tool and resource handlers:

1. **Separation**: Handlers deal with principals and responses, repositories
   with queries and transactions
2. **Testability**: Repositories run against any session, including a
   throwaway SQLite file in tests
3. **Consistency**: Every read goes through ``safe_query`` and every write
   through ``safe_commit``, so database failures surface as the same error
   taxonomy
4. **Serialization**: Methods return Pydantic models, never ORM objects
"""

from abc import ABC, abstractmethod
from typing import Generic, TypeVar

from pydantic import BaseModel
from sqlalchemy import asc, desc, func, select
from sqlalchemy.orm import Session

from .errors import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PolicyLimitExceededError,
    RepositoryException,
    UnavailableError,
)
from .schema import Base
from .session import safe_commit, safe_query

ModelType = TypeVar("ModelType", bound=Base)
CreateSchemaType = TypeVar("CreateSchemaType", bound=BaseModel)
ResponseSchemaType = TypeVar("ResponseSchemaType", bound=BaseModel)

__all__ = [
    "BaseRepository",
    "ConflictError",
    "ForbiddenError",
    "NotFoundError",
    "PaginatedResponse",
    "PaginationParams",
    "PolicyLimitExceededError",
    "RepositoryException",
    "UnavailableError",
]


class PaginationParams(BaseModel):
    """Standard pagination parameters for list operations."""

    page: int = 1
    page_size: int = 20

    @property
    def offset(self) -> int:
        """Calculate offset for SQL queries."""
        return (self.page - 1) * self.page_size

    def validate_params(self) -> None:
        """Validate pagination parameters."""
        if self.page < 1:
            raise ValueError("Page must be >= 1")
        if self.page_size < 1 or self.page_size > 100:
            raise ValueError("Page size must be between 1 and 100")


class PaginatedResponse(BaseModel, Generic[ResponseSchemaType]):
    """Standard paginated response for list operations."""

    items: list[ResponseSchemaType]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_previous: bool

    @classmethod
    def build(
        cls, items: list, total: int, pagination: PaginationParams
    ) -> "PaginatedResponse":
        return cls(
            items=items,
            total=total,
            page=pagination.page,
            page_size=pagination.page_size,
            total_pages=(total + pagination.page_size - 1) // pagination.page_size,
            has_next=pagination.page * pagination.page_size < total,
            has_previous=pagination.page > 1,
        )


class BaseRepository(ABC, Generic[ModelType, CreateSchemaType, ResponseSchemaType]):
    """
    Abstract base repository providing the shared read/create operations.

    All methods use safe_query and safe_commit so database failures are
    reported through the repository error taxonomy.
    """

    def __init__(self, session: Session):
        """Initialize repository with database session."""
        self.session = session

    @property
    @abstractmethod
    def model_class(self) -> type[ModelType]:
        """Return the SQLAlchemy model class."""

    @property
    @abstractmethod
    def response_schema(self) -> type[ResponseSchemaType]:
        """Return the Pydantic response schema."""

    def _to_response_model(self, db_obj: ModelType) -> ResponseSchemaType:
        """Convert database model to Pydantic response model."""
        return self.response_schema.model_validate(db_obj, from_attributes=True)

    def _get_db_obj(self, id: str) -> ModelType:
        """Load an ORM row or raise NotFoundError."""
        query = select(self.model_class).where(self.model_class.id == str(id))
        db_obj = safe_query(
            self.session,
            lambda s: s.execute(query).scalar_one_or_none(),
            f"Failed to get {self.model_class.__name__} by ID",
        )
        if db_obj is None:
            raise NotFoundError(f"{self.model_class.__name__} {id} not found")
        return db_obj

    def get_by_id(self, id: str) -> ResponseSchemaType | None:
        """
        Get entity by ID.

        Returns:
            Pydantic model or None if not found
        """
        try:
            return self._to_response_model(self._get_db_obj(id))
        except NotFoundError:
            return None

    def get_all(
        self,
        pagination: PaginationParams | None = None,
        order_by: str | None = None,
        order_desc: bool = False,
    ) -> PaginatedResponse[ResponseSchemaType]:
        """Get all entities with pagination and optional sorting."""
        if not pagination:
            pagination = PaginationParams()
        pagination.validate_params()

        query = select(self.model_class)
        if order_by and hasattr(self.model_class, order_by):
            order_field = getattr(self.model_class, order_by)
            query = query.order_by(desc(order_field) if order_desc else asc(order_field))

        total = (
            safe_query(
                self.session,
                lambda s: s.execute(select(func.count()).select_from(self.model_class)).scalar(),
                "Failed to get total count",
            )
            or 0
        )

        query = query.offset(pagination.offset).limit(pagination.page_size)
        results = safe_query(
            self.session,
            lambda s: s.execute(query).scalars().all(),
            "Failed to get paginated results",
        )

        return PaginatedResponse.build(
            [self._to_response_model(item) for item in results], total, pagination
        )

    def create(self, data: CreateSchemaType) -> ResponseSchemaType:
        """
        Create new entity.

        Raises:
            ConflictError: If the entity already exists
            RepositoryException: On other database errors
        """
        db_obj = self.model_class(**data.model_dump())
        self.session.add(db_obj)
        safe_commit(self.session, f"create {self.model_class.__name__}")
        self.session.refresh(db_obj)
        return self._to_response_model(db_obj)

    def exists(self, id: str) -> bool:
        """Check if entity exists by ID."""
        query = (
            select(func.count()).select_from(self.model_class).where(self.model_class.id == str(id))
        )
        count = safe_query(self.session, lambda s: s.execute(query).scalar(), "Failed to check existence")
        return count > 0
