"""Test configuration and fixtures for the Library Circulation server.

1. Isolated test databases - each test gets its own SQLite file
2. Configuration overrides - circulation policy set per test
3. A controllable clock - due dates, fines and expiry are time driven
4. Seeded books and principals for the circulation scenarios
"""

import os
from collections.abc import Callable, Generator
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy.orm import Session

from library_circulation.config import CirculationConfig, reset_config
from library_circulation.database.book_repository import BookCreateSchema, BookRepository
from library_circulation.database.circulation_repository import CirculationRepository
from library_circulation.database.session import DatabaseManager, set_db_manager
from library_circulation.models.book import Book
from library_circulation.models.principal import Principal, UserRole
from library_circulation.notifications import RecordingNotificationSink

START = datetime(2024, 3, 1, 10, 0, 0)


class FrozenClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


# === Test Database Fixtures ===


@pytest.fixture
def test_db_path(tmp_path: Path) -> Path:
    """Each test gets its own database file."""
    return tmp_path / "test_library.db"


@pytest.fixture
def db_manager(test_db_path: Path) -> Generator[DatabaseManager, None, None]:
    """A DatabaseManager over a fresh schema, installed as the global manager."""
    manager = DatabaseManager(f"sqlite:///{test_db_path}")
    manager.init_database()
    set_db_manager(manager)

    yield manager

    set_db_manager(None)
    manager.close()


@pytest.fixture
def test_db_session(db_manager: DatabaseManager) -> Generator[Session, None, None]:
    session = db_manager.create_session()
    try:
        yield session
    finally:
        session.close()


# === Configuration Fixtures ===


@pytest.fixture
def clean_env() -> Generator[None, None, None]:
    """Run without any LIBRARY_* variables from the outer environment."""
    original_env = os.environ.copy()

    for key in list(os.environ.keys()):
        if key.startswith("LIBRARY_"):
            del os.environ[key]

    yield

    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def test_config(test_db_path: Path, clean_env) -> Generator[CirculationConfig, None, None]:
    """Default circulation policy pointed at the test database."""
    reset_config()

    config = CirculationConfig(
        server_name="test-library-circulation",
        database_path=test_db_path,
        debug=True,
        log_level="DEBUG",
    )

    yield config

    reset_config()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def sink() -> RecordingNotificationSink:
    return RecordingNotificationSink()


@pytest.fixture
def circulation(
    test_db_session: Session,
    test_config: CirculationConfig,
    clock: FrozenClock,
    sink: RecordingNotificationSink,
) -> CirculationRepository:
    return CirculationRepository(test_db_session, test_config, clock, sink)


# === Test Data Fixtures ===


@pytest.fixture
def make_book(test_db_session: Session) -> Callable[..., Book]:
    """Register a book with the given number of copies."""
    repo = BookRepository(test_db_session)

    def _make_book(book_id: str, total_copies: int = 1, title: str | None = None) -> Book:
        book = repo.create(
            BookCreateSchema(
                id=book_id,
                title=title or f"Title of {book_id}",
                author="Test Author",
                total_copies=total_copies,
            )
        )
        # The refresh after create opened a transaction; BEGIN IMMEDIATE holds the write lock
        test_db_session.commit()
        return book

    return _make_book


@pytest.fixture
def single_copy_book(make_book) -> Book:
    return make_book("book_single001", total_copies=1, title="The Last Copy")


@pytest.fixture
def alice() -> Principal:
    return Principal(user_id="user_alice")


@pytest.fixture
def bob() -> Principal:
    return Principal(user_id="user_bob")


@pytest.fixture
def carol() -> Principal:
    return Principal(user_id="user_carol")


@pytest.fixture
def dave() -> Principal:
    return Principal(user_id="user_dave")


@pytest.fixture
def librarian() -> Principal:
    return Principal(user_id="staff_lee", role=UserRole.LIBRARIAN)
