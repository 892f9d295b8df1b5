"""Configuration management for the Library Circulation server.

Circulation policy (loan length, renewals, fines, pickup window, loan cap)
is plain numeric configuration loaded once at startup:
1. Server metadata - name and version reported to MCP clients
2. Persistence - SQLite path or an explicit SQLAlchemy URL
3. Circulation policy - the constants every lifecycle operation reads
4. Validation - type-safe configuration with Pydantic v2
"""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class CirculationConfig(BaseSettings):
    """Server and circulation policy configuration.

    Every field can be overridden with a ``LIBRARY_`` prefixed environment
    variable, e.g. ``LIBRARY_MAX_RENEWALS=3``.
    """

    model_config = SettingsConfigDict(
        env_prefix="LIBRARY_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === Server Metadata ===

    server_name: str = Field(
        default="library-circulation",
        description="Server name reported during the MCP handshake",
        pattern=r"^[a-z0-9-]+$",
    )

    server_version: str = Field(
        default="0.1.0",
        description="Server version",
        pattern=r"^\d+\.\d+\.\d+(-[a-zA-Z0-9.]+)?$",
    )

    # === Database Configuration ===

    database_path: Path = Field(
        default=Path("data/library.db"),
        description="SQLite database file path",
    )

    database_url: str | None = Field(
        default=None,
        description="Full SQLAlchemy URL; takes precedence over database_path",
    )

    # === Development Configuration ===

    debug: bool = Field(
        default=False,
        description="Enable debug logging",
    )

    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
        pattern=r"^(DEBUG|INFO|WARNING|ERROR)$",
    )

    # === Circulation Policy ===

    borrow_duration_days: int = Field(
        default=14,
        description="Days between borrow date and due date",
        ge=1,
    )

    renewal_duration_days: int = Field(
        default=7,
        description="Days added to the due date by each renewal",
        ge=1,
    )

    max_renewals: int = Field(
        default=2,
        description="Maximum renewals per loan",
        ge=0,
    )

    fine_per_day: float = Field(
        default=1.00,
        description="Fine charged per started day overdue",
        ge=0.0,
    )

    max_fine_amount: float = Field(
        default=50.00,
        description="Upper bound for the fine of a single loan",
        ge=0.0,
    )

    pickup_window_days: int = Field(
        default=3,
        description="Days a reservation stays active / a fulfilled hold waits for pickup",
        ge=1,
    )

    max_concurrent_loans: int = Field(
        default=5,
        description="Maximum borrowed or overdue loans a user may hold at once",
        ge=1,
    )

    # === Validation Methods ===

    @field_validator("database_path")
    @classmethod
    def validate_database_path(cls, v: Path) -> Path:
        """Resolve the database path and make sure its directory exists."""
        abs_path = v.absolute()
        abs_path.parent.mkdir(parents=True, exist_ok=True)

        if not abs_path.parent.is_dir():
            raise ValueError(f"Database directory {abs_path.parent} is not accessible")

        return abs_path

    @field_validator("server_name")
    @classmethod
    def validate_server_name(cls, v: str) -> str:
        if len(v) < 3:
            raise ValueError("Server name must be at least 3 characters")
        if len(v) > 50:
            raise ValueError("Server name must not exceed 50 characters")
        return v

    # === Computed Properties ===

    @property
    def is_development(self) -> bool:
        return self.debug or self.log_level == "DEBUG"

    @property
    def server_info(self) -> dict[str, str]:
        return {
            "name": self.server_name,
            "version": self.server_version,
        }

    @property
    def policy(self) -> dict[str, float | int]:
        """Circulation constants as reported by the stats resource."""
        return {
            "borrow_duration_days": self.borrow_duration_days,
            "renewal_duration_days": self.renewal_duration_days,
            "max_renewals": self.max_renewals,
            "fine_per_day": self.fine_per_day,
            "max_fine_amount": self.max_fine_amount,
            "pickup_window_days": self.pickup_window_days,
            "max_concurrent_loans": self.max_concurrent_loans,
        }

    def get_database_url(self) -> str:
        """Get the SQLAlchemy database URL."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.database_path}"


# === Global Configuration Instance ===


class _ConfigStore:
    """Internal storage for configuration singleton."""

    _instance: CirculationConfig | None = None


def get_config() -> CirculationConfig:
    """Get or create the global configuration instance."""
    if _ConfigStore._instance is None:  # type: ignore[reportPrivateUsage]
        _ConfigStore._instance = CirculationConfig()  # type: ignore[reportPrivateUsage]
    return _ConfigStore._instance  # type: ignore[reportPrivateUsage]


def reset_config() -> None:
    """Reset configuration (useful for testing)."""
    _ConfigStore._instance = None  # type: ignore[reportPrivateUsage]
