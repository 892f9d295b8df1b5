"""Tests for server and circulation policy configuration."""

import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from library_circulation.config import CirculationConfig, get_config, reset_config


class TestCirculationConfig:
    """Configuration loading and validation."""

    def test_default_policy(self, tmp_path, clean_env):
        config = CirculationConfig(database_path=tmp_path / "library.db")

        assert config.server_name == "library-circulation"
        assert config.borrow_duration_days == 14
        assert config.renewal_duration_days == 7
        assert config.max_renewals == 2
        assert config.fine_per_day == 1.0
        assert config.max_fine_amount == 50.0
        assert config.pickup_window_days == 3
        assert config.max_concurrent_loans == 5

    def test_environment_variable_loading(self, tmp_path, clean_env):
        env_vars = {
            "LIBRARY_SERVER_NAME": "branch-library",
            "LIBRARY_DATABASE_PATH": str(tmp_path / "branch.db"),
            "LIBRARY_MAX_RENEWALS": "3",
            "LIBRARY_FINE_PER_DAY": "0.25",
            "LIBRARY_DEBUG": "true",
        }

        with patch.dict(os.environ, env_vars):
            config = CirculationConfig()

            assert config.server_name == "branch-library"
            assert config.database_path == tmp_path / "branch.db"
            assert config.max_renewals == 3
            assert config.fine_per_day == 0.25
            assert config.debug is True

    def test_policy_validation(self, tmp_path):
        db_path = tmp_path / "library.db"
        invalid = [
            {"borrow_duration_days": 0},
            {"max_renewals": -1},
            {"fine_per_day": -1.0},
            {"pickup_window_days": 0},
            {"max_concurrent_loans": 0},
        ]
        for overrides in invalid:
            with pytest.raises(ValidationError):
                CirculationConfig(database_path=db_path, **overrides)

    def test_server_name_validation(self, tmp_path):
        for name in ["MCP_Server", "mcp server", "ab", "a" * 51]:
            with pytest.raises(ValidationError):
                CirculationConfig(database_path=tmp_path / "library.db", server_name=name)

    def test_database_path_is_created(self, tmp_path):
        db_path = tmp_path / "subdir" / "library.db"
        config = CirculationConfig(database_path=db_path)

        assert db_path.parent.is_dir()
        assert config.database_path.is_absolute()
        assert config.get_database_url() == f"sqlite:///{db_path}"

    def test_database_url_takes_precedence(self, tmp_path):
        config = CirculationConfig(
            database_path=tmp_path / "library.db",
            database_url="postgresql://library@localhost/circulation",
        )
        assert config.get_database_url() == "postgresql://library@localhost/circulation"

    def test_policy_property(self, tmp_path):
        config = CirculationConfig(database_path=tmp_path / "library.db", max_fine_amount=20.0)

        assert config.policy["max_fine_amount"] == 20.0
        assert set(config.policy) == {
            "borrow_duration_days",
            "renewal_duration_days",
            "max_renewals",
            "fine_per_day",
            "max_fine_amount",
            "pickup_window_days",
            "max_concurrent_loans",
        }

    def test_computed_properties(self, tmp_path):
        db_path = tmp_path / "library.db"
        assert CirculationConfig(database_path=db_path, log_level="INFO").is_development is False
        assert CirculationConfig(database_path=db_path, debug=True).is_development is True
        assert CirculationConfig(database_path=db_path).server_info == {
            "name": "library-circulation",
            "version": "0.1.0",
        }


def test_get_config_is_a_singleton(tmp_path, clean_env):
    reset_config()
    with patch.dict(os.environ, {"LIBRARY_DATABASE_PATH": str(tmp_path / "library.db")}):
        first = get_config()
        assert get_config() is first
        reset_config()
        assert get_config() is not first
    reset_config()
    assert isinstance(Path(first.database_path), Path)
