"""
Integration Tests for cli.py.

Tests the CLI as a whole with real execution paths against a SQLite file.
"""

import os
import subprocess
import sys
from pathlib import Path

import pytest


# Project root for running commands
PROJECT_ROOT = Path(__file__).parent.parent.parent


def _run(*args: str, env: dict[str, str] | None = None) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, str(PROJECT_ROOT / "cli.py"), *args],
        cwd=PROJECT_ROOT,
        capture_output=True,
        text=True,
        env={**os.environ, **(env or {})},
    )


@pytest.fixture
def database_env(tmp_path: Path) -> dict[str, str]:
    """Point the CLI at a throwaway SQLite database."""
    return {"DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'cli.db'}"}


class TestEventCLI:
    """Integration tests for the cli.py command-line interface."""

    def test_help_returns_zero_exit_code(self):
        """Should return exit code 0 for --help."""
        # Act
        result = _run("--help")

        # Assert
        assert result.returncode == 0
        assert "Usage:" in result.stdout
        assert "--service" in result.stdout

    def test_info_service_succeeds(self):
        """Should display application info and the service list."""
        # Act
        result = _run("--service", "info")

        # Assert
        assert result.returncode == 0
        assert "Module Event Bus" in result.stdout
        assert "worker" in result.stdout

    def test_config_service_displays_event_settings(self, database_env):
        """Should display YAML settings, the database URL and event settings."""
        # Act
        result = _run("--service", "config", env={"EVENT_DEFAULT_TIMEOUT": "12.5", **database_env})

        # Assert
        assert result.returncode == 0
        assert "Application Settings" in result.stdout
        assert "url: sqlite+aiosqlite:///" in result.stdout
        assert "default_timeout: 12.5" in result.stdout

    def test_init_db_then_stats(self, database_env):
        """Should create the tables, then report empty statistics."""
        # Act
        init_result = _run("--service", "init-db", env=database_env)
        stats_result = _run("--service", "stats", env=database_env)

        # Assert
        assert init_result.returncode == 0
        assert "Event tables created" in init_result.stdout
        assert stats_result.returncode == 0
        assert "pending" in stats_result.stdout
        assert "Dead letters: 0" in stats_result.stdout

    def test_worker_once_on_empty_outbox(self, database_env):
        """Should run one poll cycle and exit."""
        # Arrange
        _run("--service", "init-db", env=database_env)

        # Act
        result = _run("--service", "worker", "--once", env=database_env)

        # Assert
        assert result.returncode == 0
        assert "Processed 0 event(s)." in result.stdout

    def test_worker_refuses_when_disabled(self, database_env):
        """Should exit non-zero when the event system is disabled."""
        # Act
        result = _run("--service", "worker", "--once", env={**database_env, "EVENT_ENABLED": "false"})

        # Assert
        assert result.returncode == 1
        assert "disabled" in result.stderr

    def test_invalid_service_shows_error(self):
        """Should reject unknown services."""
        # Act
        result = _run("--service", "bogus")

        # Assert
        assert result.returncode != 0
        assert "Invalid value" in result.stderr
