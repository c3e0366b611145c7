"""
Configuration Management.

Loads secrets from config/.env and settings from config/settings/*.yaml.

Secrets (.env):
    DB_PASSWORD

Settings (YAML):
    application.yaml   - App identity and environment
    database.yaml      - Database connection and pool settings
    logging.yaml       - Logging configuration

Event bus tunables (poll interval, retry policy, circuit breaker, ...) are
environment-driven and live in modules.backend.events.config.
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.engine import URL, make_url

from modules.backend.core.config_schema import (
    ApplicationSchema,
    DatabaseSchema,
    LoggingSchema,
)


def find_project_root() -> Path:
    """Find project root by looking for .project_root marker file."""
    current = Path.cwd()
    while current != current.parent:
        if (current / ".project_root").exists():
            return current
        current = current.parent
    raise RuntimeError("Project root not found. Ensure .project_root file exists.")


def validate_project_root() -> Path:
    """
    Validate that the project root can be found.

    Raises SystemExit with a clear message if .project_root is not found.
    Use this in entry scripts before any configuration loading.
    """
    try:
        return find_project_root()
    except RuntimeError as e:
        raise SystemExit(f"Error: {e}") from e


def load_yaml_config(filename: str) -> dict[str, Any]:
    """Load a YAML configuration file from config/settings/."""
    project_root = find_project_root()
    config_path = project_root / "config" / "settings" / filename

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


class Settings(BaseSettings):
    """Secrets loaded from config/.env. Only passwords, tokens, and keys."""

    db_password: str

    model_config = SettingsConfigDict(
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


_SECTIONS: dict[str, tuple[type[BaseModel], str]] = {
    "application": (ApplicationSchema, "application.yaml"),
    "database": (DatabaseSchema, "database.yaml"),
    "logging": (LoggingSchema, "logging.yaml"),
}


class AppConfig:
    """
    Application configuration loaded from YAML files.

    Each section is validated against its schema at load time. Every file is
    checked before raising, so one error lists all invalid files.
    """

    application: ApplicationSchema
    database: DatabaseSchema
    logging: LoggingSchema

    def __init__(self) -> None:
        errors = []
        for attr, (schema_cls, filename) in _SECTIONS.items():
            try:
                setattr(self, attr, schema_cls(**load_yaml_config(filename)))
            except ValidationError as e:
                errors.append(f"{filename}:\n{e}")

        if errors:
            raise ValueError("Invalid configuration in " + "\n\n".join(errors))


@lru_cache
def get_settings() -> Settings:
    """Get cached secrets instance. Resolves .env path from project root."""
    env_path = find_project_root() / "config" / ".env"
    return Settings(_env_file=str(env_path))


@lru_cache
def get_app_config() -> AppConfig:
    """Get cached application configuration."""
    return AppConfig()


def get_database_url(async_driver: bool = True) -> str:
    """
    Construct database URL from YAML config and secrets.

    DATABASE_URL, when set, wins over the YAML-derived URL so the
    outbox worker can be pointed at another database without editing config.
    Credentials are URL-escaped.

    Args:
        async_driver: Use asyncpg driver if True, psycopg2 if False.

    Returns:
        Database connection URL string.
    """
    override = os.environ.get("DATABASE_URL")
    if override:
        return override

    db = get_app_config().database
    url = URL.create(
        drivername="postgresql+asyncpg" if async_driver else "postgresql",
        username=db.user,
        password=get_settings().db_password,
        host=db.host,
        port=db.port,
        database=db.name,
    )
    return url.render_as_string(hide_password=False)


def redact_database_url(url: str | None = None) -> str:
    """Database URL with the password masked, for display and logs."""
    return make_url(url or get_database_url()).render_as_string(hide_password=True)
