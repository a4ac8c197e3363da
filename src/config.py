"""Configuration loading and validation.

This module is responsible for:

- Loading `.env` into the process environment (without overriding existing vars).
- Converting environment variables into a strongly-typed Pydantic model.
- Validating required fields and providing actionable error messages.
"""

import os
from typing import Literal, TypeVar

import dotenv
from pydantic import BaseModel, Field, field_validator

_T = TypeVar("_T", int, float)


def _get_required_env(name: str) -> str:
    """Read a required env var or raise a helpful error."""
    value = os.getenv(name, "").strip()
    if not value:
        raise ValueError(f"{name} is required. Please set it in your .env file.")
    if value.startswith("your_") and value.endswith("_here"):
        raise ValueError(f"{name} is required. Please replace the placeholder value in your .env file.")
    return value


def _get_env_optional(name: str) -> str | None:
    """Read an optional string env var; blank counts as unset."""
    value = os.getenv(name, "").strip()
    return value or None


def _get_env_number(name: str, default: _T, cast: type[_T]) -> _T:
    """Read an int/float env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a {cast.__name__}. Got: {raw!r}") from exc


class SinkConfig(BaseModel):
    """Configuration for the buffered log sink."""

    database: str = Field(..., description="Path of the database file to write to")
    backend: Literal["sqlite", "duckdb"] = Field(default="sqlite", description="Embedded store to use")
    service_name: str | None = Field(default=None, description="Default service name for records without one")
    flush_interval_ms: int = Field(default=1000, gt=0, description="Milliseconds between timer flushes")
    buffer_limit: int = Field(default=100, gt=0, description="Buffered records that trigger an early flush")
    log_level: str = Field(default="INFO", description="Level for the sink's own diagnostics")

    @field_validator("database")
    def validate_database(cls, v: str) -> str:
        """Validate the database path is set (not empty/placeholder)."""
        if not v or v == "your_database_path_here":
            raise ValueError("LOGSINK_DATABASE is required. Please set it in your .env file.")
        return v

    @field_validator("log_level")
    def validate_log_level(cls, v: str) -> str:
        """Normalize and validate a stdlib logging level name."""
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"LOGSINK_LOG_LEVEL must be a logging level name. Got: {v!r}")
        return level


def load_config() -> SinkConfig:
    """Load sink configuration from environment variables.

    Notes:
    - Calls `dotenv.load_dotenv()` so local `.env` values are visible to the process.
    - Raises `ValueError` with actionable messages when required configuration is
      missing or invalid.
    """
    dotenv.load_dotenv()

    return SinkConfig(
        database=_get_required_env("LOGSINK_DATABASE"),
        backend=os.getenv("LOGSINK_BACKEND", "sqlite").strip().lower() or "sqlite",
        service_name=_get_env_optional("LOGSINK_SERVICE_NAME"),
        flush_interval_ms=_get_env_number("LOGSINK_FLUSH_INTERVAL_MS", 1000, int),
        buffer_limit=_get_env_number("LOGSINK_BUFFER_LIMIT", 100, int),
        log_level=os.getenv("LOGSINK_LOG_LEVEL", "INFO"),
    )
