"""Log record models.

A `LogRecord` is the shape a logging front end hands to the sink: a handful of
well-known fields plus any number of extra key/value pairs. At flush time each
record is projected to a `PersistedRow`, one value per column of the `logs`
table, with the extras folded into a JSON `meta` column.
"""

from __future__ import annotations

import json
import math
import time
from datetime import datetime, timezone
from typing import Any, NamedTuple

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(tz=timezone.utc)


def now_ms() -> int:
    """Return the current time in epoch milliseconds."""
    return int(time.time() * 1000)


class LogRecord(BaseModel):
    """A single structured log event.

    Wire keys follow the pino convention (`time`, `msg`, `name`); field names
    are accepted as well. Every key outside the fixed set is kept as an extra.
    """

    model_config = ConfigDict(extra="allow", frozen=True, populate_by_name=True)

    timestamp_ms: int | None = Field(default=None, alias="time")
    level: int
    hostname: str | None = None
    pid: int | None = None
    service_name: str | None = Field(default=None, alias="serviceName")
    logger_name: str | None = Field(default=None, alias="name")
    message: str | None = Field(default=None, alias="msg")

    @property
    def extra(self) -> dict[str, Any]:
        """Fields outside the fixed set (never None)."""
        return dict(self.model_extra or {})


class PersistedRow(NamedTuple):
    """One row of the `logs` table, in column order."""

    timestamp: int
    level: int
    hostname: str | None
    pid: int | None
    service_name: str | None
    name: str | None
    message: str | None
    meta: str


def _json_safe(value: Any) -> Any:
    """Replace NaN and infinities with None, recursing into containers."""
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {key: _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return value


def encode_meta(extra: dict[str, Any]) -> str:
    """Serialize extras as stable, compact JSON (`"{}"` when empty).

    Non-finite floats are written as `null` so the result is always valid JSON.
    """
    return json.dumps(_json_safe(extra), separators=(",", ":"), sort_keys=True, allow_nan=False, default=str)


def to_row(record: LogRecord, *, default_service_name: str | None = None) -> PersistedRow:
    """Project a record to its persisted columns."""
    timestamp = record.timestamp_ms if record.timestamp_ms is not None else now_ms()
    return PersistedRow(
        timestamp=timestamp,
        level=record.level,
        hostname=record.hostname,
        pid=record.pid,
        service_name=record.service_name if record.service_name is not None else default_service_name,
        name=record.logger_name,
        message=record.message,
        meta=encode_meta(record.extra),
    )
