"""Buffered log persistence.

This package provides:
- A record model for structured log events and their projection to table rows.
- Embedded stores (SQLite by default, DuckDB, in-memory) with atomic batch inserts.
- A buffered sink that batches records by size or time without blocking the event loop.
- Adapters that feed the sink from an NDJSON stream or the stdlib `logging` module.
"""

from .engine import BufferedLogSink, SinkClosedError, log_error
from .ingest import SinkHandler, consume, parse_line, read_lines
from .models import LogRecord, PersistedRow, to_row
from .stores import DuckDBLogStore, InMemoryLogStore, LogStore, SQLiteLogStore, open_store

__all__ = [
    "BufferedLogSink",
    "DuckDBLogStore",
    "InMemoryLogStore",
    "LogRecord",
    "LogStore",
    "PersistedRow",
    "SQLiteLogStore",
    "SinkClosedError",
    "SinkHandler",
    "consume",
    "log_error",
    "open_store",
    "parse_line",
    "read_lines",
    "to_row",
]
