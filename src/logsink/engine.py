"""Buffered log sink.

Records are appended to an in-memory buffer and written to a `LogStore` in
batches, either when the buffer reaches `buffer_limit` or when the periodic
timer fires, whichever comes first. Everything runs on a single asyncio event
loop:

- `append` never suspends. When the size threshold is hit it detaches the
  buffer right away and hands the write to a background task.
- At most one flush is in flight. A trigger that fires while another flush is
  running is skipped; the timer or the next threshold picks the data up.
- Failed batches are reported and dropped. Nothing raises out of `append`
  or `shutdown`.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Mapping
from contextlib import suppress
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from pydantic import ValidationError

from config import SinkConfig

from .models import LogRecord, now_ms, to_row, utc_now
from .stores import Backend, LogStore, open_store

logger = logging.getLogger(__name__)

ErrorObserver = Callable[[str, BaseException], None]
FlushTrigger = Literal["size", "timer", "manual", "shutdown"]


class SinkClosedError(RuntimeError):
    """A record arrived after the sink was shut down."""


def log_error(message: str, error: BaseException) -> None:
    """Default error observer: report through the module logger."""
    logger.error("Error in logsink: %s", message, exc_info=error)


class BufferedLogSink:
    """Batches log records in memory and flushes them to a store."""

    def __init__(
        self,
        *,
        store: LogStore,
        service_name: str | None = None,
        flush_interval_ms: int = 1000,
        buffer_limit: int = 100,
        owns_store: bool = False,
        on_error: ErrorObserver | None = None,
    ) -> None:
        """Create a sink and provision the store's schema.

        Args:
            store: Destination for flushed batches.
            service_name: Default `service_name` for records that carry none.
            flush_interval_ms: Period of the background flush timer.
            buffer_limit: Buffer length that triggers an immediate flush.
            owns_store: Close the store on shutdown. Leave False for a store
                wrapping a connection the caller keeps using.
            on_error: Called as `on_error(message, error)` for every failure;
                defaults to logging at ERROR level.
        """
        if flush_interval_ms <= 0:
            raise ValueError(f"flush_interval_ms must be > 0. Got: {flush_interval_ms}")
        if buffer_limit <= 0:
            raise ValueError(f"buffer_limit must be > 0. Got: {buffer_limit}")

        self._store = store
        self._service_name = service_name
        self._flush_interval_s = flush_interval_ms / 1000
        self._buffer_limit = buffer_limit
        self._owns_store = owns_store
        self._on_error = on_error or log_error

        self._buffer: list[LogRecord] = []
        self._flushing = False
        self._closed = False
        self._timer: asyncio.Task[None] | None = None
        self._inflight: set[asyncio.Task[None]] = set()

        self._appended = 0
        self._persisted = 0
        self._dropped = 0
        self._batches_flushed = 0
        self._batches_failed = 0
        self._skipped_flushes = 0
        self._flush_triggers: dict[str, int] = {"size": 0, "timer": 0, "manual": 0, "shutdown": 0}

        # Degradation tracking: every reported error counts.
        self._errors_reported = 0
        self._first_error_at: datetime | None = None
        self._last_error_at: datetime | None = None

        self._store.provision_schema()

    @classmethod
    def open(
        cls,
        database: str | Path | Any,
        *,
        backend: Backend = "sqlite",
        **kwargs: Any,
    ) -> BufferedLogSink:
        """Create a sink from a database path or an existing connection.

        A path opens a new connection that the sink owns and closes on
        shutdown. A connection object is used as-is and left open.
        """
        store, owned = open_store(database, backend=backend)
        try:
            return cls(store=store, owns_store=owned, **kwargs)
        except Exception:
            if owned:
                store.close()
            raise

    @classmethod
    def from_config(cls, config: SinkConfig, *, on_error: ErrorObserver | None = None) -> BufferedLogSink:
        """Create an owning sink from validated configuration."""
        return cls.open(
            config.database,
            backend=config.backend,
            service_name=config.service_name,
            flush_interval_ms=config.flush_interval_ms,
            buffer_limit=config.buffer_limit,
            on_error=on_error,
        )

    @property
    def store(self) -> LogStore:
        return self._store

    @property
    def pending_count(self) -> int:
        """Number of records waiting in the buffer."""
        return len(self._buffer)

    @property
    def flushing(self) -> bool:
        return self._flushing

    @property
    def closed(self) -> bool:
        return self._closed

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def append(self, record: LogRecord | Mapping[str, Any]) -> None:
        """Buffer a record, flushing in the background once the limit is hit."""
        if self._closed:
            self._dropped += 1
            self.report_error("Log record received after shutdown", SinkClosedError("sink is closed"))
            return

        if not isinstance(record, LogRecord):
            try:
                record = LogRecord.model_validate(dict(record) if isinstance(record, Mapping) else record)
            except ValidationError as exc:
                self._dropped += 1
                self.report_error("Invalid log record", exc)
                return

        if record.timestamp_ms is None:
            record = record.model_copy(update={"timestamp_ms": now_ms()})

        self._buffer.append(record)
        self._appended += 1

        if len(self._buffer) >= self._buffer_limit:
            self._trigger_flush("size")

    # ------------------------------------------------------------------
    # Flushing
    # ------------------------------------------------------------------

    async def flush(self) -> None:
        """Write the buffered records now (no-op if empty or already flushing)."""
        batch = self._detach("manual")
        if batch is not None:
            await self._spawn_write(batch, "manual")

    def start(self) -> asyncio.Task[None]:
        """Start the periodic flush timer and return its task.

        Must be called from a running event loop. Calling it again while the
        timer is running returns the existing task.
        """
        if self._timer is None or self._timer.done():
            self._timer = asyncio.get_running_loop().create_task(self._flush_timer(), name="logsink-flush-timer")
            logger.info(
                "Log sink started (flush every %dms or %d records)",
                int(self._flush_interval_s * 1000),
                self._buffer_limit,
            )
        return self._timer

    def _trigger_flush(self, trigger: FlushTrigger) -> None:
        """Detach the buffer now and write it in a background task."""
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to write on; the records wait for the next trigger.
            return

        batch = self._detach(trigger)
        if batch is None:
            return
        self._spawn_write(batch, trigger, loop)

    def _spawn_write(
        self,
        batch: list[LogRecord],
        trigger: FlushTrigger,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> asyncio.Task[None]:
        """Run `_write` as a task tracked in `_inflight` so shutdown can await it."""
        loop = loop or asyncio.get_running_loop()
        task = loop.create_task(self._write(batch), name=f"logsink-flush-{trigger}")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    def _detach(self, trigger: FlushTrigger) -> list[LogRecord] | None:
        """Claim the flush slot and swap in a fresh buffer.

        Returns None when a flush is already running or there is nothing to
        write. Otherwise the caller must pass the batch to `_write`, which
        releases the slot.
        """
        if self._flushing:
            self._skipped_flushes += 1
            return None
        if not self._buffer:
            return None

        self._flushing = True
        batch, self._buffer = self._buffer, []
        self._flush_triggers[trigger] += 1
        return batch

    async def _write(self, batch: list[LogRecord]) -> None:
        """Persist one detached batch atomically; report and drop it on failure."""
        try:
            rows = [to_row(record, default_service_name=self._service_name) for record in batch]
            if self._store.supports_threads:
                await asyncio.to_thread(self._store.execute_batch, rows)
            else:
                self._store.execute_batch(rows)
        except Exception as exc:  # noqa: BLE001 - logging must not crash the host
            self._batches_failed += 1
            self._dropped += len(batch)
            self.report_error(f"Flushing {len(batch)} log records failed", exc)
        else:
            self._batches_flushed += 1
            self._persisted += len(batch)
            logger.debug("Flushed batch of %d log records", len(batch))
        finally:
            self._flushing = False

    async def _flush_timer(self) -> None:
        """Trigger a flush every interval until cancelled."""
        while True:
            await asyncio.sleep(self._flush_interval_s)
            self._trigger_flush("timer")

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self, prior_error: BaseException | None = None) -> None:
        """Stop the timer, drain the buffer and release an owned store.

        `prior_error` (e.g. a failed input stream) is reported after the drain
        has been attempted. Safe to call multiple times.
        """
        if self._closed:
            return
        self._closed = True

        if self._timer is not None:
            self._timer.cancel()
            with suppress(asyncio.CancelledError):
                await self._timer
            self._timer = None

        # Wait for every write, including manual flushes started by callers.
        while self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

        batch = self._detach("shutdown")
        if batch is not None:
            await self._write(batch)

        if self._buffer:
            lost = len(self._buffer)
            self._buffer = []
            self._dropped += lost
            self.report_error(
                f"{lost} log records were not flushed before shutdown",
                SinkClosedError("sink closed with records still buffered"),
            )

        if self._owns_store:
            try:
                self._store.close()
            except Exception as exc:  # noqa: BLE001 - shutdown must complete
                self.report_error("Closing log store failed", exc)

        if prior_error is not None:
            self.report_error("Log stream failed", prior_error)

        logger.info(
            "Log sink shut down (%d persisted, %d dropped)",
            self._persisted,
            self._dropped,
        )

    async def __aenter__(self) -> BufferedLogSink:
        self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc: BaseException | None, tb: Any) -> None:
        await self.shutdown(prior_error=exc if isinstance(exc, Exception) else None)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def report_error(self, message: str, error: BaseException) -> None:
        """Hand an error to the observer; an observer that raises is logged."""
        now = utc_now()
        self._errors_reported += 1
        self._first_error_at = self._first_error_at or now
        self._last_error_at = now
        try:
            self._on_error(message, error)
        except Exception:  # noqa: BLE001 - never propagate out of the sink
            logger.exception("Error observer failed while reporting: %s", message)

    def stats(self) -> dict[str, Any]:
        """Return a point-in-time snapshot of sink counters."""
        return {
            "records_appended": self._appended,
            "records_persisted": self._persisted,
            "records_dropped": self._dropped,
            "records_pending": len(self._buffer),
            "batches_flushed": self._batches_flushed,
            "batches_failed": self._batches_failed,
            "skipped_flushes": self._skipped_flushes,
            "flush_triggers": dict(self._flush_triggers),
        }

    def degraded_status(self) -> dict[str, Any]:
        """Return a minimal degraded-status snapshot."""
        return {
            "errors_reported": self._errors_reported,
            "first_error_at": self._first_error_at,
            "last_error_at": self._last_error_at,
        }
