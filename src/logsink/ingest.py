"""Ingestion adapters: feed records from a producer into a `BufferedLogSink`.

Two producers are supported:

- A stream of record-shaped values (`consume`), such as NDJSON lines read
  from stdin by a logging transport.
- The stdlib `logging` module (`SinkHandler`), which may emit from any
  thread; records are marshalled onto the sink's event loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
import socket
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from typing import Any, TextIO

from .engine import BufferedLogSink

# Attributes every stdlib LogRecord carries; anything else came from `extra=`.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", logging.NOTSET, "", 0, "", (), None))) | {
    "message",
    "asctime",
}

_FORMATTER = logging.Formatter()


def parse_line(line: str | bytes) -> dict[str, Any] | None:
    """Decode one NDJSON line into a record mapping.

    Blank lines yield None. Raises `ValueError` for invalid JSON or for JSON
    that is not an object.
    """
    if isinstance(line, bytes):
        line = line.decode("utf-8")
    text = line.strip()
    if not text:
        return None
    value = json.loads(text)
    if not isinstance(value, dict):
        raise ValueError(f"Expected a JSON object per line. Got: {type(value).__name__}")
    return value


async def read_lines(stream: TextIO) -> AsyncIterator[str]:
    """Yield lines from a blocking text stream without blocking the event loop."""
    while True:
        line = await asyncio.to_thread(stream.readline)
        if not line:
            return
        yield line


async def _iterate(source: AsyncIterable[Any] | Iterable[Any]) -> AsyncIterator[Any]:
    """Iterate sync or async sources, yielding to the loop between items."""
    if isinstance(source, AsyncIterable):
        async for item in source:
            yield item
        return
    for item in source:
        yield item
        # Let background flushes run between items of a sync source.
        await asyncio.sleep(0)


async def consume(source: AsyncIterable[Any] | Iterable[Any], sink: BufferedLogSink) -> None:
    """Forward every record from `source` to `sink`, then shut the sink down.

    Items may be mappings, `LogRecord`s, or NDJSON `str`/`bytes` lines. Lines
    that cannot be parsed are reported through the sink and skipped. A failing
    source is passed to `sink.shutdown` as the prior error; nothing raises
    out of this coroutine except cancellation.
    """
    try:
        async for item in _iterate(source):
            if isinstance(item, (str, bytes)):
                try:
                    item = parse_line(item)
                except (ValueError, RecursionError) as exc:
                    sink.report_error("Unparseable log line", exc)
                    continue
                if item is None:
                    continue
            sink.append(item)
    except asyncio.CancelledError:
        await sink.shutdown()
        raise
    except Exception as exc:  # noqa: BLE001 - normalize into the sink's error channel
        await sink.shutdown(prior_error=exc)
        return

    await sink.shutdown()


class SinkHandler(logging.Handler):
    """Logging handler that forwards records to a `BufferedLogSink`.

    `emit` may be called from any thread. The record is converted there and
    appended on the sink's loop via `call_soon_threadsafe`, so the sink itself
    is only ever touched from one thread.
    """

    def __init__(
        self,
        sink: BufferedLogSink,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        level: int = logging.NOTSET,
    ) -> None:
        """Create a handler bound to `loop` (defaults to the running loop)."""
        super().__init__(level)
        self._sink = sink
        self._loop = loop or asyncio.get_running_loop()
        self._hostname = socket.gethostname()

    def to_wire(self, record: logging.LogRecord) -> dict[str, Any]:
        """Convert a stdlib record to the sink's wire shape."""
        payload: dict[str, Any] = {
            "time": int(record.created * 1000),
            "level": record.levelno,
            "hostname": self._hostname,
            "pid": record.process,
            "name": record.name,
            "msg": record.getMessage(),
        }
        for key, value in vars(record).items():
            if key not in _STANDARD_ATTRS and not key.startswith("_"):
                payload[key] = value
        if record.exc_info:
            payload["err"] = _FORMATTER.formatException(record.exc_info)
        return payload

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self._loop.call_soon_threadsafe(self._sink.append, self.to_wire(record))
        except Exception:
            self.handleError(record)
