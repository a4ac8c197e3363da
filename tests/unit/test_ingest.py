from __future__ import annotations

import asyncio
import io
import json
import logging
import threading
from collections.abc import AsyncIterator
from typing import Any

import pytest

from logsink import BufferedLogSink, InMemoryLogStore, SinkHandler, consume, parse_line, read_lines


class _Errors:
    def __init__(self) -> None:
        self.calls: list[tuple[str, BaseException]] = []

    def __call__(self, message: str, error: BaseException) -> None:
        self.calls.append((message, error))


def _make_sink(**kwargs: Any) -> tuple[BufferedLogSink, InMemoryLogStore, _Errors]:
    store = InMemoryLogStore()
    errors = _Errors()
    return BufferedLogSink(store=store, on_error=errors, **kwargs), store, errors


async def _settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def test_parse_line_handles_text_bytes_and_blanks() -> None:
    assert parse_line('{"level": 30, "msg": "a"}\n') == {"level": 30, "msg": "a"}
    assert parse_line(b'{"level": 40}') == {"level": 40}
    assert parse_line("   \n") is None


@pytest.mark.parametrize("line", ["not json", "[1, 2]", '"just a string"'])
def test_parse_line_rejects_non_objects(line: str) -> None:
    with pytest.raises(ValueError):
        parse_line(line)


@pytest.mark.asyncio
async def test_read_lines_yields_until_eof() -> None:
    stream = io.StringIO("one\ntwo\n")

    lines = [line async for line in read_lines(stream)]

    assert lines == ["one\n", "two\n"]


@pytest.mark.asyncio
async def test_consume_forwards_records_in_order_and_shuts_down() -> None:
    sink, store, errors = _make_sink(buffer_limit=2)

    async def _source() -> AsyncIterator[dict[str, Any]]:
        for i in range(5):
            yield {"time": i, "level": 30, "msg": f"log-{i}"}

    await consume(_source(), sink)

    assert [row.message for row in store.snapshot()] == [f"log-{i}" for i in range(5)]
    assert sink.closed is True
    assert errors.calls == []


@pytest.mark.asyncio
async def test_consume_parses_ndjson_and_reports_bad_lines() -> None:
    sink, store, errors = _make_sink()
    lines = [
        json.dumps({"time": 1, "level": 30, "msg": "first", "userId": 123}) + "\n",
        "\n",
        "{broken\n",
        json.dumps({"time": 2, "level": 50, "msg": "second"}).encode("utf-8"),
    ]

    await consume(lines, sink)

    rows = store.snapshot()
    assert [row.message for row in rows] == ["first", "second"]
    assert json.loads(rows[0].meta) == {"userId": 123}
    assert [message for message, _ in errors.calls] == ["Unparseable log line"]


@pytest.mark.asyncio
async def test_consume_reports_stream_failure_after_draining() -> None:
    sink, store, errors = _make_sink()
    failure = OSError("pipe closed")

    async def _source() -> AsyncIterator[dict[str, Any]]:
        yield {"time": 1, "level": 30, "msg": "before failure"}
        raise failure

    await consume(_source(), sink)

    assert [row.message for row in store.snapshot()] == ["before failure"]
    assert errors.calls == [("Log stream failed", failure)]
    assert sink.closed is True


@pytest.mark.asyncio
async def test_consume_drains_when_cancelled() -> None:
    sink, store, _ = _make_sink()
    blocked = asyncio.Event()

    async def _source() -> AsyncIterator[dict[str, Any]]:
        yield {"time": 1, "level": 30, "msg": "buffered"}
        await blocked.wait()

    task = asyncio.create_task(consume(_source(), sink))
    await _settle()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert [row.message for row in store.snapshot()] == ["buffered"]
    assert sink.closed is True


@pytest.mark.asyncio
async def test_sink_handler_forwards_stdlib_records() -> None:
    sink, store, _ = _make_sink()
    handler = SinkHandler(sink)
    log = logging.getLogger("tests.sink_handler")
    log.propagate = False
    log.setLevel(logging.DEBUG)
    log.addHandler(handler)
    try:
        log.warning("hello %s", "world", extra={"request_id": "r1"})
        await _settle()
    finally:
        log.removeHandler(handler)

    assert sink.pending_count == 1
    await sink.shutdown()

    (row,) = store.snapshot()
    assert row.level == logging.WARNING
    assert row.name == "tests.sink_handler"
    assert row.message == "hello world"
    assert row.hostname
    assert json.loads(row.meta) == {"request_id": "r1"}


@pytest.mark.asyncio
async def test_sink_handler_marshals_records_from_other_threads() -> None:
    sink, store, _ = _make_sink()
    handler = SinkHandler(sink)
    log = logging.getLogger("tests.sink_handler.threads")
    log.propagate = False
    log.setLevel(logging.INFO)
    log.addHandler(handler)
    try:
        worker = threading.Thread(target=log.error, args=("worker failed",))
        worker.start()
        worker.join()
        await _settle()
    finally:
        log.removeHandler(handler)

    await sink.shutdown()

    (row,) = store.snapshot()
    assert row.level == logging.ERROR
    assert row.message == "worker failed"
    assert row.pid is not None


@pytest.mark.asyncio
async def test_sink_handler_includes_formatted_exception() -> None:
    sink, store, _ = _make_sink()
    handler = SinkHandler(sink)
    log = logging.getLogger("tests.sink_handler.exc")
    log.propagate = False
    log.addHandler(handler)
    try:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            log.exception("request failed")
        await _settle()
    finally:
        log.removeHandler(handler)

    await sink.shutdown()

    (row,) = store.snapshot()
    err = json.loads(row.meta)["err"]
    assert err.startswith("Traceback")
    assert "RuntimeError: boom" in err


@pytest.mark.asyncio
async def test_consume_stores_nan_values_as_valid_json() -> None:
    sink, store, errors = _make_sink()

    await consume(['{"level": 30, "msg": "m", "ratio": NaN, "peak": Infinity}'], sink)

    (row,) = store.snapshot()
    assert row.meta == '{"peak":null,"ratio":null}'
    assert errors.calls == []


@pytest.mark.asyncio
async def test_consume_skips_lines_nested_too_deeply() -> None:
    sink, store, errors = _make_sink()
    lines = [
        json.dumps({"time": 1, "level": 30, "msg": "a"}),
        "[" * 200_000,
        json.dumps({"time": 2, "level": 30, "msg": "b"}),
    ]

    await consume(lines, sink)

    assert [row.message for row in store.snapshot()] == ["a", "b"]
    assert [message for message, _ in errors.calls] == ["Unparseable log line"]
    assert isinstance(errors.calls[0][1], RecursionError)
