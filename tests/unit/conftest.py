from __future__ import annotations

import pytest


@pytest.fixture(autouse=True)
def _no_threads_in_unit_tests(monkeypatch: pytest.MonkeyPatch):
    """Run `asyncio.to_thread` inline for unit tests.

    The sink offloads store writes with `asyncio.to_thread`. In unit tests this
    keeps flushes deterministic (one loop step) and lets stores wrap
    connections that are bound to the test's thread.
    """

    async def _to_thread(func, /, *args, **kwargs):  # noqa: ANN001, D401
        return func(*args, **kwargs)

    monkeypatch.setattr("logsink.engine.asyncio.to_thread", _to_thread)
    yield
