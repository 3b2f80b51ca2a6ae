from __future__ import annotations

import asyncio

import pytest

from imgedge.edge_proxy import tasks
from imgedge.edge_proxy.tasks import BackgroundWriter


class DummyLogger:
    def __init__(self) -> None:
        self.exception_calls: list[tuple[tuple, dict]] = []
        self.warning_calls: list[tuple[tuple, dict]] = []

    def exception(self, *args, **kwargs) -> None:  # noqa: ANN001
        self.exception_calls.append((args, kwargs))

    def warning(self, *args, **kwargs) -> None:  # noqa: ANN001
        self.warning_calls.append((args, kwargs))


@pytest.mark.asyncio
async def test_submit_returns_before_work_runs() -> None:
    writer = BackgroundWriter()
    ran = asyncio.Event()

    async def work() -> None:
        ran.set()

    writer.submit(work)
    assert not ran.is_set()
    await writer.drain()
    assert ran.is_set()
    assert writer.pending == 0


@pytest.mark.asyncio
async def test_failures_are_logged_not_raised(monkeypatch) -> None:
    logger = DummyLogger()
    monkeypatch.setattr(tasks, "LOGGER", logger)
    writer = BackgroundWriter()

    async def broken() -> None:
        raise RuntimeError("store down")

    writer.submit(broken, name="write")
    await writer.drain()

    assert logger.exception_calls
    assert logger.exception_calls[0][1]["task"] == "write"


@pytest.mark.asyncio
async def test_cancel_all_stops_pending_work() -> None:
    writer = BackgroundWriter()
    started = asyncio.Event()

    async def slow() -> None:
        started.set()
        await asyncio.sleep(60)

    writer.submit(slow)
    await started.wait()
    await writer.cancel_all()
    await asyncio.sleep(0)
    assert writer.pending == 0


def test_submit_without_loop_is_dropped(monkeypatch) -> None:
    logger = DummyLogger()
    monkeypatch.setattr(tasks, "LOGGER", logger)
    writer = BackgroundWriter()
    called = []

    async def work() -> None:
        called.append(True)

    writer.submit(work)
    assert writer.pending == 0
    assert not called
    assert logger.warning_calls
