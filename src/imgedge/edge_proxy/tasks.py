"""Detached background work that must never affect the request that started it."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import structlog


LOGGER = structlog.get_logger("imgedge.edge_proxy.tasks")


class BackgroundWriter:
    """Runs coroutines as detached tasks.

    ``submit`` returns immediately. Failures are logged and dropped; the only
    join point is :meth:`drain`, used at shutdown and in tests.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def submit(self, factory: Callable[[], Awaitable[None]], *, name: str = "background_write") -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.warning("background_task_not_scheduled", task=name)
            return
        task = loop.create_task(self._run(factory, name), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, factory: Callable[[], Awaitable[None]], name: str) -> None:
        try:
            await factory()
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            LOGGER.exception("background_task_failed", task=name)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
