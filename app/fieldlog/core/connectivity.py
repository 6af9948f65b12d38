"""Connectivity signal: online/offline state and restore notifications."""

from __future__ import annotations

import asyncio
import inspect
from typing import TYPE_CHECKING, Any, Awaitable, Callable

import structlog

if TYPE_CHECKING:
    from fieldlog.remote.base import RemoteService

log = structlog.get_logger()

RestoredListener = Callable[[], "Awaitable[Any] | None"]


class ConnectivityMonitor:
    """Holds the online flag and tells listeners when the connection comes back.

    Restored listeners fire once per offline→online transition. Coroutine
    listeners are started as tasks on the running loop.
    """

    def __init__(self, online: bool = True) -> None:
        self._online = online
        self._restored: list[RestoredListener] = []
        self._tasks: set[asyncio.Task] = set()
        self.transitions = 0

    @property
    def is_online(self) -> bool:
        return self._online

    def on_restored(self, listener: RestoredListener) -> None:
        self._restored.append(listener)

    def set_offline(self) -> None:
        if self._online:
            self._online = False
            self.transitions += 1
            log.info("connectivity_lost")

    def set_online(self) -> list[asyncio.Task]:
        """Mark the connection as up. Returns the tasks started for restored listeners."""
        if self._online:
            return []
        self._online = True
        self.transitions += 1
        log.info("connectivity_restored", listeners=len(self._restored))

        started = []
        for listener in list(self._restored):
            result = listener()
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                started.append(task)
        return started

    async def run_probe(self, remote: RemoteService, interval_s: float) -> None:
        """Poll the remote health endpoint and follow its answer. Runs as a background task."""
        log.info("connectivity_probe_started", interval_s=interval_s)
        while True:
            reachable = await remote.ping()
            if reachable:
                tasks = self.set_online()
                if tasks:
                    await asyncio.gather(*tasks, return_exceptions=True)
            else:
                self.set_offline()
            await asyncio.sleep(interval_s)
