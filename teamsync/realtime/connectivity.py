"""Network online/offline signal observed by the queue and the listener registry."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable

import structlog

logger = structlog.get_logger()

ConnectivityCallback = Callable[[], Awaitable[None] | None]


class ConnectivityMonitor:
    """Holds the current connectivity state and fans out transitions.

    The host (or a platform adapter) calls set_online(); observers register
    callbacks for the offline->online and online->offline edges. Callbacks
    run as tasks so a slow observer never blocks the signal.
    """

    def __init__(self, *, online: bool = True) -> None:
        self._online = online
        self._on_online: list[ConnectivityCallback] = []
        self._on_offline: list[ConnectivityCallback] = []
        self._tasks: set[asyncio.Task] = set()

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(
        self,
        *,
        on_online: ConnectivityCallback | None = None,
        on_offline: ConnectivityCallback | None = None,
    ) -> Callable[[], None]:
        """Register edge callbacks. Returns a function that removes them."""
        if on_online is not None:
            self._on_online.append(on_online)
        if on_offline is not None:
            self._on_offline.append(on_offline)

        def remove() -> None:
            if on_online is not None and on_online in self._on_online:
                self._on_online.remove(on_online)
            if on_offline is not None and on_offline in self._on_offline:
                self._on_offline.remove(on_offline)

        return remove

    def set_online(self, online: bool) -> None:
        """Record a connectivity change; only edges notify observers."""
        if online == self._online:
            return
        self._online = online
        logger.info("connectivity_changed", online=online)
        callbacks = self._on_online if online else self._on_offline
        for callback in list(callbacks):
            self._dispatch(callback)

    def _dispatch(self, callback: ConnectivityCallback) -> None:
        try:
            result = callback()
        except Exception:
            logger.exception("connectivity_callback_failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "connectivity_callback_failed",
                error=str(task.exception()),
            )

    async def wait_idle(self) -> None:
        """Await callbacks still in flight (used at shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
