"""ListenerRegistry: live subscriptions with reconnect, backoff and health.

Each subscription runs one task that consumes its source stream. Any
delivered snapshot resets the reconnect counter. Errors schedule a
reconnect after BackoffPolicy.delay(attempts); once the policy is
exhausted the listener stays FAILED until force_reconnect_all() or a
connectivity-restored signal. Listener errors never raise into
application code: they are logged and handed to the optional on_error.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import time
from collections.abc import Awaitable, Callable
from contextlib import aclosing
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

import structlog

from teamsync.infra.errors import SubscriptionError
from teamsync.realtime.backoff import BackoffPolicy
from teamsync.realtime.connectivity import ConnectivityMonitor
from teamsync.realtime.sources import SnapshotSource

logger = structlog.get_logger()

UpdateCallback = Callable[[dict[str, Any]], Awaitable[None] | None]
ErrorCallback = Callable[[Exception], Awaitable[None] | None]


class ListenerState(StrEnum):
    connecting = "connecting"
    active = "active"
    reconnecting = "reconnecting"
    failed = "failed"
    closed = "closed"


@dataclass(frozen=True)
class ListenerHealth:
    """Introspection snapshot of one subscription."""

    listener_id: str
    path: str
    state: ListenerState
    attempts: int
    deliveries: int
    last_activity: float | None
    last_error: str | None
    stale: bool


@dataclass
class _Listener:
    listener_id: str
    path: str
    on_update: UpdateCallback
    on_error: ErrorCallback | None
    state: ListenerState = ListenerState.connecting
    attempts: int = 0
    deliveries: int = 0
    last_activity: float | None = None
    last_error: str | None = None
    task: asyncio.Task | None = None


class ListenerRegistry:
    """Owns every live subscription of one client.

    Construct one per engine (tests construct their own); close() tears
    all listeners down.
    """

    def __init__(
        self,
        source: SnapshotSource,
        *,
        backoff: BackoffPolicy,
        stale_after_s: float = 120.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._source = source
        self._backoff = backoff
        self._stale_after_s = stale_after_s
        self._clock = clock
        self._listeners: dict[str, _Listener] = {}
        self._ids = itertools.count(1)
        self._remove_connectivity: Callable[[], None] | None = None

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def subscribe(
        self,
        path: str,
        on_update: UpdateCallback,
        on_error: ErrorCallback | None = None,
    ) -> Callable[[], None]:
        """Start a live read of `path`. Returns the unsubscribe function."""
        listener = _Listener(
            listener_id=f"listener-{next(self._ids)}",
            path=path,
            on_update=on_update,
            on_error=on_error,
        )
        self._listeners[listener.listener_id] = listener
        self._start(listener)
        logger.info("listener_subscribed", listener_id=listener.listener_id, path=path)

        def unsubscribe() -> None:
            self._stop(listener.listener_id)

        return unsubscribe

    def list_health(self) -> list[ListenerHealth]:
        now = self._clock()
        return [
            ListenerHealth(
                listener_id=l.listener_id,
                path=l.path,
                state=l.state,
                attempts=l.attempts,
                deliveries=l.deliveries,
                last_activity=l.last_activity,
                last_error=l.last_error,
                stale=self._is_stale(l, now),
            )
            for l in self._listeners.values()
        ]

    def force_reconnect_all(self, *, only_unhealthy: bool = False) -> int:
        """Restart listeners with a fresh backoff counter. Returns how many restarted."""
        restarted = 0
        for listener in list(self._listeners.values()):
            if only_unhealthy and listener.state not in (
                ListenerState.failed,
                ListenerState.reconnecting,
            ):
                continue
            self._restart(listener)
            restarted += 1
        logger.info("listeners_force_reconnect", restarted=restarted)
        return restarted

    def cleanup_stale(self) -> list[str]:
        """Restart active listeners with no delivery for stale_after_s."""
        now = self._clock()
        stale = [l for l in self._listeners.values() if self._is_stale(l, now)]
        for listener in stale:
            logger.warning(
                "listener_stale",
                listener_id=listener.listener_id,
                path=listener.path,
                last_activity=listener.last_activity,
            )
            self._restart(listener)
        return [l.listener_id for l in stale]

    def attach(self, connectivity: ConnectivityMonitor) -> None:
        """Reconnect failed/backing-off listeners when the network returns."""
        if self._remove_connectivity is None:
            self._remove_connectivity = connectivity.add_listener(on_online=self._on_online)

    async def close(self) -> None:
        if self._remove_connectivity is not None:
            self._remove_connectivity()
            self._remove_connectivity = None
        tasks = []
        for listener in self._listeners.values():
            listener.state = ListenerState.closed
            if listener.task is not None:
                listener.task.cancel()
                tasks.append(listener.task)
        self._listeners.clear()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _is_stale(self, listener: _Listener, now: float) -> bool:
        if listener.state != ListenerState.active or listener.last_activity is None:
            return False
        return now - listener.last_activity > self._stale_after_s

    def _on_online(self) -> None:
        self.force_reconnect_all(only_unhealthy=True)

    def _start(self, listener: _Listener) -> None:
        listener.task = asyncio.create_task(
            self._run(listener), name=f"{listener.listener_id}:{listener.path}"
        )

    def _restart(self, listener: _Listener) -> None:
        if listener.task is not None:
            listener.task.cancel()
        listener.attempts = 0
        listener.state = ListenerState.connecting
        self._start(listener)

    def _stop(self, listener_id: str) -> None:
        listener = self._listeners.pop(listener_id, None)
        if listener is None:
            return
        listener.state = ListenerState.closed
        if listener.task is not None:
            listener.task.cancel()
        logger.info("listener_unsubscribed", listener_id=listener_id, path=listener.path)

    async def _run(self, listener: _Listener) -> None:
        while True:
            try:
                async with aclosing(self._source.stream(listener.path)) as stream:
                    async for snapshot in stream:
                        listener.attempts = 0
                        listener.deliveries += 1
                        listener.last_activity = self._clock()
                        listener.last_error = None
                        listener.state = ListenerState.active
                        await self._deliver(listener, snapshot)
                raise SubscriptionError(f"Live read of {listener.path} ended")
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                listener.last_error = str(exc)
                logger.warning(
                    "listener_error",
                    listener_id=listener.listener_id,
                    path=listener.path,
                    attempts=listener.attempts,
                    error=str(exc),
                )
                await self._notify_error(listener, exc)

                if self._backoff.exhausted(listener.attempts):
                    listener.state = ListenerState.failed
                    logger.error(
                        "listener_failed",
                        listener_id=listener.listener_id,
                        path=listener.path,
                        attempts=listener.attempts,
                    )
                    return

                delay = self._backoff.delay(listener.attempts)
                listener.attempts += 1
                listener.state = ListenerState.reconnecting
                logger.info(
                    "listener_reconnect_scheduled",
                    listener_id=listener.listener_id,
                    attempt=listener.attempts,
                    max_attempts=self._backoff.max_attempts,
                    delay=round(delay, 2),
                )
                await asyncio.sleep(delay)

    async def _deliver(self, listener: _Listener, snapshot: dict[str, Any]) -> None:
        try:
            result = listener.on_update(snapshot)
            if inspect.isawaitable(result):
                await result
        except Exception:
            # A broken consumer must not tear down the live read.
            logger.exception(
                "listener_callback_failed",
                listener_id=listener.listener_id,
                path=listener.path,
            )

    async def _notify_error(self, listener: _Listener, exc: Exception) -> None:
        if listener.on_error is None:
            return
        try:
            result = listener.on_error(exc)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception(
                "listener_error_callback_failed",
                listener_id=listener.listener_id,
                path=listener.path,
            )
