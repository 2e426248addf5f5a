"""CompletionEngine: the facade wiring ledger, queue, store and live reads.

A completion attempt is marked in the ledger and shown complete at once,
then queued. The queue drains through `_sync_job`, which routes exclusive
activities through arbitration and everything else through the atomic
single-entry update. Live team snapshots reach subscribers only after the
reconciler has applied the ledger.
"""

from __future__ import annotations

import inspect
from collections import defaultdict
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import async_sessionmaker

from teamsync.local.database import clear_local_store
from teamsync.local.ledger import CompletionLedger
from teamsync.local.models import CompletionJob
from teamsync.local.queue import CompletionQueue, DrainReport
from teamsync.realtime.backoff import BackoffPolicy
from teamsync.realtime.connectivity import ConnectivityMonitor
from teamsync.realtime.reconciler import CompletionState, TeamStateReconciler
from teamsync.realtime.registry import ErrorCallback, ListenerHealth, ListenerRegistry
from teamsync.realtime.sources import SnapshotSource, parse_team_path, team_path
from teamsync.remote.awards import PointsDelta, award_delta, completion_fields, valorate_for
from teamsync.remote.contracts import ArbitrationResult
from teamsync.remote.store import RemoteTeamStore

logger = structlog.get_logger()

TeamCallback = Callable[[dict[str, Any]], Awaitable[None] | None]
RaceLostCallback = Callable[[int, int, int, int | None], Awaitable[None] | None]


class CompletionEngine:
    """Entry points for one client: completions, arbitration and live team reads."""

    def __init__(
        self,
        local_db_session_factory: async_sessionmaker,
        store: RemoteTeamStore,
        source: SnapshotSource,
        *,
        queue_backoff: BackoffPolicy,
        subscription_backoff: BackoffPolicy,
        connectivity: ConnectivityMonitor | None = None,
        stale_after_s: float = 120.0,
        on_race_lost: RaceLostCallback | None = None,
    ) -> None:
        self._local_db = local_db_session_factory
        self._store = store
        self.connectivity = connectivity or ConnectivityMonitor()
        self._on_race_lost = on_race_lost
        self.ledger = CompletionLedger(local_db_session_factory)
        self.reconciler = TeamStateReconciler(self.ledger)
        self.queue = CompletionQueue(
            local_db_session_factory,
            self._sync_job,
            backoff=queue_backoff,
            connectivity=self.connectivity,
            on_drop=self._job_dropped,
        )
        self.registry = ListenerRegistry(
            source, backoff=subscription_backoff, stale_after_s=stale_after_s
        )
        self._watchers: defaultdict[tuple[int, int], list[TeamCallback]] = defaultdict(list)

    async def start(self) -> DrainReport:
        """Attach to connectivity and replay whatever the last run left queued."""
        self.registry.attach(self.connectivity)
        report = await self.queue.start()
        logger.info(
            "completion_engine_started",
            synced=report.synced,
            remaining=report.remaining,
        )
        return report

    async def close(self) -> None:
        await self.registry.close()
        await self.queue.close()
        await self.connectivity.wait_idle()
        logger.info("completion_engine_closed")

    # ------------------------------------------------------------------
    # Completions
    # ------------------------------------------------------------------

    async def enqueue_completion(self, job: CompletionJob) -> CompletionJob:
        """Record a completion locally and queue its sync. Returns optimistically."""
        await self.ledger.mark(job.event_id, job.team_id, job.activity_id)
        self.reconciler.note_local_completion(job.event_id, job.team_id, job.activity_id)
        result = await self.reconciler.apply_local(job.event_id, job.team_id)
        if result.changed:
            await self._notify_watchers(job.event_id, job.team_id, result.team)
        return await self.queue.enqueue(job)

    async def complete_exclusive_activity(
        self,
        event_id: int,
        team_id: int,
        activity_id: int,
        activity_snapshot: Mapping[str, Any],
        success: bool,
        media: Mapping[str, Any] | None = None,
        valorate_value: int | None = None,
        points_to_add: PointsDelta = None,
    ) -> ArbitrationResult:
        return await self._store.complete_exclusive_activity(
            event_id,
            team_id,
            activity_id,
            activity_snapshot,
            success,
            media,
            valorate_value,
            points_to_add,
        )

    async def update_activity_field(
        self,
        event_id: int,
        team_id: int,
        activity_id: int,
        field_updates: Mapping[str, Any],
        *,
        points_to_add: PointsDelta = None,
        fields_to_delete: Iterable[str] = (),
    ) -> dict[str, Any]:
        return await self._store.update_activity_field(
            event_id,
            team_id,
            activity_id,
            field_updates,
            points_to_add=points_to_add,
            fields_to_delete=fields_to_delete,
        )

    def completion_state(self, event_id: int, team_id: int, activity_id: int) -> CompletionState:
        return self.reconciler.state_of(event_id, team_id, activity_id)

    async def clear_local_cache(self) -> None:
        """User-initiated wipe of every local mark and pending job."""
        await clear_local_store(self._local_db)
        self.ledger.reset_memory()
        self.queue.reset_memory()
        self.reconciler.reset_states()

    # ------------------------------------------------------------------
    # Live reads
    # ------------------------------------------------------------------

    def subscribe(
        self,
        path: str,
        on_update: TeamCallback,
        on_error: ErrorCallback | None = None,
    ) -> Callable[[], None]:
        """Live, reconciled team state for `events/{e}/teams/{t}`.

        `on_update` receives the visible team state whenever it changes,
        from remote snapshots and from local completions alike.
        """
        event_id, team_id = parse_team_path(path)

        async def reconcile_and_deliver(snapshot: dict[str, Any]) -> None:
            result = await self.reconciler.reconcile(event_id, team_id, snapshot)
            if result.changed:
                await self._notify_watchers(event_id, team_id, result.team)

        watchers = self._watchers[(event_id, team_id)]
        watchers.append(on_update)
        stop = self.registry.subscribe(path, reconcile_and_deliver, on_error)

        def unsubscribe() -> None:
            stop()
            if on_update in watchers:
                watchers.remove(on_update)

        return unsubscribe

    def watch_team(
        self, event_id: int, team_id: int, on_update: TeamCallback
    ) -> Callable[[], None]:
        return self.subscribe(team_path(event_id, team_id), on_update)

    def list_health(self) -> list[ListenerHealth]:
        return self.registry.list_health()

    def force_reconnect_all(self, *, only_unhealthy: bool = False) -> int:
        return self.registry.force_reconnect_all(only_unhealthy=only_unhealthy)

    def cleanup_stale(self) -> list[str]:
        return self.registry.cleanup_stale()

    async def check_connection(self) -> dict[str, Any]:
        """Remote reachability plus a listener and queue summary."""
        health = self.registry.list_health()
        report = {
            "online": self.connectivity.is_online,
            "remote_reachable": await self._store.ping(),
            "pending_jobs": await self.queue.count(),
            "listeners": len(health),
            "active": sum(1 for h in health if h.state == "active"),
            "failed": sum(1 for h in health if h.state == "failed"),
            "stale": sum(1 for h in health if h.stale),
        }
        logger.info("connection_checked", **report)
        return report

    # ------------------------------------------------------------------
    # Queue sync
    # ------------------------------------------------------------------

    async def _sync_job(self, job: CompletionJob) -> None:
        """Remote write for one queued job. Raises to signal failure."""
        valorate = (
            job.valorate_value
            if job.valorate_value is not None
            else valorate_for(job.activity_snapshot, job.success)
        )
        if job.exclusive:
            result = await self._store.complete_exclusive_activity(
                job.event_id,
                job.team_id,
                job.activity_id,
                job.activity_snapshot,
                job.success,
                job.media,
                valorate,
                completed_at=job.enqueued_at,
            )
            if not result.accepted:
                await self._race_lost(job, result.already_completed_by)
                return
        else:
            await self._store.update_activity_field(
                job.event_id,
                job.team_id,
                job.activity_id,
                completion_fields(
                    job.activity_snapshot, job.success, job.media, valorate, job.enqueued_at
                ),
                points_to_add=award_delta(job.activity_snapshot, job.success, valorate=valorate),
            )
        await self.ledger.mark_synced(job.event_id, job.team_id, job.activity_id)

    async def _race_lost(self, job: CompletionJob, winner: int | None) -> None:
        team = await self.reconciler.resolve_race_lost(
            job.event_id, job.team_id, job.activity_id, winner
        )
        if team is not None:
            await self._notify_watchers(job.event_id, job.team_id, team)
        logger.info(
            "completion_already_taken",
            event_id=job.event_id,
            team_id=job.team_id,
            activity_id=job.activity_id,
            msg=f"Already completed by team {winner}",
        )
        if self._on_race_lost is None:
            return
        try:
            result = self._on_race_lost(job.event_id, job.team_id, job.activity_id, winner)
            if inspect.isawaitable(result):
                await result
        except Exception:
            # The race is decided; a failing callback must not requeue the job.
            logger.exception("race_lost_callback_failed", activity_id=job.activity_id)

    def _job_dropped(self, job: CompletionJob, exc: Exception) -> None:
        self.reconciler.note_retry_exhausted(job.event_id, job.team_id, job.activity_id)

    async def _notify_watchers(self, event_id: int, team_id: int, team: dict[str, Any]) -> None:
        for callback in list(self._watchers.get((event_id, team_id), ())):
            try:
                result = callback(team)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    "team_watcher_failed", event_id=event_id, team_id=team_id
                )
