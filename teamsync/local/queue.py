"""Durable completion queue: a local write-ahead log of pending sync jobs.

Jobs are drained FIFO on enqueue, on process start and when connectivity
returns. There is no timer: a failed job waits for the next trigger. A job
leaves the queue exactly once: on successful sync, on a fatal integrity
error, or when its retry count reaches the policy's max attempts.
Dropping a job never touches the completion ledger.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from teamsync.infra.errors import EntityNotFoundError
from teamsync.local.models import CompletionJob, CompletionRecord
from teamsync.realtime.backoff import BackoffPolicy
from teamsync.realtime.connectivity import ConnectivityMonitor

logger = structlog.get_logger()

_STORE_ERRORS = (SQLAlchemyError, OSError)

SyncOperation = Callable[[CompletionJob], Awaitable[None]]
DropCallback = Callable[[CompletionJob, Exception], Awaitable[None] | None]


@dataclass
class DrainReport:
    """Outcome counters of one drain() call (possibly several passes)."""

    synced: int = 0
    retried: int = 0
    dropped: int = 0
    remaining: int = 0
    skipped_offline: bool = False
    coalesced: bool = False


class CompletionQueue:
    """Persists CompletionJobs and drains them through a sync operation.

    `sync` performs the remote write for one job and raises on failure.
    EntityNotFoundError drops the job immediately; any other exception
    counts as a transient failure.
    """

    def __init__(
        self,
        db_session_factory: async_sessionmaker,
        sync: SyncOperation,
        *,
        backoff: BackoffPolicy,
        connectivity: ConnectivityMonitor | None = None,
        on_drop: DropCallback | None = None,
    ) -> None:
        self._db: async_sessionmaker = db_session_factory
        self._sync = sync
        self._on_drop = on_drop
        self._backoff = backoff
        self._connectivity = connectivity
        self._lock = asyncio.Lock()
        self._rerun = False
        # Jobs held in memory because the local store rejected them.
        self._volatile: dict[int, CompletionJob] = {}
        self._next_volatile_id = -1
        self._tasks: set[asyncio.Task] = set()
        self._remove_listener: Callable[[], None] | None = None

    @property
    def max_retries(self) -> int:
        return self._backoff.max_attempts

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> DrainReport:
        """Attach to the connectivity signal and run the process-start drain."""
        if self._connectivity is not None and self._remove_listener is None:
            self._remove_listener = self._connectivity.add_listener(
                on_online=self._on_online,
            )
        return await self.drain()

    async def close(self) -> None:
        if self._remove_listener is not None:
            self._remove_listener()
            self._remove_listener = None
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def wait_idle(self) -> None:
        """Await drains spawned by enqueue/connectivity triggers."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def enqueue(self, job: CompletionJob, *, drain: bool = True) -> CompletionJob:
        """Persist a job and trigger an immediate drain attempt."""
        job.retry_count = 0
        job.last_retry_at = None
        try:
            async with self._db() as db_session:
                record = job.to_record()
                db_session.add(record)
                await db_session.commit()
                job.id = record.id
        except _STORE_ERRORS:
            job.id = self._next_volatile_id
            self._next_volatile_id -= 1
            self._volatile[job.id] = job
            logger.exception(
                "completion_queue_store_degraded",
                op="enqueue",
                activity_id=job.activity_id,
                msg="Holding job in memory",
            )
        logger.info(
            "completion_enqueued",
            job_id=job.id,
            event_id=job.event_id,
            team_id=job.team_id,
            activity_id=job.activity_id,
            exclusive=job.exclusive,
        )
        if drain:
            self._spawn_drain("enqueue")
        return job

    async def pending(self) -> list[CompletionJob]:
        """Pending jobs in insertion order."""
        jobs: list[CompletionJob] = []
        try:
            async with self._db() as db_session:
                result = await db_session.execute(
                    select(CompletionRecord).order_by(CompletionRecord.id)
                )
                jobs = [CompletionJob.from_record(r) for r in result.scalars()]
        except _STORE_ERRORS:
            logger.exception("completion_queue_store_degraded", op="pending")
        # Stored rows by id, then in-memory jobs in the order they were held.
        jobs.extend(self._volatile.values())
        return jobs

    async def count(self) -> int:
        total = len(self._volatile)
        try:
            async with self._db() as db_session:
                total += (
                    await db_session.execute(select(func.count()).select_from(CompletionRecord))
                ).scalar_one()
        except _STORE_ERRORS:
            logger.exception("completion_queue_store_degraded", op="count")
        return total

    async def drain(self) -> DrainReport:
        """Sync every pending job once, FIFO.

        Concurrent triggers while a drain runs are folded into one more pass
        of the running drain. Skipped entirely while offline.
        """
        if self._connectivity is not None and not self._connectivity.is_online:
            logger.info("completion_queue_offline_skip")
            return DrainReport(skipped_offline=True)
        if self._lock.locked():
            self._rerun = True
            return DrainReport(coalesced=True)

        report = DrainReport()
        async with self._lock:
            while True:
                self._rerun = False
                retry_counts = await self._drain_pass(report)
                if not self._rerun:
                    break

        report.remaining = len(retry_counts)
        if report.synced or report.retried or report.dropped:
            logger.info(
                "completion_queue_drained",
                synced=report.synced,
                retried=report.retried,
                dropped=report.dropped,
                remaining=report.remaining,
            )
        return report

    def reset_memory(self) -> None:
        """Forget in-memory jobs (after an explicit local cache clear)."""
        self._volatile.clear()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _drain_pass(self, report: DrainReport) -> list[int]:
        """One FIFO pass. Returns retry counts of jobs left pending."""
        jobs = await self.pending()
        left: list[int] = []
        for index, job in enumerate(jobs):
            if self._connectivity is not None and not self._connectivity.is_online:
                logger.info("completion_queue_pass_interrupted", remaining=len(jobs) - index)
                left.extend(j.retry_count for j in jobs[index:])
                break
            try:
                await self._sync(job)
            except EntityNotFoundError as exc:
                logger.error(
                    "completion_sync_fatal",
                    job_id=job.id,
                    activity_id=job.activity_id,
                    error=str(exc),
                    msg="Dropping job; local completion mark kept",
                )
                await self._remove(job)
                await self._dropped(job, exc)
                report.dropped += 1
            except Exception as exc:
                retry_count = job.retry_count + 1
                if self._backoff.exhausted(retry_count):
                    logger.error(
                        "completion_retries_exhausted",
                        job_id=job.id,
                        activity_id=job.activity_id,
                        retries=retry_count,
                        error=str(exc),
                        msg="Dropping job; local completion mark kept",
                    )
                    await self._remove(job)
                    await self._dropped(job, exc)
                    report.dropped += 1
                else:
                    logger.warning(
                        "completion_sync_failed",
                        job_id=job.id,
                        activity_id=job.activity_id,
                        retry_count=retry_count,
                        error=str(exc),
                    )
                    await self._record_retry(job, retry_count)
                    report.retried += 1
                    left.append(retry_count)
            else:
                await self._remove(job)
                report.synced += 1
                logger.info("completion_synced", job_id=job.id, activity_id=job.activity_id)
        return left

    async def _remove(self, job: CompletionJob) -> None:
        if job.id is not None and job.id < 0:
            self._volatile.pop(job.id, None)
            return
        try:
            async with self._db() as db_session:
                await db_session.execute(
                    delete(CompletionRecord).where(CompletionRecord.id == job.id)
                )
                await db_session.commit()
        except _STORE_ERRORS:
            # Job stays and replays later; replay is idempotent.
            logger.exception("completion_queue_store_degraded", op="remove", job_id=job.id)

    async def _dropped(self, job: CompletionJob, exc: Exception) -> None:
        if self._on_drop is None:
            return
        try:
            result = self._on_drop(job, exc)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("completion_drop_callback_failed", job_id=job.id)

    async def _record_retry(self, job: CompletionJob, retry_count: int) -> None:
        now = time.time()
        job.retry_count = retry_count
        job.last_retry_at = now
        if job.id is not None and job.id < 0:
            return
        try:
            async with self._db() as db_session:
                await db_session.execute(
                    update(CompletionRecord)
                    .where(CompletionRecord.id == job.id)
                    .values(retry_count=retry_count, last_retry_at=now)
                )
                await db_session.commit()
        except _STORE_ERRORS:
            logger.exception("completion_queue_store_degraded", op="record_retry", job_id=job.id)

    def _spawn_drain(self, trigger: str) -> None:
        logger.debug("completion_queue_drain_triggered", trigger=trigger)
        task = asyncio.create_task(self.drain(), name=f"completion_drain_{trigger}")
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("completion_drain_crashed", error=str(task.exception()))

    def _on_online(self) -> None:
        logger.info("completion_queue_network_restored")
        self._spawn_drain("online")
