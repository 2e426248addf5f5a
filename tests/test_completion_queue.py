"""Tests for the durable completion queue: FIFO drain, retries, drop, triggers."""

from __future__ import annotations

import asyncio

from sqlalchemy.exc import OperationalError

from teamsync.infra.errors import EntityNotFoundError, TransientSyncError
from teamsync.local.ledger import CompletionLedger
from teamsync.local.models import CompletionJob
from teamsync.local.queue import CompletionQueue
from teamsync.realtime.backoff import BackoffPolicy
from teamsync.realtime.connectivity import ConnectivityMonitor


class RecordingSync:
    """Sync operation double: records calls, fails on demand."""

    def __init__(self, failures: int = 0, error: Exception | None = None) -> None:
        self.calls: list[int] = []
        self.failures = failures
        self.error = error or TransientSyncError("backend unavailable")

    async def __call__(self, job: CompletionJob) -> None:
        self.calls.append(job.activity_id)
        if self.failures:
            self.failures -= 1
            raise self.error


def _job(activity_id: int, *, exclusive: bool = False) -> CompletionJob:
    return CompletionJob(
        event_id=1,
        team_id=3,
        activity_id=activity_id,
        activity_snapshot={"id": activity_id, "points": 10, "exclusive": exclusive},
    )


def _stamped(activity_id: int, enqueued_at: float) -> CompletionJob:
    job = _job(activity_id)
    job.enqueued_at = enqueued_at
    return job


class _BrokenSession:
    async def __aenter__(self):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    async def __aexit__(self, *exc) -> bool:
        return False


class TestDrain:
    async def test_fifo_order_and_removal(self, local_session_factory, fast_backoff) -> None:
        sync = RecordingSync()
        queue = CompletionQueue(
            local_session_factory, sync, backoff=fast_backoff
        )
        for activity_id in (7, 3, 9):
            await queue.enqueue(_job(activity_id), drain=False)

        report = await queue.drain()

        assert sync.calls == [7, 3, 9]
        assert report.synced == 3
        assert await queue.count() == 0

    async def test_insertion_order_ignores_enqueued_at(
        self, local_session_factory, fast_backoff
    ) -> None:
        """A later job stamped with an earlier completion time still syncs second."""
        sync = RecordingSync()
        queue = CompletionQueue(local_session_factory, sync, backoff=fast_backoff)
        await queue.enqueue(_stamped(1, 200.0), drain=False)
        await queue.enqueue(_stamped(2, 100.0), drain=False)

        await queue.drain()

        assert sync.calls == [1, 2]

    async def test_enqueue_triggers_drain(self, local_session_factory, fast_backoff) -> None:
        sync = RecordingSync()
        queue = CompletionQueue(
            local_session_factory, sync, backoff=fast_backoff
        )

        job = await queue.enqueue(_job(5))
        await queue.wait_idle()

        assert job.id is not None and job.id > 0
        assert sync.calls == [5]
        assert await queue.count() == 0

    async def test_transient_failure_keeps_job(self, local_session_factory, fast_backoff) -> None:
        sync = RecordingSync(failures=1)
        queue = CompletionQueue(
            local_session_factory, sync, backoff=fast_backoff
        )
        await queue.enqueue(_job(5), drain=False)

        report = await queue.drain()

        assert report.retried == 1
        assert report.remaining == 1
        [pending] = await queue.pending()
        assert pending.retry_count == 1
        assert pending.last_retry_at is not None

        report = await queue.drain()
        assert report.synced == 1
        assert await queue.count() == 0

    async def test_integrity_error_drops_immediately(
        self, local_session_factory, fast_backoff
    ) -> None:
        dropped: list[int] = []
        sync = RecordingSync(failures=1, error=EntityNotFoundError("no such team"))
        queue = CompletionQueue(
            local_session_factory,
            sync,
            backoff=fast_backoff,
            on_drop=lambda job, exc: dropped.append(job.activity_id),
        )
        await queue.enqueue(_job(5), drain=False)

        report = await queue.drain()

        assert report.dropped == 1
        assert dropped == [5]
        assert await queue.count() == 0

    async def test_retry_exhaustion_drops_job_and_keeps_mark(
        self, local_session_factory
    ) -> None:
        """Ten consecutive failures: job removed on the tenth, ledger mark kept."""
        ledger = CompletionLedger(local_session_factory)
        dropped: list[int] = []
        sync = RecordingSync(failures=100)
        queue = CompletionQueue(
            local_session_factory,
            sync,
            backoff=BackoffPolicy(base_delay=0.001, max_delay=0.001, max_attempts=10),
            on_drop=lambda job, exc: dropped.append(job.activity_id),
        )
        await ledger.mark(1, 3, 5)
        await queue.enqueue(_job(5), drain=False)

        for attempt in range(1, 10):
            await queue.drain()
            [pending] = await queue.pending()
            assert pending.retry_count == attempt

        report = await queue.drain()

        assert report.dropped == 1
        assert len(sync.calls) == 10
        assert dropped == [5]
        assert await queue.count() == 0
        assert await ledger.is_marked(1, 3, 5)

    async def test_concurrent_trigger_folds_into_rerun(
        self, local_session_factory, fast_backoff
    ) -> None:
        release = asyncio.Event()
        calls: list[int] = []

        async def slow_sync(job: CompletionJob) -> None:
            calls.append(job.activity_id)
            if job.activity_id == 1:
                await release.wait()

        queue = CompletionQueue(
            local_session_factory, slow_sync, backoff=fast_backoff
        )
        await queue.enqueue(_job(1), drain=False)
        first = asyncio.create_task(queue.drain())
        await asyncio.sleep(0.01)

        await queue.enqueue(_job(2), drain=False)
        second = await queue.drain()
        assert second.coalesced

        release.set()
        report = await first
        assert report.synced == 2
        assert calls == [1, 2]


class TestTriggers:
    async def test_start_drains_jobs_left_by_previous_run(
        self, local_session_factory, fast_backoff
    ) -> None:
        previous = CompletionQueue(
            local_session_factory, RecordingSync(), backoff=fast_backoff
        )
        await previous.enqueue(_job(5), drain=False)

        sync = RecordingSync()
        queue = CompletionQueue(
            local_session_factory, sync, backoff=fast_backoff
        )
        report = await queue.start()

        assert report.synced == 1
        assert sync.calls == [5]
        await queue.close()

    async def test_offline_skips_then_online_drains(
        self, local_session_factory, fast_backoff
    ) -> None:
        connectivity = ConnectivityMonitor(online=False)
        sync = RecordingSync()
        queue = CompletionQueue(
            local_session_factory,
            sync,
            backoff=fast_backoff,
            connectivity=connectivity,
        )
        report = await queue.start()
        assert report.skipped_offline

        await queue.enqueue(_job(5))
        await queue.wait_idle()
        assert sync.calls == []
        [pending] = await queue.pending()
        assert pending.retry_count == 0

        connectivity.set_online(True)
        await queue.wait_idle()

        assert sync.calls == [5]
        assert await queue.count() == 0
        await queue.close()

    async def test_failed_job_waits_for_next_trigger(
        self, local_session_factory, fast_backoff
    ) -> None:
        sync = RecordingSync(failures=100)
        queue = CompletionQueue(local_session_factory, sync, backoff=fast_backoff)

        await queue.enqueue(_job(5))
        await queue.wait_idle()
        # Far longer than any backoff delay; nothing may re-drain on its own.
        await asyncio.sleep(0.2)

        assert sync.calls == [5]
        [pending] = await queue.pending()
        assert pending.retry_count == 1

        sync.failures = 0
        await queue.enqueue(_job(6))
        await queue.wait_idle()

        assert sync.calls == [5, 5, 6]
        assert await queue.count() == 0
        await queue.close()


class TestDegradedStore:
    async def test_jobs_held_in_memory(self, fast_backoff) -> None:
        sync = RecordingSync()
        queue = CompletionQueue(
            lambda: _BrokenSession(), sync, backoff=fast_backoff
        )

        job = await queue.enqueue(_job(5), drain=False)
        assert job.id is not None and job.id < 0
        assert await queue.count() == 1

        report = await queue.drain()

        assert report.synced == 1
        assert sync.calls == [5]
        assert await queue.count() == 0

    async def test_in_memory_jobs_keep_insertion_order(self, fast_backoff) -> None:
        sync = RecordingSync()
        queue = CompletionQueue(lambda: _BrokenSession(), sync, backoff=fast_backoff)
        for activity_id, stamp in ((1, 300.0), (2, 100.0), (3, 200.0)):
            await queue.enqueue(_stamped(activity_id, stamp), drain=False)

        await queue.drain()

        assert sync.calls == [1, 2, 3]
