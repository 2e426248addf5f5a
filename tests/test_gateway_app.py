"""Tests for the FastAPI host: lifespan wiring and HTTP routes."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from teamsync.config.settings import Settings
from teamsync.gateway.app import app, lifespan
from teamsync.infra.errors import EntityNotFoundError, TransientSyncError
from teamsync.realtime.connectivity import ConnectivityMonitor
from teamsync.realtime.reconciler import CompletionState
from teamsync.realtime.registry import ListenerHealth, ListenerState
from teamsync.remote.contracts import ArbitrationResult


@contextmanager
def _patched_lifespan(ensure_schema: AsyncMock) -> Iterator[MagicMock]:
    """Patch storage bootstrapping; yields the patched CompletionEngine class."""
    with (
        patch("teamsync.gateway.app.setup_logging"),
        patch("teamsync.gateway.app.get_settings", return_value=Settings()),
        patch("teamsync.gateway.app.create_local_engine", return_value=AsyncMock()),
        patch("teamsync.gateway.app.ensure_local_schema", return_value=None),
        patch("teamsync.gateway.app.make_local_session_factory", return_value=MagicMock()),
        patch("teamsync.gateway.app.create_db_engine", return_value=AsyncMock()),
        patch("teamsync.gateway.app.ensure_schema", ensure_schema),
        patch("teamsync.gateway.app.make_session_factory", return_value=MagicMock()),
        patch("teamsync.gateway.app.CompletionEngine") as engine_cls,
    ):
        engine = MagicMock()
        engine.start = AsyncMock()
        engine.close = AsyncMock()
        engine_cls.return_value = engine
        yield engine_cls


class TestLifespan:
    async def test_engine_built_and_started(self) -> None:
        fake_app = MagicMock()
        with _patched_lifespan(AsyncMock(return_value=None)) as engine_cls:
            engine = engine_cls.return_value

            async with lifespan(fake_app):
                assert fake_app.state.completion_engine is engine
                engine.start.assert_awaited_once()
                connectivity = engine_cls.call_args.kwargs["connectivity"]
                assert connectivity.is_online

            engine.close.assert_awaited_once()

    async def test_unreachable_remote_starts_offline(self) -> None:
        fake_app = MagicMock()
        failing = AsyncMock(side_effect=OperationalError("connect", {}, Exception("refused")))
        with _patched_lifespan(failing) as engine_cls:
            async with lifespan(fake_app):
                connectivity = engine_cls.call_args.kwargs["connectivity"]
                assert not connectivity.is_online
                engine_cls.return_value.start.assert_awaited_once()


@pytest.fixture
def engine() -> MagicMock:
    engine = MagicMock()

    async def enqueue(job):
        job.id = 1
        return job

    engine.enqueue_completion = AsyncMock(side_effect=enqueue)
    engine.completion_state.return_value = CompletionState.locally_completed
    engine.complete_exclusive_activity = AsyncMock(
        return_value=ArbitrationResult(accepted=False, already_completed_by=9)
    )
    engine.update_activity_field = AsyncMock(return_value={"id": 5, "deleted": True})
    engine.check_connection = AsyncMock(
        return_value={"online": True, "remote_reachable": True, "pending_jobs": 0}
    )
    engine.clear_local_cache = AsyncMock()
    engine.connectivity = ConnectivityMonitor()
    return engine


@pytest.fixture
def client(engine) -> TestClient:
    app.state.completion_engine = engine
    return TestClient(app)


class TestCompletionRoutes:
    def test_record_completion(self, client, engine) -> None:
        resp = client.post(
            "/events/1/teams/3/completions",
            json={"activity": {"id": 5, "points": 10}, "media": {"data": "x"}},
        )

        assert resp.status_code == 202
        assert resp.json() == {"job_id": 1, "activity_id": 5, "state": "locally_completed"}
        job = engine.enqueue_completion.call_args.args[0]
        assert (job.event_id, job.team_id, job.activity_id) == (1, 3, 5)
        assert job.media == {"data": "x"}

    def test_missing_activity_id(self, client) -> None:
        resp = client.post("/events/1/teams/3/completions", json={"activity": {}})
        assert resp.status_code == 422

    def test_invalid_valorate(self, client) -> None:
        resp = client.post(
            "/events/1/teams/3/completions", json={"activity_id": 5, "valorate_value": 2}
        )
        assert resp.status_code == 422

    def test_arbitrate_returns_typed_result(self, client) -> None:
        resp = client.post(
            "/events/1/teams/3/activities/5/arbitrate",
            json={"activity": {"id": 5, "exclusive": True}},
        )

        assert resp.status_code == 200
        assert resp.json() == {
            "accepted": False,
            "already_completed_by": 9,
            "points_awarded": None,
        }

    def test_update_activity(self, client, engine) -> None:
        resp = client.patch(
            "/events/1/teams/3/activities/5",
            json={"field_updates": {"deleted": True}},
        )

        assert resp.status_code == 200
        assert resp.json() == {"entry": {"id": 5, "deleted": True}}
        kwargs = engine.update_activity_field.call_args.kwargs
        assert kwargs["fields_to_delete"] == []

    def test_update_cannot_change_id(self, client) -> None:
        resp = client.patch(
            "/events/1/teams/3/activities/5", json={"field_updates": {"id": 6}}
        )
        assert resp.status_code == 422


class TestErrorMapping:
    def test_not_found_is_404(self, client, engine) -> None:
        engine.update_activity_field.side_effect = EntityNotFoundError("Team 3 not found")

        resp = client.patch("/events/1/teams/3/activities/5", json={})

        assert resp.status_code == 404
        assert resp.json() == {"code": "NOT_FOUND", "message": "Team 3 not found"}

    def test_transient_is_503(self, client, engine) -> None:
        engine.complete_exclusive_activity.side_effect = TransientSyncError("lock timeout")

        resp = client.post("/events/1/teams/3/activities/5/arbitrate", json={})

        assert resp.status_code == 503
        assert resp.json()["code"] == "TRANSIENT"


class TestOperationalRoutes:
    def test_health(self, client) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"

    def test_health_degraded(self, client, engine) -> None:
        engine.check_connection.return_value = {"online": False, "remote_reachable": False}
        assert client.get("/health").json()["status"] == "degraded"

    def test_listeners(self, client, engine) -> None:
        engine.list_health.return_value = [
            ListenerHealth(
                listener_id="listener-1",
                path="events/1/teams/3",
                state=ListenerState.failed,
                attempts=5,
                deliveries=2,
                last_activity=10.0,
                last_error="unreachable",
                stale=False,
            )
        ]

        [listener] = client.get("/listeners").json()

        assert listener["state"] == "failed"
        assert listener["attempts"] == 5

    def test_reconnect(self, client, engine) -> None:
        engine.force_reconnect_all.return_value = 2

        resp = client.post("/listeners/reconnect", json={"only_unhealthy": True})

        assert resp.json() == {"restarted": 2}
        engine.force_reconnect_all.assert_called_once_with(only_unhealthy=True)

    def test_connectivity(self, client, engine) -> None:
        resp = client.post("/connectivity", json={"online": False})

        assert resp.json() == {"online": False}
        assert not engine.connectivity.is_online

    def test_clear_local_cache(self, client, engine) -> None:
        resp = client.delete("/local-cache")

        assert resp.status_code == 204
        engine.clear_local_cache.assert_awaited_once()
