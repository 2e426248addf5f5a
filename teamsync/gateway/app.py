from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

import structlog
from fastapi import FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from teamsync.config.settings import get_settings
from teamsync.engine import CompletionEngine
from teamsync.gateway.protocol import (
    ArbitrationParams,
    CompletionParams,
    ConnectivityParams,
    ErrorBody,
    FieldUpdateParams,
    ReconnectParams,
)
from teamsync.infra.errors import TeamSyncError
from teamsync.infra.logging import setup_logging
from teamsync.local.database import create_local_engine, ensure_local_schema
from teamsync.local.database import make_session_factory as make_local_session_factory
from teamsync.local.models import CompletionJob
from teamsync.realtime.backoff import BackoffPolicy
from teamsync.realtime.connectivity import ConnectivityMonitor
from teamsync.realtime.sources import PgNotifySnapshotSource
from teamsync.remote.database import (
    build_dsn,
    create_db_engine,
    ensure_schema,
    make_session_factory,
)
from teamsync.remote.store import RemoteTeamStore

logger = structlog.get_logger()

_STATUS_BY_CODE = {
    "NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "INVALID_PATH": status.HTTP_400_BAD_REQUEST,
    "TRANSIENT": status.HTTP_503_SERVICE_UNAVAILABLE,
    "LOCAL_STORE_DEGRADED": status.HTTP_503_SERVICE_UNAVAILABLE,
    "SUBSCRIPTION_ERROR": status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build both stores and the engine, then run the process-start drain."""
    settings = get_settings()
    setup_logging(
        json_output=settings.gateway.json_logs,
        log_level=settings.gateway.log_level,
        client_id=settings.gateway.client_id,
    )

    # The local store is mandatory: without it completions cannot be recorded durably.
    local_engine = await create_local_engine(settings.local_store)
    await ensure_local_schema(local_engine)
    local_session_factory = make_local_session_factory(local_engine)

    # The remote store is not: an offline start still records and queues completions.
    engine = await create_db_engine(settings.database)
    connectivity = ConnectivityMonitor()
    try:
        await ensure_schema(
            engine, settings.database.schema_, settings.subscription.notify_channel
        )
        logger.info("db_connected")
    except (SQLAlchemyError, OSError) as exc:
        connectivity.set_online(False)
        logger.warning("db_unreachable_at_startup", error=str(exc))
    db_session_factory = make_session_factory(engine)

    store = RemoteTeamStore(
        db_session_factory, lock_timeout_ms=settings.database.lock_timeout_ms
    )
    source = PgNotifySnapshotSource(
        build_dsn(settings.database),
        store,
        channel=settings.subscription.notify_channel,
    )
    completion_engine = CompletionEngine(
        local_session_factory,
        store,
        source,
        queue_backoff=BackoffPolicy.for_queue(settings.queue),
        subscription_backoff=BackoffPolicy.for_subscriptions(settings.subscription),
        connectivity=connectivity,
        stale_after_s=settings.subscription.stale_after_s,
    )
    await completion_engine.start()

    app.state.completion_engine = completion_engine
    logger.info(
        "gateway_started",
        host=settings.gateway.host,
        port=settings.gateway.port,
        online=connectivity.is_online,
    )

    yield

    await completion_engine.close()
    await local_engine.dispose()
    await engine.dispose()
    logger.info("db_engine_disposed")


app = FastAPI(title="teamsync", version="0.1.0", lifespan=lifespan)


@app.exception_handler(TeamSyncError)
async def teamsync_error_handler(request: Request, exc: TeamSyncError) -> JSONResponse:
    status_code = _STATUS_BY_CODE.get(exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR)
    logger.warning("request_error", code=exc.code, error=str(exc), path=request.url.path)
    body = ErrorBody(code=exc.code, message=str(exc))
    return JSONResponse(status_code=status_code, content=body.model_dump())


def _engine(request: Request) -> CompletionEngine:
    return request.app.state.completion_engine


@app.get("/health")
async def health(request: Request) -> dict[str, Any]:
    report = await _engine(request).check_connection()
    report["status"] = "ok" if report["remote_reachable"] else "degraded"
    return report


@app.post(
    "/events/{event_id}/teams/{team_id}/completions",
    status_code=status.HTTP_202_ACCEPTED,
)
async def record_completion(
    event_id: int, team_id: int, params: CompletionParams, request: Request
) -> dict[str, Any]:
    try:
        activity_id = params.resolved_activity_id()
    except ValueError as e:
        raise HTTPException(status.HTTP_422_UNPROCESSABLE_ENTITY, str(e)) from e

    engine = _engine(request)
    job = await engine.enqueue_completion(
        CompletionJob(
            event_id=event_id,
            team_id=team_id,
            activity_id=activity_id,
            activity_snapshot=params.activity,
            success=params.success,
            media=params.media,
            valorate_value=params.valorate_value,
            points_to_add=params.points_to_add,
        )
    )
    return {
        "job_id": job.id,
        "activity_id": activity_id,
        "state": engine.completion_state(event_id, team_id, activity_id),
    }


@app.post("/events/{event_id}/teams/{team_id}/activities/{activity_id}/arbitrate")
async def arbitrate(
    event_id: int,
    team_id: int,
    activity_id: int,
    params: ArbitrationParams,
    request: Request,
) -> dict[str, Any]:
    result = await _engine(request).complete_exclusive_activity(
        event_id,
        team_id,
        activity_id,
        params.activity,
        params.success,
        params.media,
        params.valorate_value,
        params.points_to_add,
    )
    return result.to_dict()


@app.patch("/events/{event_id}/teams/{team_id}/activities/{activity_id}")
async def update_activity(
    event_id: int,
    team_id: int,
    activity_id: int,
    params: FieldUpdateParams,
    request: Request,
) -> dict[str, Any]:
    entry = await _engine(request).update_activity_field(
        event_id,
        team_id,
        activity_id,
        params.field_updates,
        points_to_add=params.points_to_add,
        fields_to_delete=params.fields_to_delete,
    )
    return {"entry": entry}


@app.get("/listeners")
async def list_listeners(request: Request) -> list[dict[str, Any]]:
    return [asdict(h) for h in _engine(request).list_health()]


@app.post("/listeners/reconnect")
async def reconnect_listeners(
    request: Request, params: ReconnectParams | None = None
) -> dict[str, int]:
    only_unhealthy = params.only_unhealthy if params is not None else False
    restarted = _engine(request).force_reconnect_all(only_unhealthy=only_unhealthy)
    return {"restarted": restarted}


@app.post("/listeners/cleanup")
async def cleanup_listeners(request: Request) -> dict[str, list[str]]:
    return {"restarted": _engine(request).cleanup_stale()}


@app.post("/connectivity")
async def set_connectivity(params: ConnectivityParams, request: Request) -> dict[str, bool]:
    engine = _engine(request)
    engine.connectivity.set_online(params.online)
    return {"online": engine.connectivity.is_online}


@app.delete("/local-cache", status_code=status.HTTP_204_NO_CONTENT)
async def clear_local_cache(request: Request) -> None:
    await _engine(request).clear_local_cache()
