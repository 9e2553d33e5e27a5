"""
EnvironmentManager router: resource lifecycle and logs.

Design:
- Start-like operations (create, start, restart, rebuild) answer with a
  Server-Sent-Events stream by default: log lines plus status until the
  resource is RUNNING or ERROR, or the caller timeout passes.
  `stream=false` returns the record as JSON instead (`wait=true` blocks until
  it settles).
- Engine errors propagate to the exception handler installed by the app;
  routes never translate them by hand.
- API key auth enforced via router dependency.
"""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Union

from fastapi import APIRouter, Body, Depends, Path, Query
from fastapi.responses import StreamingResponse

from em_server.app.deps import enforce_api_key, get_controller
from em_server.app.errors import ResourceNotRunning
from em_server.app.lifecycle.controller import LifecycleController
from em_server.app.lifecycle.events import stream_logs, to_sse, wait_until_settled, watch_operation
from em_server.app.lifecycle.log_relay import LogRelay
from em_server.app.models import (
    DeleteResponse,
    LogsResponse,
    ResourceRecord,
    ResourceSpec,
    ResourceView,
    StreamEvent,
)
from em_server.app.routing.domains import public_url

router = APIRouter(dependencies=[Depends(enforce_api_key)])

_RELAY_TAIL_LINES = 50

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def to_view(record: ResourceRecord) -> ResourceView:
    data = record.model_dump(exclude={"params", "env_vars", "session_id"})
    return ResourceView(**data, url=public_url(record.routing))


def _sse(events: AsyncIterator[StreamEvent], status_code: int = 200) -> StreamingResponse:
    return StreamingResponse(
        to_sse(events), status_code=status_code, media_type="text/event-stream", headers=_SSE_HEADERS
    )


async def _respond(
    controller: LifecycleController,
    resource_id: str,
    intro: str,
    stream: bool,
    wait: bool,
    status_code: int = 200,
) -> Union[StreamingResponse, ResourceView]:
    settings = controller.settings
    if stream:
        record = controller.store.get(resource_id)
        relay = (
            LogRelay(controller.runtime, record.container_ref, tail=_RELAY_TAIL_LINES)
            if record.container_ref
            else None
        )
        return _sse(
            watch_operation(
                controller.store,
                resource_id,
                relay=relay,
                intro=intro,
                poll_interval=settings.stream_poll_seconds,
                timeout=settings.stream_timeout_seconds,
            ),
            status_code,
        )
    if wait:
        record = await wait_until_settled(
            controller.store,
            resource_id,
            poll_interval=settings.stream_poll_seconds,
            timeout=settings.stream_timeout_seconds,
        )
    else:
        record = controller.store.get(resource_id)
    return to_view(record)


# ---------------
# Lifecycle
# ---------------

@router.post("", response_model=None, status_code=201)
async def create_resource(
    spec: ResourceSpec = Body(...),
    stream: bool = Query(True, description="Answer with an SSE progress stream"),
    wait: bool = Query(False, description="With stream=false, block until the resource settles"),
    controller: LifecycleController = Depends(get_controller),
):
    """
    Register a resource and start it.
    """
    controller.register(spec)
    await controller.start(spec.id)
    return await _respond(controller, spec.id, f"Creating {spec.kind.value} '{spec.id}'", stream, wait, 201)


@router.post("/{resource_id}/start", response_model=None)
async def start_resource(
    resource_id: str = Path(...),
    stream: bool = Query(True),
    wait: bool = Query(False),
    controller: LifecycleController = Depends(get_controller),
):
    await controller.start(resource_id)
    return await _respond(controller, resource_id, f"Starting '{resource_id}'", stream, wait)


@router.post("/{resource_id}/stop", response_model=ResourceView)
async def stop_resource(
    resource_id: str = Path(...),
    controller: LifecycleController = Depends(get_controller),
) -> ResourceView:
    return to_view(await controller.stop(resource_id))


@router.post("/{resource_id}/restart", response_model=None)
async def restart_resource(
    resource_id: str = Path(...),
    stream: bool = Query(True),
    wait: bool = Query(False),
    controller: LifecycleController = Depends(get_controller),
):
    await controller.restart(resource_id)
    return await _respond(controller, resource_id, f"Restarting '{resource_id}'", stream, wait)


@router.post("/{resource_id}/rebuild", response_model=None)
async def rebuild_resource(
    resource_id: str = Path(...),
    stream: bool = Query(True),
    wait: bool = Query(False),
    controller: LifecycleController = Depends(get_controller),
):
    await controller.rebuild(resource_id)
    return await _respond(controller, resource_id, f"Rebuilding '{resource_id}'", stream, wait)


@router.delete("/{resource_id}", response_model=DeleteResponse)
async def delete_resource(
    resource_id: str = Path(...),
    purge_volume: bool = Query(False, description="Also remove the resource's persistent volume"),
    controller: LifecycleController = Depends(get_controller),
) -> DeleteResponse:
    removed = await controller.destroy(resource_id, purge_volume=purge_volume)
    return DeleteResponse(id=resource_id, deleted=True, volume_removed=removed)


@router.post("/{resource_id}/touch", response_model=ResourceView)
async def touch_resource(
    resource_id: str = Path(...),
    controller: LifecycleController = Depends(get_controller),
) -> ResourceView:
    """Record activity so the idle janitor leaves the resource alone."""
    return to_view(controller.touch(resource_id))


# ---------------
# State and logs
# ---------------

@router.get("/{resource_id}", response_model=ResourceView)
async def get_resource(
    resource_id: str = Path(...),
    controller: LifecycleController = Depends(get_controller),
) -> ResourceView:
    return to_view(controller.store.get(resource_id))


@router.get("/{resource_id}/logs", response_model=LogsResponse)
async def get_logs(
    resource_id: str = Path(...),
    tail: int = Query(100, ge=1, le=10000),
    controller: LifecycleController = Depends(get_controller),
) -> LogsResponse:
    text = await asyncio.to_thread(controller.logs, resource_id, tail)
    return LogsResponse(id=resource_id, logs=text, lines=[ln for ln in text.splitlines() if ln.strip()])


@router.get("/{resource_id}/logs/stream")
async def follow_logs(
    resource_id: str = Path(...),
    tail: int = Query(100, ge=0, le=10000),
    controller: LifecycleController = Depends(get_controller),
) -> StreamingResponse:
    record = controller.store.get(resource_id)
    if not record.container_ref:
        raise ResourceNotRunning(f"'{resource_id}' has no container", resource_id=resource_id)
    relay = LogRelay(controller.runtime, record.container_ref, tail=tail)
    return _sse(stream_logs(relay))
