import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from em_server.app.models import ResourceSpec, ResourceState, utcnow
from em_server.app.lifecycle.janitor import sweep_once

READY = ["HTTP server listening", "Agent bridge started"]


async def _running(controller, rid: str):
    controller.register(ResourceSpec(id=rid, kind="workspace"))
    await controller.start(rid)
    await asyncio.wait_for(controller.wait_for_monitor(rid), timeout=5)
    return controller.store.get(rid)


@pytest.mark.unit
def test_sweep_marks_vanished_container_as_error(controller, docker_client):
    docker_client.boot_logs = READY

    async def scenario():
        rec = await _running(controller, "ws1")
        docker_client.containers.get(rec.container_ref).remove(force=True)
        return await sweep_once(controller)

    counts = asyncio.run(scenario())
    assert counts == {"reconciled": 1, "idle_stopped": 0}
    rec = controller.store.get("ws1")
    assert rec.status is ResourceState.ERROR
    assert rec.container_ref is None
    assert "outside of EnvironmentManager" in rec.error_message
    assert controller.ports.held_by("ws1") is None


@pytest.mark.unit
def test_sweep_leaves_healthy_resources_alone(controller, docker_client):
    docker_client.boot_logs = READY

    async def scenario():
        await _running(controller, "ws1")
        return await sweep_once(controller)

    assert asyncio.run(scenario()) == {"reconciled": 0, "idle_stopped": 0}
    assert controller.store.get("ws1").status is ResourceState.RUNNING


@pytest.mark.unit
def test_sweep_stops_idle_resources_when_ttl_set(controller, docker_client):
    docker_client.boot_logs = READY
    controller.settings = replace(controller.settings, idle_ttl_seconds=60)

    async def scenario():
        await _running(controller, "idle")
        await _running(controller, "busy")
        early = await sweep_once(controller, now=utcnow() + timedelta(seconds=30))
        controller.store.update("busy", last_accessed_at=utcnow() + timedelta(seconds=60))
        late = await sweep_once(controller, now=utcnow() + timedelta(seconds=90))
        return early, late

    early, late = asyncio.run(scenario())
    assert early["idle_stopped"] == 0
    assert late["idle_stopped"] == 1
    assert controller.store.get("idle").status is ResourceState.STOPPED
    assert controller.store.get("busy").status is ResourceState.RUNNING
