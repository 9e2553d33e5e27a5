"""
Integration: drive a real redis database through start, stop (container
kept), start again and destroy against the local Docker Engine.
"""

import asyncio
import uuid
from dataclasses import replace

import pytest

from em_server.app.config import ServerConfig
from em_server.app.kinds import KindRegistry
from em_server.app.lifecycle.controller import LifecycleController
from em_server.app.models import ResourceSpec, ResourceState
from em_server.app.resources.ports import PortAllocator
from em_server.app.resources.store import InMemoryResourceStore
from em_server.app.runtime.client import ContainerRuntime


@pytest.fixture
def live_controller():
    settings = replace(
        ServerConfig.from_env(dotenv=False),
        container_name_prefix="em-test-",
        volume_name_prefix="em-test-",
        port_range_start=47000,
        port_range_end=47100,
        log_scan_seconds=0.5,
        status_poll_seconds=0.5,
    )
    runtime = ContainerRuntime.from_env(timeout=60)
    controller = LifecycleController(
        runtime,
        InMemoryResourceStore(),
        PortAllocator(settings.port_range_start, settings.port_range_end),
        KindRegistry(),
        settings,
    )
    try:
        yield controller
    finally:
        runtime.close()


@pytest.mark.integration
@pytest.mark.docker
def test_redis_database_round_trip(live_controller):
    rid = f"redis-{uuid.uuid4().hex[:8]}"
    ctl = live_controller
    ctl.register(ResourceSpec(id=rid, kind="database", params={"engine": "redis", "password": "integration-pw"}))

    async def scenario():
        try:
            await ctl.start(rid)
            await asyncio.wait_for(ctl.wait_for_monitor(rid), timeout=120)
            first = ctl.store.get(rid)
            assert first.status is ResourceState.RUNNING, first.error_message

            stopped = await ctl.stop(rid)
            assert stopped.status is ResourceState.STOPPED
            assert stopped.container_ref == first.container_ref

            await ctl.start(rid)
            await asyncio.wait_for(ctl.wait_for_monitor(rid), timeout=120)
            again = ctl.store.get(rid)
            assert again.status is ResourceState.RUNNING, again.error_message
            assert again.container_ref == first.container_ref
        finally:
            removed = await ctl.destroy(rid, purge_volume=True)
        assert removed is True
        assert not ctl.runtime.exists(ctl.settings.container_name("database", rid))

    asyncio.run(scenario())
