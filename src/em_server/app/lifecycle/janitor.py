"""
Background janitor.

Runs for the lifetime of the service:
- RUNNING records whose container disappeared out of band are moved to ERROR
  and their ports are released.
- When an idle TTL is configured, RUNNING resources not accessed (or started)
  within it are stopped.

Respects EM_JANITOR_INTERVAL_SECONDS with a minimum interval of 10 seconds.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, Optional

from em_server.app.errors import EngineError
from em_server.app.models import ResourceRecord, ResourceState, utcnow
from em_server.app.lifecycle.controller import LifecycleController

logger = logging.getLogger("environment_manager.janitor")

__all__ = ["sweep_once", "janitor_loop"]


def _last_activity(record: ResourceRecord) -> datetime:
    return record.last_accessed_at or record.last_started_at or record.created_at


async def sweep_once(controller: LifecycleController, now: Optional[datetime] = None) -> Dict[str, int]:
    """One janitor pass. Returns counters for logging and tests."""
    settings = controller.settings
    store = controller.store
    now = now or utcnow()
    ttl = settings.idle_ttl_seconds
    counts = {"reconciled": 0, "idle_stopped": 0}

    for record in store.list():
        if record.status is not ResourceState.RUNNING:
            continue

        missing = not record.container_ref
        if not missing:
            try:
                missing = not await asyncio.to_thread(controller.runtime.exists, record.container_ref)
            except EngineError as e:
                logger.warning("Janitor could not inspect %s: %s", record.id, e)
                continue
        if missing:
            updated = store.transition(
                record.id,
                expected=(ResourceState.RUNNING,),
                target=ResourceState.ERROR,
                container_ref=None,
                ports=None,
                error_message="Container was removed outside of EnvironmentManager",
            )
            if updated is not None:
                controller.ports.release(record.id)
                counts["reconciled"] += 1
                logger.error("Container of RUNNING resource %s vanished; marked ERROR", record.id)
            continue

        if ttl > 0 and now - _last_activity(record) > timedelta(seconds=ttl):
            try:
                await controller.stop(record.id)
                counts["idle_stopped"] += 1
                logger.info("Stopped idle resource %s (idle > %ss)", record.id, ttl)
            except EngineError as e:
                logger.warning("Janitor failed to stop idle resource %s: %s", record.id, e)

    return counts


async def janitor_loop(controller: LifecycleController) -> None:
    interval_s = max(10, int(controller.settings.janitor_interval_seconds))
    while True:
        try:
            counts = await sweep_once(controller)
            if any(counts.values()):
                logger.info("Janitor sweep: %s", counts)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Janitor sweep failed: %s", e)
        await asyncio.sleep(interval_s)
