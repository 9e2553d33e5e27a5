"""
Caller-facing event streams.

watch_operation() is what an HTTP caller sees after start/restart/rebuild:
live log lines from a LogRelay merged with a periodic read of the persisted
record. It ends on the first terminal status or when the caller's patience
runs out; the readiness monitor keeps going either way.
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

from em_server.app.errors import ReadinessTimeout
from em_server.app.models import ResourceRecord, ResourceState, StreamEvent
from em_server.app.resources.store import ResourceStore
from em_server.app.lifecycle.log_relay import LogRelay

logger = logging.getLogger("environment_manager.events")

__all__ = ["watch_operation", "stream_logs", "wait_until_settled", "to_sse"]


def _terminal_event(record: Optional[ResourceRecord], resource_id: str) -> Optional[StreamEvent]:
    if record is None:
        return StreamEvent(type="error", message=f"Resource '{resource_id}' no longer exists")
    if record.status is ResourceState.RUNNING:
        if record.degraded:
            return StreamEvent(
                type="complete",
                message=f"'{resource_id}' is running (degraded: its control channel never reported ready)",
            )
        return StreamEvent(type="complete", message=f"'{resource_id}' is running")
    if record.status is ResourceState.ERROR:
        return StreamEvent(type="error", message=record.error_message or f"'{resource_id}' failed to start")
    if record.status in (ResourceState.STOPPED, ResourceState.STOPPING):
        return StreamEvent(type="error", message=f"'{resource_id}' was stopped before it became ready")
    return None


async def watch_operation(
    store: ResourceStore,
    resource_id: str,
    *,
    relay: Optional[LogRelay] = None,
    intro: str = "Starting",
    poll_interval: float = 2.0,
    timeout: float = 90.0,
) -> AsyncIterator[StreamEvent]:
    """
    Yield a status event, then log and status events until the record turns
    RUNNING (complete), ERROR (error), or `timeout` seconds pass. A timeout
    ends with a status event saying the work continues in the background.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    next_poll = loop.time()
    queue: "asyncio.Queue[Optional[StreamEvent]]" = asyncio.Queue()
    relay_open = relay is not None
    if relay is not None:
        relay.start(queue, loop)

    try:
        yield StreamEvent(type="status", message=intro)
        while True:
            now = loop.time()
            if now >= next_poll:
                event = _terminal_event(store.find(resource_id), resource_id)
                if event is not None:
                    yield event
                    return
                next_poll = now + poll_interval
            if now >= deadline:
                logger.info("Caller stream for %s timed out after %.0fs; monitor continues", resource_id, timeout)
                yield StreamEvent(
                    type="status",
                    message=f"'{resource_id}' is still starting in the background; check its status later",
                )
                return

            wait = max(0.0, min(next_poll, deadline) - now)
            if not relay_open:
                await asyncio.sleep(wait)
                continue
            try:
                item = await asyncio.wait_for(queue.get(), timeout=wait)
            except asyncio.TimeoutError:
                continue
            if item is None:
                relay_open = False
                continue
            yield item
    finally:
        if relay is not None:
            relay.close()


async def stream_logs(relay: LogRelay) -> AsyncIterator[StreamEvent]:
    """Plain live log stream for one container."""
    async for event in relay.events():
        yield event


async def wait_until_settled(
    store: ResourceStore,
    resource_id: str,
    *,
    poll_interval: float = 2.0,
    timeout: float = 90.0,
) -> ResourceRecord:
    """
    Poll until the record leaves STARTING. Raises ReadinessTimeout when it
    has not settled within `timeout`.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        record = store.get(resource_id)
        if record.status is not ResourceState.STARTING:
            return record
        if loop.time() >= deadline:
            raise ReadinessTimeout(
                f"'{resource_id}' did not become ready within {timeout:.0f}s; it keeps starting in the background",
                resource_id=resource_id,
            )
        await asyncio.sleep(min(poll_interval, max(0.0, deadline - loop.time())))


async def to_sse(events: AsyncIterator[StreamEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield event.to_sse()
