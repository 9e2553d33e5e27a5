"""
Lifecycle controller.

Drives create / start / stop / restart / rebuild / destroy for one resource
at a time:

- Every operation is single-flight per resource id; a concurrent call fails
  fast with OperationInProgress instead of queueing.
- Docker work runs in worker threads (asyncio.to_thread); the event loop only
  coordinates.
- Start, restart and rebuild return as soon as the container is up and hand
  the "is it usable yet" question to a detached ReadinessMonitor. The
  controller owns that task, so a caller disconnecting changes nothing.
- Status changes are compare-and-set transitions on the store.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Set, Tuple

from em_server.app.config import ServerConfig, build_run_resource_kwargs
from em_server.app.errors import (
    AlreadyRunning,
    AlreadyStopped,
    ContainerMissing,
    EngineError,
    OperationInProgress,
    PortBindingConflict,
    ResourceNotRunning,
)
from em_server.app.kinds import KindProfile, KindRegistry
from em_server.app.models import PortPair, ResourceRecord, ResourceSpec, ResourceState, StopPolicy, utcnow
from em_server.app.resources.ports import PortAllocator
from em_server.app.resources.store import ResourceStore
from em_server.app.routing.domains import validate_routing
from em_server.app.routing.labels import ProxySettings, generate_labels
from em_server.app.runtime.client import (
    LABEL_CREATED_AT,
    LABEL_MANAGED,
    LABEL_RESOURCE_ID,
    LABEL_RESOURCE_KIND,
    LABEL_SHARED,
    ContainerRuntime,
)
from em_server.app.lifecycle.readiness import MonitorSession, ReadinessMonitor

logger = logging.getLogger("environment_manager.lifecycle")

__all__ = ["LifecycleController", "MAX_PORT_BIND_ATTEMPTS"]

MAX_PORT_BIND_ATTEMPTS = 3


@dataclass
class _ActiveMonitor:
    session: MonitorSession
    monitor: ReadinessMonitor
    task: "asyncio.Task[MonitorSession]"


class LifecycleController:
    def __init__(
        self,
        runtime: ContainerRuntime,
        store: ResourceStore,
        ports: PortAllocator,
        kinds: KindRegistry,
        settings: ServerConfig,
        *,
        proxy: Optional[ProxySettings] = None,
        monitor_factory: Callable[..., ReadinessMonitor] = ReadinessMonitor,
    ) -> None:
        self.runtime = runtime
        self.store = store
        self.ports = ports
        self.kinds = kinds
        self.settings = settings
        self.proxy = proxy or ProxySettings(
            network=settings.traefik_network,
            entrypoints=settings.traefik_entrypoints,
            cert_resolver=settings.traefik_cert_resolver,
            tenant_header=settings.tenant_header,
        )
        self._monitor_factory = monitor_factory
        self._guard = threading.Lock()
        self._inflight: Set[str] = set()
        self._monitors: Dict[str, _ActiveMonitor] = {}

    # ----------------------------
    # Naming
    # ----------------------------

    def container_name(self, record: ResourceRecord) -> str:
        return self.settings.container_name(record.kind.value, record.id)

    def volume_name(self, record: ResourceRecord) -> str:
        return self.settings.volume_name(record.kind.value, record.id)

    # ----------------------------
    # Catalog stand-ins
    # ----------------------------

    def register(self, spec: ResourceSpec) -> ResourceRecord:
        """Store a new STOPPED record after validating routing and kind params."""
        record = ResourceRecord.from_spec(spec)
        if record.routing is not None:
            validate_routing(record.routing, self.settings.verified_domains)
        self.kinds.get(record.kind).validate(record, self.settings)
        stored = self.store.add(record)
        logger.info("Registered %s '%s'", record.kind.value, record.id)
        return stored

    def touch(self, resource_id: str) -> ResourceRecord:
        return self.store.update(resource_id, last_accessed_at=utcnow())

    def logs(self, resource_id: str, tail: int = 100) -> str:
        record = self.store.get(resource_id)
        if not record.container_ref:
            return ""
        return self.runtime.logs_tail(record.container_ref, tail)

    # ----------------------------
    # Monitor bookkeeping
    # ----------------------------

    @contextmanager
    def _single_flight(self, resource_id: str) -> Iterator[None]:
        with self._guard:
            if resource_id in self._inflight:
                raise OperationInProgress(
                    f"Another operation on '{resource_id}' is in progress", resource_id=resource_id
                )
            self._inflight.add(resource_id)
        try:
            yield
        finally:
            with self._guard:
                self._inflight.discard(resource_id)

    def active_session(self, resource_id: str) -> Optional[MonitorSession]:
        with self._guard:
            active = self._monitors.get(resource_id)
        if active is None or active.task.done():
            return None
        return active.session

    async def wait_for_monitor(self, resource_id: str) -> Optional[MonitorSession]:
        """Wait for the active readiness monitor (if any) to finish."""
        with self._guard:
            active = self._monitors.get(resource_id)
        if active is None:
            return None
        try:
            return await asyncio.shield(active.task)
        except asyncio.CancelledError:
            if active.task.cancelled():
                return active.session
            raise

    def _spawn_monitor(
        self,
        record: ResourceRecord,
        container_ref: str,
        session_id: str,
        *,
        operation: str,
        log_since: Optional[float] = None,
    ) -> MonitorSession:
        profile = self.kinds.get(record.kind)
        session = MonitorSession(
            resource_id=record.id,
            session_id=session_id,
            policy=profile.readiness_policy(record, self.settings),
            operation=operation,
            log_since=log_since,
        )
        monitor = self._monitor_factory(self.runtime, self.store, session, container_ref)
        task = asyncio.create_task(monitor.run(), name=f"readiness-{record.id}")
        with self._guard:
            self._monitors[record.id] = _ActiveMonitor(session, monitor, task)
        task.add_done_callback(functools.partial(self._monitor_done, record.id, session_id))
        return session

    def _monitor_done(self, resource_id: str, session_id: str, task: "asyncio.Task[MonitorSession]") -> None:
        with self._guard:
            active = self._monitors.get(resource_id)
            if active is not None and active.session.session_id == session_id:
                del self._monitors[resource_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Readiness monitor for %s crashed", resource_id, exc_info=exc)
            try:
                self.store.transition(
                    resource_id,
                    expected=(ResourceState.STARTING,),
                    target=ResourceState.ERROR,
                    expect_session=session_id,
                    error_message=f"Readiness monitor crashed: {exc}",
                )
            except Exception:
                logger.exception("Could not mark %s as ERROR after the monitor crashed", resource_id)

    async def _cancel_monitor(self, resource_id: str) -> None:
        with self._guard:
            active = self._monitors.pop(resource_id, None)
        if active is None or active.task.done():
            return
        active.monitor.cancel()
        active.task.cancel()
        await asyncio.gather(active.task, return_exceptions=True)
        logger.info("Cancelled readiness monitor for %s (session %s)", resource_id, active.session.session_id)

    async def shutdown(self) -> None:
        """Cancel every running monitor (service shutdown)."""
        with self._guard:
            ids = list(self._monitors)
        for resource_id in ids:
            await self._cancel_monitor(resource_id)

    def _fail(self, record: ResourceRecord, session_id: str, exc: EngineError, *, release_ports: bool = True) -> None:
        if release_ports:
            self.ports.release(record.id)
        self.store.transition(
            record.id,
            expected=(ResourceState.STARTING,),
            target=ResourceState.ERROR,
            expect_session=session_id,
            error_message=str(exc),
        )
        logger.error("Failed to start %s '%s': %s", record.kind.value, record.id, exc)

    def _begin_session(self, record: ResourceRecord, expected: Tuple[ResourceState, ...]) -> Tuple[ResourceRecord, str]:
        session_id = uuid.uuid4().hex
        updated = self.store.transition(
            record.id,
            expected=expected,
            target=ResourceState.STARTING,
            session_id=session_id,
            last_started_at=utcnow(),
            degraded=False,
            error_message=None,
        )
        if updated is None:
            raise OperationInProgress(f"'{record.id}' changed state concurrently", resource_id=record.id)
        return updated, session_id

    # ----------------------------
    # Operations
    # ----------------------------

    async def create(self, resource_id: str) -> str:
        """
        Provisioning step that start() builds on: pull, volume, labels and a
        fresh running container. Returns the container reference.

        Only container_ref is written; the record stays STOPPED with no ports,
        and the bound pair is held in the allocator until start() adopts the
        container and records it.
        """
        with self._single_flight(resource_id):
            record = self.store.get(resource_id)
            if record.status is ResourceState.RUNNING:
                raise AlreadyRunning(f"'{resource_id}' is already running", resource_id=resource_id)
            if record.status in (ResourceState.STARTING, ResourceState.STOPPING):
                raise OperationInProgress(f"'{resource_id}' is {record.status.value}", resource_id=resource_id)
            ref, _ = await asyncio.to_thread(self._provision, record)
            self.store.update(resource_id, container_ref=ref)
            return ref

    async def start(self, resource_id: str) -> MonitorSession:
        with self._single_flight(resource_id):
            record = self.store.get(resource_id)
            if record.status is ResourceState.RUNNING:
                raise AlreadyRunning(f"'{resource_id}' is already running", resource_id=resource_id)
            if record.status is ResourceState.STOPPING or self.active_session(resource_id) is not None:
                raise OperationInProgress(f"'{resource_id}' is already starting or stopping", resource_id=resource_id)

            # STARTING without a live monitor is left over from a previous process.
            record, session_id = self._begin_session(
                record, (ResourceState.STOPPED, ResourceState.ERROR, ResourceState.STARTING)
            )
            logger.info("Starting %s '%s' (session %s)", record.kind.value, record.id, session_id)
            try:
                ref, pair, log_since = await asyncio.to_thread(self._bring_up, record)
            except EngineError as e:
                self._fail(record, session_id, e)
                raise
            record = self.store.update(resource_id, container_ref=ref, ports=pair)
            return self._spawn_monitor(record, ref, session_id, operation="start", log_since=log_since)

    async def stop(self, resource_id: str) -> ResourceRecord:
        with self._single_flight(resource_id):
            record = self.store.get(resource_id)
            if record.status is ResourceState.STOPPED:
                raise AlreadyStopped(f"'{resource_id}' is already stopped", resource_id=resource_id)
            if record.status is ResourceState.STOPPING:
                raise OperationInProgress(f"'{resource_id}' is already stopping", resource_id=resource_id)

            await self._cancel_monitor(resource_id)
            record = self.store.transition(
                resource_id,
                expected=(ResourceState.STARTING, ResourceState.RUNNING, ResourceState.ERROR),
                target=ResourceState.STOPPING,
            )
            if record is None:
                raise OperationInProgress(f"'{resource_id}' changed state concurrently", resource_id=resource_id)

            policy = self.kinds.get(record.kind).stop_policy
            try:
                kept_ref = await asyncio.to_thread(self._tear_down, record, policy)
            except EngineError as e:
                self.store.transition(
                    resource_id,
                    expected=(ResourceState.STOPPING,),
                    target=ResourceState.ERROR,
                    error_message=f"Stop failed: {e}",
                )
                logger.error("Failed to stop '%s': %s", resource_id, e)
                raise

            self.ports.release(resource_id)
            stopped = self.store.transition(
                resource_id,
                expected=(ResourceState.STOPPING,),
                target=ResourceState.STOPPED,
                container_ref=kept_ref,
                ports=None,
                session_id=None,
                degraded=False,
            )
            logger.info("Stopped %s '%s' (container %s)", record.kind.value, resource_id, "kept" if kept_ref else "removed")
            return stopped if stopped is not None else self.store.get(resource_id)

    async def restart(self, resource_id: str) -> MonitorSession:
        """Restart the container in place and watch it come back."""
        with self._single_flight(resource_id):
            record = self._require_running(resource_id)
            record, session_id = self._begin_session(record, (ResourceState.RUNNING,))
            logger.info("Restarting '%s' (session %s)", resource_id, session_id)
            since = time.time()
            try:
                if not record.container_ref:
                    raise ContainerMissing(f"'{resource_id}' has no container to restart", resource_id=resource_id)
                await asyncio.to_thread(self.runtime.restart, record.container_ref, timeout=self.settings.stop_timeout_seconds)
            except EngineError as e:
                self._fail(record, session_id, e, release_ports=isinstance(e, ContainerMissing))
                raise
            return self._spawn_monitor(record, record.container_ref, session_id, operation="restart", log_since=since)

    async def rebuild(self, resource_id: str) -> MonitorSession:
        """Recreate the container from its image, keeping the volume and ports."""
        with self._single_flight(resource_id):
            record = self._require_running(resource_id)
            record, session_id = self._begin_session(record, (ResourceState.RUNNING,))
            logger.info("Rebuilding '%s' (session %s)", resource_id, session_id)
            try:
                ref, pair = await asyncio.to_thread(self._provision, record)
            except EngineError as e:
                self._fail(record, session_id, e)
                raise
            record = self.store.update(resource_id, container_ref=ref, ports=pair)
            return self._spawn_monitor(record, ref, session_id, operation="rebuild")

    async def destroy(self, resource_id: str, purge_volume: bool = False) -> bool:
        """
        Remove the resource whatever its state. Returns True when the volume was removed.
        """
        with self._single_flight(resource_id):
            record = self.store.get(resource_id)
            await self._cancel_monitor(resource_id)
            volume_removed = await asyncio.to_thread(self._purge, record, purge_volume)
            self.ports.release(resource_id)
            self.store.delete(resource_id)
            logger.info("Destroyed %s '%s' (volume %s)", record.kind.value, resource_id, "removed" if volume_removed else "kept")
            return volume_removed

    def _require_running(self, resource_id: str) -> ResourceRecord:
        record = self.store.get(resource_id)
        if record.status is not ResourceState.RUNNING:
            raise ResourceNotRunning(
                f"'{resource_id}' must be RUNNING (is {record.status.value})", resource_id=resource_id
            )
        if self.active_session(resource_id) is not None:
            raise OperationInProgress(f"'{resource_id}' is being monitored", resource_id=resource_id)
        return record

    # ----------------------------
    # Blocking helpers (worker threads)
    # ----------------------------

    def _management_labels(self, record: ResourceRecord) -> Dict[str, str]:
        return {
            LABEL_MANAGED: "true",
            LABEL_RESOURCE_ID: record.id,
            LABEL_RESOURCE_KIND: record.kind.value,
            LABEL_CREATED_AT: utcnow().isoformat(),
        }

    def _run_kwargs(
        self,
        record: ResourceRecord,
        profile: KindProfile,
        name: str,
        volume: str,
        pair: PortPair,
    ) -> Dict[str, object]:
        primary = profile.primary_port(record)
        aux = profile.aux_port(record)
        port_map: Dict[str, int] = {f"{primary}/tcp": pair.primary}
        if aux is not None:
            port_map[f"{aux}/tcp"] = pair.aux

        volumes = {volume: {"bind": profile.data_mount(record), "mode": "rw"}}
        for shared, mount in profile.extra_volumes(record, self.settings).items():
            volumes[shared] = {"bind": mount, "mode": "rw"}

        environment = {
            **profile.build_environment(record, self.settings),
            **record.env_vars,
            "EM_RESOURCE_ID": record.id,
            "EM_RESOURCE_KIND": record.kind.value,
        }
        labels = {
            **generate_labels(
                record.id,
                record.routing,
                primary,
                kind=record.kind.value,
                shared_runtime=profile.shared_runtime,
                proxy=self.proxy,
            ),
            **self._management_labels(record),
        }

        kwargs: Dict[str, object] = {
            "name": name,
            "hostname": profile.hostname(record),
            "environment": environment,
            "labels": labels,
            "ports": port_map,
            "volumes": volumes,
            "restart_policy": {"Name": self.settings.restart_policy},
        }
        kwargs.update(
            build_run_resource_kwargs(
                profile.cpu_limit(record, self.settings),
                profile.mem_limit(record, self.settings),
                self.settings.default_cpu_shares,
            )
        )
        command = profile.command(record)
        if command:
            kwargs["command"] = command
        workdir = profile.working_dir(record)
        if workdir:
            kwargs["working_dir"] = workdir
        if record.routing is not None:
            kwargs["network"] = self.proxy.network
        if self.settings.docker_platform:
            kwargs["platform"] = self.settings.docker_platform
        return kwargs

    def _provision(self, record: ResourceRecord) -> Tuple[str, PortPair]:
        profile = self.kinds.get(record.kind)
        profile.validate(record, self.settings)
        image = profile.image(record, self.settings)
        self.runtime.ensure_image(image, pull=self.settings.pull_missing_images)

        volume = self.volume_name(record)
        self.runtime.ensure_volume(volume, labels=self._management_labels(record))
        for shared in profile.extra_volumes(record, self.settings):
            self.runtime.ensure_volume(shared, labels={LABEL_MANAGED: "true", LABEL_SHARED: "true"})
        if record.routing is not None:
            self.runtime.ensure_network(self.proxy.network)

        name = self.container_name(record)
        self.runtime.remove_stale(name, timeout=self.settings.stop_timeout_seconds)

        avoid: Set[int] = set()
        last_conflict: Optional[PortBindingConflict] = None
        for attempt in range(1, MAX_PORT_BIND_ATTEMPTS + 1):
            pair = self.ports.allocate(record.id, avoid=avoid)
            try:
                ref = self.runtime.run(image, **self._run_kwargs(record, profile, name, volume, pair))
            except PortBindingConflict as e:
                # held outside the allocator; skip this pair from now on
                avoid.update(pair.as_tuple())
                last_conflict = e
                logger.warning(
                    "Host ports %s-%s for '%s' are taken (attempt %s/%s)",
                    pair.primary, pair.aux, record.id, attempt, MAX_PORT_BIND_ATTEMPTS,
                )
                continue
            except EngineError:
                self.ports.release(record.id)
                raise
            logger.info(
                "Created container %s for %s '%s' on ports %s-%s",
                name, record.kind.value, record.id, pair.primary, pair.aux,
            )
            return ref, pair

        self.ports.release(record.id)
        raise last_conflict or PortBindingConflict(f"No bindable host ports for '{record.id}'")

    def _bound_pair(self, ref: str, record: ResourceRecord, profile: KindProfile) -> Optional[PortPair]:
        bindings = self.runtime.port_bindings(ref)
        primary = bindings.get(f"{profile.primary_port(record)}/tcp")
        if primary is None:
            return None
        aux_port = profile.aux_port(record)
        aux = bindings.get(f"{aux_port}/tcp") if aux_port is not None else None
        return PortPair(primary=primary, aux=aux if aux is not None else primary + 1)

    def _bring_up(self, record: ResourceRecord) -> Tuple[str, PortPair, Optional[float]]:
        """
        Start the kept container in place when its ports are still ours to
        take, otherwise provision a new one. Returns (ref, ports, log_since).
        """
        ref = record.container_ref
        if ref and self.runtime.exists(ref):
            profile = self.kinds.get(record.kind)
            pair = self._bound_pair(ref, record, profile)
            if pair is not None and self.ports.reserve(record.id, pair):
                since = time.time()
                try:
                    if self.runtime.state(ref).running:
                        self.runtime.restart(ref, timeout=self.settings.stop_timeout_seconds)
                    else:
                        self.runtime.start(ref)
                    logger.info("Started kept container for '%s' on ports %s-%s", record.id, pair.primary, pair.aux)
                    return ref, pair, since
                except PortBindingConflict as e:
                    logger.warning("Kept container for '%s' cannot bind its ports (%s); recreating", record.id, e)
                    self.ports.release(record.id)
            else:
                logger.info("Ports of kept container for '%s' are no longer free; recreating", record.id)
            self.runtime.remove(ref, force=True)
        ref, pair = self._provision(record)
        return ref, pair, None

    def _tear_down(self, record: ResourceRecord, policy: StopPolicy) -> Optional[str]:
        """Stop the container; remove it unless the kind keeps it. Returns the kept ref."""
        ref = record.container_ref or self.container_name(record)
        try:
            self.runtime.stop(ref, timeout=self.settings.stop_timeout_seconds)
        except ContainerMissing:
            logger.info("Container of '%s' already gone", record.id)
            return None
        if policy is StopPolicy.KEEP:
            return record.container_ref or self.runtime.state(ref).id
        self.runtime.remove(ref, force=True)
        return None

    def _purge(self, record: ResourceRecord, purge_volume: bool) -> bool:
        refs: List[str] = [r for r in (record.container_ref, self.container_name(record)) if r]
        for ref in dict.fromkeys(refs):
            try:
                self.runtime.stop(ref, timeout=self.settings.stop_timeout_seconds)
            except ContainerMissing:
                continue
            self.runtime.remove(ref, force=True)
        if purge_volume:
            return self.runtime.remove_volume(self.volume_name(record))
        return False
