"""
Readiness monitoring.

A container being "running" says nothing about whether the service inside it
is usable. After every start, restart or rebuild the lifecycle controller
spawns a ReadinessMonitor: two cooperating asyncio loops that watch one
container until it is declared RUNNING or ERROR.

- The log scan loop reads the log tail and flips phase flags the first time
  a configured marker shows up. The first dependency-install marker extends
  the check budget, once and for good.
- The status poll loop inspects the container, counts checks and makes the
  terminal decision.

The terminal decision is taken at most once per session (session lock) and
written with a compare-and-set on STARTING plus the session id, so a stale
monitor can never overwrite a newer lifecycle operation.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from em_server.app.errors import ContainerMissing
from em_server.app.models import ResourceState
from em_server.app.lifecycle.log_relay import clean_log_text

logger = logging.getLogger("environment_manager.readiness")

__all__ = ["ReadinessPolicy", "MonitorSession", "ReadinessMonitor"]


@dataclass(frozen=True)
class ReadinessPolicy:
    """
    Per-kind readiness rules.

    An empty control_channel_markers means the kind has no control channel;
    the flag then starts set. A kind with neither primary markers nor a
    probe_command counts its primary service ready as soon as the container runs.
    """

    control_channel_markers: Tuple[str, ...] = ()
    primary_service_markers: Tuple[str, ...] = ()
    dependency_install_markers: Tuple[str, ...] = ()
    install_complete_markers: Tuple[str, ...] = ()
    probe_command: Optional[Tuple[str, ...]] = None
    base_budget_checks: int = 40
    extended_budget_checks: int = 220
    degraded_readiness_after_n_checks: int = 15
    log_scan_interval_s: float = 2.0
    status_poll_interval_s: float = 3.0
    log_tail_lines: int = 100


@dataclass
class MonitorSession:
    resource_id: str
    session_id: str
    policy: ReadinessPolicy
    operation: str = "start"
    # Only logs newer than this epoch timestamp count (restart in place keeps old output).
    log_since: Optional[float] = None
    primary_service_ready: bool = False
    control_channel_ready: bool = False
    dependency_install_detected: bool = False
    install_complete_seen: bool = False
    checks_performed: int = 0
    timeout_budget: int = 0
    degraded: bool = False
    terminal: Optional[ResourceState] = None
    reason: Optional[str] = None
    started_monotonic: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        if not self.timeout_budget:
            self.timeout_budget = self.policy.base_budget_checks
        if not self.policy.control_channel_markers:
            self.control_channel_ready = True
        if not self.policy.primary_service_markers and self.policy.probe_command is None:
            self.primary_service_ready = True

    @property
    def finished(self) -> bool:
        return self.terminal is not None

    def observe_logs(self, text: str) -> List[str]:
        """
        Apply one log tail to the phase flags. Returns the names of the flags
        (or events) that changed.
        """
        clean = clean_log_text(text)
        changes: List[str] = []
        p = self.policy
        if not self.primary_service_ready and _seen(clean, p.primary_service_markers):
            self.primary_service_ready = True
            changes.append("primary_service_ready")
        if not self.control_channel_ready and _seen(clean, p.control_channel_markers):
            self.control_channel_ready = True
            changes.append("control_channel_ready")
        if not self.dependency_install_detected and _seen(clean, p.dependency_install_markers):
            self.dependency_install_detected = True
            self.timeout_budget = max(self.timeout_budget, p.extended_budget_checks)
            changes.append("dependency_install_detected")
        if not self.install_complete_seen and _seen(clean, p.install_complete_markers):
            # Completion never shrinks the budget back.
            self.install_complete_seen = True
            changes.append("install_complete_seen")
        return changes

    def decide(self, running: bool) -> Optional[Tuple[ResourceState, str, bool]]:
        """
        Terminal decision for the current tick as (state, reason, degraded), or None to keep waiting.
        """
        if running and self.primary_service_ready and self.control_channel_ready:
            return ResourceState.RUNNING, "ready", False
        if (
            running
            and self.primary_service_ready
            and self.checks_performed > self.policy.degraded_readiness_after_n_checks
        ):
            return (
                ResourceState.RUNNING,
                f"primary service up but control channel silent after {self.checks_performed} checks",
                True,
            )
        if self.checks_performed >= self.timeout_budget:
            return (
                ResourceState.ERROR,
                f"Readiness timed out after {self.checks_performed} checks "
                f"(primary_service_ready={self.primary_service_ready}, "
                f"control_channel_ready={self.control_channel_ready})",
                False,
            )
        return None


def _seen(text: str, markers: Sequence[str]) -> bool:
    return any(m in text for m in markers)


class ReadinessMonitor:
    """
    Drives one MonitorSession against one container.

    run() returns once the session is terminal or the monitor is cancelled.
    A store failure while recording the result is retried once, then
    re-raised from run() so the owner can record ERROR itself.
    """

    def __init__(self, runtime, store, session: MonitorSession, container_ref: str) -> None:
        self.runtime = runtime
        self.store = store
        self.session = session
        self.container_ref = container_ref
        self._lock = asyncio.Lock()
        self._tasks: List[asyncio.Task] = []

    async def run(self) -> MonitorSession:
        s = self.session
        logger.info(
            "Readiness monitor started: id=%s session=%s op=%s budget=%s",
            s.resource_id, s.session_id, s.operation, s.timeout_budget,
        )
        self._tasks = [
            asyncio.create_task(self._log_scan_loop(), name=f"readiness-logs-{s.resource_id}"),
            asyncio.create_task(self._status_poll_loop(), name=f"readiness-status-{s.resource_id}"),
        ]
        try:
            results = await asyncio.gather(*self._tasks, return_exceptions=True)
        finally:
            self.cancel()
        failures = [r for r in results if isinstance(r, Exception)]
        if failures:
            raise failures[0]
        if not s.finished:
            logger.info("Readiness monitor cancelled: id=%s session=%s", s.resource_id, s.session_id)
        return s

    def cancel(self) -> None:
        for task in self._tasks:
            if not task.done():
                task.cancel()

    def _cancel_siblings(self) -> None:
        current = asyncio.current_task()
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()

    # ----------------------------
    # Loops
    # ----------------------------

    async def _log_scan_loop(self) -> None:
        s = self.session
        p = s.policy
        while not s.finished:
            try:
                text = await asyncio.to_thread(self.runtime.logs_tail, self.container_ref, p.log_tail_lines, s.log_since)
            except ContainerMissing as e:
                await self._finish(ResourceState.ERROR, f"Container disappeared while starting: {e}")
                return
            except Exception as e:
                logger.debug("Log scan for %s failed, retrying: %s", s.resource_id, e)
            else:
                if s.finished:
                    return
                for change in s.observe_logs(text):
                    if change == "dependency_install_detected":
                        logger.info(
                            "Dependency install detected for %s; budget extended to %s checks",
                            s.resource_id, s.timeout_budget,
                        )
                    else:
                        logger.info("Readiness signal for %s: %s", s.resource_id, change)
            await asyncio.sleep(p.log_scan_interval_s)

    async def _status_poll_loop(self) -> None:
        s = self.session
        p = s.policy
        while not s.finished:
            await asyncio.sleep(p.status_poll_interval_s)
            if s.finished:
                return
            s.checks_performed += 1
            running = False
            try:
                state = await asyncio.to_thread(self.runtime.state, self.container_ref)
                running = state.running
            except ContainerMissing as e:
                await self._finish(ResourceState.ERROR, f"Container disappeared while starting: {e}")
                return
            except Exception as e:
                logger.warning("Status check %s for %s failed: %s", s.checks_performed, s.resource_id, e)
            if s.finished:
                return

            if running and not s.primary_service_ready and p.probe_command:
                await self._probe()
                if s.finished:
                    return

            decision = s.decide(running)
            logger.debug(
                "Check %s/%s for %s: running=%s primary=%s control=%s",
                s.checks_performed, s.timeout_budget, s.resource_id, running,
                s.primary_service_ready, s.control_channel_ready,
            )
            if decision is not None:
                await self._finish(*decision)
                return

    async def _probe(self) -> None:
        s = self.session
        try:
            outcome = await asyncio.to_thread(self.runtime.exec, self.container_ref, list(s.policy.probe_command or ()))
        except ContainerMissing as e:
            await self._finish(ResourceState.ERROR, f"Container disappeared while starting: {e}")
            return
        except Exception as e:
            logger.debug("Readiness probe for %s failed to run: %s", s.resource_id, e)
            return
        if outcome.exit_code == 0 and not s.finished:
            s.primary_service_ready = True
            logger.info("Readiness probe passed for %s", s.resource_id)

    # ----------------------------
    # Terminal transition
    # ----------------------------

    async def _finish(self, target: ResourceState, reason: str, degraded: bool = False) -> bool:
        s = self.session
        async with self._lock:
            if s.finished:
                return False
            for attempt in (1, 2):
                try:
                    written = self.store.transition(
                        s.resource_id,
                        expected=(ResourceState.STARTING,),
                        target=target,
                        expect_session=s.session_id,
                        degraded=degraded,
                        error_message=reason if target is ResourceState.ERROR else None,
                    )
                    break
                except Exception as e:
                    if attempt == 2:
                        s.terminal = ResourceState.ERROR
                        s.reason = f"Could not record readiness result: {e}"
                        self._cancel_siblings()
                        raise
                    logger.warning("Recording %s for %s failed, retrying once: %s", target.value, s.resource_id, e)
            s.terminal = target
            s.reason = reason
            s.degraded = degraded
            self._cancel_siblings()

        elapsed = time.monotonic() - s.started_monotonic
        if written is None:
            logger.info("Discarding stale readiness result for %s (session %s): %s", s.resource_id, s.session_id, target.value)
        elif target is ResourceState.ERROR:
            logger.error("Resource %s failed to become ready after %.1fs: %s", s.resource_id, elapsed, reason)
        elif degraded:
            logger.warning("Resource %s declared RUNNING (degraded) after %.1fs: %s", s.resource_id, elapsed, reason)
        else:
            logger.info("Resource %s is RUNNING after %.1fs (%s checks)", s.resource_id, elapsed, s.checks_performed)
        return written is not None
