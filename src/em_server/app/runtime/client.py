"""
Container runtime client.

A stateless wrapper around the Docker SDK. Every call looks the container up
again by reference, so the wrapper holds no per-container state and is safe
to call from worker threads (the async layers use asyncio.to_thread).

Docker SDK exceptions are translated into the engine's error taxonomy here
and nowhere else.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Sequence

import docker
from docker import DockerClient
from docker.errors import APIError, DockerException, NotFound
from docker.errors import ImageNotFound as DockerImageNotFound

from em_server.app.errors import ContainerMissing, ImageNotFound, PortBindingConflict, RuntimeUnavailable

logger = logging.getLogger("environment_manager.runtime")

__all__ = [
    "LABEL_MANAGED",
    "LABEL_RESOURCE_ID",
    "LABEL_RESOURCE_KIND",
    "LABEL_CREATED_AT",
    "LABEL_SHARED",
    "ContainerState",
    "ExecOutcome",
    "ContainerRuntime",
]

# Management labels stamped on every container/volume this service creates.
LABEL_MANAGED = "em.managed"
LABEL_RESOURCE_ID = "em.resource.id"
LABEL_RESOURCE_KIND = "em.resource.kind"
LABEL_CREATED_AT = "em.created_at"
LABEL_SHARED = "em.shared"


@dataclass(frozen=True)
class ContainerState:
    id: str
    name: str
    status: str
    running: bool
    exit_code: Optional[int] = None
    started_at: Optional[str] = None


@dataclass(frozen=True)
class ExecOutcome:
    exit_code: int
    stdout: str
    stderr: str


def _is_port_conflict(exc: APIError) -> bool:
    text = str(getattr(exc, "explanation", "") or exc).lower()
    return "port is already allocated" in text or "address already in use" in text


@contextmanager
def _translate(action: str, ref: Optional[str] = None) -> Iterator[None]:
    """Map Docker SDK failures onto engine errors."""
    try:
        yield
    except DockerImageNotFound as e:
        raise ImageNotFound(f"{action}: image not found: {e.explanation or e}") from e
    except NotFound as e:
        raise ContainerMissing(f"{action}: no such container {ref!r}") from e
    except APIError as e:
        if _is_port_conflict(e):
            raise PortBindingConflict(f"{action}: {e.explanation or e}") from e
        raise RuntimeUnavailable(f"{action} failed: {e.explanation or e}") from e
    except (DockerException, OSError) as e:
        # requests' connection errors derive from OSError
        raise RuntimeUnavailable(f"{action} failed: Docker is unreachable ({e.__class__.__name__}: {e})") from e


class ContainerRuntime:
    def __init__(self, client: DockerClient, *, platform: Optional[str] = None) -> None:
        self.client = client
        self.platform = platform

    @classmethod
    def from_env(cls, timeout: int = 180, platform: Optional[str] = None) -> "ContainerRuntime":
        with _translate("connect to Docker"):
            client = docker.from_env(timeout=timeout)
        return cls(client, platform=platform)

    def close(self) -> None:
        try:
            self.client.close()
        except (DockerException, OSError) as e:
            logger.debug("Error closing Docker client: %s", e)

    def ping(self) -> bool:
        with _translate("ping Docker"):
            return bool(self.client.ping())

    # ----------------------------
    # Images, volumes, networks
    # ----------------------------

    def ensure_image(self, image: str, *, pull: bool = True) -> None:
        """
        Make sure `image` is present locally, pulling it when allowed.
        Raises ImageNotFound when it is absent and cannot be pulled.
        """
        try:
            with _translate(f"inspect image {image}"):
                self.client.images.get(image)
            return
        except ImageNotFound:
            if not pull:
                raise
        logger.info("Pulling image %s", image)
        try:
            with _translate(f"pull image {image}"):
                self.client.images.pull(image, platform=self.platform)
        except ContainerMissing as e:
            # unknown repositories come back as a plain 404
            raise ImageNotFound(f"Image {image} is not available locally and could not be pulled: {e}") from e

    def ensure_volume(self, name: str, labels: Optional[Dict[str, str]] = None) -> bool:
        """Create the named volume if missing. Returns True when it was created."""
        with _translate(f"create volume {name}"):
            try:
                self.client.volumes.get(name)
                return False
            except NotFound:
                self.client.volumes.create(name=name, labels=labels or {})
                logger.info("Created volume %s", name)
                return True

    def remove_volume(self, name: str) -> bool:
        with _translate(f"remove volume {name}"):
            try:
                vol = self.client.volumes.get(name)
            except NotFound:
                return False
            vol.remove(force=True)
            logger.info("Removed volume %s", name)
            return True

    def ensure_network(self, name: str) -> None:
        with _translate(f"create network {name}"):
            try:
                self.client.networks.get(name)
            except NotFound:
                self.client.networks.create(name, driver="bridge", labels={LABEL_MANAGED: "true"})
                logger.info("Created network %s", name)

    # ----------------------------
    # Containers
    # ----------------------------

    def exists(self, ref: str) -> bool:
        with _translate("inspect container", ref):
            try:
                self.client.containers.get(ref)
                return True
            except NotFound:
                return False

    def state(self, ref: str) -> ContainerState:
        """Inspect `ref`. Raises ContainerMissing when it no longer exists."""
        with _translate("inspect container", ref):
            c = self.client.containers.get(ref)
        st = (c.attrs or {}).get("State") or {}
        return ContainerState(
            id=c.id,
            name=c.name,
            status=st.get("Status") or c.status,
            running=bool(st.get("Running", c.status == "running")),
            exit_code=st.get("ExitCode"),
            started_at=st.get("StartedAt"),
        )

    def port_bindings(self, ref: str) -> Dict[str, int]:
        """Configured host port per container port, e.g. {'8080/tcp': 40000}."""
        with _translate("inspect container", ref):
            c = self.client.containers.get(ref)
        raw = ((c.attrs or {}).get("HostConfig") or {}).get("PortBindings") or {}
        out: Dict[str, int] = {}
        for container_port, binds in raw.items():
            for b in binds or []:
                host_port = str((b or {}).get("HostPort") or "")
                if host_port.isdigit():
                    out[container_port] = int(host_port)
                    break
        return out

    def remove_stale(self, name: str, *, timeout: int = 10) -> bool:
        """Force-stop and remove a container holding `name`. Returns True if one existed."""
        with _translate("remove stale container", name):
            try:
                c = self.client.containers.get(name)
            except NotFound:
                return False
            if c.status == "running":
                logger.info("Stopping stale container %s", name)
                c.stop(timeout=timeout)
            c.remove(force=True)
            logger.info("Removed stale container %s", name)
            return True

    def run(self, image: str, **kwargs: Any) -> str:
        """Create and start a container. Returns its id."""
        name = kwargs.get("name")
        with _translate(f"create container {name or image}", name):
            c = self.client.containers.create(image, **kwargs)
        try:
            with _translate(f"start container {c.name}", c.id):
                c.start()
        except PortBindingConflict:
            with _translate("remove unstartable container", c.id):
                c.remove(force=True)
            raise
        return c.id

    def start(self, ref: str) -> None:
        with _translate("start container", ref):
            self.client.containers.get(ref).start()

    def stop(self, ref: str, *, timeout: int = 10) -> None:
        with _translate("stop container", ref):
            self.client.containers.get(ref).stop(timeout=timeout)

    def restart(self, ref: str, *, timeout: int = 10) -> None:
        with _translate("restart container", ref):
            self.client.containers.get(ref).restart(timeout=timeout)

    def remove(self, ref: str, *, force: bool = True) -> bool:
        """Remove `ref`. Returns False when it was already gone."""
        with _translate("remove container", ref):
            try:
                c = self.client.containers.get(ref)
            except NotFound:
                return False
            c.remove(force=force)
            return True

    # ----------------------------
    # Logs and exec
    # ----------------------------

    def logs_tail(self, ref: str, tail: int = 100, since: Optional[float] = None) -> str:
        kwargs: Dict[str, Any] = {"stdout": True, "stderr": True, "tail": max(1, int(tail))}
        if since is not None:
            kwargs["since"] = since
        with _translate("read logs", ref):
            raw = self.client.containers.get(ref).logs(**kwargs)
        return raw.decode("utf-8", errors="replace") if isinstance(raw, (bytes, bytearray)) else str(raw or "")

    def follow_logs(self, ref: str, tail: int = 100):
        """
        Follow-mode log subscription. Returns the SDK's cancellable stream of
        byte chunks (stdout/stderr already demultiplexed); call .close() on it
        to unsubscribe.
        """
        with _translate("follow logs", ref):
            return self.client.containers.get(ref).logs(
                stream=True, follow=True, stdout=True, stderr=True, tail=max(0, int(tail))
            )

    def exec(
        self,
        ref: str,
        argv: Sequence[str],
        *,
        user: Optional[str] = None,
        workdir: Optional[str] = None,
        environment: Optional[Dict[str, str]] = None,
    ) -> ExecOutcome:
        with _translate("exec", ref):
            res = self.client.containers.get(ref).exec_run(
                cmd=list(argv),
                user=user or "",
                workdir=workdir,
                environment=environment,
                demux=True,
            )
        out = res.output
        if isinstance(out, tuple):
            so, se = out
        else:
            so, se = out, None
        return ExecOutcome(
            exit_code=int(res.exit_code if res.exit_code is not None else -1),
            stdout=(so or b"").decode("utf-8", errors="replace"),
            stderr=(se or b"").decode("utf-8", errors="replace"),
        )
