"""
In-memory stand-in for docker.DockerClient.

Implements just the slice of the SDK that ContainerRuntime calls and raises
the SDK's own exception types, so the runtime's error translation is
exercised for real.
"""

from __future__ import annotations

import threading
import time
import uuid
from collections import namedtuple
from typing import Dict, Iterable, List, Optional

from docker.errors import APIError, DockerException, ImageNotFound, NotFound

ExecResult = namedtuple("ExecResult", "exit_code,output")


class FakeLogStream:
    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._chunks = list(chunks)
        self.closed = False

    def __iter__(self):
        for chunk in self._chunks:
            if self.closed:
                return
            yield chunk

    def close(self) -> None:
        self.closed = True


class FakeContainer:
    def __init__(self, client: "FakeDockerClient", image: str, **kwargs) -> None:
        self.client = client
        self.id = uuid.uuid4().hex + uuid.uuid4().hex
        self.name = kwargs.get("name") or self.id[:12]
        self.image = image
        self.kwargs = kwargs
        self.labels: Dict[str, str] = dict(kwargs.get("labels") or {})
        self.status = "created"
        self.exit_code: Optional[int] = None
        self.started_at: Optional[str] = None
        self.start_count = 0
        self.restart_count = 0
        self.exec_exit_code = 0
        self.exec_calls: List[List[str]] = []
        self._log_lock = threading.Lock()
        self._log_entries: List[tuple] = []

    @property
    def attrs(self) -> dict:
        bindings = {
            cport: [{"HostIp": "", "HostPort": str(host)}]
            for cport, host in (self.kwargs.get("ports") or {}).items()
        }
        return {
            "Id": self.id,
            "Name": f"/{self.name}",
            "State": {
                "Status": self.status,
                "Running": self.status == "running",
                "ExitCode": self.exit_code or 0,
                "StartedAt": self.started_at,
            },
            "HostConfig": {"PortBindings": bindings},
            "Config": {"Labels": dict(self.labels)},
        }

    def host_ports(self) -> List[int]:
        return [int(h) for h in (self.kwargs.get("ports") or {}).values()]

    def emit(self, *lines: str) -> None:
        """Append lines to the container's output."""
        ts = time.time()
        with self._log_lock:
            self._log_entries.extend((ts, line) for line in lines)

    # --- SDK surface ---

    def start(self) -> None:
        blocked = self.client.blocked_ports.intersection(self.host_ports())
        if blocked:
            raise APIError(
                "500 Server Error: Internal Server Error",
                explanation=(
                    "driver failed programming external connectivity on endpoint "
                    f"{self.name}: Bind for 0.0.0.0:{min(blocked)} failed: port is already allocated"
                ),
            )
        self.status = "running"
        self.exit_code = None
        self.started_at = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
        self.start_count += 1
        if self.client.boot_logs:
            self.emit(*self.client.boot_logs)

    def stop(self, timeout: int = 10) -> None:
        if self.status == "running":
            self.status = "exited"
            self.exit_code = 0

    def restart(self, timeout: int = 10) -> None:
        self.stop(timeout=timeout)
        self.restart_count += 1
        self.start()

    def remove(self, force: bool = False, v: bool = False) -> None:
        if self.status == "running" and not force:
            raise APIError("409 Client Error: Conflict", explanation="cannot remove a running container")
        self.client._containers.pop(self.id, None)
        self.status = "removed"

    def logs(self, stdout=True, stderr=True, stream=False, follow=False, tail="all", since=None):
        with self._log_lock:
            entries = [line for ts, line in self._log_entries if since is None or ts >= since]
        if isinstance(tail, int):
            entries = entries[-tail:] if tail > 0 else []
        data = "".join(f"{line}\n" for line in entries).encode("utf-8")
        if stream:
            return FakeLogStream([data] if data else [])
        return data

    def exec_run(self, cmd, user="", workdir=None, environment=None, demux=False):
        self.exec_calls.append(list(cmd))
        if self.status != "running":
            raise APIError("409 Client Error: Conflict", explanation=f"Container {self.id} is not running")
        output = (b"", b"") if demux else b""
        return ExecResult(self.exec_exit_code, output)


class _Containers:
    def __init__(self, client: "FakeDockerClient") -> None:
        self.client = client

    def get(self, ref: str) -> FakeContainer:
        for c in list(self.client._containers.values()):
            if c.id == ref or c.name == ref or (len(ref) >= 12 and c.id.startswith(ref)):
                return c
        raise NotFound(f"No such container: {ref}")

    def create(self, image: str, **kwargs) -> FakeContainer:
        if image not in self.client.images.local:
            raise ImageNotFound(f"No such image: {image}")
        name = kwargs.get("name")
        if name and any(c.name == name for c in self.client._containers.values()):
            raise APIError("409 Client Error: Conflict", explanation=f'The container name "/{name}" is already in use')
        c = FakeContainer(self.client, image, **kwargs)
        self.client._containers[c.id] = c
        self.client.created.append(c)
        return c

    def list(self, all: bool = False, filters: Optional[dict] = None) -> List[FakeContainer]:
        out = list(self.client._containers.values())
        if not all:
            out = [c for c in out if c.status == "running"]
        label = (filters or {}).get("label")
        if label:
            key, _, value = label.partition("=")
            out = [c for c in out if c.labels.get(key) == value]
        return out


class _Images:
    def __init__(self) -> None:
        self.local: set = set()
        self.unpullable: set = set()
        self.pulled: List[str] = []

    def get(self, name: str):
        if name not in self.local:
            raise ImageNotFound(f"No such image: {name}")
        return name

    def pull(self, repository: str, tag: Optional[str] = None, **kwargs):
        name = f"{repository}:{tag}" if tag else repository
        if name in self.unpullable:
            raise NotFound(f"pull access denied for {name}, repository does not exist")
        self.local.add(name)
        self.pulled.append(name)
        return name


class FakeVolume:
    def __init__(self, volumes: "_Volumes", name: str, labels: Dict[str, str]) -> None:
        self._volumes = volumes
        self.name = name
        self.labels = labels

    def remove(self, force: bool = False) -> None:
        self._volumes.items.pop(self.name, None)


class _Volumes:
    def __init__(self) -> None:
        self.items: Dict[str, FakeVolume] = {}

    def get(self, name: str) -> FakeVolume:
        try:
            return self.items[name]
        except KeyError:
            raise NotFound(f"get {name}: no such volume") from None

    def create(self, name: str, labels: Optional[Dict[str, str]] = None, **kwargs) -> FakeVolume:
        vol = self.items.setdefault(name, FakeVolume(self, name, dict(labels or {})))
        return vol


class _Networks:
    def __init__(self) -> None:
        self.items: Dict[str, dict] = {}

    def get(self, name: str) -> dict:
        try:
            return self.items[name]
        except KeyError:
            raise NotFound(f"network {name} not found") from None

    def create(self, name: str, driver: str = "bridge", labels: Optional[Dict[str, str]] = None, **kwargs) -> dict:
        self.items[name] = {"Name": name, "Driver": driver, "Labels": dict(labels or {})}
        return self.items[name]


class FakeDockerClient:
    def __init__(self) -> None:
        self._containers: Dict[str, FakeContainer] = {}
        self.created: List[FakeContainer] = []
        self.containers = _Containers(self)
        self.images = _Images()
        self.volumes = _Volumes()
        self.networks = _Networks()
        # Host ports held by something outside the allocator.
        self.blocked_ports: set = set()
        # Lines every container prints each time it starts.
        self.boot_logs: List[str] = []
        self.reachable = True
        self.closed = False

    def ping(self) -> bool:
        if not self.reachable:
            raise DockerException("Error while fetching server API version: Connection refused")
        return True

    def close(self) -> None:
        self.closed = True

    def by_name(self, name: str) -> Optional[FakeContainer]:
        for c in self._containers.values():
            if c.name == name:
                return c
        return None
