"""
Test session bootstrap for environment_manager.

- Adds src/ to sys.path so `import em_server` works without an editable install.
- Adds tests/ itself so the shared fakes module is importable.
- Skips tests marked `docker` when no Docker Engine is reachable.
"""

from __future__ import annotations

import os
import sys
import tempfile
from dataclasses import replace
from pathlib import Path

import pytest


def _add_sys_path(p: Path) -> None:
    """
    Prepend a filesystem path to sys.path if it's not already present.
    """
    rp = str(p.resolve())
    if rp not in sys.path:
        sys.path.insert(0, rp)


_TESTS_DIR = Path(__file__).resolve().parent
_PROJECT_DIR = _TESTS_DIR.parent

_add_sys_path(_PROJECT_DIR / "src")
_add_sys_path(_TESTS_DIR)

# Keep the service log out of the working tree and auth disabled unless a test opts in.
os.environ.setdefault("EM_LOG_DIR", tempfile.gettempdir())
os.environ.pop("EM_API_KEY", None)
os.environ.pop("EM_API_KEYS", None)

from em_server.app.config import ServerConfig  # noqa: E402
from em_server.app.kinds import KindRegistry  # noqa: E402
from em_server.app.lifecycle.controller import LifecycleController  # noqa: E402
from em_server.app.resources.ports import PortAllocator  # noqa: E402
from em_server.app.resources.store import InMemoryResourceStore  # noqa: E402
from em_server.app.runtime.client import ContainerRuntime  # noqa: E402

from fakes import FakeDockerClient  # noqa: E402


def _docker_available() -> bool:
    try:
        import docker

        client = docker.from_env(timeout=5)
        try:
            return bool(client.ping())
        finally:
            client.close()
    except Exception:
        return False


def pytest_collection_modifyitems(config, items):
    if not any(item.get_closest_marker("docker") for item in items):
        return
    if _docker_available():
        return
    skip = pytest.mark.skip(reason="Docker Engine is not reachable")
    for item in items:
        if item.get_closest_marker("docker"):
            item.add_marker(skip)


# ---------------
# Shared fixtures
# ---------------

@pytest.fixture
def settings() -> ServerConfig:
    """Service settings with readiness timing shrunk for fast tests."""
    return replace(
        ServerConfig.from_env(dotenv=False),
        api_key=None,
        api_keys=[],
        port_range_start=40000,
        port_range_end=40100,
        verified_domains=[],
        log_scan_seconds=0.01,
        status_poll_seconds=0.01,
        degraded_after_checks=3,
        stream_poll_seconds=0.02,
        stream_timeout_seconds=5.0,
        idle_ttl_seconds=0,
    )


@pytest.fixture
def docker_client() -> FakeDockerClient:
    return FakeDockerClient()


@pytest.fixture
def runtime(docker_client) -> ContainerRuntime:
    return ContainerRuntime(docker_client)


@pytest.fixture
def controller(runtime, settings) -> LifecycleController:
    store = InMemoryResourceStore()
    ports = PortAllocator(settings.port_range_start, settings.port_range_end)
    return LifecycleController(runtime, store, ports, KindRegistry(), settings)
