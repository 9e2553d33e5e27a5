"""
Service settings for EnvironmentManager.

Everything is read from the process environment into one frozen ServerConfig.
A `.env` file near the package can fill in missing values, but only for the
keys listed in _DOTENV_KEYS; anything already exported wins.

    from em_server.app.config import get_settings

    cfg = get_settings()
    cfg.container_name("database", "db1")   # -> "em-database-db1"
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Callable, Dict, List, Optional, TypeVar

from dotenv import dotenv_values

T = TypeVar("T")

__all__ = [
    "ServerConfig",
    "get_settings",
    "build_run_resource_kwargs",
    "parse_mem_limit_to_bytes",
    "parse_cpu_limit_to_nano_cpus",
]


_DOTENV_KEYS = frozenset(
    {
        "EM_API_KEY", "EM_API_KEYS", "EM_API_KEY_HEADER",
        "DOCKER_CLIENT_TIMEOUT", "DOCKER_PLATFORM",
        "EM_CONTAINER_PREFIX", "EM_VOLUME_PREFIX",
        "EM_PORT_RANGE_START", "EM_PORT_RANGE_END",
        "EM_DEFAULT_CPU", "EM_DEFAULT_MEM", "EM_DEFAULT_CPU_SHARES",
        "EM_STOP_TIMEOUT_SECONDS", "EM_PULL_MISSING_IMAGES",
        "EM_WORKSPACE_IMAGE", "EM_RESTART_POLICY",
        "EM_TRAEFIK_NETWORK", "EM_TRAEFIK_ENTRYPOINTS", "EM_TRAEFIK_CERT_RESOLVER",
        "EM_TENANT_HEADER", "EM_VERIFIED_DOMAINS",
        "EM_STREAM_TIMEOUT_SECONDS", "EM_STREAM_POLL_SECONDS",
        "EM_LOG_SCAN_SECONDS", "EM_STATUS_POLL_SECONDS", "EM_DEGRADED_AFTER_CHECKS",
        "EM_IDLE_TTL_SECONDS", "EM_JANITOR_INTERVAL_SECONDS",
        "CORS_ALLOW_ORIGINS", "EM_SERVICE_VERSION", "LOG_LEVEL",
    }
)

_MEM_UNITS = {"": 1, "b": 1, "k": 1024, "kb": 1024, "m": 1024**2, "mb": 1024**2, "g": 1024**3, "gb": 1024**3}
_MEM_RE = re.compile(r"^(\d+(?:\.\d+)?)([a-z]*)$")
_CPU_RE = re.compile(r"^(\d+(?:\.\d+)?)(?:c|cpu|cpus)?$")
_TRUTHY = {"1", "true", "yes", "y", "on"}


# ---------------
# Env readers
# ---------------

def _env(name: str, cast: Callable[[str], T], default: T) -> T:
    """`cast(os.environ[name])`, or `default` when unset, blank or unparseable."""
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return cast(raw)
    except ValueError:
        return default


def _flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    return default if raw is None else raw.strip().lower() in _TRUTHY


def _csv(name: str, default: str = "") -> List[str]:
    return [item.strip() for item in os.getenv(name, default).split(",") if item.strip()]


def _find_dotenv() -> Optional[Path]:
    for folder in list(Path(__file__).resolve().parents)[:5]:
        if (folder / ".env").is_file():
            return folder / ".env"
    return None


def hydrate_from_dotenv(path: Optional[Path] = None) -> int:
    """Copy allow-listed keys from a .env file into os.environ. Returns how many were set."""
    path = path or _find_dotenv()
    if path is None or not path.is_file():
        return 0
    count = 0
    for key, value in dotenv_values(path).items():
        if key in _DOTENV_KEYS and key not in os.environ and value is not None:
            os.environ[key] = value
            count += 1
    return count


# ---------------
# Resource limits
# ---------------

def parse_mem_limit_to_bytes(mem_limit: Optional[str]) -> Optional[int]:
    """'512m' / '2g' / '1024' -> bytes; None for empty or malformed input."""
    match = _MEM_RE.match((mem_limit or "").strip().lower())
    if not match or match.group(2) not in _MEM_UNITS:
        return None
    return int(float(match.group(1)) * _MEM_UNITS[match.group(2)])


def parse_cpu_limit_to_nano_cpus(cpu_limit: Optional[str]) -> Optional[int]:
    """'1.5' / '2c' / '0.5cpu' -> Docker nano_cpus (1 CPU == 1e9)."""
    match = _CPU_RE.match((cpu_limit or "").strip().lower())
    if not match:
        return None
    return int(float(match.group(1)) * 1_000_000_000)


def build_run_resource_kwargs(
    cpu_limit: Optional[str],
    mem_limit: Optional[str],
    cpu_shares: Optional[int] = None,
) -> Dict[str, object]:
    """Docker create() kwargs for the given limits; unusable values are left out."""
    candidates = {
        "nano_cpus": parse_cpu_limit_to_nano_cpus(cpu_limit),
        "mem_limit": parse_mem_limit_to_bytes(mem_limit),
        "cpu_shares": int(cpu_shares) if cpu_shares is not None else None,
    }
    return {key: value for key, value in candidates.items() if value is not None and value > 0}


# ---------------
# Settings
# ---------------

@dataclass(frozen=True)
class ServerConfig:
    # Auth
    api_key: Optional[str]
    api_key_header_name: str
    api_keys: List[str]

    # Docker client
    docker_client_timeout: int
    docker_platform: Optional[str]

    # Naming
    container_name_prefix: str
    volume_name_prefix: str

    # Inclusive host port range for the allocator
    port_range_start: int
    port_range_end: int

    # Container defaults
    default_cpu_limit: str
    default_mem_limit: str
    default_cpu_shares: int
    stop_timeout_seconds: int
    pull_missing_images: bool
    workspace_image: str
    restart_policy: str

    # Reverse proxy
    traefik_network: str
    traefik_entrypoints: str
    traefik_cert_resolver: str
    tenant_header: str
    verified_domains: List[str]

    # Readiness monitor and progress streams
    stream_timeout_seconds: float
    stream_poll_seconds: float
    log_scan_seconds: float
    status_poll_seconds: float
    degraded_after_checks: int

    # Janitor
    idle_ttl_seconds: int
    janitor_interval_seconds: int

    # Service
    cors_allow_origins: List[str]
    service_version: str
    log_level: str

    @staticmethod
    def from_env(dotenv: bool = True, dotenv_path: Optional[str | Path] = None) -> "ServerConfig":
        if dotenv:
            hydrate_from_dotenv(Path(dotenv_path) if dotenv_path else None)

        api_key = os.getenv("EM_API_KEY") or None
        api_keys = _csv("EM_API_KEYS")
        if api_key and api_key not in api_keys:
            api_keys.insert(0, api_key)

        low, high = sorted((_env("EM_PORT_RANGE_START", int, 40000), _env("EM_PORT_RANGE_END", int, 50000)))

        return ServerConfig(
            api_key=api_key,
            api_key_header_name=os.getenv("EM_API_KEY_HEADER", "X-API-Key"),
            api_keys=api_keys,
            docker_client_timeout=_env("DOCKER_CLIENT_TIMEOUT", int, 180),
            docker_platform=os.getenv("DOCKER_PLATFORM") or None,
            container_name_prefix=os.getenv("EM_CONTAINER_PREFIX", "em-"),
            volume_name_prefix=os.getenv("EM_VOLUME_PREFIX", "em-"),
            port_range_start=low,
            port_range_end=high,
            default_cpu_limit=os.getenv("EM_DEFAULT_CPU", "1c"),
            default_mem_limit=os.getenv("EM_DEFAULT_MEM", "2g"),
            default_cpu_shares=_env("EM_DEFAULT_CPU_SHARES", int, 1024),
            stop_timeout_seconds=max(0, _env("EM_STOP_TIMEOUT_SECONDS", int, 10)),
            pull_missing_images=_flag("EM_PULL_MISSING_IMAGES", True),
            workspace_image=os.getenv("EM_WORKSPACE_IMAGE", "em/workspace:latest"),
            restart_policy=os.getenv("EM_RESTART_POLICY", "unless-stopped"),
            traefik_network=os.getenv("EM_TRAEFIK_NETWORK", "traefik-proxy"),
            traefik_entrypoints=os.getenv("EM_TRAEFIK_ENTRYPOINTS", "web,websecure"),
            traefik_cert_resolver=os.getenv("EM_TRAEFIK_CERT_RESOLVER", "letsencrypt"),
            tenant_header=os.getenv("EM_TENANT_HEADER", "X-Resource-Id"),
            verified_domains=[d.lower() for d in _csv("EM_VERIFIED_DOMAINS")],
            stream_timeout_seconds=_env("EM_STREAM_TIMEOUT_SECONDS", float, 90.0),
            stream_poll_seconds=_env("EM_STREAM_POLL_SECONDS", float, 2.0),
            log_scan_seconds=_env("EM_LOG_SCAN_SECONDS", float, 2.0),
            status_poll_seconds=_env("EM_STATUS_POLL_SECONDS", float, 3.0),
            degraded_after_checks=_env("EM_DEGRADED_AFTER_CHECKS", int, 15),
            idle_ttl_seconds=_env("EM_IDLE_TTL_SECONDS", int, 0),
            janitor_interval_seconds=_env("EM_JANITOR_INTERVAL_SECONDS", int, 300),
            cors_allow_origins=_csv("CORS_ALLOW_ORIGINS", "*") or ["*"],
            service_version=os.getenv("EM_SERVICE_VERSION", "0.1.0"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    def container_name(self, kind: str, resource_id: str) -> str:
        return f"{self.container_name_prefix}{kind}-{resource_id}"

    def volume_name(self, kind: str, resource_id: str) -> str:
        """Name of the dedicated data volume; stable across rebuilds."""
        return f"{self.volume_name_prefix}{kind}-{resource_id}-data"


@lru_cache(maxsize=1)
def get_settings() -> ServerConfig:
    return ServerConfig.from_env(dotenv=True)
