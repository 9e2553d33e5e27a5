"""
Base abstractions for resource kinds.

A kind profile answers every "what" question the lifecycle controller asks
while provisioning a container: which image, which container ports, where
the persistent volume is mounted, which environment, which limits, what Stop
does with the container, and how readiness is judged.

Profiles are stateless and safe to share between resources.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from em_server.app.config import ServerConfig
from em_server.app.errors import InvalidResourceSpec
from em_server.app.lifecycle.readiness import ReadinessPolicy
from em_server.app.models import ResourceKind, ResourceRecord, StopPolicy


class KindProfile(ABC):
    """
    Contract for one resource kind. Implementations should be idempotent.
    """

    kind: ResourceKind

    # Traefik injects the resource id header when one runtime serves many tenants.
    shared_runtime: bool = False

    stop_policy: StopPolicy = StopPolicy.REMOVE

    @abstractmethod
    def image(self, record: ResourceRecord, settings: ServerConfig) -> str:
        raise NotImplementedError

    @abstractmethod
    def primary_port(self, record: ResourceRecord) -> int:
        """Container port of the main service; bound to the pair's primary host port."""
        raise NotImplementedError

    def aux_port(self, record: ResourceRecord) -> Optional[int]:
        """Container port of the auxiliary channel, if the kind has one."""
        return None

    @abstractmethod
    def data_mount(self, record: ResourceRecord) -> str:
        """Mount point of the dedicated persistent volume inside the container."""
        raise NotImplementedError

    @abstractmethod
    def readiness_policy(self, record: ResourceRecord, settings: ServerConfig) -> ReadinessPolicy:
        raise NotImplementedError

    def build_environment(self, record: ResourceRecord, settings: ServerConfig) -> Dict[str, str]:
        """
        Kind-specific environment. Merged under the identity variables and
        over by the caller's env_vars.
        """
        return {}

    def validate(self, record: ResourceRecord, settings: ServerConfig) -> None:
        """
        Raise InvalidResourceSpec when required params are missing or malformed.
        """
        return

    def extra_volumes(self, record: ResourceRecord, settings: ServerConfig) -> Dict[str, str]:
        """
        Additional named volumes mapped to mount points. These are shared or
        owned by another resource, so destroy never removes them.
        """
        return {}

    def command(self, record: ResourceRecord) -> Optional[List[str]]:
        return None

    def working_dir(self, record: ResourceRecord) -> Optional[str]:
        return None

    def cpu_limit(self, record: ResourceRecord, settings: ServerConfig) -> str:
        return settings.default_cpu_limit

    def mem_limit(self, record: ResourceRecord, settings: ServerConfig) -> str:
        return settings.default_mem_limit

    def hostname(self, record: ResourceRecord) -> str:
        return f"{self.kind.value}-{record.id}"[:63]

    @staticmethod
    def make_policy(settings: ServerConfig, **rules) -> ReadinessPolicy:
        """ReadinessPolicy with the service-wide timing knobs applied."""
        return ReadinessPolicy(
            log_scan_interval_s=settings.log_scan_seconds,
            status_poll_interval_s=settings.status_poll_seconds,
            degraded_readiness_after_n_checks=settings.degraded_after_checks,
            **rules,
        )

    # ---------------
    # Param helpers
    # ---------------

    @staticmethod
    def require_param(record: ResourceRecord, key: str) -> str:
        val = (record.params or {}).get(key)
        if val is None or not str(val).strip():
            raise InvalidResourceSpec(f"{record.kind.value} '{record.id}' requires param '{key}'", resource_id=record.id)
        return str(val)

    @staticmethod
    def port_param(record: ResourceRecord, key: str, default: int) -> int:
        raw = (record.params or {}).get(key)
        if raw is None or raw == "":
            return default
        try:
            port = int(raw)
        except ValueError:
            raise InvalidResourceSpec(f"param '{key}' must be an integer, got {raw!r}", resource_id=record.id)
        if not 1 <= port <= 65535:
            raise InvalidResourceSpec(f"param '{key}' out of range: {port}", resource_id=record.id)
        return port
