"""
Kind resolution.

Maps a ResourceKind onto the profile that provisions it. The builtin set
covers every kind; register() replaces a profile (tests, site-specific
images or markers).
"""

from __future__ import annotations

from typing import Dict, Iterable, Optional

from em_server.app.models import ResourceKind
from em_server.app.kinds.agent import AgentProfile
from em_server.app.kinds.base import KindProfile
from em_server.app.kinds.bucket import BucketProfile
from em_server.app.kinds.database import DatabaseProfile
from em_server.app.kinds.deployment import DeploymentProfile
from em_server.app.kinds.workspace import WorkspaceProfile


def builtin_profiles() -> Dict[ResourceKind, KindProfile]:
    profiles = (WorkspaceProfile(), AgentProfile(), DeploymentProfile(), DatabaseProfile(), BucketProfile())
    return {p.kind: p for p in profiles}


class KindRegistry:
    def __init__(self, profiles: Optional[Iterable[KindProfile]] = None) -> None:
        self._profiles: Dict[ResourceKind, KindProfile] = (
            {p.kind: p for p in profiles} if profiles is not None else builtin_profiles()
        )

    def register(self, profile: KindProfile) -> None:
        self._profiles[profile.kind] = profile

    def get(self, kind: ResourceKind | str) -> KindProfile:
        key = ResourceKind(kind)
        try:
            return self._profiles[key]
        except KeyError:
            raise LookupError(f"No profile registered for kind '{key.value}'") from None

    def kinds(self) -> list[ResourceKind]:
        return sorted(self._profiles, key=lambda k: k.value)
