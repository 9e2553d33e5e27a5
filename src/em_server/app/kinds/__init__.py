"""
Resource kind profiles.

Exposes:
- KindProfile: the per-kind contract
- KindRegistry: resolution from ResourceKind to profile
"""

from em_server.app.kinds.base import KindProfile
from em_server.app.kinds.registry import KindRegistry, builtin_profiles

__all__ = ["KindProfile", "KindRegistry", "builtin_profiles"]
