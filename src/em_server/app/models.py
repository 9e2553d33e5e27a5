"""
Pydantic models for the EnvironmentManager FastAPI service.

These models define:
- Resource kinds and observed lifecycle states
- Routing intent for the reverse proxy
- The persisted resource record and the registration request
- Caller-facing stream events (Server-Sent Events frames)

Notes:
- Records are treated as immutable values; the store hands out copies and
  writes go through compare-and-set transitions.
"""

from __future__ import annotations

import enum
import json
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# -----------------------
# Enums and simple types
# -----------------------

class ResourceKind(str, enum.Enum):
    workspace = "workspace"
    agent = "agent"
    deployment = "deployment"
    database = "database"
    bucket = "bucket"


class ResourceState(str, enum.Enum):
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    RUNNING = "RUNNING"
    STOPPING = "STOPPING"
    ERROR = "ERROR"


class StopPolicy(str, enum.Enum):
    """What Stop does with the container once it has been stopped."""

    REMOVE = "remove"
    KEEP = "keep"


_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,62}$")


class PortPair(BaseModel):
    """Two consecutive host ports owned by one resource."""

    model_config = ConfigDict(frozen=True)

    primary: int = Field(..., ge=1, le=65535)
    aux: int = Field(..., ge=1, le=65535)

    def as_tuple(self) -> tuple[int, int]:
        return (self.primary, self.aux)


class RoutingConfig(BaseModel):
    """
    Reverse-proxy routing intent. Absent on a record means port-only access.
    """

    model_config = ConfigDict(frozen=True)

    domain: str = Field(..., description="Verified base domain, e.g. 'example.com'")
    subdomain: Optional[str] = Field(default=None, description="Label prepended to the domain, e.g. 'api'")
    path: Optional[str] = Field(default=None, description="Optional path prefix, e.g. '/v1'")

    @field_validator("domain", "subdomain", mode="before")
    def v_lower(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            return v or None
        return v

    @field_validator("path")
    def v_path(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v in ("", "/"):
            return None
        if not v.startswith("/"):
            raise ValueError("path must start with '/'")
        return v.rstrip("/")

    @property
    def host(self) -> str:
        return f"{self.subdomain}.{self.domain}" if self.subdomain else self.domain


def _coerce_str_map(v: Any, what: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for k, val in (v or {}).items():
        if not isinstance(k, str) or not k.strip():
            raise ValueError(f"{what} keys must be non-empty strings")
        out[k] = val if isinstance(val, str) else str(val)
    return out


# -----------------------
# Resource records
# -----------------------

class ResourceSpec(BaseModel):
    """
    Registration request. Stands in for the external catalog entry.
    """

    id: str = Field(..., description="Externally assigned resource id")
    kind: ResourceKind
    routing: Optional[RoutingConfig] = None
    params: Dict[str, str] = Field(default_factory=dict, description="Kind-specific provisioning parameters")
    env_vars: Dict[str, str] = Field(default_factory=dict, description="Additional environment variables")

    @field_validator("id")
    def v_id(cls, v: str) -> str:
        if not _ID_RE.match(v):
            raise ValueError("id must be 1-63 chars of letters, digits, '.', '_' or '-' and start alphanumeric")
        return v

    @field_validator("params", mode="before")
    def v_params(cls, v: Any) -> Dict[str, str]:
        return _coerce_str_map(v, "params")

    @field_validator("env_vars", mode="before")
    def v_env_vars(cls, v: Any) -> Dict[str, str]:
        return _coerce_str_map(v, "env_vars")


class ResourceRecord(BaseModel):
    id: str
    kind: ResourceKind
    status: ResourceState = ResourceState.STOPPED
    container_ref: Optional[str] = None
    ports: Optional[PortPair] = None
    routing: Optional[RoutingConfig] = None
    params: Dict[str, str] = Field(default_factory=dict)
    env_vars: Dict[str, str] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    last_started_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    degraded: bool = False
    error_message: Optional[str] = None
    session_id: Optional[str] = None

    @classmethod
    def from_spec(cls, spec: ResourceSpec) -> "ResourceRecord":
        return cls(
            id=spec.id,
            kind=spec.kind,
            routing=spec.routing,
            params=dict(spec.params),
            env_vars=dict(spec.env_vars),
        )


class ResourceView(BaseModel):
    """Public representation of a record; parameters may carry secrets and are omitted."""

    id: str
    kind: ResourceKind
    status: ResourceState
    container_ref: Optional[str] = None
    ports: Optional[PortPair] = None
    routing: Optional[RoutingConfig] = None
    url: Optional[str] = None
    created_at: datetime
    last_started_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    degraded: bool = False
    error_message: Optional[str] = None


# -----------------------
# Streams and logs
# -----------------------

StreamEventType = Literal["status", "log", "complete", "error"]


class StreamEvent(BaseModel):
    type: StreamEventType
    message: str

    def to_sse(self) -> str:
        """Encode as one Server-Sent Events frame."""
        return f"data: {json.dumps({'type': self.type, 'message': self.message})}\n\n"


class LogsResponse(BaseModel):
    id: str
    logs: str = ""
    lines: List[str] = Field(default_factory=list)


class DeleteResponse(BaseModel):
    id: str
    deleted: bool = True
    volume_removed: bool = False


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str
    docker: bool


__all__ = [
    "utcnow",
    "ResourceKind",
    "ResourceState",
    "StopPolicy",
    "PortPair",
    "RoutingConfig",
    "ResourceSpec",
    "ResourceRecord",
    "ResourceView",
    "StreamEvent",
    "StreamEventType",
    "LogsResponse",
    "DeleteResponse",
    "HealthResponse",
]
