"""
Traefik label generation.

Resources become reachable through a shared Traefik instance purely through
container labels. generate_labels() is pure and deterministic: the same
inputs always produce the same label set.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Dict, Optional

from em_server.app.models import RoutingConfig

__all__ = ["ProxySettings", "DEFAULT_PROXY", "router_name", "generate_labels"]


@dataclass(frozen=True)
class ProxySettings:
    network: str = "traefik-proxy"
    entrypoints: str = "web,websecure"
    cert_resolver: str = "letsencrypt"
    tenant_header: str = "X-Resource-Id"


DEFAULT_PROXY = ProxySettings()

_NAME_UNSAFE_RE = re.compile(r"[^a-z0-9-]+")
_CANONICAL_ID_RE = re.compile(r"^[a-z0-9-]+$")


def router_name(kind: str, resource_id: str) -> str:
    """
    Traefik router/service name, restricted to [a-z0-9-].

    Ids that already fit are used as-is. Others are folded and suffixed with
    a short hash of the raw id, so "ws_1", "WS.1" and "ws-1" stay distinct.
    """
    if _CANONICAL_ID_RE.match(resource_id):
        return f"{kind}-{resource_id}"
    folded = _NAME_UNSAFE_RE.sub("-", resource_id.lower()).strip("-")
    digest = hashlib.sha1(resource_id.encode("utf-8")).hexdigest()[:8]
    return f"{kind}-{folded}-{digest}"


def generate_labels(
    resource_id: str,
    routing: Optional[RoutingConfig],
    port: int,
    *,
    kind: str = "resource",
    shared_runtime: bool = False,
    proxy: ProxySettings = DEFAULT_PROXY,
) -> Dict[str, str]:
    """
    Build the Traefik label set for one container.

    Without routing only the backend port binding is emitted and Traefik is
    told to ignore the container. With routing the router gets a Host rule
    (plus PathPrefix when a path is set), TLS through the configured resolver
    and a service bound to `port`. Shared-runtime kinds also get a header
    middleware carrying the resource id, since one runtime serves many tenants.
    """
    name = router_name(kind, resource_id)
    service_port_label = f"traefik.http.services.{name}.loadbalancer.server.port"

    if routing is None:
        return {
            "traefik.enable": "false",
            service_port_label: str(port),
        }

    rule = f"Host(`{routing.host}`)"
    if routing.path:
        rule = f"{rule} && PathPrefix(`{routing.path}`)"

    router = f"traefik.http.routers.{name}"
    labels: Dict[str, str] = {
        "traefik.enable": "true",
        "traefik.docker.network": proxy.network,
        f"{router}.rule": rule,
        f"{router}.entrypoints": proxy.entrypoints,
        f"{router}.tls": "true",
        f"{router}.tls.certresolver": proxy.cert_resolver,
        f"{router}.service": name,
        service_port_label: str(port),
    }

    if shared_runtime:
        middleware = f"{name}-tenant"
        labels[f"{router}.middlewares"] = middleware
        labels[f"traefik.http.middlewares.{middleware}.headers.customrequestheaders.{proxy.tenant_header}"] = resource_id

    return labels
