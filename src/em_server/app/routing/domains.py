"""
Routing validation and subdomain helpers.
"""

from __future__ import annotations

import random
import re
from typing import Optional, Sequence

from em_server.app.errors import ProxyConfigInvalid
from em_server.app.models import RoutingConfig

__all__ = ["validate_subdomain", "validate_routing", "generate_subdomain", "public_url"]

SUBDOMAIN_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{1,61}[a-z0-9])?$")
_DOMAIN_LABEL_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
_PATH_RE = re.compile(r"^(/[A-Za-z0-9._~-]+)+$")

RESERVED_SUBDOMAINS = frozenset({"www", "api", "admin", "traefik", "mail"})

_ADJECTIVES = (
    "happy", "sunny", "clever", "bright", "swift", "calm", "bold", "cool",
    "epic", "fresh", "grand", "noble", "quick", "smart", "wise", "brave",
)
_NOUNS = (
    "panda", "tiger", "eagle", "dolphin", "fox", "wolf", "bear", "lion",
    "hawk", "owl", "deer", "rabbit", "falcon", "raven", "otter", "lynx",
)


def validate_subdomain(subdomain: str, *, allow_reserved: bool = True) -> None:
    if not SUBDOMAIN_RE.match(subdomain):
        raise ProxyConfigInvalid(
            "Subdomain must be 3-63 characters of lowercase letters, digits and hyphens, "
            "and cannot start or end with a hyphen"
        )
    if not allow_reserved and subdomain in RESERVED_SUBDOMAINS:
        raise ProxyConfigInvalid(f"Subdomain '{subdomain}' is reserved")


def _validate_domain(domain: str) -> None:
    labels = domain.split(".")
    if len(domain) > 253 or len(labels) < 2 or not all(_DOMAIN_LABEL_RE.match(lbl) for lbl in labels):
        raise ProxyConfigInvalid(f"Invalid domain '{domain}'")


def validate_routing(routing: RoutingConfig, verified_domains: Sequence[str] = ()) -> None:
    """
    Raise ProxyConfigInvalid unless `routing` can be turned into a proxy rule.

    When `verified_domains` is non-empty the base domain must be one of them.
    """
    _validate_domain(routing.domain)
    if routing.subdomain is not None:
        validate_subdomain(routing.subdomain)
    if routing.path is not None and not _PATH_RE.match(routing.path):
        raise ProxyConfigInvalid(f"Invalid path prefix '{routing.path}'")
    if verified_domains and routing.domain not in {d.lower() for d in verified_domains}:
        raise ProxyConfigInvalid(f"Domain '{routing.domain}' is not verified")


def generate_subdomain(rng: Optional[random.Random] = None) -> str:
    """Random adjective-noun-number label, e.g. 'swift-otter-4821'."""
    r = rng or random
    return f"{r.choice(_ADJECTIVES)}-{r.choice(_NOUNS)}-{r.randint(1000, 9999)}"


def public_url(routing: Optional[RoutingConfig]) -> Optional[str]:
    if routing is None:
        return None
    return f"https://{routing.host}{routing.path or ''}"
