"""
Host port allocation.

Each resource gets two consecutive host ports (primary service, auxiliary
channel) from a configured inclusive range. Allocation is idempotent per
resource id and never hands the same port to two resources.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Iterable, Optional

from em_server.app.errors import PortExhausted
from em_server.app.models import PortPair, ResourceRecord

logger = logging.getLogger("environment_manager.ports")

__all__ = ["PortAllocator"]


class PortAllocator:
    def __init__(self, start: int = 40000, end: int = 50000) -> None:
        if end < start + 1:
            raise ValueError(f"port range {start}-{end} cannot hold a pair")
        self.start = start
        self.end = end
        self._lock = threading.Lock()
        self._owners: Dict[int, str] = {}
        self._pairs: Dict[str, PortPair] = {}

    @classmethod
    def from_records(cls, records: Iterable[ResourceRecord], start: int = 40000, end: int = 50000) -> "PortAllocator":
        """Seed the table from records that still hold ports (e.g. after a service restart)."""
        allocator = cls(start, end)
        for rec in records:
            if rec.ports is not None and not allocator.reserve(rec.id, rec.ports):
                logger.warning("Port pair %s of %s collides with another record; not seeded", rec.ports.as_tuple(), rec.id)
        return allocator

    def allocate(self, resource_id: str, avoid: Iterable[int] = ()) -> PortPair:
        """
        Return the pair held by `resource_id`, or reserve the lowest free
        consecutive pair in range. Ports in `avoid` are skipped.

        Raises PortExhausted when no pair is free.
        """
        skip = set(avoid)
        with self._lock:
            held = self._pairs.get(resource_id)
            if held is not None and not (skip & set(held.as_tuple())):
                return held
            if held is not None:
                self._drop(resource_id)
            for port in range(self.start, self.end):
                nxt = port + 1
                if port in self._owners or nxt in self._owners or port in skip or nxt in skip:
                    continue
                pair = PortPair(primary=port, aux=nxt)
                self._take(resource_id, pair)
                logger.debug("Allocated ports %s-%s to %s", port, nxt, resource_id)
                return pair
        raise PortExhausted(f"No available ports in range {self.start}-{self.end}", resource_id=resource_id)

    def reserve(self, resource_id: str, pair: PortPair) -> bool:
        """Re-reserve a specific pair. False if either port belongs to another resource."""
        with self._lock:
            for port in pair.as_tuple():
                owner = self._owners.get(port)
                if owner is not None and owner != resource_id:
                    return False
            self._drop(resource_id)
            self._take(resource_id, pair)
            return True

    def release(self, resource_id: str) -> Optional[PortPair]:
        with self._lock:
            pair = self._drop(resource_id)
        if pair is not None:
            logger.debug("Released ports %s-%s from %s", pair.primary, pair.aux, resource_id)
        return pair

    def held_by(self, resource_id: str) -> Optional[PortPair]:
        with self._lock:
            return self._pairs.get(resource_id)

    def owner_of(self, port: int) -> Optional[str]:
        with self._lock:
            return self._owners.get(port)

    def snapshot(self) -> Dict[str, PortPair]:
        with self._lock:
            return dict(self._pairs)

    # Callers hold self._lock.

    def _take(self, resource_id: str, pair: PortPair) -> None:
        self._pairs[resource_id] = pair
        for port in pair.as_tuple():
            self._owners[port] = resource_id

    def _drop(self, resource_id: str) -> Optional[PortPair]:
        pair = self._pairs.pop(resource_id, None)
        if pair is not None:
            for port in pair.as_tuple():
                if self._owners.get(port) == resource_id:
                    del self._owners[port]
        return pair
