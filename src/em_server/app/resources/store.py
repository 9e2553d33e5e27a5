"""
Resource record persistence.

The store is the single source of truth for a resource's observed status.
Status changes go through transition(), a compare-and-set against the stored
status (and optionally the owning monitor session), so a stale writer can
never overwrite a newer decision.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from em_server.app.errors import ResourceExists, ResourceNotFound
from em_server.app.models import ResourceRecord, ResourceState

__all__ = ["ResourceStore", "InMemoryResourceStore", "ANY_SESSION"]


ANY_SESSION = object()


class ResourceStore(ABC):
    @abstractmethod
    def find(self, resource_id: str) -> Optional[ResourceRecord]:
        raise NotImplementedError

    def get(self, resource_id: str) -> ResourceRecord:
        record = self.find(resource_id)
        if record is None:
            raise ResourceNotFound(f"Resource '{resource_id}' not found", resource_id=resource_id)
        return record

    @abstractmethod
    def add(self, record: ResourceRecord) -> ResourceRecord:
        """Insert a new record. Raises ResourceExists for a known id."""
        raise NotImplementedError

    @abstractmethod
    def update(self, resource_id: str, **fields: Any) -> ResourceRecord:
        """Unconditional update of non-status fields."""
        raise NotImplementedError

    @abstractmethod
    def transition(
        self,
        resource_id: str,
        *,
        expected: Iterable[ResourceState],
        target: ResourceState,
        expect_session: Any = ANY_SESSION,
        **fields: Any,
    ) -> Optional[ResourceRecord]:
        """
        Move the record to `target` only if its current status is one of
        `expected` (and its session_id equals `expect_session` when given).

        Returns the updated record, or None when the guard did not hold.
        """
        raise NotImplementedError

    @abstractmethod
    def delete(self, resource_id: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def list(self) -> List[ResourceRecord]:
        raise NotImplementedError


class InMemoryResourceStore(ResourceStore):
    """Thread-safe, process-local store."""

    def __init__(self, records: Optional[Iterable[ResourceRecord]] = None) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, ResourceRecord] = {}
        for rec in records or ():
            self._records[rec.id] = rec.model_copy(deep=True)

    def find(self, resource_id: str) -> Optional[ResourceRecord]:
        with self._lock:
            rec = self._records.get(resource_id)
            return rec.model_copy(deep=True) if rec is not None else None

    def add(self, record: ResourceRecord) -> ResourceRecord:
        with self._lock:
            if record.id in self._records:
                raise ResourceExists(f"Resource '{record.id}' already exists", resource_id=record.id)
            self._records[record.id] = record.model_copy(deep=True)
            return record.model_copy(deep=True)

    def update(self, resource_id: str, **fields: Any) -> ResourceRecord:
        if "status" in fields:
            raise ValueError("status changes must go through transition()")
        with self._lock:
            current = self._require(resource_id)
            updated = current.model_copy(update=fields)
            self._records[resource_id] = updated
            return updated.model_copy(deep=True)

    def transition(
        self,
        resource_id: str,
        *,
        expected: Iterable[ResourceState],
        target: ResourceState,
        expect_session: Any = ANY_SESSION,
        **fields: Any,
    ) -> Optional[ResourceRecord]:
        allowed = set(expected)
        with self._lock:
            current = self._records.get(resource_id)
            if current is None or current.status not in allowed:
                return None
            if expect_session is not ANY_SESSION and current.session_id != expect_session:
                return None
            updated = current.model_copy(update={**fields, "status": target})
            self._records[resource_id] = updated
            return updated.model_copy(deep=True)

    def delete(self, resource_id: str) -> bool:
        with self._lock:
            return self._records.pop(resource_id, None) is not None

    def list(self) -> List[ResourceRecord]:
        with self._lock:
            return [rec.model_copy(deep=True) for rec in self._records.values()]

    def _require(self, resource_id: str) -> ResourceRecord:
        rec = self._records.get(resource_id)
        if rec is None:
            raise ResourceNotFound(f"Resource '{resource_id}' not found", resource_id=resource_id)
        return rec
