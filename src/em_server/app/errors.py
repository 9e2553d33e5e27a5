"""
Error taxonomy for EnvironmentManager.

Every failure the engine reports to callers is an EngineError subclass carrying
an HTTP status code, so the API layer can translate it without string matching.
Docker SDK exceptions are translated into these at the runtime client boundary.
"""

from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    """Base class for all engine-level failures."""

    status_code: int = 500

    def __init__(self, message: str = "", *, resource_id: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        self.resource_id = resource_id

    def __str__(self) -> str:
        return self.message


# Catalog / state errors

class ResourceNotFound(EngineError):
    status_code = 404


class ResourceExists(EngineError):
    status_code = 409


class AlreadyRunning(EngineError):
    status_code = 409


class AlreadyStopped(EngineError):
    status_code = 409


class ResourceNotRunning(EngineError):
    status_code = 409


class OperationInProgress(EngineError):
    status_code = 409


class InvalidResourceSpec(EngineError):
    status_code = 400


# Runtime errors

class ImageNotFound(EngineError):
    status_code = 424


class RuntimeUnavailable(EngineError):
    status_code = 503


class PortBindingConflict(RuntimeUnavailable):
    """The runtime refused a host port because something outside the allocator holds it."""

    status_code = 409


class ContainerMissing(EngineError):
    status_code = 410


# Allocation / routing / readiness

class PortExhausted(EngineError):
    status_code = 503


class ProxyConfigInvalid(EngineError):
    status_code = 400


class ReadinessTimeout(EngineError):
    status_code = 504


__all__ = [
    "EngineError",
    "ResourceNotFound",
    "ResourceExists",
    "AlreadyRunning",
    "AlreadyStopped",
    "ResourceNotRunning",
    "OperationInProgress",
    "InvalidResourceSpec",
    "ImageNotFound",
    "RuntimeUnavailable",
    "PortBindingConflict",
    "ContainerMissing",
    "PortExhausted",
    "ProxyConfigInvalid",
    "ReadinessTimeout",
]
