"""
Shared FastAPI dependencies for EnvironmentManager.

Contents:
- enforce_api_key(): API key authentication dependency for routes.
- get_controller(): accessor for the lifecycle controller the lifespan puts
  on app.state.
- install_exception_handlers(): maps EngineError subclasses to HTTP responses.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Security, status
from fastapi.responses import JSONResponse
from fastapi.security.api_key import APIKeyHeader

from em_server.app.config import get_settings
from em_server.app.errors import EngineError
from em_server.app.lifecycle.controller import LifecycleController

logger = logging.getLogger("environment_manager")

__all__ = [
    "enforce_api_key",
    "get_controller",
    "install_exception_handlers",
]


# ---------------
# Auth
# ---------------

api_key_header = APIKeyHeader(name=get_settings().api_key_header_name, auto_error=False)


async def enforce_api_key(presented: Optional[str] = Security(api_key_header)) -> None:
    """
    Reject the request with 401 unless it carries one of the configured keys.
    With no EM_API_KEY / EM_API_KEYS configured every request passes.
    """
    cfg = get_settings()
    keys = set(filter(None, [cfg.api_key, *cfg.api_keys]))
    if keys and presented not in keys:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, detail="API key rejected or absent.")


# ---------------
# Engine accessors
# ---------------

def get_controller(request: Request) -> LifecycleController:
    controller = getattr(request.app.state, "controller", None)
    if controller is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting up")
    return controller


# ---------------
# Error mapping
# ---------------

async def _engine_error_handler(request: Request, exc: EngineError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s: %s", request.method, request.url.path, type(exc).__name__, exc)
    else:
        logger.info("%s %s rejected: %s: %s", request.method, request.url.path, type(exc).__name__, exc)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": type(exc).__name__, "resource_id": exc.resource_id},
    )


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EngineError, _engine_error_handler)
