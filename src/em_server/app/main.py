from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

# .env.server has to be loaded before the first get_settings() call
_SERVER_ENV_FILE = os.getenv("EM_SERVER_ENV_FILE", ".env.server")
if _SERVER_ENV_FILE and Path(_SERVER_ENV_FILE).is_file():
    load_dotenv(_SERVER_ENV_FILE)

from em_server.app.config import ServerConfig, get_settings

settings = get_settings()
from em_server.app.deps import install_exception_handlers
from em_server.app.errors import EngineError
from em_server.app.kinds import KindRegistry
from em_server.app.lifecycle.controller import LifecycleController
from em_server.app.lifecycle.janitor import janitor_loop
from em_server.app.logging_setup import initialize_from_env
from em_server.app.models import HealthResponse
from em_server.app.resources.ports import PortAllocator
from em_server.app.resources.store import InMemoryResourceStore
from em_server.app.routers import resources
from em_server.app.runtime.client import ContainerRuntime

logger = logging.getLogger("environment_manager")
initialize_from_env(service_name="environment_manager")


def connect_runtime_on_startup(cfg: ServerConfig) -> ContainerRuntime:
    """Open and ping the Docker Engine; exit with status 1 when it cannot be reached."""
    try:
        runtime = ContainerRuntime.from_env(timeout=cfg.docker_client_timeout, platform=cfg.docker_platform)
        runtime.ping()
    except EngineError as e:
        logger.critical(
            f"Cannot reach the Docker Engine ({e}). Start dockerd or point DOCKER_HOST at a running engine."
        )
        raise SystemExit(1)
    return runtime


def build_controller(runtime: ContainerRuntime, cfg: ServerConfig) -> LifecycleController:
    store = InMemoryResourceStore()
    ports = PortAllocator.from_records(store.list(), cfg.port_range_start, cfg.port_range_end)
    return LifecycleController(runtime, store, ports, KindRegistry(), cfg)


def create_app(controller: Optional[LifecycleController] = None, *, run_janitor: bool = True) -> FastAPI:
    """
    Build the FastAPI application.

    With `controller` given (tests), the lifespan uses it as-is and never
    touches Docker; otherwise it connects to the local engine on startup.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_runtime = controller is None
        ctl = controller or build_controller(connect_runtime_on_startup(settings), settings)
        app.state.controller = ctl

        if run_janitor:
            app.state.janitor_task = asyncio.create_task(janitor_loop(ctl))
            logger.info(f"Janitor loop started (interval={max(10, settings.janitor_interval_seconds)}s)")
        logger.info("EnvironmentManager startup complete.")

        try:
            yield
        finally:
            janitor = app.state.janitor_task
            if janitor is not None:
                janitor.cancel()
                await asyncio.gather(janitor, return_exceptions=True)
                app.state.janitor_task = None
            await ctl.shutdown()
            if owns_runtime:
                ctl.runtime.close()
            app.state.controller = None
            logger.info("EnvironmentManager shutdown complete.")

    app = FastAPI(
        title="EnvironmentManager",
        version=settings.service_version,
        description="Container lifecycle engine for workspaces, agents, deployments, databases and buckets.",
        lifespan=lifespan,
    )

    # Origins come from CORS_ALLOW_ORIGINS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.controller = None
    app.state.janitor_task = None
    install_exception_handlers(app)
    app.include_router(resources.router, prefix="/resources", tags=["resources"])

    @app.get("/health", response_model=HealthResponse)
    async def health() -> HealthResponse:
        """Unauthenticated liveness probe; reports whether Docker answers a ping."""
        ctl: Optional[LifecycleController] = app.state.controller
        docker_ok = False
        if ctl is not None:
            try:
                docker_ok = await asyncio.to_thread(ctl.runtime.ping)
            except EngineError as e:
                logger.warning(f"Health check could not reach Docker: {e}")
        return HealthResponse(status="ok" if docker_ok else "degraded", version=app.version, docker=docker_ok)

    return app


app = create_app()
