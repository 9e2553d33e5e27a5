"""
Deployed application built from a workspace.

The app runs `start_command` from the source workspace's volume (mounted
read-write at /workspace) and listens on `port` inside the container.
Readiness is judged with an exec probe against that port, since arbitrary
apps print arbitrary logs.
"""

from __future__ import annotations

from typing import Dict, List

from em_server.app.config import ServerConfig
from em_server.app.errors import InvalidResourceSpec
from em_server.app.lifecycle.readiness import ReadinessPolicy
from em_server.app.models import ResourceKind, ResourceRecord, StopPolicy
from em_server.app.kinds.base import KindProfile

DEFAULT_APP_PORT = 3000

INSTALL_MARKERS = ("npm install", "npm ci", "yarn install", "pnpm install", "pip install", "Collecting ")
INSTALL_DONE_MARKERS = ("added ", "Successfully installed", "Done in ")
LISTEN_MARKERS = ("listening on", "Listening on", "ready on", "Server running", "started server on")


class DeploymentProfile(KindProfile):
    kind = ResourceKind.deployment
    stop_policy = StopPolicy.REMOVE

    def validate(self, record: ResourceRecord, settings: ServerConfig) -> None:
        self.require_param(record, "start_command")
        self.port_param(record, "port", DEFAULT_APP_PORT)

    def image(self, record: ResourceRecord, settings: ServerConfig) -> str:
        return record.params.get("image") or settings.workspace_image

    def primary_port(self, record: ResourceRecord) -> int:
        return self.port_param(record, "port", DEFAULT_APP_PORT)

    def data_mount(self, record: ResourceRecord) -> str:
        return "/data"

    def extra_volumes(self, record: ResourceRecord, settings: ServerConfig) -> Dict[str, str]:
        source = record.params.get("workspace_id")
        if not source:
            return {}
        return {settings.volume_name(ResourceKind.workspace.value, source): "/workspace"}

    def command(self, record: ResourceRecord) -> List[str]:
        start = self.require_param(record, "start_command")
        build = record.params.get("build_command")
        script = f"{build} && {start}" if build else start
        return ["/bin/bash", "-lc", script]

    def working_dir(self, record: ResourceRecord) -> str:
        base = "/workspace" if record.params.get("workspace_id") else "/data"
        sub = (record.params.get("working_dir") or "").strip("/")
        if ".." in sub.split("/"):
            raise InvalidResourceSpec("working_dir must stay inside the source tree", resource_id=record.id)
        return f"{base}/{sub}" if sub else base

    def build_environment(self, record: ResourceRecord, settings: ServerConfig) -> Dict[str, str]:
        port = str(self.primary_port(record))
        env = {"PORT": port, "HOST": "0.0.0.0", "DEPLOYMENT_ID": record.id}
        if record.params.get("node_env"):
            env["NODE_ENV"] = record.params["node_env"]
        return env

    def probe(self, record: ResourceRecord) -> tuple:
        port = self.primary_port(record)
        return ("bash", "-c", f"exec 3<>/dev/tcp/127.0.0.1/{port}")

    def readiness_policy(self, record: ResourceRecord, settings: ServerConfig) -> ReadinessPolicy:
        return self.make_policy(
            settings,
            primary_service_markers=LISTEN_MARKERS,
            dependency_install_markers=INSTALL_MARKERS,
            install_complete_markers=INSTALL_DONE_MARKERS,
            probe_command=self.probe(record),
            base_budget_checks=40,
            extended_budget_checks=200,
        )
