"""
Autonomous-agent sandbox.

Runs the workspace image headless: the agent bridge is the primary service
and no editor is served. The agent's reasoning loop talks to the bridge over
its WebSocket, which is the control channel.
"""

from __future__ import annotations

from typing import Dict

from em_server.app.config import ServerConfig
from em_server.app.lifecycle.readiness import ReadinessPolicy
from em_server.app.models import ResourceKind, ResourceRecord, StopPolicy
from em_server.app.kinds.base import KindProfile
from em_server.app.kinds.workspace import AGENT_BRIDGE_PORT, INSTALL_DONE_MARKERS, INSTALL_MARKERS, WORKSPACE_DIR

_FORWARDED_PARAMS = {
    "task": "AGENT_TASK",
    "github_repo": "GITHUB_REPO",
    "github_token": "GITHUB_TOKEN",
    "openrouter_api_key": "OPENROUTER_API_KEY",
    "model": "AGENT_MODEL",
}


class AgentProfile(KindProfile):
    kind = ResourceKind.agent
    stop_policy = StopPolicy.REMOVE

    def image(self, record: ResourceRecord, settings: ServerConfig) -> str:
        return record.params.get("image") or settings.workspace_image

    def primary_port(self, record: ResourceRecord) -> int:
        return AGENT_BRIDGE_PORT

    def data_mount(self, record: ResourceRecord) -> str:
        return WORKSPACE_DIR

    def working_dir(self, record: ResourceRecord) -> str:
        return WORKSPACE_DIR

    def mem_limit(self, record: ResourceRecord, settings: ServerConfig) -> str:
        return record.params.get("mem_limit") or settings.default_mem_limit

    def build_environment(self, record: ResourceRecord, settings: ServerConfig) -> Dict[str, str]:
        env = {
            "AGENT_ID": record.id,
            "AGENT_MODE": "autonomous",
            "WORKSPACE_DIR": WORKSPACE_DIR,
            "AGENT_BRIDGE_PORT": str(AGENT_BRIDGE_PORT),
            "DISABLE_CODE_SERVER": "1",
        }
        for param, var in _FORWARDED_PARAMS.items():
            if record.params.get(param):
                env[var] = record.params[param]
        return env

    def readiness_policy(self, record: ResourceRecord, settings: ServerConfig) -> ReadinessPolicy:
        return self.make_policy(
            settings,
            control_channel_markers=("WebSocket server available",),
            primary_service_markers=("Agent bridge started", "Agent bridge running"),
            dependency_install_markers=INSTALL_MARKERS,
            install_complete_markers=INSTALL_DONE_MARKERS,
            base_budget_checks=40,
            extended_budget_checks=220,
        )
