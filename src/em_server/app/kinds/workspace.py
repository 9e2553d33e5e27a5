"""
Development workspace: code-server on the primary port and the agent bridge
(the workspace's control channel) on the auxiliary port.
"""

from __future__ import annotations

from typing import Dict

from em_server.app.config import ServerConfig
from em_server.app.lifecycle.readiness import ReadinessPolicy
from em_server.app.models import ResourceKind, ResourceRecord, StopPolicy
from em_server.app.kinds.base import KindProfile

CODE_SERVER_PORT = 8080
AGENT_BRIDGE_PORT = 3001
WORKSPACE_DIR = "/workspace"

# Params forwarded verbatim as environment variables.
_FORWARDED_PARAMS = {
    "github_repo": "GITHUB_REPO",
    "github_token": "GITHUB_TOKEN",
    "template": "TEMPLATE",
    "preset": "PRESET",
    "nix_config": "NIX_CONFIG",
    "git_user_name": "GIT_USER_NAME",
    "git_user_email": "GIT_USER_EMAIL",
    "openrouter_api_key": "OPENROUTER_API_KEY",
    "autocomplete_model": "AUTOCOMPLETE_MODEL",
}

CONTROL_MARKERS = ("Agent bridge started", "Agent bridge running", "WebSocket server available")
PRIMARY_MARKERS = ("HTTP server listening",)
INSTALL_MARKERS = ("Installing", "npm install", "nix-shell", "Rebuilding Nix", "pip install")
INSTALL_DONE_MARKERS = ("Nix shell ready", "Extensions installed", "Template applied")


class WorkspaceProfile(KindProfile):
    kind = ResourceKind.workspace
    stop_policy = StopPolicy.REMOVE

    def image(self, record: ResourceRecord, settings: ServerConfig) -> str:
        return record.params.get("image") or settings.workspace_image

    def primary_port(self, record: ResourceRecord) -> int:
        return CODE_SERVER_PORT

    def aux_port(self, record: ResourceRecord) -> int:
        return AGENT_BRIDGE_PORT

    def data_mount(self, record: ResourceRecord) -> str:
        return WORKSPACE_DIR

    def working_dir(self, record: ResourceRecord) -> str:
        return WORKSPACE_DIR

    def extra_volumes(self, record: ResourceRecord, settings: ServerConfig) -> Dict[str, str]:
        # Nix store and editor extensions are shared by every workspace on the host.
        prefix = settings.volume_name_prefix
        return {
            f"{prefix}shared-nix-store": "/nix",
            f"{prefix}shared-vscode-extensions": "/root/.local/share/code-server/extensions",
        }

    def build_environment(self, record: ResourceRecord, settings: ServerConfig) -> Dict[str, str]:
        env = {
            "WORKSPACE_ID": record.id,
            "WORKSPACE_DIR": WORKSPACE_DIR,
            "CODE_SERVER_PORT": str(CODE_SERVER_PORT),
            "AGENT_BRIDGE_PORT": str(AGENT_BRIDGE_PORT),
        }
        for param, var in _FORWARDED_PARAMS.items():
            if record.params.get(param):
                env[var] = record.params[param]
        return env

    def readiness_policy(self, record: ResourceRecord, settings: ServerConfig) -> ReadinessPolicy:
        return self.make_policy(
            settings,
            control_channel_markers=CONTROL_MARKERS,
            primary_service_markers=PRIMARY_MARKERS,
            dependency_install_markers=INSTALL_MARKERS,
            install_complete_markers=INSTALL_DONE_MARKERS,
            base_budget_checks=40,
            extended_budget_checks=220,
        )
