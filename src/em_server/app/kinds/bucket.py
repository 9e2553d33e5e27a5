"""
Object-storage bucket served by MinIO: S3 API on the primary port, web
console on the auxiliary port.
"""

from __future__ import annotations

from typing import Dict, List

from em_server.app.config import ServerConfig
from em_server.app.errors import InvalidResourceSpec
from em_server.app.lifecycle.readiness import ReadinessPolicy
from em_server.app.models import ResourceKind, ResourceRecord, StopPolicy
from em_server.app.kinds.base import KindProfile

MINIO_IMAGE = "minio/minio:latest"
S3_PORT = 9000
CONSOLE_PORT = 9001


class BucketProfile(KindProfile):
    kind = ResourceKind.bucket
    stop_policy = StopPolicy.KEEP

    def validate(self, record: ResourceRecord, settings: ServerConfig) -> None:
        self.require_param(record, "access_key")
        secret = self.require_param(record, "secret_key")
        if len(secret) < 8:
            raise InvalidResourceSpec("secret_key must be at least 8 characters", resource_id=record.id)

    def image(self, record: ResourceRecord, settings: ServerConfig) -> str:
        return record.params.get("image") or MINIO_IMAGE

    def primary_port(self, record: ResourceRecord) -> int:
        return S3_PORT

    def aux_port(self, record: ResourceRecord) -> int:
        return CONSOLE_PORT

    def data_mount(self, record: ResourceRecord) -> str:
        return "/data"

    def command(self, record: ResourceRecord) -> List[str]:
        return ["server", "/data", "--console-address", f":{CONSOLE_PORT}"]

    def mem_limit(self, record: ResourceRecord, settings: ServerConfig) -> str:
        return "512m"

    def cpu_limit(self, record: ResourceRecord, settings: ServerConfig) -> str:
        return "0.5"

    def build_environment(self, record: ResourceRecord, settings: ServerConfig) -> Dict[str, str]:
        env = {
            "MINIO_ROOT_USER": record.params.get("access_key", ""),
            "MINIO_ROOT_PASSWORD": record.params.get("secret_key", ""),
        }
        if record.params.get("region"):
            env["MINIO_REGION"] = record.params["region"]
        return env

    def readiness_policy(self, record: ResourceRecord, settings: ServerConfig) -> ReadinessPolicy:
        # Older releases print "Console:", newer ones "WebUI:".
        return self.make_policy(
            settings,
            primary_service_markers=("API:", "S3-API:"),
            control_channel_markers=("Console:", "WebUI:"),
            base_budget_checks=30,
            extended_budget_checks=30,
        )
