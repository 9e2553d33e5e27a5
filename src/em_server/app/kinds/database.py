"""
Managed databases (postgres, mysql, mongodb, redis).

Databases keep their container on stop so a restart is quick and the data
directory is never re-initialised.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from em_server.app.config import ServerConfig
from em_server.app.errors import InvalidResourceSpec
from em_server.app.lifecycle.readiness import ReadinessPolicy
from em_server.app.models import ResourceKind, ResourceRecord, StopPolicy
from em_server.app.kinds.base import KindProfile


@dataclass(frozen=True)
class Engine:
    image: str
    default_version: str
    port: int
    data_dir: str
    ready_markers: Tuple[str, ...]
    mem_limit: str = "512m"


ENGINES: Dict[str, Engine] = {
    "postgres": Engine(
        image="postgres",
        default_version="16-alpine",
        port=5432,
        data_dir="/var/lib/postgresql/data",
        ready_markers=("database system is ready to accept connections",),
    ),
    "mysql": Engine(
        image="mysql",
        default_version="8.0",
        port=3306,
        data_dir="/var/lib/mysql",
        ready_markers=("port: 3306",),  # the init-time server reports port: 0
    ),
    "mongodb": Engine(
        image="mongo",
        default_version="7.0",
        port=27017,
        data_dir="/data/db",
        ready_markers=("Waiting for connections",),
    ),
    "redis": Engine(
        image="redis",
        default_version="7-alpine",
        port=6379,
        data_dir="/data",
        ready_markers=("Ready to accept connections",),
        mem_limit="256m",
    ),
}


class DatabaseProfile(KindProfile):
    kind = ResourceKind.database
    stop_policy = StopPolicy.KEEP

    def engine(self, record: ResourceRecord) -> Engine:
        name = self.require_param(record, "engine").lower()
        try:
            return ENGINES[name]
        except KeyError:
            raise InvalidResourceSpec(
                f"Unsupported database engine '{name}' (expected one of: {', '.join(sorted(ENGINES))})",
                resource_id=record.id,
            )

    def validate(self, record: ResourceRecord, settings: ServerConfig) -> None:
        self.engine(record)
        self.require_param(record, "password")

    def image(self, record: ResourceRecord, settings: ServerConfig) -> str:
        eng = self.engine(record)
        return f"{eng.image}:{record.params.get('version') or eng.default_version}"

    def primary_port(self, record: ResourceRecord) -> int:
        return self.engine(record).port

    def data_mount(self, record: ResourceRecord) -> str:
        return self.engine(record).data_dir

    def mem_limit(self, record: ResourceRecord, settings: ServerConfig) -> str:
        return self.engine(record).mem_limit

    def cpu_limit(self, record: ResourceRecord, settings: ServerConfig) -> str:
        return "0.5"

    def command(self, record: ResourceRecord) -> Optional[List[str]]:
        if record.params.get("engine", "").lower() == "redis":
            return ["redis-server", "--appendonly", "yes", "--requirepass", record.params.get("password", "")]
        return None

    def build_environment(self, record: ResourceRecord, settings: ServerConfig) -> Dict[str, str]:
        name = record.params.get("engine", "").lower()
        user = record.params.get("username") or "admin"
        password = record.params.get("password", "")
        database = record.params.get("database") or "app"
        if name == "postgres":
            return {"POSTGRES_USER": user, "POSTGRES_PASSWORD": password, "POSTGRES_DB": database}
        if name == "mysql":
            return {
                "MYSQL_ROOT_PASSWORD": password,
                "MYSQL_USER": user,
                "MYSQL_PASSWORD": password,
                "MYSQL_DATABASE": database,
            }
        if name == "mongodb":
            return {
                "MONGO_INITDB_ROOT_USERNAME": user,
                "MONGO_INITDB_ROOT_PASSWORD": password,
                "MONGO_INITDB_DATABASE": database,
            }
        return {}

    def readiness_policy(self, record: ResourceRecord, settings: ServerConfig) -> ReadinessPolicy:
        return self.make_policy(
            settings,
            primary_service_markers=self.engine(record).ready_markers,
            base_budget_checks=60,
            extended_budget_checks=60,
        )
