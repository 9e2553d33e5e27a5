import pytest

from em_server.app.errors import InvalidResourceSpec
from em_server.app.kinds import KindRegistry
from em_server.app.kinds.database import ENGINES
from em_server.app.models import ResourceKind, ResourceRecord, StopPolicy


def _rec(kind: str, **params) -> ResourceRecord:
    return ResourceRecord(id="r1", kind=kind, params=params)


@pytest.fixture
def kinds() -> KindRegistry:
    return KindRegistry()


@pytest.mark.unit
def test_registry_covers_every_kind(kinds):
    assert kinds.kinds() == sorted(ResourceKind, key=lambda k: k.value)
    assert kinds.get("database").kind is ResourceKind.database
    empty = KindRegistry(profiles=[])
    with pytest.raises(LookupError):
        empty.get(ResourceKind.workspace)


@pytest.mark.unit
def test_stop_policies(kinds):
    assert kinds.get("workspace").stop_policy is StopPolicy.REMOVE
    assert kinds.get("agent").stop_policy is StopPolicy.REMOVE
    assert kinds.get("deployment").stop_policy is StopPolicy.REMOVE
    assert kinds.get("database").stop_policy is StopPolicy.KEEP
    assert kinds.get("bucket").stop_policy is StopPolicy.KEEP


@pytest.mark.unit
def test_workspace_profile(kinds, settings):
    ws = kinds.get("workspace")
    rec = _rec("workspace", github_repo="org/repo", image="custom:1")
    assert ws.image(rec, settings) == "custom:1"
    assert ws.image(_rec("workspace"), settings) == settings.workspace_image
    assert (ws.primary_port(rec), ws.aux_port(rec)) == (8080, 3001)
    env = ws.build_environment(rec, settings)
    assert env["WORKSPACE_ID"] == "r1" and env["GITHUB_REPO"] == "org/repo"
    policy = ws.readiness_policy(rec, settings)
    assert policy.control_channel_markers and policy.primary_service_markers
    assert (policy.base_budget_checks, policy.extended_budget_checks) == (40, 220)
    assert policy.status_poll_interval_s == settings.status_poll_seconds


@pytest.mark.unit
def test_agent_profile_has_bridge_as_primary(kinds, settings):
    agent = kinds.get("agent")
    rec = _rec("agent", task="fix the bug")
    assert agent.primary_port(rec) == 3001
    assert agent.aux_port(rec) is None
    env = agent.build_environment(rec, settings)
    assert env["AGENT_MODE"] == "autonomous" and env["AGENT_TASK"] == "fix the bug"


@pytest.mark.unit
def test_deployment_profile(kinds, settings):
    dep = kinds.get("deployment")
    with pytest.raises(InvalidResourceSpec):
        dep.validate(_rec("deployment"), settings)
    with pytest.raises(InvalidResourceSpec):
        dep.validate(_rec("deployment", start_command="npm start", port="abc"), settings)

    rec = _rec("deployment", start_command="npm start", build_command="npm ci", port="8000", workspace_id="ws1", working_dir="app")
    dep.validate(rec, settings)
    assert dep.primary_port(rec) == 8000
    assert dep.command(rec) == ["/bin/bash", "-lc", "npm ci && npm start"]
    assert dep.working_dir(rec) == "/workspace/app"
    assert dep.extra_volumes(rec, settings) == {"em-workspace-ws1-data": "/workspace"}
    assert dep.build_environment(rec, settings)["PORT"] == "8000"
    assert dep.readiness_policy(rec, settings).probe_command == ("bash", "-c", "exec 3<>/dev/tcp/127.0.0.1/8000")

    with pytest.raises(InvalidResourceSpec):
        dep.working_dir(_rec("deployment", start_command="x", working_dir="../etc"))


@pytest.mark.unit
@pytest.mark.parametrize("engine", sorted(ENGINES))
def test_database_engines(kinds, settings, engine):
    db = kinds.get("database")
    rec = _rec("database", engine=engine, password="pw-123456")
    db.validate(rec, settings)
    spec = ENGINES[engine]
    assert db.image(rec, settings) == f"{spec.image}:{spec.default_version}"
    assert db.primary_port(rec) == spec.port
    assert db.data_mount(rec) == spec.data_dir
    assert db.readiness_policy(rec, settings).primary_service_markers == spec.ready_markers


@pytest.mark.unit
def test_database_validation_and_redis_command(kinds, settings):
    db = kinds.get("database")
    with pytest.raises(InvalidResourceSpec):
        db.validate(_rec("database", engine="postgres"), settings)
    with pytest.raises(InvalidResourceSpec):
        db.validate(_rec("database", engine="sqlite", password="x"), settings)
    redis = _rec("database", engine="redis", password="pw", version="7.2")
    assert db.image(redis, settings) == "redis:7.2"
    assert db.command(redis)[-2:] == ["--requirepass", "pw"]
    assert db.build_environment(_rec("database", engine="postgres", password="pw"), settings)["POSTGRES_PASSWORD"] == "pw"


@pytest.mark.unit
def test_bucket_profile(kinds, settings):
    bucket = kinds.get("bucket")
    with pytest.raises(InvalidResourceSpec):
        bucket.validate(_rec("bucket", access_key="ak", secret_key="short"), settings)
    rec = _rec("bucket", access_key="ak", secret_key="long-enough-secret")
    bucket.validate(rec, settings)
    assert (bucket.primary_port(rec), bucket.aux_port(rec)) == (9000, 9001)
    assert bucket.build_environment(rec, settings)["MINIO_ROOT_USER"] == "ak"
    assert bucket.readiness_policy(rec, settings).base_budget_checks == 30
