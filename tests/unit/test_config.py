import pytest

from em_server.app.config import (
    ServerConfig,
    build_run_resource_kwargs,
    get_settings,
    parse_cpu_limit_to_nano_cpus,
    parse_mem_limit_to_bytes,
)


@pytest.mark.unit
def test_parse_limits():
    assert parse_mem_limit_to_bytes("512m") == 512 * 1024**2
    assert parse_mem_limit_to_bytes("2g") == 2 * 1024**3
    assert parse_mem_limit_to_bytes("1024") == 1024
    assert parse_mem_limit_to_bytes("lots") is None
    assert parse_cpu_limit_to_nano_cpus("1.5") == 1_500_000_000
    assert parse_cpu_limit_to_nano_cpus("2c") == 2_000_000_000
    assert parse_cpu_limit_to_nano_cpus(None) is None


@pytest.mark.unit
def test_build_run_resource_kwargs():
    assert build_run_resource_kwargs("0.5", "256m", 512) == {
        "nano_cpus": 500_000_000,
        "mem_limit": 256 * 1024**2,
        "cpu_shares": 512,
    }
    assert build_run_resource_kwargs(None, "bogus") == {}


@pytest.mark.unit
def test_from_env_reads_overrides(monkeypatch):
    monkeypatch.setenv("EM_PORT_RANGE_START", "45000")
    monkeypatch.setenv("EM_PORT_RANGE_END", "45100")
    monkeypatch.setenv("EM_API_KEYS", "a, b")
    monkeypatch.setenv("EM_VERIFIED_DOMAINS", "Example.com,dev.io")
    monkeypatch.setenv("EM_PULL_MISSING_IMAGES", "no")
    monkeypatch.setenv("EM_STATUS_POLL_SECONDS", "not-a-number")
    cfg = ServerConfig.from_env(dotenv=False)
    assert (cfg.port_range_start, cfg.port_range_end) == (45000, 45100)
    assert cfg.api_keys == ["a", "b"]
    assert cfg.verified_domains == ["example.com", "dev.io"]
    assert cfg.pull_missing_images is False
    assert cfg.status_poll_seconds == 3.0


@pytest.mark.unit
def test_naming_helpers(settings):
    assert settings.container_name("workspace", "ws1") == "em-workspace-ws1"
    assert settings.volume_name("database", "db1") == "em-database-db1-data"


@pytest.mark.unit
def test_get_settings_is_cached():
    get_settings.cache_clear()
    try:
        assert get_settings() is get_settings()
    finally:
        get_settings.cache_clear()
