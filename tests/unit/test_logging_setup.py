import logging
from pathlib import Path

import pytest

from em_server.app.logging_setup import LogSettings, resolve_log_path, setup_logging


@pytest.mark.unit
def test_log_settings_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("EM_LOG_DIR", str(tmp_path))
    monkeypatch.setenv("EM_LOG_LEVEL", "debug")
    monkeypatch.setenv("EM_LOG_BACKUP_COUNT", "3")
    monkeypatch.delenv("EM_LOG_FILE", raising=False)
    monkeypatch.delenv("EM_LOG_NAME", raising=False)
    cfg = LogSettings.from_env("svc")
    assert cfg.level == logging.DEBUG
    assert cfg.backup_count == 3
    assert resolve_log_path(cfg) == tmp_path / "svc.log"


@pytest.mark.unit
def test_unwritable_location_falls_through(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x")
    cfg = LogSettings(level=logging.INFO, file_name="svc.log", explicit_file=blocker / "svc.log", directory=tmp_path)
    assert resolve_log_path(cfg) == tmp_path / "svc.log"


@pytest.mark.unit
def test_setup_logging_does_not_duplicate_file_handler(tmp_path):
    cfg = LogSettings(level=logging.INFO, file_name="dup.log", directory=tmp_path)
    root = logging.getLogger()
    before = list(root.handlers)
    try:
        path = setup_logging(cfg, console=False)
        setup_logging(cfg, console=False)
        matching = [h for h in root.handlers if getattr(h, "baseFilename", None) and Path(h.baseFilename).resolve() == path.resolve()]
        assert len(matching) == 1
    finally:
        for h in root.handlers[:]:
            if h not in before:
                root.removeHandler(h)
                h.close()
