"""
Rotating file logging for EnvironmentManager.

Call initialize_from_env() once at startup, before the FastAPI app is built.
The log file location is the first writable entry of a fallback chain, so a
read-only install directory never keeps the service from starting:

    EM_LOG_FILE, EM_LOG_DIR/<name>, <repo root>/<name>,
    ~/.environment_manager/logs/<name>, <tmp>/environment_manager/logs/<name>

Other knobs: EM_LOG_NAME (default "<service>.log"), EM_LOG_MAX_BYTES (10MB),
EM_LOG_BACKUP_COUNT (10), EM_LOG_LEVEL (falls back to LOG_LEVEL, then INFO).
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, List, Optional

__all__ = [
    "LOGGER_NAME",
    "LogSettings",
    "initialize_from_env",
    "setup_logging",
    "quiet_library_loggers",
]

LOGGER_NAME = "environment_manager"

_FILE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s [pid %(process)d] %(module)s:%(lineno)d | %(message)s"
_CONSOLE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s | %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"

# Libraries that chatter at INFO; they only follow us down when we run at DEBUG.
_LIBRARY_LOGGERS = ("docker", "urllib3", "httpx", "uvicorn", "uvicorn.error", "uvicorn.access", "fastapi")
_ALWAYS_QUIET = ("urllib3.connectionpool", "asyncio", "concurrent.futures")


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    return int(raw) if raw.isdigit() else default


@dataclass(frozen=True)
class LogSettings:
    level: int
    file_name: str
    explicit_file: Optional[Path] = None
    directory: Optional[Path] = None
    max_bytes: int = 10 * 1024 * 1024
    backup_count: int = 10

    @classmethod
    def from_env(cls, service_name: str = LOGGER_NAME) -> "LogSettings":
        level_name = (os.getenv("EM_LOG_LEVEL") or os.getenv("LOG_LEVEL") or "INFO").strip().upper()
        level = logging.getLevelName(level_name)
        explicit = os.getenv("EM_LOG_FILE")
        directory = os.getenv("EM_LOG_DIR")
        return cls(
            level=level if isinstance(level, int) else logging.INFO,
            file_name=(os.getenv("EM_LOG_NAME") or f"{service_name}.log").strip(),
            explicit_file=Path(explicit).expanduser() if explicit else None,
            directory=Path(directory).expanduser() if directory else None,
            max_bytes=max(1, _env_int("EM_LOG_MAX_BYTES", 10 * 1024 * 1024)),
            backup_count=max(1, _env_int("EM_LOG_BACKUP_COUNT", 10)),
        )

    def candidates(self) -> Iterator[Path]:
        if self.explicit_file is not None:
            yield self.explicit_file
        if self.directory is not None:
            yield self.directory / self.file_name
        # src/em_server/app/logging_setup.py -> repository root
        yield Path(__file__).resolve().parents[3] / self.file_name
        yield Path.home() / ".environment_manager" / "logs" / self.file_name
        yield Path(tempfile.gettempdir()) / "environment_manager" / "logs" / self.file_name


def _writable(path: Path) -> Optional[str]:
    """None when `path` can be appended to, else the reason it cannot."""
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a", encoding="utf-8"):
            pass
    except OSError as e:
        return f"{e.__class__.__name__}: {e}"
    return None


def resolve_log_path(settings: LogSettings) -> Path:
    failures: List[str] = []
    for candidate in settings.candidates():
        reason = _writable(candidate)
        if reason is None:
            return candidate
        failures.append(f"{candidate} ({reason})")
    raise RuntimeError("No writable log file location: " + "; ".join(failures))


def quiet_library_loggers(level: int) -> None:
    lib_level = logging.INFO if level <= logging.DEBUG else logging.WARNING
    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(lib_level)
    for name in _ALWAYS_QUIET:
        logging.getLogger(name).setLevel(logging.WARNING)


def _file_handler_for(root: logging.Logger, path: Path) -> Optional[logging.Handler]:
    target = str(path.resolve())
    for handler in root.handlers:
        base = getattr(handler, "baseFilename", None)
        if base and str(Path(base).resolve()) == target:
            return handler
    return None


def setup_logging(settings: LogSettings, *, console: bool = True) -> Path:
    """
    Attach a RotatingFileHandler (DEBUG and up) and optionally a stdout
    handler (at the configured level) to the root logger. Calling it again
    with the same file does not duplicate handlers.

    Returns the log file path; raises RuntimeError when no location is writable.
    """
    log_path = resolve_log_path(settings)
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    if _file_handler_for(root, log_path) is None:
        fh = logging.handlers.RotatingFileHandler(
            log_path, maxBytes=settings.max_bytes, backupCount=settings.backup_count, encoding="utf-8"
        )
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(_FILE_FORMAT, datefmt=_DATEFMT))
        root.addHandler(fh)

    if console and not any(getattr(h, "stream", None) is sys.stdout for h in root.handlers):
        ch = logging.StreamHandler(sys.stdout)
        ch.setLevel(settings.level)
        ch.setFormatter(logging.Formatter(_CONSOLE_FORMAT, datefmt=_DATEFMT))
        root.addHandler(ch)

    logging.getLogger(LOGGER_NAME).setLevel(settings.level)
    quiet_library_loggers(settings.level)
    logging.getLogger(LOGGER_NAME).info(
        "Logging to %s (level=%s, keep=%s)", log_path, logging.getLevelName(settings.level), settings.backup_count
    )
    return log_path


def initialize_from_env(service_name: str = LOGGER_NAME) -> Path:
    return setup_logging(LogSettings.from_env(service_name), console=True)
