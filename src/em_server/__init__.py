"""EnvironmentManager: container lifecycle and readiness orchestration."""

__version__ = "0.1.0"
