"""Lifecycle control, readiness monitoring and caller-facing streams."""
