"""
FastAPI application package for EnvironmentManager.
"""
