"""Explorer proxy service."""

from .app import RemoteEngine, create_app, run_service

__all__ = ["RemoteEngine", "create_app", "run_service"]
