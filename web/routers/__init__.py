"""Router modules for the status API."""

from web.routers import config, devices, health, runs

__all__ = ["config", "devices", "health", "runs"]
