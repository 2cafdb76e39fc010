"""FastAPI application factory and main app.

The HTTP API is read-only: it reports configuration, attached devices,
the identity gate verdict and run history. Flashing and media selection
stay on the operator's terminal because they need typed confirmations.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tinderbox import __version__
from tinderbox.db import open_history
from web.routers import config, devices, health, runs


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Opens the run history (creating its tables) on startup.
    """
    app.state.session_factory = open_history()
    yield


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="Tinderbox Provisioning API",
        description="Read-only status API for Jetson module provisioning: "
        "devices, identity gate and run history",
        version=__version__,
        lifespan=lifespan,
    )

    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(devices.router, prefix="/devices", tags=["devices"])
    application.include_router(runs.router, prefix="/runs", tags=["runs"])

    return application


app = create_app()
