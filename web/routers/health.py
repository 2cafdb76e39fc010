"""Health check endpoints."""

from fastapi import APIRouter

from tinderbox import __version__

router = APIRouter()


@router.get("/health")
def health() -> dict[str, str]:
    """Liveness probe with the running version."""
    return {"status": "ok", "version": __version__}


@router.get("/")
def root() -> dict[str, str]:
    """API name and version."""
    return {"name": "Tinderbox Provisioning API", "version": __version__}
