"""Health check endpoints."""

from fastapi import APIRouter

from svc_imagegen import __version__

router = APIRouter()


@router.get("/health")
def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok", "version": __version__}


@router.get("/")
def root() -> dict[str, str]:
    """Return API name and version."""
    return {"name": "Service Image Pipeline API", "version": __version__}
