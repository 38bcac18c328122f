"""Effective configuration endpoint."""

from typing import Any

from fastapi import APIRouter

from svc_imagegen.config import get_settings

router = APIRouter()


@router.get("")
def get_config() -> dict[str, Any]:
    """Return the settings the server runs with, paths as strings."""
    settings = get_settings()
    data = settings.model_dump(mode="json")
    data["lock_dir"] = str(settings.lock_dir)
    return data
