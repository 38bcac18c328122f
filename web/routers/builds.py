"""Build record endpoints.

- GET /builds - List builds
- GET /builds/{id} - Get build by ID
- GET /builds/{id}/artifacts - Get the artifact found in a build's image

Builds are started from the CLI; the HTTP surface is read-only.
"""

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from sqlalchemy.orm import Session

from svc_imagegen.builds.service import (
    BuildNotFoundError,
    artifact_to_dict,
    build_to_dict,
    get_build,
    get_build_artifacts,
    list_builds,
)
from svc_imagegen.types import BuildStatus
from web.deps import get_db

router = APIRouter()


def _not_found(build_id: int) -> HTTPException:
    return HTTPException(
        status_code=http_status.HTTP_404_NOT_FOUND,
        detail={
            "code": "build_not_found",
            "message": f"Build not found: {build_id}",
        },
    )


@router.get("")
def list_builds_endpoint(
    pipeline: str | None = Query(None, description="Filter by pipeline ID"),
    status: str | None = Query(None, description="Filter by status"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List build records, newest first.

    Args:
        pipeline: Filter by pipeline ID.
        status: Filter by status.
        limit: Maximum results.
        db: Database session.

    Returns:
        List of build records.
    """
    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            valid = ", ".join(s.value for s in BuildStatus)
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_status",
                    "message": f"Invalid status: {status}. Valid values: {valid}",
                },
            ) from None

    builds = list_builds(db, pipeline_id=pipeline, status=status_filter, limit=limit)
    return [build_to_dict(b) for b in builds]


@router.get("/{build_id}")
def get_build_endpoint(
    build_id: int,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a build record by ID.

    Raises:
        HTTPException: If build not found.
    """
    try:
        build = get_build(db, build_id)
    except BuildNotFoundError:
        raise _not_found(build_id) from None
    return build_to_dict(build)


@router.get("/{build_id}/artifacts")
def get_build_artifacts_endpoint(
    build_id: int,
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """Get artifacts recorded for a build.

    Raises:
        HTTPException: If build not found.
    """
    try:
        artifacts = get_build_artifacts(db, build_id)
    except BuildNotFoundError:
        raise _not_found(build_id) from None
    return [artifact_to_dict(a) for a in artifacts]
