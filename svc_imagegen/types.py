"""Shared type definitions for svc_imagegen.

This module contains dataclasses, enums, and type aliases shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum


class BuildStatus(str, Enum):
    """Status of a build operation."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PipelineState(str, Enum):
    """State of a single pipeline run.

    SOURCE_READY -> BUILDING -> {BUILD_FAILED | ARTIFACT_READY}
    ARTIFACT_READY -> PACKAGING -> {PACKAGE_FAILED | IMAGE_READY}
    """

    SOURCE_READY = "source_ready"
    BUILDING = "building"
    BUILD_FAILED = "build_failed"
    ARTIFACT_READY = "artifact_ready"
    PACKAGING = "packaging"
    PACKAGE_FAILED = "package_failed"
    IMAGE_READY = "image_ready"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is allowed from this state."""
        return self in TERMINAL_STATES

    def can_transition_to(self, target: "PipelineState") -> bool:
        """Check whether moving to ``target`` is a legal transition."""
        return target in PIPELINE_TRANSITIONS.get(self, frozenset())


PIPELINE_TRANSITIONS: dict[PipelineState, frozenset[PipelineState]] = {
    PipelineState.SOURCE_READY: frozenset({PipelineState.BUILDING}),
    PipelineState.BUILDING: frozenset(
        {PipelineState.BUILD_FAILED, PipelineState.ARTIFACT_READY}
    ),
    PipelineState.ARTIFACT_READY: frozenset({PipelineState.PACKAGING}),
    PipelineState.PACKAGING: frozenset(
        {PipelineState.PACKAGE_FAILED, PipelineState.IMAGE_READY}
    ),
}

TERMINAL_STATES = frozenset(
    {
        PipelineState.BUILD_FAILED,
        PipelineState.PACKAGE_FAILED,
        PipelineState.IMAGE_READY,
    }
)


class FindingSeverity(str, Enum):
    """Severity of a manifest or image check finding."""

    ERROR = "error"
    WARNING = "warning"


@dataclass
class Finding:
    """A single problem reported by a manifest or image check."""

    code: str
    message: str
    severity: FindingSeverity = FindingSeverity.ERROR
    line: int | None = None
    source: str | None = None


@dataclass
class ArtifactInfo:
    """Information about the executable found in a runtime image."""

    filename: str
    path_in_image: str
    size_bytes: int
    sha256: str
    kind: str = "executable"
    mode: int | None = None


__all__ = [
    "ArtifactInfo",
    "BuildStatus",
    "Finding",
    "FindingSeverity",
    "PIPELINE_TRANSITIONS",
    "PipelineState",
    "TERMINAL_STATES",
]
