"""Cache key computation for builds.

This module handles:
- Canonical input snapshot creation from pipelines and options
- Deterministic hash computation over normalized inputs

For a fixed source tree and toolchain version the inputs (and so the key)
are identical, which is what makes a previous successful build reusable.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from typing import Any

from svc_imagegen.pipelines.schema import PipelineSchema

# Schema version for cache key format; bump when cache key format changes
CACHE_KEY_SCHEMA_VERSION = "1"


@dataclass
class BuildInputs:
    """Canonical representation of all build inputs.

    Attributes:
        schema_version: Version of cache key schema.
        pipeline_snapshot: Normalized pipeline data.
        toolchain_image: Builder base image reference (with version).
        runtime_image: Runtime base image reference.
        source_hash: Hash of the staged source tree.
        dockerfile_hash: Hash of the rendered Dockerfile.
        build_options: Additional build options.
    """

    schema_version: str = CACHE_KEY_SCHEMA_VERSION
    pipeline_snapshot: dict[str, Any] = field(default_factory=dict)
    toolchain_image: str = ""
    runtime_image: str = ""
    source_hash: str = ""
    dockerfile_hash: str = ""
    build_options: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def normalize_pipeline_snapshot(pipeline: PipelineSchema) -> dict[str, Any]:
    """Create normalized pipeline snapshot for cache key.

    Only fields that affect the produced image are included; descriptive
    fields such as ``description`` are left out.

    Args:
        pipeline: PipelineSchema instance.

    Returns:
        Dictionary with normalized pipeline data.
    """
    snapshot: dict[str, Any] = {
        "pipeline_id": pipeline.pipeline_id,
        "artifact_name": pipeline.artifact_name,
        "builder": {
            "image": pipeline.builder.image,
            "workdir": pipeline.builder.workdir,
            "build_command": list(pipeline.builder.build_command),
            "release_dir": pipeline.builder.release_dir,
        },
        "runtime": {
            "image": pipeline.runtime.image,
            "tag": pipeline.runtime.tag,
            "workdir": pipeline.runtime.workdir,
            "entry_args": list(pipeline.runtime.entry_args),
        },
        "context_excludes": sorted(pipeline.context_excludes),
    }
    if pipeline.expose:
        snapshot["expose"] = sorted(pipeline.expose)
    return snapshot


def create_build_inputs(
    pipeline: PipelineSchema,
    source_hash: str,
    dockerfile_hash: str,
    toolchain_version: str | None = None,
    build_options: dict[str, Any] | None = None,
) -> BuildInputs:
    """Create canonical build inputs from a pipeline and options.

    Args:
        pipeline: PipelineSchema instance.
        source_hash: Hash of the staged source tree.
        dockerfile_hash: Hash of the rendered Dockerfile.
        toolchain_version: Optional override of the pinned version.
        build_options: Additional build options.

    Returns:
        BuildInputs instance with all normalized inputs.
    """
    return BuildInputs(
        schema_version=CACHE_KEY_SCHEMA_VERSION,
        pipeline_snapshot=normalize_pipeline_snapshot(pipeline),
        toolchain_image=pipeline.builder_base(toolchain_version),
        runtime_image=pipeline.runtime_base,
        source_hash=source_hash,
        dockerfile_hash=dockerfile_hash,
        build_options=build_options or {},
    )


def compute_cache_key(inputs: BuildInputs) -> str:
    """Compute a cache key hash from build inputs.

    The cache key is a SHA-256 hash of the canonical JSON representation
    of the build inputs.

    Args:
        inputs: BuildInputs instance.

    Returns:
        Cache key as hex string (sha256:...).
    """
    canonical_json = json.dumps(
        inputs.to_dict(),
        sort_keys=True,
        separators=(",", ":"),
    )
    hash_hex = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"sha256:{hash_hex}"


def compute_cache_key_from_pipeline(
    pipeline: PipelineSchema,
    source_hash: str,
    dockerfile_hash: str,
    toolchain_version: str | None = None,
    build_options: dict[str, Any] | None = None,
) -> tuple[str, BuildInputs]:
    """Convenience function to compute cache key directly from a pipeline.

    Returns:
        Tuple of (cache_key, BuildInputs).
    """
    inputs = create_build_inputs(
        pipeline=pipeline,
        source_hash=source_hash,
        dockerfile_hash=dockerfile_hash,
        toolchain_version=toolchain_version,
        build_options=build_options,
    )
    return compute_cache_key(inputs), inputs


def image_tag_for(pipeline: PipelineSchema, cache_key: str) -> str:
    """Derive the image tag for a build from its cache key.

    Args:
        pipeline: PipelineSchema instance.
        cache_key: Cache key in ``sha256:<hex>`` form.

    Returns:
        ``<image_repository>:<first 12 hex chars>``.
    """
    digest = cache_key.split(":", 1)[-1]
    return f"{pipeline.image_repository}:{digest[:12]}"


__all__ = [
    "CACHE_KEY_SCHEMA_VERSION",
    "BuildInputs",
    "compute_cache_key",
    "compute_cache_key_from_pipeline",
    "create_build_inputs",
    "image_tag_for",
    "normalize_pipeline_snapshot",
]
