"""Dockerfile rendering for pipeline definitions.

Renders one multi-stage Dockerfile per pipeline:

- An ``ARG TOOLCHAIN_VERSION`` declared before the first ``FROM`` is the
  single place the toolchain version lives. Alternative versions are built
  by overriding the build argument, never by keeping a second manifest.
- The ``builder`` stage copies the whole source tree and runs the release
  build command.
- The ``runtime`` stage copies exactly one file (the artifact) from the
  builder stage and declares an exec-form ``CMD`` so the executable runs
  as process 1 with no wrapping shell.
"""

from __future__ import annotations

import hashlib
import json
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from svc_imagegen.pipelines.schema import PipelineSchema

TOOLCHAIN_ARG = "TOOLCHAIN_VERSION"
BUILDER_STAGE = "builder"
RUNTIME_STAGE = "runtime"


def _exec_form(args: list[str]) -> str:
    return json.dumps(args)


def compose_build_args(
    pipeline: PipelineSchema,
    toolchain_version: str | None = None,
) -> dict[str, str]:
    """Compose the build arguments passed to the container build tool.

    Args:
        pipeline: Pipeline definition.
        toolchain_version: Optional override of the pinned version.

    Returns:
        Mapping of build argument name to value.
    """
    return {TOOLCHAIN_ARG: toolchain_version or pipeline.builder.toolchain_version}


def render_builder_stage(pipeline: PipelineSchema) -> list[str]:
    """Render the builder stage instructions."""
    builder = pipeline.builder
    return [
        f"FROM {builder.image}:${{{TOOLCHAIN_ARG}}} AS {BUILDER_STAGE}",
        f"WORKDIR {builder.workdir}",
        "COPY . .",
        f"RUN {_exec_form(builder.build_command)}",
    ]


def render_runtime_stage(pipeline: PipelineSchema) -> list[str]:
    """Render the runtime stage instructions."""
    lines = [
        f"FROM {pipeline.runtime_base} AS {RUNTIME_STAGE}",
        f"WORKDIR {pipeline.runtime.workdir}",
        f"COPY --from={BUILDER_STAGE} {pipeline.artifact_build_path} "
        f"{pipeline.artifact_runtime_path}",
    ]
    if pipeline.expose:
        lines.append("EXPOSE " + " ".join(str(p) for p in pipeline.expose))
    lines.append(f"CMD {_exec_form(pipeline.entry_command)}")
    return lines


def render_dockerfile(
    pipeline: PipelineSchema,
    toolchain_version: str | None = None,
) -> str:
    """Render the complete two-stage Dockerfile for a pipeline.

    Args:
        pipeline: Pipeline definition.
        toolchain_version: Optional override for the ARG default value.

    Returns:
        Dockerfile text ending with a newline.
    """
    version = toolchain_version or pipeline.builder.toolchain_version
    lines = [
        f"# Generated by svc-imagegen for pipeline {pipeline.pipeline_id}",
        f"ARG {TOOLCHAIN_ARG}={version}",
        "",
        *render_builder_stage(pipeline),
        "",
        *render_runtime_stage(pipeline),
    ]
    return "\n".join(lines) + "\n"


def dockerfile_hash(content: str) -> str:
    """Return the SHA-256 hex digest of rendered Dockerfile content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


__all__ = [
    "BUILDER_STAGE",
    "RUNTIME_STAGE",
    "TOOLCHAIN_ARG",
    "compose_build_args",
    "dockerfile_hash",
    "render_builder_stage",
    "render_dockerfile",
    "render_runtime_stage",
]
