"""Manifest analysis for two-stage build pipelines.

This module handles:
- Checking a Dockerfile against the two-stage pipeline shape
  (pinned bases, single artifact copy, exec-form entry command)
- Detecting toolchain version drift between alternative manifests
- Importing an existing manifest as a pipeline definition
"""

from __future__ import annotations

import logging
import posixpath
import re
from dataclasses import dataclass, field
from typing import Any

from svc_imagegen.manifests.parser import (
    Instruction,
    Manifest,
    Stage,
    stage_arg_values,
    substitute_args,
)
from svc_imagegen.pipelines.schema import TOOLCHAIN_VERSION_PATTERN, PipelineSchema
from svc_imagegen.types import Finding, FindingSeverity

logger = logging.getLogger(__name__)

# Instructions that introduce runtime configuration or extra layers
RUNTIME_CONFIG_KEYWORDS = ("ENV", "VOLUME", "ENTRYPOINT")
# Characters that make a shell-form RUN depend on the shell
SHELL_SYNTAX_PATTERN = re.compile(r"[;&|<>$`*?(){}\\]")


def _error(manifest: Manifest, code: str, message: str, line: int | None) -> Finding:
    return Finding(
        code=code,
        message=message,
        severity=FindingSeverity.ERROR,
        line=line,
        source=manifest.source,
    )


def _warning(
    manifest: Manifest, code: str, message: str, line: int | None
) -> Finding:
    return Finding(
        code=code,
        message=message,
        severity=FindingSeverity.WARNING,
        line=line,
        source=manifest.source,
    )


def _check_base_pinned(manifest: Manifest, stage: Stage) -> list[Finding]:
    # Stage-to-stage FROM (e.g. FROM builder) carries no tag of its own
    if manifest.stage(stage.base.name) is not None and stage.base.tag is None:
        return []
    if stage.base.is_pinned:
        return []
    return [
        _error(
            manifest,
            "unpinned_base_image",
            f"base image '{stage.raw_base}' is not pinned to a version tag",
            stage.line,
        )
    ]


def check_manifest(manifest: Manifest) -> list[Finding]:
    """Check a Dockerfile against the two-stage pipeline shape.

    Args:
        manifest: Parsed Dockerfile.

    Returns:
        List of findings; empty when the manifest is clean.
    """
    findings: list[Finding] = []

    for stage in manifest.stages:
        findings.extend(_check_base_pinned(manifest, stage))

    if len(manifest.stages) < 2:
        findings.append(
            _error(
                manifest,
                "single_stage",
                "manifest has a single stage; the toolchain would ship in the image",
                manifest.stages[0].line if manifest.stages else None,
            )
        )
        return findings

    runtime = manifest.stages[-1]

    copies = runtime.find("COPY") + runtime.find("ADD")
    stage_copies = [c for c in copies if "from" in c.flags]
    for copy in copies:
        if "from" not in copy.flags:
            findings.append(
                _error(
                    manifest,
                    "runtime_copies_source",
                    "runtime stage copies files from the build context",
                    copy.line,
                )
            )
            continue
        source_stage = manifest.stage(copy.flags["from"])
        if source_stage is None or source_stage.index >= runtime.index:
            findings.append(
                _error(
                    manifest,
                    "unknown_copy_stage",
                    f"COPY --from references unknown stage '{copy.flags['from']}'",
                    copy.line,
                )
            )
        if len(copy.args) != 2:
            findings.append(
                _error(
                    manifest,
                    "multiple_copy_sources",
                    "artifact COPY must name exactly one source and one destination",
                    copy.line,
                )
            )
    if len(stage_copies) != 1:
        findings.append(
            _error(
                manifest,
                "artifact_copy_count",
                "runtime stage must copy exactly one artifact, "
                f"found {len(stage_copies)}",
                runtime.line,
            )
        )

    for run in runtime.find("RUN"):
        findings.append(
            _warning(
                manifest,
                "runtime_run",
                "runtime stage runs commands; it should only place the artifact",
                run.line,
            )
        )
    for keyword in RUNTIME_CONFIG_KEYWORDS:
        for instruction in runtime.find(keyword):
            findings.append(
                _warning(
                    manifest,
                    f"runtime_{keyword.lower()}",
                    f"runtime stage declares {keyword}",
                    instruction.line,
                )
            )

    cmds = runtime.find("CMD")
    if not cmds:
        findings.append(
            _error(manifest, "missing_cmd", "runtime stage has no CMD", runtime.line)
        )
    else:
        cmd = cmds[-1]
        if not cmd.exec_form:
            findings.append(
                _error(
                    manifest,
                    "shell_form_cmd",
                    "CMD uses shell form; the executable would run under /bin/sh",
                    cmd.line,
                )
            )
        elif stage_copies and len(stage_copies[0].args) == 2 and cmd.args:
            artifact_src, artifact_dest = stage_copies[0].args
            workdirs = runtime.find("WORKDIR")
            workdir = workdirs[-1].value if workdirs else "/"
            if artifact_dest.endswith("/"):
                artifact_dest += posixpath.basename(artifact_src)
            target = posixpath.normpath(posixpath.join(workdir, cmd.args[0]))
            if target != posixpath.normpath(posixpath.join(workdir, artifact_dest)):
                findings.append(
                    _error(
                        manifest,
                        "cmd_artifact_mismatch",
                        f"CMD runs '{cmd.args[0]}' but the artifact is copied "
                        f"to '{artifact_dest}'",
                        cmd.line,
                    )
                )

    return findings


@dataclass
class DriftReport:
    """Toolchain drift between alternative manifests of one pipeline."""

    builder_images: dict[str, str] = field(default_factory=dict)
    runtime_images: dict[str, str] = field(default_factory=dict)

    @property
    def toolchain_versions(self) -> set[str]:
        """Distinct builder base image references."""
        return set(self.builder_images.values())

    @property
    def has_drift(self) -> bool:
        """Whether the manifests disagree on any base image."""
        return (
            len(set(self.builder_images.values())) > 1
            or len(set(self.runtime_images.values())) > 1
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "has_drift": self.has_drift,
            "builder_images": self.builder_images,
            "runtime_images": self.runtime_images,
        }


def detect_drift(manifests: list[Manifest]) -> DriftReport:
    """Compare base images across alternative manifests.

    The first stage of each manifest is treated as the builder stage and
    the last as the runtime stage.

    Args:
        manifests: Parsed manifests describing the same pipeline.

    Returns:
        DriftReport keyed by manifest source.
    """
    report = DriftReport()
    for manifest in manifests:
        builder, runtime = manifest.stages[0], manifest.stages[-1]
        report.builder_images[manifest.source] = str(builder.base)
        report.runtime_images[manifest.source] = str(runtime.base)

    if report.has_drift:
        logger.warning(
            "Manifests disagree on base images: builders=%s runtimes=%s",
            sorted(set(report.builder_images.values())),
            sorted(set(report.runtime_images.values())),
        )
    return report


class ManifestImportError(ValueError):
    """Raised when a manifest cannot be expressed as a pipeline."""

    def __init__(self, message: str, code: str = "manifest_import_error") -> None:
        super().__init__(message)
        self.code = code


def manifest_to_pipeline_data(
    manifest: Manifest,
    pipeline_id: str,
    image_repository: str,
    toolchain_version: str | None = None,
) -> dict[str, Any]:
    """Translate a two-stage manifest into pipeline definition data.

    Args:
        manifest: Parsed two-stage Dockerfile.
        pipeline_id: Identifier for the new pipeline.
        image_repository: Repository for produced image tags.
        toolchain_version: Pin to use instead of the manifest's builder tag.

    Returns:
        Dict suitable for ``PipelineSchema.model_validate``.

    Raises:
        ManifestImportError: If the manifest cannot be expressed as a pipeline.
    """
    if len(manifest.stages) != 2:
        raise ManifestImportError(
            f"expected exactly two stages, found {len(manifest.stages)}"
        )
    builder, runtime = manifest.stages

    copies = [c for c in runtime.find("COPY") if "from" in c.flags]
    if len(copies) != 1 or len(copies[0].args) != 2:
        raise ManifestImportError("runtime stage must copy exactly one artifact")
    copy = copies[0]
    source_path, dest_path = copy.args

    builder_workdirs = builder.find("WORKDIR")
    builder_workdir = builder_workdirs[-1].value if builder_workdirs else "/"
    runtime_workdirs = runtime.find("WORKDIR")
    runtime_workdir = runtime_workdirs[-1].value if runtime_workdirs else "/"

    source_path = posixpath.join(builder_workdir, source_path)
    artifact_name = posixpath.basename(source_path)
    release_dir = posixpath.relpath(posixpath.dirname(source_path), builder_workdir)
    if release_dir.startswith(".."):
        raise ManifestImportError(
            f"artifact '{source_path}' is outside builder workdir '{builder_workdir}'"
        )
    if dest_path.endswith("/"):
        dest_path = posixpath.join(dest_path, artifact_name)
    dest_path = posixpath.normpath(posixpath.join(runtime_workdir, dest_path))
    if posixpath.basename(dest_path) != artifact_name:
        raise ManifestImportError("artifact is renamed while copying")
    if posixpath.dirname(dest_path) != posixpath.normpath(runtime_workdir):
        raise ManifestImportError(
            f"artifact is copied to '{dest_path}', outside runtime workdir"
        )

    runs = builder.find("RUN")
    if not runs:
        raise ManifestImportError("builder stage has no RUN build command")
    if len(runs) > 1:
        lines = ", ".join(str(run.line) for run in runs)
        raise ManifestImportError(
            f"builder stage has {len(runs)} RUN instructions (lines {lines}); "
            "merge them into a single build command"
        )
    build_command = _build_command(runs[0])

    cmds = runtime.find("CMD")
    entry_args = cmds[-1].args[1:] if cmds and cmds[-1].exec_form else []

    version = toolchain_version or builder.base.tag
    if not version:
        raise ManifestImportError(
            "builder image has no tag; pass an explicit toolchain version"
        )
    if not toolchain_version and not TOOLCHAIN_VERSION_PATTERN.match(version):
        raise ManifestImportError(
            f"builder tag '{version}' is not an exact release; "
            "pass an explicit toolchain version such as '1.83.0'",
            code="floating_toolchain_tag",
        )

    data: dict[str, Any] = {
        "pipeline_id": pipeline_id,
        "artifact_name": artifact_name,
        "image_repository": image_repository,
        "builder": {
            "image": builder.base.name,
            "toolchain_version": version,
            "workdir": builder_workdir,
            "build_command": build_command,
            "release_dir": release_dir,
        },
        "runtime": {
            "image": runtime.base.name,
            "tag": runtime.base.tag or "latest",
            "workdir": runtime_workdir,
            "entry_args": entry_args,
        },
    }

    exposed = _exposed_ports(manifest, runtime)
    if exposed:
        data["expose"] = exposed
    return data


def _build_command(run: Instruction) -> list[str]:
    if run.exec_form:
        return run.args
    # Shell syntax only keeps its meaning under /bin/sh -c
    if SHELL_SYNTAX_PATTERN.search(run.value):
        return ["/bin/sh", "-c", run.value]
    return run.args


def _exposed_ports(manifest: Manifest, runtime: Stage) -> list[int]:
    values = stage_arg_values(manifest, runtime)
    ports: list[int] = []
    for instruction in runtime.find("EXPOSE"):
        for arg in instruction.args:
            port = substitute_args(arg, values).split("/")[0]
            if not port.isdigit():
                raise ManifestImportError(
                    f"EXPOSE {arg} on line {instruction.line} does not resolve "
                    "to a single port number",
                    code="unresolved_port",
                )
            ports.append(int(port))
    return ports


def manifest_to_pipeline(
    manifest: Manifest,
    pipeline_id: str,
    image_repository: str,
    toolchain_version: str | None = None,
) -> PipelineSchema:
    """Import a manifest as a validated pipeline definition.

    Raises:
        ManifestImportError: If the manifest is not a two-stage pipeline.
        pydantic.ValidationError: If the derived definition is invalid
            (for example an unpinned runtime base image).
    """
    data = manifest_to_pipeline_data(
        manifest, pipeline_id, image_repository, toolchain_version
    )
    return PipelineSchema.model_validate(data)


def has_errors(findings: list[Finding]) -> bool:
    """Whether any finding is an error."""
    return any(f.severity == FindingSeverity.ERROR for f in findings)


__all__ = [
    "DriftReport",
    "ManifestImportError",
    "check_manifest",
    "detect_drift",
    "has_errors",
    "manifest_to_pipeline",
    "manifest_to_pipeline_data",
]
