"""Runtime image inspection and manifest generation.

This module handles:
- Reading the image configuration and checking the entry command
  (exec form, no entrypoint wrapper, expected working directory)
- Inspecting a created container's process command (Path/Args)
- Exporting the runtime filesystem and checking layer minimality
  (exactly one file under the working directory, no toolchain leftovers)
- Computing the artifact checksum and writing an image manifest
"""

from __future__ import annotations

import hashlib
import json
import logging
import posixpath
import subprocess
import tarfile
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import IO, TYPE_CHECKING, Any

from svc_imagegen.types import ArtifactInfo, Finding, FindingSeverity

if TYPE_CHECKING:
    from svc_imagegen.pipelines.schema import PipelineSchema

logger = logging.getLogger(__name__)

# Builder-stage paths that must never reach the runtime image
TOOLCHAIN_PATHS = (
    "usr/local/cargo",
    "usr/local/rustup",
    "root/.cargo",
    "root/.rustup",
)
SHELL_EXECUTABLES = frozenset({"/bin/sh", "sh", "/bin/bash", "bash", "/bin/dash"})
# Files the container runtime adds to every exported filesystem
EXPORT_MARKER_FILES = frozenset({".dockerenv"})
HASH_CHUNK_SIZE = 64 * 1024


class ImageInspectionError(Exception):
    """Raised when an image or container cannot be inspected."""

    def __init__(self, message: str, code: str = "inspect_failed") -> None:
        super().__init__(message)
        self.code = code


def _run_tool(cmd: list[str], timeout: int) -> str:
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
        )
    except subprocess.TimeoutExpired as e:
        raise ImageInspectionError(
            f"{cmd[0]} {cmd[1]} timed out after {timeout}s", code="timeout"
        ) from e
    except subprocess.CalledProcessError as e:
        raise ImageInspectionError(
            f"{' '.join(cmd[:3])} failed: {e.stderr.strip()}"
        ) from e
    except OSError as e:
        raise ImageInspectionError(
            f"Failed to run {cmd[0]}: {e}", code="execution_error"
        ) from e
    return result.stdout


def _load_single(output: str, what: str) -> dict[str, Any]:
    try:
        data = json.loads(output)
    except json.JSONDecodeError as e:
        raise ImageInspectionError(f"Invalid inspect output for {what}: {e}") from e
    if not isinstance(data, list) or len(data) != 1 or not isinstance(data[0], dict):
        raise ImageInspectionError(f"Unexpected inspect output for {what}")
    return data[0]


def inspect_image(
    image: str, docker_bin: str = "docker", timeout: int = 60
) -> dict[str, Any]:
    """Return the ``docker image inspect`` document for an image.

    Raises:
        ImageInspectionError: If the image does not exist or output is invalid.
    """
    output = _run_tool([docker_bin, "image", "inspect", image], timeout)
    return _load_single(output, image)


def create_container(
    image: str, docker_bin: str = "docker", timeout: int = 60
) -> str:
    """Create (but do not start) a container from an image.

    Returns:
        Container ID.
    """
    return _run_tool([docker_bin, "create", image], timeout).strip()


def remove_container(
    container_id: str, docker_bin: str = "docker", timeout: int = 60
) -> None:
    """Remove a container, logging rather than raising on failure."""
    try:
        _run_tool([docker_bin, "rm", "--force", container_id], timeout)
    except ImageInspectionError as e:
        logger.warning("Failed to remove container %s: %s", container_id[:12], e)


def check_image_config(
    image_data: dict[str, Any], pipeline: PipelineSchema
) -> list[Finding]:
    """Check the image configuration against the pipeline definition.

    Args:
        image_data: ``docker image inspect`` document.
        pipeline: Pipeline definition.

    Returns:
        List of findings; empty when the entry command is correct.
    """
    config = image_data.get("Config") or {}
    findings: list[Finding] = []

    entrypoint = config.get("Entrypoint") or []
    if entrypoint:
        findings.append(
            Finding(
                code="entrypoint_wrapper",
                message=f"image declares an entrypoint {entrypoint}; "
                "the artifact must run directly",
            )
        )

    cmd = config.get("Cmd") or []
    if cmd != pipeline.entry_command:
        findings.append(
            Finding(
                code="cmd_mismatch",
                message=f"image Cmd is {cmd}, expected {pipeline.entry_command}",
            )
        )

    workdir = config.get("WorkingDir") or "/"
    if workdir != pipeline.runtime.workdir:
        findings.append(
            Finding(
                code="workdir_mismatch",
                message=f"image WorkingDir is '{workdir}', "
                f"expected '{pipeline.runtime.workdir}'",
            )
        )

    if config.get("Volumes"):
        findings.append(
            Finding(
                code="declared_volumes",
                message=f"image declares volumes {sorted(config['Volumes'])}",
            )
        )

    exposed = sorted((config.get("ExposedPorts") or {}).keys())
    expected = sorted(f"{p}/tcp" for p in (pipeline.expose or []))
    if exposed != expected:
        findings.append(
            Finding(
                code="exposed_ports_mismatch",
                message=f"image exposes {exposed}, expected {expected}",
                severity=FindingSeverity.WARNING,
            )
        )

    return findings


def inspect_entry_process(
    image: str, docker_bin: str = "docker", timeout: int = 60
) -> tuple[str, list[str]]:
    """Return the process path and arguments a container would start with.

    Creates a container without starting it and reads its ``Path`` and
    ``Args``; a shell-form command shows up as ``/bin/sh -c ...``.

    Returns:
        Tuple of (path, args).

    Raises:
        ImageInspectionError: If the container cannot be created or inspected.
    """
    container_id = create_container(image, docker_bin, timeout)
    try:
        output = _run_tool(
            [docker_bin, "container", "inspect", container_id], timeout
        )
        data = _load_single(output, container_id)
    finally:
        remove_container(container_id, docker_bin, timeout)
    return str(data.get("Path", "")), list(data.get("Args") or [])


def check_entry_process(
    path: str, args: list[str], pipeline: PipelineSchema
) -> list[Finding]:
    """Check the container process is the bare executable."""
    findings: list[Finding] = []
    if path in SHELL_EXECUTABLES:
        findings.append(
            Finding(
                code="shell_wrapped",
                message=f"container process runs under a shell: {path} {args}",
            )
        )
    elif [path, *args] != pipeline.entry_command:
        findings.append(
            Finding(
                code="process_mismatch",
                message=f"container process is {[path, *args]}, "
                f"expected {pipeline.entry_command}",
            )
        )
    return findings


def export_filesystem(
    image: str,
    output_path: Path,
    docker_bin: str = "docker",
    timeout: int = 600,
) -> Path:
    """Export the flattened runtime filesystem of an image as a tar file.

    Returns:
        Path to the written tar file.

    Raises:
        ImageInspectionError: If the export fails.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    container_id = create_container(image, docker_bin, timeout)
    try:
        _run_tool(
            [docker_bin, "export", "--output", str(output_path), container_id],
            timeout,
        )
    finally:
        remove_container(container_id, docker_bin, timeout)
    logger.info("Exported filesystem of %s to %s", image, output_path)
    return output_path


def compute_stream_hash(
    stream: IO[bytes], chunk_size: int = HASH_CHUNK_SIZE
) -> str:
    """Compute SHA-256 of a binary stream."""
    sha256 = hashlib.sha256()
    while chunk := stream.read(chunk_size):
        sha256.update(chunk)
    return sha256.hexdigest()


def _normalize_member(name: str) -> str:
    while name.startswith("./"):
        name = name[2:]
    name = name.lstrip("/")
    return posixpath.normpath(name) if name else ""


def scan_runtime_filesystem(
    tar_path: Path, pipeline: PipelineSchema
) -> tuple[ArtifactInfo | None, list[Finding]]:
    """Check an exported runtime filesystem for layer minimality.

    Args:
        tar_path: Tar file produced by ``export_filesystem``.
        pipeline: Pipeline definition.

    Returns:
        Tuple of (artifact info if found, findings).
    """
    workdir = pipeline.runtime.workdir.strip("/")
    artifact_rel = pipeline.artifact_runtime_path.strip("/")
    findings: list[Finding] = []
    artifact: ArtifactInfo | None = None
    workdir_files: list[str] = []
    leftovers: set[str] = set()

    with tarfile.open(tar_path) as tar:
        for member in tar:
            name = _normalize_member(member.name)
            for toolchain_path in TOOLCHAIN_PATHS:
                if name == toolchain_path or name.startswith(toolchain_path + "/"):
                    leftovers.add(toolchain_path)

            if workdir:
                in_workdir = name.startswith(workdir + "/")
            else:
                in_workdir = bool(name) and "/" not in name
            if not in_workdir or member.isdir():
                continue
            # At the filesystem root the base image's usr-merge links
            # (bin -> usr/bin) and the export marker live beside the artifact
            if not workdir and name != artifact_rel:
                if member.issym() or name in EXPORT_MARKER_FILES:
                    continue
            workdir_files.append(name)

            if name != artifact_rel:
                continue
            stream = tar.extractfile(member) if member.isfile() else None
            if stream is None:
                findings.append(
                    Finding(
                        code="artifact_not_regular",
                        message=f"/{name} is not a regular file",
                    )
                )
                continue
            with stream:
                sha256 = compute_stream_hash(stream)
            artifact = ArtifactInfo(
                filename=pipeline.artifact_name,
                path_in_image=pipeline.artifact_runtime_path,
                size_bytes=member.size,
                sha256=sha256,
                mode=member.mode,
            )

    if artifact is None:
        findings.append(
            Finding(
                code="artifact_missing",
                message=f"{pipeline.artifact_runtime_path} not found in image",
            )
        )
    elif not artifact.mode or not artifact.mode & 0o111:
        findings.append(
            Finding(
                code="artifact_not_executable",
                message=f"{pipeline.artifact_runtime_path} is not executable",
            )
        )

    extra = sorted(f for f in workdir_files if f != artifact_rel)
    if extra:
        findings.append(
            Finding(
                code="extra_workdir_files",
                message=f"{len(extra)} unexpected file(s) in "
                f"{pipeline.runtime.workdir}: "
                + ", ".join("/" + f for f in extra[:10]),
            )
        )
    for toolchain_path in sorted(leftovers):
        findings.append(
            Finding(
                code="toolchain_leftover",
                message=f"builder toolchain path /{toolchain_path} found in image",
            )
        )

    return artifact, findings


def generate_image_manifest(
    artifact: ArtifactInfo | None,
    image_tag: str,
    image_id: str | None = None,
    build_id: int | None = None,
    cache_key: str | None = None,
    pipeline_id: str | None = None,
    build_inputs: dict[str, Any] | None = None,
    findings: list[Finding] | None = None,
) -> dict[str, Any]:
    """Generate an image manifest.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "image_tag": image_tag,
        "artifact": asdict(artifact) if artifact else None,
    }
    if image_id:
        manifest["image_id"] = image_id
    if build_id is not None:
        manifest["build_id"] = build_id
    if cache_key:
        manifest["cache_key"] = cache_key
    if pipeline_id:
        manifest["pipeline_id"] = pipeline_id
    if build_inputs:
        manifest["build_inputs"] = build_inputs
    if findings is not None:
        manifest["findings"] = [
            {**asdict(f), "severity": f.severity.value} for f in findings
        ]
    return manifest


def write_manifest(manifest: dict[str, Any], output_path: Path) -> Path:
    """Write manifest to a JSON file."""
    output_path.parent.mkdir(parents=True, exist_ok=True)
    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)
    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "ImageInspectionError",
    "TOOLCHAIN_PATHS",
    "check_entry_process",
    "check_image_config",
    "compute_stream_hash",
    "create_container",
    "export_filesystem",
    "generate_image_manifest",
    "inspect_entry_process",
    "inspect_image",
    "remove_container",
    "scan_runtime_filesystem",
    "write_manifest",
]
