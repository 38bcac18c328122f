"""Build service module.

This module provides the high-level build API:
- build_or_reuse(): Main entry point - run the pipeline with cache awareness
- Cache lookup by key
- Locking to prevent duplicate builds
- Build record persistence and state tracking
- verify_build(): entry command and layer minimality checks
- check_reproducibility(): artifact digest comparison across builds
- run_smoke_test(): hello-program end-to-end run
"""

from __future__ import annotations

import fcntl
import logging
import os
import shutil
import tempfile
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from svc_imagegen.builds.cache_key import (
    compute_cache_key_from_pipeline,
    image_tag_for,
)
from svc_imagegen.builds.context import SourceTreeError, stage_and_hash_context
from svc_imagegen.builds.models import Artifact, BuildRecord
from svc_imagegen.builds.runner import (
    BuildExecutionError,
    PipelineRunResult,
    run_pipeline,
)
from svc_imagegen.builds.smoke import (
    check_run_output,
    run_container,
    scaffold_hello_source,
)
from svc_imagegen.builds.verify import (
    ImageInspectionError,
    check_entry_process,
    check_image_config,
    export_filesystem,
    generate_image_manifest,
    inspect_entry_process,
    inspect_image,
    scan_runtime_filesystem,
    write_manifest,
)
from svc_imagegen.config import Settings, get_settings
from svc_imagegen.pipelines.dockerfile import dockerfile_hash, render_dockerfile
from svc_imagegen.pipelines.schema import BuilderStageSchema, PipelineSchema
from svc_imagegen.types import (
    ArtifactInfo,
    BuildStatus,
    Finding,
    FindingSeverity,
    PipelineState,
)

logger = logging.getLogger(__name__)

MANIFEST_NAME = "manifest.json"
ROOTFS_EXPORT_NAME = "rootfs.tar"


class BuildNotFoundError(Exception):
    """Raised when a build is not found."""

    def __init__(self, build_id: int, code: str = "build_not_found") -> None:
        super().__init__(f"Build not found: {build_id}")
        self.build_id = build_id
        self.code = code


class BuildServiceError(Exception):
    """Base error for build service operations."""

    def __init__(self, message: str, code: str = "build_service_error") -> None:
        super().__init__(message)
        self.code = code


@contextmanager
def build_lock(
    lock_dir: Path,
    cache_key: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire a lock for a build cache key.

    Uses a file-based lock to prevent concurrent builds with the same key.

    Args:
        lock_dir: Directory for lock files.
        cache_key: Cache key to lock on.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when lock is acquired.

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)

    safe_key = cache_key.replace(":", "_").replace("/", "_")[:64]
    lock_file = lock_dir / f"build_{safe_key}.lock"

    logger.debug("Acquiring build lock for key: %s", cache_key[:32])

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for build lock on {cache_key[:32]}"
                        ) from None
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Build lock acquired for key: %s", cache_key[:32])
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Build lock released for key: %s", cache_key[:32])
        os.close(fd)


def pin_toolchain(
    pipeline: PipelineSchema, toolchain_version: str | None
) -> PipelineSchema:
    """Return the pipeline with its toolchain version overridden.

    The override goes through the same validation as the definition file,
    so floating tags are rejected here too.

    Raises:
        pydantic.ValidationError: If the version is not a pinned tag.
    """
    if toolchain_version in (None, "", pipeline.builder.toolchain_version):
        return pipeline
    builder = BuilderStageSchema.model_validate(
        {**pipeline.builder.model_dump(), "toolchain_version": toolchain_version}
    )
    return pipeline.model_copy(update={"builder": builder})


def pipeline_for_build(build: BuildRecord) -> PipelineSchema:
    """Rebuild the pipeline definition a build ran with.

    Raises:
        BuildServiceError: If the record carries no definition.
    """
    if not build.pipeline_definition:
        raise BuildServiceError(
            f"Build {build.id} has no stored pipeline definition",
            code="missing_pipeline_definition",
        )
    return PipelineSchema.model_validate(build.pipeline_definition)


def _get_cached_build(session: Session, cache_key: str) -> BuildRecord | None:
    """Find an existing successful build with the same cache key."""
    stmt = (
        select(BuildRecord)
        .where(
            BuildRecord.cache_key == cache_key,
            BuildRecord.status == BuildStatus.SUCCEEDED.value,
        )
        .order_by(BuildRecord.id.desc())
        .limit(1)
    )
    return session.execute(stmt).scalar_one_or_none()


def _create_build_record(
    session: Session,
    pipeline: PipelineSchema,
    cache_key: str,
    input_snapshot: dict[str, Any],
) -> BuildRecord:
    """Create a new BuildRecord in pending state."""
    build = BuildRecord(
        pipeline_id=pipeline.pipeline_id,
        artifact_name=pipeline.artifact_name,
        toolchain_version=pipeline.builder.toolchain_version,
        cache_key=cache_key,
        input_snapshot=input_snapshot,
        pipeline_definition=pipeline.model_dump(mode="json"),
        image_tag=image_tag_for(pipeline, cache_key),
        state=PipelineState.SOURCE_READY.value,
        status=BuildStatus.PENDING.value,
    )
    session.add(build)
    session.flush()
    return build


def _apply_run_result(build: BuildRecord, result: PipelineRunResult) -> None:
    build.dockerfile_path = str(result.dockerfile_path)
    if result.builder is not None:
        build.builder_log_path = str(result.builder.log_path)
    if result.runtime is not None:
        build.runtime_log_path = str(result.runtime.log_path)


def build_or_reuse(
    session: Session,
    pipeline: PipelineSchema,
    source_dir: Path,
    settings: Settings | None = None,
    force_rebuild: bool = False,
    toolchain_version: str | None = None,
    build_options: dict[str, Any] | None = None,
) -> tuple[BuildRecord, bool]:
    """Build an image or reuse an existing build if cached.

    This is the main entry point for the build pipeline. It:
    1. Validates and stages the source tree, computing its hash
    2. Renders the Dockerfile and computes the cache key
    3. Checks for an existing successful build with the same cache key
    4. If not found (or force_rebuild), runs the builder then runtime stage
    5. Persists the BuildRecord with its final pipeline state

    A failed stage is recorded on the returned BuildRecord (status failed,
    state build_failed or package_failed); it is not raised.

    Args:
        session: Database session.
        pipeline: Pipeline definition.
        source_dir: Source tree root.
        settings: Application settings.
        force_rebuild: Force rebuild even if cached.
        toolchain_version: Override of the pinned toolchain version.
        build_options: Additional build options folded into the cache key.

    Returns:
        Tuple of (BuildRecord, is_cache_hit).

    Raises:
        SourceTreeError: If the source tree is missing or incomplete.
        BuildExecutionError: If a stage times out or cannot be started.
    """
    if settings is None:
        settings = get_settings()

    pipeline = pin_toolchain(pipeline, toolchain_version)

    staging_dir = Path(tempfile.mkdtemp(prefix="svc_ctx_", dir=settings.tmp_dir))
    try:
        try:
            _, source_hash = stage_and_hash_context(
                source_dir, staging_dir, pipeline
            )
        except SourceTreeError:
            logger.error("Source tree %s rejected", source_dir)
            raise
        logger.info("Staged build context %s (hash=%s)", staging_dir, source_hash[:16])

        dockerfile_text = render_dockerfile(pipeline)
        cache_key, build_inputs = compute_cache_key_from_pipeline(
            pipeline=pipeline,
            source_hash=source_hash,
            dockerfile_hash=dockerfile_hash(dockerfile_text),
            build_options=build_options,
        )
        logger.info("Computed cache key: %s", cache_key[:32])

        with build_lock(settings.lock_dir, cache_key, timeout=300):
            if not force_rebuild:
                cached = _get_cached_build(session, cache_key)
                if cached is not None:
                    logger.info(
                        "Cache hit for key %s, reusing build %d",
                        cache_key[:32],
                        cached.id,
                    )
                    return cached, True

            build = _create_build_record(
                session=session,
                pipeline=pipeline,
                cache_key=cache_key,
                input_snapshot=build_inputs.to_dict(),
            )
            logger.info("Created build record %d", build.id)

            build_dir = (
                settings.artifacts_dir
                / pipeline.pipeline_id
                / f"{build.id:08d}_{uuid.uuid4().hex[:8]}"
            )
            build_dir.mkdir(parents=True, exist_ok=True)
            build.build_dir = str(build_dir)
            build.mark_running()
            session.flush()

            def _record_state(state: PipelineState) -> None:
                build.set_state(state)
                session.flush()

            try:
                result = run_pipeline(
                    pipeline=pipeline,
                    context_dir=staging_dir,
                    build_dir=build_dir,
                    image_tag=build.image_tag or image_tag_for(pipeline, cache_key),
                    docker_bin=settings.docker_bin,
                    timeout=settings.build_timeout,
                    on_transition=_record_state,
                )
            except BuildExecutionError as e:
                failed_state = (
                    PipelineState.PACKAGE_FAILED
                    if build.state == PipelineState.PACKAGING.value
                    else PipelineState.BUILD_FAILED
                )
                build.set_state(failed_state)
                build.image_tag = None
                build.mark_failed(error_type=e.code, message=str(e))
                session.flush()
                raise

            _apply_run_result(build, result)

            if result.success:
                try:
                    build.image_id = inspect_image(
                        result.image_tag,
                        docker_bin=settings.docker_bin,
                        timeout=settings.run_timeout,
                    ).get("Id")
                except ImageInspectionError as e:
                    logger.warning(
                        "Could not read image ID for %s: %s", result.image_tag, e
                    )
                build.mark_succeeded()
                write_manifest(
                    generate_image_manifest(
                        artifact=None,
                        image_tag=result.image_tag,
                        image_id=build.image_id,
                        build_id=build.id,
                        cache_key=cache_key,
                        pipeline_id=pipeline.pipeline_id,
                        build_inputs=build_inputs.to_dict(),
                    ),
                    build_dir / MANIFEST_NAME,
                )
                logger.info("Build %d produced image %s", build.id, result.image_tag)
            else:
                failed = result.failed_stage
                build.image_tag = None
                build.mark_failed(
                    error_type=result.state.value,
                    message=failed.error_message if failed else None,
                )
                logger.error(
                    "Build %d stopped in state %s", build.id, result.state.value
                )
            session.flush()
            return build, False

    finally:
        if settings.keep_context:
            logger.info("Keeping staged build context %s", staging_dir)
        else:
            shutil.rmtree(staging_dir, ignore_errors=True)


@dataclass
class VerificationReport:
    """Outcome of verifying a runtime image."""

    build_id: int
    image_tag: str
    artifact: ArtifactInfo | None = None
    findings: list[Finding] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """True when no error-level findings were reported."""
        return not any(f.severity == FindingSeverity.ERROR for f in self.findings)


def _replace_artifact(
    session: Session, build: BuildRecord, artifact_info: ArtifactInfo
) -> Artifact:
    build.artifacts.clear()
    artifact = Artifact(
        build_id=build.id,
        kind=artifact_info.kind,
        filename=artifact_info.filename,
        path_in_image=artifact_info.path_in_image,
        size_bytes=artifact_info.size_bytes,
        sha256=artifact_info.sha256,
    )
    build.artifacts.append(artifact)
    session.flush()
    return artifact


def verify_build(
    session: Session,
    build_id: int,
    settings: Settings | None = None,
) -> VerificationReport:
    """Verify the runtime image of a successful build.

    Checks the image configuration (exec-form entry command, working
    directory), the process a container would start, and the exported
    filesystem (exactly one file under the working directory, no builder
    toolchain paths). The artifact digest is stored on the build.

    Args:
        session: Database session.
        build_id: Build ID.
        settings: Application settings.

    Returns:
        VerificationReport.

    Raises:
        BuildNotFoundError: If build not found.
        BuildServiceError: If the build has no image to verify.
        ImageInspectionError: If the build tool cannot inspect the image.
    """
    if settings is None:
        settings = get_settings()

    build = get_build(session, build_id)
    if not build.is_succeeded() or not build.image_tag:
        raise BuildServiceError(
            f"Build {build_id} has no image to verify (status={build.status})",
            code="build_not_ready",
        )
    pipeline = pipeline_for_build(build)
    image = build.image_tag
    report = VerificationReport(build_id=build.id, image_tag=image)

    image_data = inspect_image(image, settings.docker_bin, settings.run_timeout)
    report.findings.extend(check_image_config(image_data, pipeline))

    path, args = inspect_entry_process(
        image, settings.docker_bin, settings.run_timeout
    )
    report.findings.extend(check_entry_process(path, args, pipeline))

    build_dir = Path(build.build_dir) if build.build_dir else settings.artifacts_dir
    tar_path = export_filesystem(
        image,
        build_dir / ROOTFS_EXPORT_NAME,
        docker_bin=settings.docker_bin,
        timeout=settings.build_timeout,
    )
    try:
        artifact, findings = scan_runtime_filesystem(tar_path, pipeline)
    finally:
        tar_path.unlink(missing_ok=True)
    report.artifact = artifact
    report.findings.extend(findings)

    if artifact is not None:
        _replace_artifact(session, build, artifact)

    write_manifest(
        generate_image_manifest(
            artifact=artifact,
            image_tag=image,
            image_id=build.image_id,
            build_id=build.id,
            cache_key=build.cache_key,
            pipeline_id=build.pipeline_id,
            build_inputs=build.input_snapshot,
            findings=report.findings,
        ),
        build_dir / MANIFEST_NAME,
    )

    logger.info(
        "Verified build %d: %d finding(s), success=%s",
        build.id,
        len(report.findings),
        report.success,
    )
    return report


@dataclass
class ReproducibilityReport:
    """Artifact digest comparison between two builds of one pipeline."""

    pipeline_id: str
    build_ids: tuple[int, int]
    digests: tuple[str, str]
    same_inputs: bool

    @property
    def reproducible(self) -> bool:
        """Whether both builds produced byte-identical artifacts."""
        return self.digests[0] == self.digests[1]

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-serializable dict."""
        return {
            "pipeline_id": self.pipeline_id,
            "build_ids": list(self.build_ids),
            "digests": list(self.digests),
            "same_inputs": self.same_inputs,
            "reproducible": self.reproducible,
        }


def check_reproducibility(
    session: Session, pipeline_id: str
) -> ReproducibilityReport:
    """Compare artifact digests of the two latest verified builds.

    Args:
        session: Database session.
        pipeline_id: Pipeline identifier.

    Returns:
        ReproducibilityReport for the two most recent successful builds
        that have a recorded artifact.

    Raises:
        BuildServiceError: If fewer than two verified builds exist.
    """
    stmt = (
        select(BuildRecord)
        .join(Artifact)
        .where(
            BuildRecord.pipeline_id == pipeline_id,
            BuildRecord.status == BuildStatus.SUCCEEDED.value,
        )
        .order_by(BuildRecord.id.desc())
        .distinct()
        .limit(2)
    )
    builds = list(session.execute(stmt).scalars().all())
    if len(builds) < 2:
        raise BuildServiceError(
            f"Need two verified builds of {pipeline_id}, found {len(builds)}",
            code="insufficient_builds",
        )

    newer, older = builds
    report = ReproducibilityReport(
        pipeline_id=pipeline_id,
        build_ids=(older.id, newer.id),
        digests=(older.artifacts[0].sha256, newer.artifacts[0].sha256),
        same_inputs=older.cache_key == newer.cache_key,
    )
    if report.same_inputs and not report.reproducible:
        logger.warning(
            "Builds %d and %d share inputs but produced different artifacts",
            older.id,
            newer.id,
        )
    return report


@dataclass
class SmokeReport:
    """Outcome of the hello-program smoke test."""

    build_id: int
    image_tag: str | None
    state: str
    output: str = ""
    findings: list[Finding] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """True when the image was built, verified and printed the line."""
        return self.state == PipelineState.IMAGE_READY.value and not any(
            f.severity == FindingSeverity.ERROR for f in self.findings
        )


def smoke_pipeline(pipeline: PipelineSchema) -> PipelineSchema:
    """Derive the smoke-test variant of a pipeline.

    Same stages and artifact name, separate identifier and repository so
    smoke images never share tags or cache entries with real builds.
    """
    return pipeline.model_copy(
        update={
            "pipeline_id": f"{pipeline.pipeline_id}.smoke",
            "image_repository": f"{pipeline.image_repository}-smoke",
        }
    )


def run_smoke_test(
    session: Session,
    pipeline: PipelineSchema,
    settings: Settings | None = None,
) -> SmokeReport:
    """Build and run a hello program through the pipeline.

    Args:
        session: Database session.
        pipeline: Pipeline definition whose shape is exercised.
        settings: Application settings.

    Returns:
        SmokeReport.

    Raises:
        SmokeTestError: If the hello project cannot be scaffolded or run.
        BuildExecutionError: If a stage times out or cannot be started.
    """
    if settings is None:
        settings = get_settings()

    smoke = smoke_pipeline(pipeline)
    source_dir = Path(tempfile.mkdtemp(prefix="svc_smoke_", dir=settings.tmp_dir))
    try:
        scaffold_hello_source(source_dir, smoke)
        build, _ = build_or_reuse(
            session, smoke, source_dir, settings=settings, force_rebuild=True
        )
    finally:
        shutil.rmtree(source_dir, ignore_errors=True)

    report = SmokeReport(
        build_id=build.id, image_tag=build.image_tag, state=build.state
    )
    if not build.is_succeeded() or not build.image_tag:
        report.findings.append(
            Finding(
                code=build.error_type or "build_failed",
                message=build.error_message or "smoke build failed",
            )
        )
        return report

    verification = verify_build(session, build.id, settings=settings)
    report.findings.extend(verification.findings)

    run_result = run_container(
        build.image_tag, docker_bin=settings.docker_bin, timeout=settings.run_timeout
    )
    report.output = run_result.stdout
    report.findings.extend(check_run_output(run_result, smoke.artifact_name))
    return report


def get_build(session: Session, build_id: int) -> BuildRecord:
    """Get a build record by ID.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = session.get(BuildRecord, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def list_builds(
    session: Session,
    pipeline_id: str | None = None,
    status: BuildStatus | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records with optional filters.

    Args:
        session: Database session.
        pipeline_id: Filter by pipeline ID.
        status: Filter by status.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances, newest first.
    """
    stmt = select(BuildRecord)

    if pipeline_id is not None:
        stmt = stmt.where(BuildRecord.pipeline_id == pipeline_id)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


def get_build_artifacts(session: Session, build_id: int) -> list[Artifact]:
    """Get artifacts for a build.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = get_build(session, build_id)
    return list(build.artifacts)


def build_to_dict(build: BuildRecord) -> dict[str, Any]:
    """Convert a build record to a JSON-serializable dict."""
    return {
        "id": build.id,
        "pipeline_id": build.pipeline_id,
        "artifact_name": build.artifact_name,
        "toolchain_version": build.toolchain_version,
        "state": build.state,
        "status": build.status,
        "cache_key": build.cache_key,
        "is_cache_hit": build.is_cache_hit,
        "image_tag": build.image_tag,
        "image_id": build.image_id,
        "requested_at": build.requested_at.isoformat() if build.requested_at else None,
        "started_at": build.started_at.isoformat() if build.started_at else None,
        "finished_at": build.finished_at.isoformat() if build.finished_at else None,
        "build_dir": build.build_dir,
        "builder_log_path": build.builder_log_path,
        "runtime_log_path": build.runtime_log_path,
        "error_type": build.error_type,
        "error_message": build.error_message,
        "artifact_count": len(build.artifacts),
    }


def artifact_to_dict(artifact: Artifact) -> dict[str, Any]:
    """Convert an artifact record to a JSON-serializable dict."""
    return {
        "id": artifact.id,
        "build_id": artifact.build_id,
        "kind": artifact.kind,
        "filename": artifact.filename,
        "path_in_image": artifact.path_in_image,
        "size_bytes": artifact.size_bytes,
        "sha256": artifact.sha256,
    }


__all__ = [
    "BuildNotFoundError",
    "BuildServiceError",
    "ReproducibilityReport",
    "SmokeReport",
    "VerificationReport",
    "artifact_to_dict",
    "build_lock",
    "build_or_reuse",
    "build_to_dict",
    "check_reproducibility",
    "get_build",
    "get_build_artifacts",
    "list_builds",
    "pin_toolchain",
    "pipeline_for_build",
    "run_smoke_test",
    "smoke_pipeline",
    "verify_build",
]
