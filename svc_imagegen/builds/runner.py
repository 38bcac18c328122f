"""Build runner for executing the two-stage container pipeline.

This module handles:
- Composing ``docker build`` commands for each stage
- Executing stages with subprocess, capturing output to log files
- Enforcing stage timeouts
- Driving the pipeline state machine:
  SOURCE_READY -> BUILDING -> {BUILD_FAILED | ARTIFACT_READY}
  -> PACKAGING -> {PACKAGE_FAILED | IMAGE_READY}

The builder stage is built on its own first (``--target builder``) so a
compilation failure stops the pipeline before the runtime stage is ever
constructed. The full build that follows reuses the builder layers from the
build tool's layer cache.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from svc_imagegen.pipelines.dockerfile import (
    BUILDER_STAGE,
    RUNTIME_STAGE,
    compose_build_args,
    render_dockerfile,
)
from svc_imagegen.types import PipelineState

if TYPE_CHECKING:
    from svc_imagegen.pipelines.schema import PipelineSchema

logger = logging.getLogger(__name__)

DOCKERFILE_NAME = "Dockerfile"


class BuildExecutionError(Exception):
    """Raised when build execution fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "build_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


class InvalidTransitionError(Exception):
    """Raised on an illegal pipeline state transition."""

    def __init__(
        self,
        current: PipelineState,
        target: PipelineState,
        code: str = "invalid_transition",
    ) -> None:
        super().__init__(
            f"Invalid pipeline transition: {current.value} -> {target.value}"
        )
        self.current = current
        self.target = target
        self.code = code


class PipelineRun:
    """State tracker for a single pipeline run.

    Every run starts at SOURCE_READY; terminal states accept no further
    transitions.
    """

    def __init__(
        self,
        on_transition: Callable[[PipelineState], None] | None = None,
    ) -> None:
        self.state = PipelineState.SOURCE_READY
        self.history: list[PipelineState] = [self.state]
        self._on_transition = on_transition

    def advance(self, target: PipelineState) -> None:
        """Move to ``target``.

        Raises:
            InvalidTransitionError: If the transition is not allowed.
        """
        if not self.state.can_transition_to(target):
            raise InvalidTransitionError(self.state, target)
        logger.debug("Pipeline state %s -> %s", self.state.value, target.value)
        self.state = target
        self.history.append(target)
        if self._on_transition is not None:
            self._on_transition(target)


@dataclass
class StageResult:
    """Result of a single stage execution.

    Attributes:
        stage: Stage name (builder or runtime).
        success: Whether the build tool exited 0.
        exit_code: Process exit code.
        log_path: Path to the stage log file.
        started_at: Stage start time.
        finished_at: Stage finish time.
        command: The command that was executed.
        error_message: Error message if the stage failed.
    """

    stage: str
    success: bool
    exit_code: int
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    error_message: str | None = None


@dataclass
class PipelineRunResult:
    """Result of a full pipeline run."""

    state: PipelineState
    image_tag: str
    dockerfile_path: Path
    builder: StageResult | None = None
    runtime: StageResult | None = None
    history: list[PipelineState] = field(default_factory=list)

    @property
    def success(self) -> bool:
        """Whether the run produced an image."""
        return self.state == PipelineState.IMAGE_READY

    @property
    def failed_stage(self) -> StageResult | None:
        """The stage result that failed, if any."""
        for result in (self.builder, self.runtime):
            if result is not None and not result.success:
                return result
        return None


def compose_build_command(
    context_dir: Path,
    dockerfile_path: Path,
    build_args: dict[str, str],
    tag: str | None = None,
    target: str | None = None,
    docker_bin: str = "docker",
) -> list[str]:
    """Compose a ``docker build`` command.

    Args:
        context_dir: Build context directory.
        dockerfile_path: Path to the Dockerfile (kept outside the context).
        build_args: Build arguments (``--build-arg NAME=VALUE``).
        tag: Optional image tag.
        target: Optional stage to stop at.
        docker_bin: Container build tool executable.

    Returns:
        Command as list of strings suitable for subprocess.
    """
    cmd = [docker_bin, "build", "--file", str(dockerfile_path)]

    for name in sorted(build_args):
        cmd.extend(["--build-arg", f"{name}={build_args[name]}"])

    if target:
        cmd.extend(["--target", target])
    if tag:
        cmd.extend(["--tag", tag])

    cmd.append(str(context_dir))
    return cmd


def run_stage(
    stage: str,
    cmd: list[str],
    log_path: Path,
    cwd: Path | None = None,
    timeout: int | None = None,
    env_override: dict[str, str] | None = None,
) -> StageResult:
    """Execute one build stage command.

    Args:
        stage: Stage name used in logs and the result.
        cmd: Command to execute.
        log_path: File receiving stdout/stderr.
        cwd: Working directory for the command.
        timeout: Timeout in seconds (None = no timeout).
        env_override: Optional environment variable overrides.

    Returns:
        StageResult with execution details.

    Raises:
        BuildExecutionError: If the command times out or cannot be started.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    cmd_str = shlex.join(cmd)
    logger.info("Executing %s stage: %s", stage, cmd_str)

    started_at = datetime.now(timezone.utc)
    error_message: str | None = None

    try:
        with log_path.open("w") as log_file:
            log_file.write(f"# Stage: {stage}\n")
            log_file.write(f"# Command: {cmd_str}\n")
            log_file.write(f"# Started: {started_at.isoformat()}\n")
            log_file.write(f"# CWD: {cwd or Path.cwd()}\n")
            log_file.write("# " + "=" * 70 + "\n\n")
            log_file.flush()

            env: dict[str, str] | None = None
            if env_override:
                env = dict(os.environ)
                env.update(env_override)

            result = subprocess.run(
                cmd,
                cwd=cwd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                timeout=timeout,
                env=env,
                check=False,
            )

            exit_code = result.returncode
            success = exit_code == 0

            if not success:
                error_message = f"{stage} stage failed with exit code {exit_code}"
                logger.error("%s. See log: %s", error_message, log_path)

    except subprocess.TimeoutExpired as e:
        error_message = f"{stage} stage timed out after {timeout} seconds"
        logger.error("%s. See log: %s", error_message, log_path)

        with log_path.open("a") as log_file:
            log_file.write(f"\n# TIMEOUT after {timeout} seconds\n")

        raise BuildExecutionError(
            error_message,
            exit_code=-1,
            code="build_timeout",
        ) from e

    except OSError as e:
        error_message = f"Failed to execute {stage} stage: {e}"
        logger.error(error_message)
        raise BuildExecutionError(
            error_message,
            exit_code=None,
            code="execution_error",
        ) from e

    finished_at = datetime.now(timezone.utc)

    with log_path.open("a") as log_file:
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"# Duration: {duration:.1f}s\n")

    return StageResult(
        stage=stage,
        success=success,
        exit_code=exit_code,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=cmd_str,
        error_message=error_message,
    )


def write_dockerfile(
    pipeline: PipelineSchema,
    build_dir: Path,
    toolchain_version: str | None = None,
) -> Path:
    """Render the pipeline Dockerfile into the build directory."""
    build_dir.mkdir(parents=True, exist_ok=True)
    dockerfile_path = build_dir / DOCKERFILE_NAME
    dockerfile_path.write_text(
        render_dockerfile(pipeline, toolchain_version), encoding="utf-8"
    )
    return dockerfile_path


def run_pipeline(
    pipeline: PipelineSchema,
    context_dir: Path,
    build_dir: Path,
    image_tag: str,
    toolchain_version: str | None = None,
    docker_bin: str = "docker",
    timeout: int | None = None,
    on_transition: Callable[[PipelineState], None] | None = None,
) -> PipelineRunResult:
    """Run the builder stage, then the runtime stage.

    Args:
        pipeline: Pipeline definition.
        context_dir: Staged build context.
        build_dir: Directory for the Dockerfile and stage logs.
        image_tag: Tag applied to the runtime image.
        toolchain_version: Optional override of the pinned version.
        docker_bin: Container build tool executable.
        timeout: Per-stage timeout in seconds.
        on_transition: Called with each new pipeline state.

    Returns:
        PipelineRunResult; ``state`` is one of the terminal states.

    Raises:
        BuildExecutionError: If a stage times out or cannot be started.
    """
    dockerfile_path = write_dockerfile(pipeline, build_dir, toolchain_version)
    build_args = compose_build_args(pipeline, toolchain_version)
    run = PipelineRun(on_transition=on_transition)
    result = PipelineRunResult(
        state=run.state,
        image_tag=image_tag,
        dockerfile_path=dockerfile_path,
        history=run.history,
    )

    run.advance(PipelineState.BUILDING)
    result.builder = run_stage(
        BUILDER_STAGE,
        compose_build_command(
            context_dir,
            dockerfile_path,
            build_args,
            target=BUILDER_STAGE,
            docker_bin=docker_bin,
        ),
        build_dir / f"{BUILDER_STAGE}.log",
        cwd=build_dir,
        timeout=timeout,
    )
    if not result.builder.success:
        run.advance(PipelineState.BUILD_FAILED)
        result.state = run.state
        return result

    run.advance(PipelineState.ARTIFACT_READY)
    run.advance(PipelineState.PACKAGING)
    result.runtime = run_stage(
        RUNTIME_STAGE,
        compose_build_command(
            context_dir,
            dockerfile_path,
            build_args,
            tag=image_tag,
            docker_bin=docker_bin,
        ),
        build_dir / f"{RUNTIME_STAGE}.log",
        cwd=build_dir,
        timeout=timeout,
    )
    run.advance(
        PipelineState.IMAGE_READY
        if result.runtime.success
        else PipelineState.PACKAGE_FAILED
    )
    result.state = run.state
    return result


def check_build_tool(docker_bin: str = "docker", timeout: int = 30) -> str:
    """Check the container build tool is installed and reachable.

    Args:
        docker_bin: Container build tool executable.
        timeout: Command timeout in seconds.

    Returns:
        Server version string.

    Raises:
        BuildExecutionError: If the tool is missing or the daemon unreachable.
    """
    try:
        result = subprocess.run(
            [docker_bin, "version", "--format", "{{.Server.Version}}"],
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
        )
    except subprocess.TimeoutExpired as e:
        raise BuildExecutionError(
            f"{docker_bin} version timed out after {timeout}s",
            exit_code=-1,
            code="timeout",
        ) from e
    except subprocess.CalledProcessError as e:
        raise BuildExecutionError(
            f"{docker_bin} is not usable: {e.stderr.strip()}",
            exit_code=e.returncode,
            code="build_tool_unavailable",
        ) from e
    except OSError as e:
        raise BuildExecutionError(
            f"Failed to run {docker_bin}: {e}",
            code="execution_error",
        ) from e
    return result.stdout.strip()


def tail_log(log_path: Path, lines: int = 20) -> list[str]:
    """Return the last lines of a stage log for diagnostics."""
    if not log_path.exists():
        return []
    with log_path.open(encoding="utf-8", errors="replace") as f:
        content = f.read().splitlines()
    return content[-lines:]


__all__ = [
    "BuildExecutionError",
    "InvalidTransitionError",
    "PipelineRun",
    "PipelineRunResult",
    "StageResult",
    "check_build_tool",
    "compose_build_command",
    "run_pipeline",
    "run_stage",
    "tail_log",
    "write_dockerfile",
]
