"""Tests for builds/runner.py module.

Tests build command composition, the pipeline state machine, and stage
execution. Uses mocked subprocess for execution tests.
"""

import subprocess
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from svc_imagegen.builds.runner import (
    BuildExecutionError,
    InvalidTransitionError,
    PipelineRun,
    check_build_tool,
    compose_build_command,
    run_pipeline,
    run_stage,
    tail_log,
    write_dockerfile,
)
from svc_imagegen.pipelines.schema import PipelineSchema
from svc_imagegen.types import PipelineState


@pytest.fixture
def pipeline() -> PipelineSchema:
    """Create a minimal pipeline definition."""
    return PipelineSchema.model_validate(
        {
            "pipeline_id": "excel-ai-api",
            "artifact_name": "excel_ai_api",
            "image_repository": "excel-ai-api",
            "builder": {"toolchain_version": "1.83.0"},
        }
    )


def completed(returncode: int) -> MagicMock:
    return MagicMock(returncode=returncode)


class TestPipelineRun:
    """Tests for the PipelineRun state tracker."""

    def test_starts_at_source_ready(self) -> None:
        """Every run starts fresh."""
        run = PipelineRun()
        assert run.state == PipelineState.SOURCE_READY
        assert run.history == [PipelineState.SOURCE_READY]

    def test_happy_path(self) -> None:
        """The full path ends in IMAGE_READY."""
        seen: list[PipelineState] = []
        run = PipelineRun(on_transition=seen.append)
        for state in (
            PipelineState.BUILDING,
            PipelineState.ARTIFACT_READY,
            PipelineState.PACKAGING,
            PipelineState.IMAGE_READY,
        ):
            run.advance(state)
        assert run.state.is_terminal
        assert seen == run.history[1:]

    def test_skipping_builder_rejected(self) -> None:
        """The runtime stage cannot start before the builder stage."""
        run = PipelineRun()
        with pytest.raises(InvalidTransitionError) as exc_info:
            run.advance(PipelineState.PACKAGING)
        assert exc_info.value.code == "invalid_transition"
        assert run.state == PipelineState.SOURCE_READY

    def test_no_retry_after_failure(self) -> None:
        """A failed run cannot be resumed."""
        run = PipelineRun()
        run.advance(PipelineState.BUILDING)
        run.advance(PipelineState.BUILD_FAILED)
        with pytest.raises(InvalidTransitionError):
            run.advance(PipelineState.BUILDING)


class TestComposeBuildCommand:
    """Tests for compose_build_command."""

    def test_builder_target(self, tmp_path: Path) -> None:
        """The builder stage is built on its own with --target."""
        cmd = compose_build_command(
            tmp_path / "ctx",
            tmp_path / "Dockerfile",
            {"TOOLCHAIN_VERSION": "1.83.0"},
            target="builder",
        )
        assert cmd == [
            "docker",
            "build",
            "--file",
            str(tmp_path / "Dockerfile"),
            "--build-arg",
            "TOOLCHAIN_VERSION=1.83.0",
            "--target",
            "builder",
            str(tmp_path / "ctx"),
        ]

    def test_tagged_full_build(self, tmp_path: Path) -> None:
        """The full build is tagged and has no target."""
        cmd = compose_build_command(
            tmp_path,
            tmp_path / "Dockerfile",
            {"TOOLCHAIN_VERSION": "1.83.0"},
            tag="excel-ai-api:abc",
            docker_bin="podman",
        )
        assert cmd[0] == "podman"
        assert "--target" not in cmd
        assert cmd[cmd.index("--tag") + 1] == "excel-ai-api:abc"
        assert cmd[-1] == str(tmp_path)

    def test_build_args_sorted(self, tmp_path: Path) -> None:
        """Build args are emitted in a stable order."""
        cmd = compose_build_command(
            tmp_path, tmp_path / "Dockerfile", {"B": "2", "A": "1"}
        )
        assert [c for c in cmd if "=" in c] == ["A=1", "B=2"]


class TestRunStage:
    """Tests for run_stage."""

    def test_success_writes_log_header_and_footer(self, tmp_path: Path) -> None:
        """The log records command, exit code and duration."""
        log_path = tmp_path / "logs" / "builder.log"
        with patch("subprocess.run", return_value=completed(0)) as mock_run:
            result = run_stage("builder", ["docker", "build", "."], log_path)

        assert result.success
        assert result.exit_code == 0
        assert result.error_message is None
        assert mock_run.call_args.kwargs["stderr"] == subprocess.STDOUT
        content = log_path.read_text()
        assert "# Stage: builder" in content
        assert "# Command: docker build ." in content
        assert "# Exit code: 0" in content
        assert "# Duration:" in content

    def test_failure_is_a_result(self, tmp_path: Path) -> None:
        """A non-zero exit is reported, not raised."""
        with patch("subprocess.run", return_value=completed(101)):
            result = run_stage("builder", ["docker"], tmp_path / "b.log")
        assert not result.success
        assert result.exit_code == 101
        assert "exit code 101" in (result.error_message or "")

    def test_timeout_raises(self, tmp_path: Path) -> None:
        """A stage timeout raises BuildExecutionError."""
        log_path = tmp_path / "b.log"
        with patch(
            "subprocess.run",
            side_effect=subprocess.TimeoutExpired(cmd="docker", timeout=60),
        ):
            with pytest.raises(BuildExecutionError) as exc_info:
                run_stage("builder", ["docker"], log_path, timeout=60)
        assert exc_info.value.code == "build_timeout"
        assert "TIMEOUT after 60 seconds" in log_path.read_text()

    def test_missing_tool_raises(self, tmp_path: Path) -> None:
        """A missing build tool raises with execution_error."""
        with patch("subprocess.run", side_effect=FileNotFoundError("docker")):
            with pytest.raises(BuildExecutionError) as exc_info:
                run_stage("builder", ["docker"], tmp_path / "b.log")
        assert exc_info.value.code == "execution_error"

    def test_env_override(self, tmp_path: Path) -> None:
        """Environment overrides extend the current environment."""
        with patch("subprocess.run", return_value=completed(0)) as mock_run:
            run_stage(
                "builder",
                ["docker"],
                tmp_path / "b.log",
                env_override={"DOCKER_BUILDKIT": "1"},
            )
        env = mock_run.call_args.kwargs["env"]
        assert env["DOCKER_BUILDKIT"] == "1"
        assert "PATH" in env


class TestRunPipeline:
    """Tests for run_pipeline."""

    def test_success(self, pipeline: PipelineSchema, tmp_path: Path) -> None:
        """Both stages succeed and the image is ready."""
        states: list[PipelineState] = []
        with patch(
            "subprocess.run", side_effect=[completed(0), completed(0)]
        ) as mock_run:
            result = run_pipeline(
                pipeline,
                tmp_path / "ctx",
                tmp_path / "build",
                "excel-ai-api:abc",
                on_transition=states.append,
            )

        assert result.success
        assert result.state == PipelineState.IMAGE_READY
        assert result.failed_stage is None
        assert states == [
            PipelineState.BUILDING,
            PipelineState.ARTIFACT_READY,
            PipelineState.PACKAGING,
            PipelineState.IMAGE_READY,
        ]
        builder_cmd = mock_run.call_args_list[0].args[0]
        runtime_cmd = mock_run.call_args_list[1].args[0]
        assert builder_cmd[builder_cmd.index("--target") + 1] == "builder"
        assert "--tag" not in builder_cmd
        assert runtime_cmd[runtime_cmd.index("--tag") + 1] == "excel-ai-api:abc"
        assert "TOOLCHAIN_VERSION=1.83.0" in runtime_cmd
        assert (tmp_path / "build" / "Dockerfile").is_file()
        assert result.builder is not None
        assert result.builder.log_path == tmp_path / "build" / "builder.log"

    def test_builder_failure_skips_runtime(
        self, pipeline: PipelineSchema, tmp_path: Path
    ) -> None:
        """A failed compilation never constructs the runtime stage."""
        with patch("subprocess.run", side_effect=[completed(101)]) as mock_run:
            result = run_pipeline(
                pipeline, tmp_path / "ctx", tmp_path / "build", "excel-ai-api:abc"
            )

        assert mock_run.call_count == 1
        assert result.state == PipelineState.BUILD_FAILED
        assert result.runtime is None
        assert result.failed_stage is result.builder
        assert not result.success
        assert not (tmp_path / "build" / "runtime.log").exists()

    def test_runtime_failure(self, pipeline: PipelineSchema, tmp_path: Path) -> None:
        """A failing artifact copy ends in PACKAGE_FAILED."""
        with patch("subprocess.run", side_effect=[completed(0), completed(1)]):
            result = run_pipeline(
                pipeline, tmp_path / "ctx", tmp_path / "build", "excel-ai-api:abc"
            )

        assert result.state == PipelineState.PACKAGE_FAILED
        assert result.failed_stage is result.runtime
        assert result.history[-2:] == [
            PipelineState.PACKAGING,
            PipelineState.PACKAGE_FAILED,
        ]

    def test_toolchain_override(self, pipeline: PipelineSchema, tmp_path: Path):
        """An override flows into the build args and the Dockerfile."""
        with patch(
            "subprocess.run", side_effect=[completed(0), completed(0)]
        ) as mock_run:
            run_pipeline(
                pipeline,
                tmp_path / "ctx",
                tmp_path / "build",
                "excel-ai-api:abc",
                toolchain_version="1.84.0",
            )
        assert "TOOLCHAIN_VERSION=1.84.0" in mock_run.call_args_list[0].args[0]
        dockerfile = (tmp_path / "build" / "Dockerfile").read_text()
        assert "ARG TOOLCHAIN_VERSION=1.84.0\n" in dockerfile


class TestHelpers:
    """Tests for helper functions."""

    def test_write_dockerfile(self, pipeline: PipelineSchema, tmp_path: Path):
        """The Dockerfile is written into the build directory."""
        path = write_dockerfile(pipeline, tmp_path / "build")
        assert path == tmp_path / "build" / "Dockerfile"
        assert path.read_text().startswith("# Generated by svc-imagegen")

    def test_tail_log(self, tmp_path: Path) -> None:
        """tail_log returns the last lines."""
        log_path = tmp_path / "b.log"
        log_path.write_text("\n".join(f"line {i}" for i in range(50)))
        assert tail_log(log_path, lines=3) == ["line 47", "line 48", "line 49"]
        assert tail_log(tmp_path / "missing.log") == []

    def test_check_build_tool(self) -> None:
        """The server version is returned."""
        with patch(
            "subprocess.run", return_value=MagicMock(stdout="27.3.1\n")
        ) as mock_run:
            assert check_build_tool() == "27.3.1"
        assert mock_run.call_args.args[0][:2] == ["docker", "version"]

    def test_check_build_tool_daemon_down(self) -> None:
        """An unreachable daemon is reported."""
        error = subprocess.CalledProcessError(1, "docker", stderr="no daemon\n")
        with patch("subprocess.run", side_effect=error):
            with pytest.raises(BuildExecutionError) as exc_info:
                check_build_tool()
        assert exc_info.value.code == "build_tool_unavailable"
