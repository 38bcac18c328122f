"""Smoke test helpers for the pipeline shape.

A trivial "hello" program is compiled in place of the real service: if the
pipeline yields an image that starts, prints the expected line and exits 0,
the builder/runtime wiring is correct independent of the service code.
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from svc_imagegen.types import Finding

if TYPE_CHECKING:
    from svc_imagegen.pipelines.schema import PipelineSchema

logger = logging.getLogger(__name__)

CRATE_NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_\-]*$")

DEFAULT_TOOLCHAIN_VERSION = "1.83.0"
DEFAULT_ARTIFACT_NAME = "excel_ai_api"

CARGO_TOML_TEMPLATE = """\
[package]
name = "{name}"
version = "0.1.0"
edition = "2021"

[[bin]]
name = "{name}"
path = "src/main.rs"

[dependencies]
"""

MAIN_RS_TEMPLATE = """\
fn main() {{
    println!("{message}");
}}
"""


class SmokeTestError(Exception):
    """Raised when the smoke test cannot be prepared or run."""

    def __init__(self, message: str, code: str = "smoke_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class ContainerRunResult:
    """Outcome of running a container to completion."""

    exit_code: int
    stdout: str
    stderr: str


def expected_output(artifact_name: str) -> str:
    """Return the line the hello program prints."""
    return f"hello from {artifact_name}"


def scaffold_hello_source(dest: Path, pipeline: PipelineSchema) -> Path:
    """Write a minimal Cargo project producing ``pipeline.artifact_name``.

    Args:
        dest: Directory to create the project in.
        pipeline: Pipeline whose artifact name the binary takes.

    Returns:
        The project directory.

    Raises:
        SmokeTestError: If the artifact name cannot be a Cargo binary name.
    """
    name = pipeline.artifact_name
    if not CRATE_NAME_PATTERN.match(name):
        raise SmokeTestError(
            f"artifact name '{name}' is not a valid Cargo binary name",
            code="invalid_artifact_name",
        )

    (dest / "src").mkdir(parents=True, exist_ok=True)
    (dest / "Cargo.toml").write_text(
        CARGO_TOML_TEMPLATE.format(name=name), encoding="utf-8"
    )
    (dest / "src" / "main.rs").write_text(
        MAIN_RS_TEMPLATE.format(message=expected_output(name)), encoding="utf-8"
    )
    logger.debug("Scaffolded hello project for %s in %s", name, dest)
    return dest


def default_smoke_pipeline() -> PipelineSchema:
    """Pipeline used when no definition file is given to the smoke test."""
    from svc_imagegen.pipelines.schema import PipelineSchema

    return PipelineSchema.model_validate(
        {
            "pipeline_id": "hello",
            "artifact_name": DEFAULT_ARTIFACT_NAME,
            "image_repository": "svc-imagegen-hello",
            "builder": {"toolchain_version": DEFAULT_TOOLCHAIN_VERSION},
        }
    )


def run_container(
    image: str,
    docker_bin: str = "docker",
    timeout: int = 120,
) -> ContainerRunResult:
    """Run an image with no arguments and no environment, wait for exit.

    Raises:
        SmokeTestError: If the container cannot be started or times out.
    """
    cmd = [docker_bin, "run", "--rm", image]
    logger.info("Running container: %s", " ".join(cmd))
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise SmokeTestError(
            f"container {image} did not exit within {timeout}s", code="run_timeout"
        ) from e
    except OSError as e:
        raise SmokeTestError(
            f"Failed to run {docker_bin}: {e}", code="execution_error"
        ) from e

    return ContainerRunResult(
        exit_code=result.returncode,
        stdout=result.stdout,
        stderr=result.stderr,
    )


def check_run_output(result: ContainerRunResult, artifact_name: str) -> list[Finding]:
    """Check a hello container exited 0 and printed the expected line."""
    findings: list[Finding] = []
    if result.exit_code != 0:
        findings.append(
            Finding(
                code="nonzero_exit",
                message=f"container exited with status {result.exit_code}: "
                f"{result.stderr.strip()}",
            )
        )
    expected = expected_output(artifact_name)
    if result.stdout.strip() != expected:
        findings.append(
            Finding(
                code="unexpected_output",
                message=f"expected output {expected!r}, got {result.stdout.strip()!r}",
            )
        )
    return findings


__all__ = [
    "ContainerRunResult",
    "SmokeTestError",
    "check_run_output",
    "default_smoke_pipeline",
    "expected_output",
    "run_container",
    "scaffold_hello_source",
]
