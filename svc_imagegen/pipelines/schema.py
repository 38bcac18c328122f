"""Pydantic models for pipeline definition validation.

A pipeline definition is the single source of truth for both container
build stages: the builder stage (toolchain image, pinned toolchain version,
build command, release output directory) and the runtime stage (minimal
base image, working directory, entry arguments). Definitions are loaded
from YAML/JSON files and rendered into one parameterized Dockerfile.
"""

import posixpath
import re
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator

PIPELINE_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-]+$")
ARTIFACT_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-]+$")
# Docker repository references: lowercase path components, optional registry
REPOSITORY_PATTERN = re.compile(
    r"^[a-z0-9]+(?:[._\-][a-z0-9]+)*(?::[0-9]+)?(?:/[a-z0-9]+(?:[._\-][a-z0-9]+)*)*$"
)
IMAGE_NAME_PATTERN = REPOSITORY_PATTERN
# Exact release tags such as 1.83.0 or 1.83.0-slim-bookworm. A bare 1.83
# follows every 1.83.x patch release.
TOOLCHAIN_VERSION_PATTERN = re.compile(
    r"^[0-9]+\.[0-9]+\.[0-9]+(?:-[a-z0-9.\-]+)?$"
)
TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]{0,127}$")

FLOATING_TAGS = frozenset({"latest", "stable", "nightly", "beta", "slim"})


def _validate_absolute_dir(v: str) -> str:
    if not v.startswith("/"):
        raise ValueError(f"workdir must be an absolute path, got '{v}'")
    normalized = posixpath.normpath(v)
    # normpath keeps a leading '//' as-is
    return "/" + normalized.lstrip("/") if normalized != "/" else "/"


def _validate_exec_args(v: list[str]) -> list[str]:
    for item in v:
        if not item:
            raise ValueError("command arguments must be non-empty strings")
        if "\n" in item:
            raise ValueError(
                f"command arguments must not contain newlines, got '{item}'"
            )
    return v


class BuilderStageSchema(BaseModel):
    """Schema for the builder (toolchain) stage.

    Attributes:
        image: Toolchain base image name.
        toolchain_version: Exact pinned toolchain tag, injected as the
            TOOLCHAIN_VERSION build argument.
        workdir: Working directory the source tree is copied into.
        build_command: Release build command (exec form).
        release_dir: Release output directory relative to workdir.
        required_files: Dependency manifests that must be present in the
            source tree before a build starts.
    """

    model_config = ConfigDict(extra="forbid")

    image: str = Field(default="rust", description="Toolchain base image")
    toolchain_version: Annotated[
        str,
        Field(description="Pinned toolchain version tag", min_length=1, max_length=128),
    ]
    workdir: str = Field(default="/app", description="Builder working directory")
    build_command: list[str] = Field(
        default_factory=lambda: ["cargo", "build", "--release"],
        min_length=1,
        description="Release build command",
    )
    release_dir: str = Field(
        default="target/release", description="Release output directory"
    )
    required_files: list[str] = Field(
        default_factory=lambda: ["Cargo.toml"],
        description="Dependency manifests required in the source tree",
    )

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        """Validate image is a plain image reference without a tag."""
        if ":" in v.rsplit("/", 1)[-1] or "@" in v:
            raise ValueError(
                "builder image must not carry a tag; use toolchain_version instead"
            )
        if not IMAGE_NAME_PATTERN.match(v):
            raise ValueError(f"invalid image name '{v}'")
        return v

    @field_validator("toolchain_version")
    @classmethod
    def validate_toolchain_version(cls, v: str) -> str:
        """Validate the toolchain version is an exact pinned tag."""
        if v in FLOATING_TAGS:
            raise ValueError(
                f"toolchain_version must be pinned, got floating tag '{v}'"
            )
        if not TOOLCHAIN_VERSION_PATTERN.match(v):
            raise ValueError(
                "toolchain_version must be an exact release such as '1.83.0', "
                f"got '{v}'"
            )
        return v

    @field_validator("workdir")
    @classmethod
    def validate_workdir(cls, v: str) -> str:
        """Validate workdir is absolute."""
        return _validate_absolute_dir(v)

    @field_validator("build_command")
    @classmethod
    def validate_build_command(cls, v: list[str]) -> list[str]:
        """Validate build command arguments."""
        return _validate_exec_args(v)

    @field_validator("release_dir")
    @classmethod
    def validate_release_dir(cls, v: str) -> str:
        """Validate release_dir stays inside workdir."""
        if v.startswith("/"):
            raise ValueError("release_dir must be relative to workdir")
        normalized = posixpath.normpath(v)
        if normalized.startswith(".."):
            raise ValueError("release_dir must not escape workdir")
        return normalized

    @field_validator("required_files")
    @classmethod
    def validate_required_files(cls, v: list[str]) -> list[str]:
        """Validate required files are relative paths."""
        for item in v:
            if not item or item.startswith("/") or ".." in item.split("/"):
                raise ValueError(
                    f"required_files entries must be relative paths, got '{item}'"
                )
        return v


class RuntimeStageSchema(BaseModel):
    """Schema for the runtime (minimal base) stage."""

    model_config = ConfigDict(extra="forbid")

    image: str = Field(default="debian", description="Runtime base image")
    tag: str = Field(default="bookworm-slim", description="Pinned runtime base tag")
    workdir: str = Field(default="/app", description="Runtime working directory")
    entry_args: list[str] = Field(
        default_factory=list, description="Arguments passed to the executable"
    )

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        """Validate image is a plain image reference without a tag."""
        if ":" in v.rsplit("/", 1)[-1] or "@" in v:
            raise ValueError("runtime image must not carry a tag; use tag instead")
        if not IMAGE_NAME_PATTERN.match(v):
            raise ValueError(f"invalid image name '{v}'")
        return v

    @field_validator("tag")
    @classmethod
    def validate_tag(cls, v: str) -> str:
        """Validate the runtime tag is pinned."""
        if v == "latest":
            raise ValueError("runtime tag must be pinned, 'latest' is not allowed")
        if not TAG_PATTERN.match(v):
            raise ValueError(f"invalid image tag '{v}'")
        return v

    @field_validator("workdir")
    @classmethod
    def validate_workdir(cls, v: str) -> str:
        """Validate workdir is absolute."""
        return _validate_absolute_dir(v)

    @field_validator("entry_args")
    @classmethod
    def validate_entry_args(cls, v: list[str]) -> list[str]:
        """Validate entry arguments."""
        return _validate_exec_args(v)


class PipelineSchema(BaseModel):
    """Complete two-stage pipeline definition.

    Attributes:
        pipeline_id: Unique stable identifier.
        artifact_name: File name of the single release executable.
        description: Optional longer description.
        image_repository: Repository used when tagging produced images.
        builder: Builder stage definition.
        runtime: Runtime stage definition.
        expose: Optional ports declared on the runtime image.
        context_excludes: Glob patterns left out of the staged build context.
    """

    model_config = ConfigDict(extra="forbid")

    pipeline_id: Annotated[
        str, Field(description="Unique stable identifier", min_length=1, max_length=255)
    ]
    artifact_name: Annotated[
        str, Field(description="Release executable name", min_length=1, max_length=255)
    ]
    description: str | None = Field(default=None, description="Longer description")
    image_repository: Annotated[
        str,
        Field(description="Image repository for tags", min_length=1, max_length=255),
    ]
    builder: BuilderStageSchema
    runtime: RuntimeStageSchema = Field(default_factory=RuntimeStageSchema)
    expose: list[int] | None = Field(default=None, description="Declared ports")
    context_excludes: list[str] = Field(
        default_factory=lambda: ["target", ".git"],
        description="Glob patterns excluded from the build context",
    )

    @field_validator("pipeline_id")
    @classmethod
    def validate_pipeline_id(cls, v: str) -> str:
        """Validate pipeline_id matches safe pattern."""
        if not PIPELINE_ID_PATTERN.match(v):
            raise ValueError(
                f"pipeline_id must match pattern {PIPELINE_ID_PATTERN.pattern}, got '{v}'"
            )
        return v

    @field_validator("artifact_name")
    @classmethod
    def validate_artifact_name(cls, v: str) -> str:
        """Validate artifact_name is a bare file name."""
        if v in (".", "..") or not ARTIFACT_NAME_PATTERN.match(v):
            raise ValueError(f"artifact_name must be a plain file name, got '{v}'")
        return v

    @field_validator("image_repository")
    @classmethod
    def validate_image_repository(cls, v: str) -> str:
        """Validate image_repository is a lowercase repository reference."""
        if not REPOSITORY_PATTERN.match(v):
            raise ValueError(f"invalid image repository '{v}'")
        return v

    @field_validator("expose")
    @classmethod
    def validate_expose(cls, v: list[int] | None) -> list[int] | None:
        """Validate declared ports are in range and unique."""
        if v is None:
            return v
        for port in v:
            if not 1 <= port <= 65535:
                raise ValueError(f"port out of range: {port}")
        if len(set(v)) != len(v):
            raise ValueError("expose must not contain duplicate ports")
        return v

    @property
    def artifact_build_path(self) -> str:
        """Absolute path of the artifact inside the builder stage."""
        return posixpath.join(
            self.builder.workdir, self.builder.release_dir, self.artifact_name
        )

    @property
    def artifact_runtime_path(self) -> str:
        """Absolute path of the artifact inside the runtime image."""
        return posixpath.join(self.runtime.workdir, self.artifact_name)

    @property
    def entry_command(self) -> list[str]:
        """Exec-form entry command for the runtime image."""
        return [f"./{self.artifact_name}", *self.runtime.entry_args]

    @property
    def runtime_base(self) -> str:
        """Pinned runtime base image reference."""
        return f"{self.runtime.image}:{self.runtime.tag}"

    def builder_base(self, toolchain_version: str | None = None) -> str:
        """Builder base image reference for a toolchain version."""
        version = toolchain_version or self.builder.toolchain_version
        return f"{self.builder.image}:{version}"


__all__ = [
    "BuilderStageSchema",
    "FLOATING_TAGS",
    "PIPELINE_ID_PATTERN",
    "PipelineSchema",
    "RuntimeStageSchema",
    "TOOLCHAIN_VERSION_PATTERN",
]
