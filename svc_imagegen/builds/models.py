"""Build ORM models.

This module defines the BuildRecord and Artifact models for storing
pipeline runs and the executable found in each runtime image.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from svc_imagegen.db import Base
from svc_imagegen.types import BuildStatus, PipelineState


class BuildRecord(Base):
    """ORM model for pipeline run records.

    A BuildRecord captures a single pipeline execution: the pipeline and
    toolchain version used, the state machine position, the input snapshot
    for cache key computation, the produced image, and its artifact.

    Attributes:
        id: Primary key.
        pipeline_id: Pipeline definition identifier.
        artifact_name: Executable name produced by the builder stage.
        toolchain_version: Toolchain version the builder stage ran with.
        state: Pipeline state (source_ready ... image_ready).
        status: Coarse status (pending, running, succeeded, failed).
        requested_at: Timestamp when build was requested.
        started_at: Timestamp when build started executing.
        finished_at: Timestamp when build finished.
        input_snapshot: JSON representation of all build inputs.
        cache_key: Hash of input_snapshot for cache lookup.
        pipeline_definition: Full pipeline definition the build ran with.
        image_tag: Tag applied to the runtime image.
        image_id: Image ID reported by the build tool.
        build_dir: Directory holding the Dockerfile, logs and manifest.
        dockerfile_path: Rendered Dockerfile.
        builder_log_path: Builder stage log file.
        runtime_log_path: Runtime stage log file.
        error_type: Type of error if build failed.
        error_message: Error message if build failed.
        is_cache_hit: Whether this build reused a cached image.
    """

    __tablename__ = "build_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    pipeline_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    artifact_name: Mapped[str] = mapped_column(String(255), nullable=False)
    toolchain_version: Mapped[str] = mapped_column(String(128), nullable=False)

    # Status and timing
    state: Mapped[str] = mapped_column(
        String(32), nullable=False, default=PipelineState.SOURCE_READY.value
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Cache key and input snapshot
    input_snapshot: Mapped[dict[str, object] | None] = mapped_column(
        JSON, nullable=True
    )
    cache_key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    pipeline_definition: Mapped[dict[str, object] | None] = mapped_column(
        JSON, nullable=True
    )

    # Produced image
    image_tag: Mapped[str | None] = mapped_column(String(255), nullable=True)
    image_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Build paths
    build_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)
    dockerfile_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    builder_log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    runtime_log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Error tracking
    error_type: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_cache_hit: Mapped[bool] = mapped_column(nullable=False, default=False)

    artifacts: Mapped[list["Artifact"]] = relationship(
        "Artifact", back_populates="build", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_build_records_pipeline_status", "pipeline_id", "status"),
    )

    def __repr__(self) -> str:
        """Return string representation of BuildRecord."""
        return (
            f"<BuildRecord(id={self.id}, pipeline_id='{self.pipeline_id}', "
            f"state='{self.state}', cache_key='{self.cache_key[:16]}...')>"
        )

    def set_state(self, state: PipelineState) -> None:
        """Record a pipeline state transition."""
        self.state = state.value

    def mark_running(self) -> None:
        """Mark this build as running."""
        self.status = BuildStatus.RUNNING.value
        self.started_at = datetime.now()

    def mark_succeeded(self) -> None:
        """Mark this build as succeeded."""
        self.status = BuildStatus.SUCCEEDED.value
        self.finished_at = datetime.now()

    def mark_failed(
        self, error_type: str | None = None, message: str | None = None
    ) -> None:
        """Mark this build as failed.

        Args:
            error_type: Type/category of the error.
            message: Error message details.
        """
        self.status = BuildStatus.FAILED.value
        self.finished_at = datetime.now()
        if error_type:
            self.error_type = error_type
        if message:
            self.error_message = message

    def is_succeeded(self) -> bool:
        """Check if this build succeeded."""
        return self.status == BuildStatus.SUCCEEDED.value


class Artifact(Base):
    """ORM model for the executable placed in a runtime image.

    Attributes:
        id: Primary key.
        build_id: Foreign key to BuildRecord.
        kind: Type of artifact (executable).
        filename: Artifact filename.
        path_in_image: Absolute path inside the runtime image.
        size_bytes: File size in bytes.
        sha256: SHA-256 hash of the file.
    """

    __tablename__ = "artifacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    build_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("build_records.id"), nullable=False, index=True
    )

    kind: Mapped[str] = mapped_column(String(50), nullable=False, default="executable")
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    path_in_image: Mapped[str] = mapped_column(String(500), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False, index=True)

    build: Mapped["BuildRecord"] = relationship(
        "BuildRecord", back_populates="artifacts"
    )

    def __repr__(self) -> str:
        """Return string representation of Artifact."""
        return (
            f"<Artifact(id={self.id}, filename='{self.filename}', "
            f"sha256='{self.sha256[:12]}', size={self.size_bytes})>"
        )


__all__ = ["Artifact", "BuildRecord"]
