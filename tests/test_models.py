"""Tests for the build ORM models."""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from svc_imagegen.builds.models import Artifact, BuildRecord
from svc_imagegen.db import Base
from svc_imagegen.types import BuildStatus, PipelineState


@pytest.fixture
def session():
    """Create an in-memory database session."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    session = sessionmaker(bind=engine)()
    try:
        yield session
    finally:
        session.close()


def make_build(**overrides) -> BuildRecord:
    fields = {
        "pipeline_id": "excel-ai-api",
        "artifact_name": "excel_ai_api",
        "toolchain_version": "1.83.0",
        "cache_key": "sha256:" + "0" * 64,
    }
    fields.update(overrides)
    return BuildRecord(**fields)


class TestBuildRecord:
    """Tests for BuildRecord."""

    def test_defaults(self, session) -> None:
        """New records start pending at source_ready."""
        build = make_build()
        session.add(build)
        session.commit()

        assert build.status == BuildStatus.PENDING.value
        assert build.state == PipelineState.SOURCE_READY.value
        assert build.is_cache_hit is False
        assert build.requested_at is not None

    def test_lifecycle(self) -> None:
        """Status helpers set timestamps."""
        build = make_build()
        build.mark_running()
        assert build.status == BuildStatus.RUNNING.value
        assert build.started_at is not None

        build.set_state(PipelineState.BUILD_FAILED)
        build.mark_failed(error_type="build_failed", message="exit code 101")
        assert build.state == "build_failed"
        assert build.finished_at is not None
        assert build.error_message == "exit code 101"
        assert not build.is_succeeded()

    def test_artifacts_cascade(self, session) -> None:
        """Deleting a build deletes its artifact."""
        build = make_build()
        build.artifacts.append(
            Artifact(
                filename="excel_ai_api",
                path_in_image="/app/excel_ai_api",
                size_bytes=1,
                sha256="f" * 64,
            )
        )
        session.add(build)
        session.commit()
        assert session.query(Artifact).count() == 1
        assert build.artifacts[0].kind == "executable"

        session.delete(build)
        session.commit()
        assert session.query(Artifact).count() == 0

    def test_repr(self) -> None:
        """repr shows the shortened cache key."""
        assert "cache_key='sha256:000000000...'" in repr(make_build())
