"""Tests for builds/service.py module.

Tests build service operations with the build tool mocked out at the
runner and inspection boundaries.
"""

import io
import tarfile
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from svc_imagegen.builds.context import SourceTreeError
from svc_imagegen.builds.models import Artifact, BuildRecord
from svc_imagegen.builds.runner import (
    BuildExecutionError,
    PipelineRun,
    PipelineRunResult,
    StageResult,
)
from svc_imagegen.builds.service import (
    BuildNotFoundError,
    BuildServiceError,
    build_lock,
    build_or_reuse,
    build_to_dict,
    check_reproducibility,
    get_build,
    get_build_artifacts,
    list_builds,
    pin_toolchain,
    run_smoke_test,
    smoke_pipeline,
    verify_build,
)
from svc_imagegen.builds.smoke import ContainerRunResult
from svc_imagegen.config import Settings
from svc_imagegen.db import Base
from svc_imagegen.pipelines.schema import PipelineSchema
from svc_imagegen.types import BuildStatus, PipelineState

STATE_PATHS = {
    PipelineState.IMAGE_READY: [
        PipelineState.BUILDING,
        PipelineState.ARTIFACT_READY,
        PipelineState.PACKAGING,
        PipelineState.IMAGE_READY,
    ],
    PipelineState.BUILD_FAILED: [
        PipelineState.BUILDING,
        PipelineState.BUILD_FAILED,
    ],
    PipelineState.PACKAGE_FAILED: [
        PipelineState.BUILDING,
        PipelineState.ARTIFACT_READY,
        PipelineState.PACKAGING,
        PipelineState.PACKAGE_FAILED,
    ],
}

BINARY = b"\x7fELF release"


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(engine):
    """Create a session factory for testing."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """Create a session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings pointing at temporary directories."""
    (tmp_path / "tmp").mkdir()
    return Settings(
        _env_file=None,
        cache_dir=tmp_path / "cache",
        artifacts_dir=tmp_path / "artifacts",
        tmp_dir=tmp_path / "tmp",
        db_url="sqlite:///:memory:",
    )


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


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    """Create a minimal Cargo source tree."""
    src = tmp_path / "src_tree"
    (src / "src").mkdir(parents=True)
    (src / "Cargo.toml").write_text('[package]\nname = "excel_ai_api"\n')
    (src / "Cargo.lock").write_text("# lock\n")
    (src / "src" / "main.rs").write_text("fn main() {}\n")
    return src


def fake_run_pipeline(final_state: PipelineState):
    """Return a run_pipeline replacement ending in ``final_state``."""
    calls: list[dict] = []

    def _run(
        pipeline,
        context_dir,
        build_dir,
        image_tag,
        toolchain_version=None,
        docker_bin="docker",
        timeout=None,
        on_transition=None,
    ):
        calls.append(
            {
                "context_dir": context_dir,
                "image_tag": image_tag,
                "context_files": sorted(
                    p.relative_to(context_dir).as_posix()
                    for p in context_dir.rglob("*")
                    if p.is_file()
                ),
            }
        )
        run = PipelineRun(on_transition=on_transition)
        for state in STATE_PATHS[final_state]:
            run.advance(state)

        now = datetime.now(timezone.utc)

        def stage(name: str, ok: bool) -> StageResult:
            return StageResult(
                stage=name,
                success=ok,
                exit_code=0 if ok else 1,
                log_path=build_dir / f"{name}.log",
                started_at=now,
                finished_at=now,
                command="docker build",
                error_message=None if ok else f"{name} stage failed with exit code 1",
            )

        result = PipelineRunResult(
            state=run.state,
            image_tag=image_tag,
            dockerfile_path=build_dir / "Dockerfile",
            history=run.history,
        )
        result.builder = stage("builder", final_state != PipelineState.BUILD_FAILED)
        if final_state != PipelineState.BUILD_FAILED:
            result.runtime = stage(
                "runtime", final_state == PipelineState.IMAGE_READY
            )
        return result

    _run.calls = calls
    return _run


def image_document(pipeline: PipelineSchema) -> dict:
    return {
        "Id": "sha256:feedface",
        "Config": {
            "Cmd": pipeline.entry_command,
            "WorkingDir": pipeline.runtime.workdir,
        },
    }


def fake_export(files: dict[str, bytes]):
    """Return an export_filesystem replacement writing ``files``."""

    def _export(image, output_path, docker_bin="docker", timeout=600):
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(output_path, "w") as tar:
            for name, data in files.items():
                info = tarfile.TarInfo(name)
                info.size = len(data)
                info.mode = 0o755
                tar.addfile(info, io.BytesIO(data))
        return output_path

    return _export


def run_build(session, pipeline, source_dir, settings, final_state, **kwargs):
    fake = fake_run_pipeline(final_state)
    with (
        patch("svc_imagegen.builds.service.run_pipeline", side_effect=fake),
        patch(
            "svc_imagegen.builds.service.inspect_image",
            return_value=image_document(pipeline),
        ),
    ):
        build, hit = build_or_reuse(
            session, pipeline, source_dir, settings=settings, **kwargs
        )
    return build, hit, fake.calls


class TestBuildOrReuse:
    """Tests for build_or_reuse."""

    def test_success(self, session, pipeline, source_dir, settings) -> None:
        """A successful run records the image and writes a manifest."""
        build, hit, calls = run_build(
            session, pipeline, source_dir, settings, PipelineState.IMAGE_READY
        )

        assert not hit
        assert build.status == BuildStatus.SUCCEEDED.value
        assert build.state == PipelineState.IMAGE_READY.value
        assert build.cache_key.startswith("sha256:")
        assert build.image_tag == f"excel-ai-api:{build.cache_key[7:19]}"
        assert build.image_id == "sha256:feedface"
        assert build.toolchain_version == "1.83.0"
        assert build.pipeline_definition["artifact_name"] == "excel_ai_api"
        assert build.finished_at is not None
        assert (Path(build.build_dir) / "manifest.json").is_file()

        assert len(calls) == 1
        assert calls[0]["context_files"] == ["Cargo.lock", "Cargo.toml", "src/main.rs"]
        assert not calls[0]["context_dir"].exists()

    def test_cache_hit(self, session, pipeline, source_dir, settings) -> None:
        """Identical inputs reuse the earlier build."""
        first, _, _ = run_build(
            session, pipeline, source_dir, settings, PipelineState.IMAGE_READY
        )
        second, hit, calls = run_build(
            session, pipeline, source_dir, settings, PipelineState.IMAGE_READY
        )
        assert hit
        assert second.id == first.id
        assert calls == []

    def test_force_rebuild(self, session, pipeline, source_dir, settings) -> None:
        """force_rebuild bypasses the cache."""
        first, _, _ = run_build(
            session, pipeline, source_dir, settings, PipelineState.IMAGE_READY
        )
        second, hit, _ = run_build(
            session,
            pipeline,
            source_dir,
            settings,
            PipelineState.IMAGE_READY,
            force_rebuild=True,
        )
        assert not hit
        assert second.id != first.id
        assert second.cache_key == first.cache_key

    def test_source_change_misses_cache(
        self, session, pipeline, source_dir, settings
    ) -> None:
        """Changing a source file produces a new cache key."""
        first, _, _ = run_build(
            session, pipeline, source_dir, settings, PipelineState.IMAGE_READY
        )
        (source_dir / "src" / "main.rs").write_text("fn main() { todo!() }\n")
        second, hit, _ = run_build(
            session, pipeline, source_dir, settings, PipelineState.IMAGE_READY
        )
        assert not hit
        assert second.cache_key != first.cache_key

    def test_builder_failure(self, session, pipeline, source_dir, settings) -> None:
        """A compilation failure is recorded without an image tag."""
        build, hit, _ = run_build(
            session, pipeline, source_dir, settings, PipelineState.BUILD_FAILED
        )
        assert not hit
        assert build.status == BuildStatus.FAILED.value
        assert build.state == PipelineState.BUILD_FAILED.value
        assert build.error_type == "build_failed"
        assert "builder stage failed" in build.error_message
        assert build.image_tag is None
        assert build.runtime_log_path is None

    def test_failed_build_not_reused(
        self, session, pipeline, source_dir, settings
    ) -> None:
        """Failed builds are never cache hits."""
        run_build(session, pipeline, source_dir, settings, PipelineState.BUILD_FAILED)
        build, hit, calls = run_build(
            session, pipeline, source_dir, settings, PipelineState.IMAGE_READY
        )
        assert not hit
        assert len(calls) == 1
        assert build.is_succeeded()

    def test_package_failure(self, session, pipeline, source_dir, settings) -> None:
        """A runtime stage failure ends in package_failed."""
        build, _, _ = run_build(
            session, pipeline, source_dir, settings, PipelineState.PACKAGE_FAILED
        )
        assert build.state == PipelineState.PACKAGE_FAILED.value
        assert build.error_type == "package_failed"
        assert build.runtime_log_path is not None

    def test_execution_error(self, session, pipeline, source_dir, settings) -> None:
        """A timed out stage marks the build failed and re-raises."""
        error = BuildExecutionError("builder stage timed out", code="build_timeout")
        with patch("svc_imagegen.builds.service.run_pipeline", side_effect=error):
            with pytest.raises(BuildExecutionError):
                build_or_reuse(session, pipeline, source_dir, settings=settings)

        build = list_builds(session)[0]
        assert build.status == BuildStatus.FAILED.value
        assert build.state == PipelineState.BUILD_FAILED.value
        assert build.error_type == "build_timeout"
        assert build.image_tag is None

    def test_missing_source_tree(self, session, pipeline, settings, tmp_path):
        """A source tree without Cargo.toml is rejected before any record."""
        empty = tmp_path / "empty"
        empty.mkdir()
        with pytest.raises(SourceTreeError) as exc_info:
            build_or_reuse(session, pipeline, empty, settings=settings)
        assert exc_info.value.code == "missing_dependency_manifest"
        assert list_builds(session) == []

    def test_toolchain_override(self, session, pipeline, source_dir, settings):
        """An override changes the recorded version and the cache key."""
        first, _, _ = run_build(
            session, pipeline, source_dir, settings, PipelineState.IMAGE_READY
        )
        second, hit, _ = run_build(
            session,
            pipeline,
            source_dir,
            settings,
            PipelineState.IMAGE_READY,
            toolchain_version="1.84.0",
        )
        assert not hit
        assert second.toolchain_version == "1.84.0"
        assert second.cache_key != first.cache_key


class TestPinToolchain:
    """Tests for pin_toolchain."""

    def test_no_override(self, pipeline) -> None:
        """No override returns the same object."""
        assert pin_toolchain(pipeline, None) is pipeline

    def test_override(self, pipeline) -> None:
        """An override replaces only the version."""
        pinned = pin_toolchain(pipeline, "1.84.1")
        assert pinned.builder.toolchain_version == "1.84.1"
        assert pipeline.builder.toolchain_version == "1.83.0"

    def test_floating_rejected(self, pipeline) -> None:
        """Floating tags are rejected."""
        with pytest.raises(ValidationError):
            pin_toolchain(pipeline, "latest")


class TestVerifyBuild:
    """Tests for verify_build."""

    def verify(self, session, pipeline, build_id, settings, files):
        with (
            patch(
                "svc_imagegen.builds.service.inspect_image",
                return_value=image_document(pipeline),
            ),
            patch(
                "svc_imagegen.builds.service.inspect_entry_process",
                return_value=("./excel_ai_api", []),
            ),
            patch(
                "svc_imagegen.builds.service.export_filesystem",
                side_effect=fake_export(files),
            ),
        ):
            return verify_build(session, build_id, settings=settings)

    def test_minimal_image(self, session, pipeline, source_dir, settings) -> None:
        """A minimal image verifies and the artifact is recorded."""
        build, _, _ = run_build(
            session, pipeline, source_dir, settings, PipelineState.IMAGE_READY
        )
        report = self.verify(
            session, pipeline, build.id, settings, {"app/excel_ai_api": BINARY}
        )

        assert report.success
        assert report.findings == []
        artifacts = get_build_artifacts(session, build.id)
        assert len(artifacts) == 1
        assert artifacts[0].path_in_image == "/app/excel_ai_api"
        assert artifacts[0].size_bytes == len(BINARY)
        assert not (Path(build.build_dir) / "rootfs.tar").exists()

    def test_reverify_replaces_artifact(
        self, session, pipeline, source_dir, settings
    ) -> None:
        """Verifying twice keeps a single artifact row."""
        build, _, _ = run_build(
            session, pipeline, source_dir, settings, PipelineState.IMAGE_READY
        )
        files = {"app/excel_ai_api": BINARY}
        self.verify(session, pipeline, build.id, settings, files)
        self.verify(session, pipeline, build.id, settings, files)
        assert len(get_build_artifacts(session, build.id)) == 1

    def test_source_leak(self, session, pipeline, source_dir, settings) -> None:
        """Source files in the runtime image fail verification."""
        build, _, _ = run_build(
            session, pipeline, source_dir, settings, PipelineState.IMAGE_READY
        )
        report = self.verify(
            session,
            pipeline,
            build.id,
            settings,
            {"app/excel_ai_api": BINARY, "app/Cargo.toml": b"[package]\n"},
        )
        assert not report.success
        assert [f.code for f in report.findings] == ["extra_workdir_files"]

    def test_failed_build_rejected(
        self, session, pipeline, source_dir, settings
    ) -> None:
        """A failed build has no image to verify."""
        build, _, _ = run_build(
            session, pipeline, source_dir, settings, PipelineState.BUILD_FAILED
        )
        with pytest.raises(BuildServiceError) as exc_info:
            verify_build(session, build.id, settings=settings)
        assert exc_info.value.code == "build_not_ready"

    def test_not_found(self, session, settings) -> None:
        """Unknown build IDs raise BuildNotFoundError."""
        with pytest.raises(BuildNotFoundError):
            verify_build(session, 999, settings=settings)


def add_verified_build(session, cache_key: str, sha256: str) -> BuildRecord:
    build = BuildRecord(
        pipeline_id="excel-ai-api",
        artifact_name="excel_ai_api",
        toolchain_version="1.83.0",
        cache_key=cache_key,
        status=BuildStatus.SUCCEEDED.value,
        state=PipelineState.IMAGE_READY.value,
        image_tag="excel-ai-api:abc",
    )
    build.artifacts.append(
        Artifact(
            filename="excel_ai_api",
            path_in_image="/app/excel_ai_api",
            size_bytes=10,
            sha256=sha256,
        )
    )
    session.add(build)
    session.flush()
    return build


class TestCheckReproducibility:
    """Tests for check_reproducibility."""

    def test_identical_digests(self, session) -> None:
        """Same inputs and same digest is reproducible."""
        older = add_verified_build(session, "sha256:k", "a" * 64)
        newer = add_verified_build(session, "sha256:k", "a" * 64)

        report = check_reproducibility(session, "excel-ai-api")

        assert report.reproducible
        assert report.same_inputs
        assert report.build_ids == (older.id, newer.id)
        assert report.to_dict()["reproducible"] is True

    def test_different_digests(self, session) -> None:
        """Differing digests are reported."""
        add_verified_build(session, "sha256:k", "a" * 64)
        add_verified_build(session, "sha256:k", "b" * 64)
        report = check_reproducibility(session, "excel-ai-api")
        assert not report.reproducible
        assert report.digests == ("a" * 64, "b" * 64)

    def test_uses_latest_two(self, session) -> None:
        """Only the two newest verified builds are compared."""
        add_verified_build(session, "sha256:old", "0" * 64)
        middle = add_verified_build(session, "sha256:k", "a" * 64)
        newest = add_verified_build(session, "sha256:k", "a" * 64)
        report = check_reproducibility(session, "excel-ai-api")
        assert report.build_ids == (middle.id, newest.id)

    def test_insufficient_builds(self, session) -> None:
        """Fewer than two verified builds raises."""
        add_verified_build(session, "sha256:k", "a" * 64)
        with pytest.raises(BuildServiceError) as exc_info:
            check_reproducibility(session, "excel-ai-api")
        assert exc_info.value.code == "insufficient_builds"


class TestSmokeTest:
    """Tests for run_smoke_test."""

    def test_smoke_pipeline(self, pipeline) -> None:
        """Smoke builds use their own identifier and repository."""
        smoke = smoke_pipeline(pipeline)
        assert smoke.pipeline_id == "excel-ai-api.smoke"
        assert smoke.image_repository == "excel-ai-api-smoke"
        assert smoke.artifact_name == pipeline.artifact_name

    def test_end_to_end(self, session, pipeline, settings) -> None:
        """A hello image that prints the expected line passes."""
        fake = fake_run_pipeline(PipelineState.IMAGE_READY)
        with (
            patch("svc_imagegen.builds.service.run_pipeline", side_effect=fake),
            patch(
                "svc_imagegen.builds.service.inspect_image",
                return_value=image_document(pipeline),
            ),
            patch(
                "svc_imagegen.builds.service.inspect_entry_process",
                return_value=("./excel_ai_api", []),
            ),
            patch(
                "svc_imagegen.builds.service.export_filesystem",
                side_effect=fake_export({"app/excel_ai_api": BINARY}),
            ),
            patch(
                "svc_imagegen.builds.service.run_container",
                return_value=ContainerRunResult(0, "hello from excel_ai_api\n", ""),
            ),
        ):
            report = run_smoke_test(session, pipeline, settings=settings)

        assert report.success
        assert report.state == PipelineState.IMAGE_READY.value
        assert report.output.strip() == "hello from excel_ai_api"
        assert fake.calls[0]["context_files"] == ["Cargo.toml", "src/main.rs"]
        assert get_build(session, report.build_id).pipeline_id == (
            "excel-ai-api.smoke"
        )

    def test_build_failure(self, session, pipeline, settings) -> None:
        """A failed smoke build reports a finding and skips the run."""
        fake = fake_run_pipeline(PipelineState.BUILD_FAILED)
        with (
            patch("svc_imagegen.builds.service.run_pipeline", side_effect=fake),
            patch("svc_imagegen.builds.service.run_container") as mock_run,
        ):
            report = run_smoke_test(session, pipeline, settings=settings)

        assert not report.success
        assert report.image_tag is None
        assert [f.code for f in report.findings] == ["build_failed"]
        mock_run.assert_not_called()


class TestBuildLock:
    """Tests for build_lock."""

    def test_lock_file_created(self, tmp_path: Path) -> None:
        """The lock file is named after the sanitized key."""
        with build_lock(tmp_path, "sha256:abc/def"):
            assert (tmp_path / "build_sha256_abc_def.lock").exists()

    def test_reentrant_after_release(self, tmp_path: Path) -> None:
        """The lock can be taken again once released."""
        with build_lock(tmp_path, "key", timeout=1):
            pass
        with build_lock(tmp_path, "key", timeout=1):
            pass


class TestQueries:
    """Tests for build lookups."""

    def test_get_build(self, session) -> None:
        """get_build returns the record or raises."""
        build = add_verified_build(session, "sha256:k", "a" * 64)
        assert get_build(session, build.id) is build
        with pytest.raises(BuildNotFoundError) as exc_info:
            get_build(session, 999)
        assert exc_info.value.code == "build_not_found"

    def test_list_builds_filters(self, session) -> None:
        """Filters narrow by pipeline and status, newest first."""
        first = add_verified_build(session, "sha256:a", "a" * 64)
        second = add_verified_build(session, "sha256:b", "b" * 64)
        failed = BuildRecord(
            pipeline_id="other",
            artifact_name="x",
            toolchain_version="1.83.0",
            cache_key="sha256:c",
            status=BuildStatus.FAILED.value,
        )
        session.add(failed)
        session.flush()

        assert [b.id for b in list_builds(session)] == [failed.id, second.id, first.id]
        assert list_builds(session, pipeline_id="other") == [failed]
        assert list_builds(session, status=BuildStatus.SUCCEEDED, limit=1) == [second]

    def test_build_to_dict(self, session) -> None:
        """Build dicts are JSON friendly."""
        build = add_verified_build(session, "sha256:k", "a" * 64)
        data = build_to_dict(build)
        assert data["id"] == build.id
        assert data["artifact_count"] == 1
        assert data["state"] == "image_ready"
        assert data["finished_at"] is None
