"""Tests for pipeline definition load/dump helpers."""

import json
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from svc_imagegen.pipelines.dockerfile import render_dockerfile
from svc_imagegen.pipelines.io import (
    load_pipeline,
    load_yaml,
    pipeline_to_dict,
    pipeline_to_yaml_string,
    save_pipeline,
)

PIPELINE_YAML = """\
pipeline_id: excel-ai-api
artifact_name: excel_ai_api
image_repository: excel-ai-api
builder:
  toolchain_version: "1.83.0"
expose:
  - 10000
"""


@pytest.fixture
def pipeline_file(tmp_path: Path) -> Path:
    path = tmp_path / "excel_ai_api.yaml"
    path.write_text(PIPELINE_YAML)
    return path


class TestLoadPipeline:
    """Tests for load_pipeline."""

    def test_load_yaml(self, pipeline_file: Path) -> None:
        """Should load and validate a YAML definition."""
        pipeline = load_pipeline(pipeline_file)
        assert pipeline.pipeline_id == "excel-ai-api"
        assert pipeline.builder.toolchain_version == "1.83.0"
        assert pipeline.expose == [10000]

    def test_load_json(self, tmp_path: Path) -> None:
        """Should load and validate a JSON definition."""
        path = tmp_path / "pipeline.json"
        path.write_text(json.dumps(yaml.safe_load(PIPELINE_YAML)))
        assert load_pipeline(path).artifact_name == "excel_ai_api"

    def test_unsupported_extension(self, tmp_path: Path) -> None:
        """Other extensions are rejected."""
        path = tmp_path / "pipeline.toml"
        path.write_text("")
        with pytest.raises(ValueError, match="Unsupported file extension"):
            load_pipeline(path)

    def test_missing_file(self, tmp_path: Path) -> None:
        """A missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_pipeline(tmp_path / "missing.yaml")

    def test_invalid_definition(self, tmp_path: Path) -> None:
        """Schema violations surface as ValidationError."""
        path = tmp_path / "bad.yaml"
        path.write_text(PIPELINE_YAML.replace('"1.83.0"', "latest"))
        with pytest.raises(ValidationError):
            load_pipeline(path)

    def test_non_mapping_yaml(self, tmp_path: Path) -> None:
        """A YAML list is not a pipeline."""
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ValueError, match="mapping"):
            load_yaml(path)


class TestDumpPipeline:
    """Tests for dumping pipelines."""

    def test_to_dict_drops_unset_optionals(self, pipeline_file: Path) -> None:
        """Unset optional fields are left out."""
        data = pipeline_to_dict(load_pipeline(pipeline_file))
        assert "description" not in data
        assert data["builder"]["toolchain_version"] == "1.83.0"

    def test_yaml_string_keeps_field_order(self, pipeline_file: Path) -> None:
        """YAML output starts with the identifier."""
        text = pipeline_to_yaml_string(load_pipeline(pipeline_file))
        assert text.startswith("pipeline_id: excel-ai-api\n")
        # Version stays a string, not a float
        assert yaml.safe_load(text)["builder"]["toolchain_version"] == "1.83.0"

    @pytest.mark.parametrize("name", ["out.yaml", "out.json"])
    def test_save_and_reload(self, pipeline_file: Path, tmp_path: Path, name: str):
        """Saved definitions load back to the same pipeline."""
        pipeline = load_pipeline(pipeline_file)
        out = save_pipeline(pipeline, tmp_path / "nested" / name)
        assert load_pipeline(out) == pipeline


class TestShippedPipelines:
    """The definitions shipped in pipelines/ stay valid."""

    def test_excel_ai_api(self) -> None:
        """The service pipeline loads with its pinned toolchain."""
        path = Path(__file__).parent.parent / "pipelines" / "excel_ai_api.yaml"
        pipeline = load_pipeline(path)
        assert pipeline.builder.toolchain_version == "1.83.0"
        assert pipeline.entry_command == ["./excel_ai_api"]
        assert pipeline.artifact_build_path == "/app/target/release/excel_ai_api"

    def test_excel_ai_api_declares_no_ports(self) -> None:
        """The service image carries no EXPOSE and no syntax directive."""
        path = Path(__file__).parent.parent / "pipelines" / "excel_ai_api.yaml"
        pipeline = load_pipeline(path)
        assert pipeline.expose is None
        rendered = render_dockerfile(pipeline)
        assert "EXPOSE" not in rendered
        assert "# syntax=" not in rendered
        assert rendered.rstrip("\n").endswith('CMD ["./excel_ai_api"]')
