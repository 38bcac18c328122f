"""Pipeline definition load/dump functionality.

This module provides helpers for loading pipeline definitions from
YAML/JSON files and writing them back out.
"""

import json
from pathlib import Path
from typing import Any

import yaml

from svc_imagegen.pipelines.schema import PipelineSchema


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_pipeline_data(data: dict[str, Any]) -> PipelineSchema:
    """Parse and validate pipeline data using the schema.

    Raises:
        pydantic.ValidationError: If data does not match schema.
    """
    return PipelineSchema.model_validate(data)


def load_pipeline(path: Path) -> PipelineSchema:
    """Load and validate a pipeline definition from a file (YAML or JSON).

    File format is determined by extension (.yaml, .yml for YAML,
    .json for JSON).

    Args:
        path: Path to the pipeline file.

    Returns:
        Validated PipelineSchema instance.

    Raises:
        ValueError: If file extension is not supported.
        FileNotFoundError: If the file does not exist.
        pydantic.ValidationError: If data does not match schema.
    """
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        return parse_pipeline_data(load_yaml(path))
    if suffix == ".json":
        return parse_pipeline_data(load_json(path))
    raise ValueError(
        f"Unsupported file extension: {suffix}. Use .yaml, .yml, or .json"
    )


def pipeline_to_dict(pipeline: PipelineSchema) -> dict[str, Any]:
    """Convert a pipeline to a plain dict, dropping unset optional fields."""
    return pipeline.model_dump(mode="json", exclude_none=True)


def pipeline_to_yaml_string(pipeline: PipelineSchema) -> str:
    """Render a pipeline as a YAML document."""
    return yaml.safe_dump(
        pipeline_to_dict(pipeline),
        default_flow_style=False,
        sort_keys=False,
        allow_unicode=True,
    )


def save_pipeline(pipeline: PipelineSchema, path: Path) -> Path:
    """Write a pipeline definition to YAML or JSON based on extension.

    Args:
        pipeline: Pipeline to write.
        path: Output path (.yaml, .yml, or .json).

    Returns:
        The written path.

    Raises:
        ValueError: If file extension is not supported.
    """
    suffix = path.suffix.lower()
    if suffix in (".yaml", ".yml"):
        content = pipeline_to_yaml_string(pipeline)
    elif suffix == ".json":
        content = json.dumps(pipeline_to_dict(pipeline), indent=2) + "\n"
    else:
        raise ValueError(
            f"Unsupported file extension: {suffix}. Use .yaml, .yml, or .json"
        )

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path


__all__ = [
    "load_json",
    "load_pipeline",
    "load_yaml",
    "parse_pipeline_data",
    "pipeline_to_dict",
    "pipeline_to_yaml_string",
    "save_pipeline",
]
