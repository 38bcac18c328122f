"""Pipeline definitions.

This module handles:
- Pipeline schema validation (builder and runtime stages)
- Loading and saving pipeline files
- Rendering the parameterized multi-stage Dockerfile
"""

from svc_imagegen.pipelines.schema import (
    BuilderStageSchema,
    PipelineSchema,
    RuntimeStageSchema,
)

__all__ = ["BuilderStageSchema", "PipelineSchema", "RuntimeStageSchema"]
