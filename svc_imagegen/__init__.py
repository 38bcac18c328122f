"""Service Image Generator - two-stage container image pipeline tooling.

This package renders, builds, and verifies the builder/runtime container
pipeline for compiled network services such as ``excel_ai_api``.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
