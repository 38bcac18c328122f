"""Existing Dockerfile handling.

This module handles:
- Parsing Dockerfiles into stages and instructions
- Checking manifests against the two-stage pipeline shape
- Detecting version drift between alternative manifests
- Importing a manifest as a pipeline definition
"""
