"""Build orchestration module.

This module handles:
- Source tree validation and build context staging
- Cache key computation
- Running the builder and runtime stages
- Runtime image verification and manifest generation
- Build records and cache management
"""

from svc_imagegen.builds.models import Artifact, BuildRecord

__all__ = ["Artifact", "BuildRecord"]

# Lazy imports for submodules to avoid circular imports
# Access via svc_imagegen.builds.cache_key, etc.
