"""Source tree validation, staging and hashing for builds.

This module handles:
- Checking the source tree is self-sufficient (dependency manifests present)
- Staging the source tree into a clean build context directory
- Computing a deterministic hash of the staged content

The staged directory is passed to the container build tool as the build
context; the builder stage copies it wholesale with ``COPY . .``.
"""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import shutil
import stat
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from svc_imagegen.pipelines.schema import PipelineSchema

logger = logging.getLogger(__name__)

DOCKERIGNORE_NAME = ".dockerignore"
HASH_CHUNK_SIZE = 64 * 1024


class SourceTreeError(Exception):
    """Raised when the source tree cannot be used as a build context."""

    def __init__(self, message: str, code: str = "source_tree_error") -> None:
        super().__init__(message)
        self.code = code


def load_ignore_patterns(source_dir: Path) -> list[str]:
    """Read exclusion patterns from a .dockerignore file, if present.

    Negated patterns (``!pattern``) are not supported and are skipped.

    Args:
        source_dir: Source tree root.

    Returns:
        List of glob patterns.
    """
    ignore_file = source_dir / DOCKERIGNORE_NAME
    if not ignore_file.is_file():
        return []

    patterns: list[str] = []
    for raw in ignore_file.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("!"):
            logger.warning("Ignoring negated pattern in %s: %s", ignore_file, line)
            continue
        patterns.append(line.strip("/"))
    return patterns


def is_excluded(rel_path: str, patterns: list[str]) -> bool:
    """Check whether a relative POSIX path is excluded.

    A pattern matching a directory excludes everything below it.

    Args:
        rel_path: Path relative to the source root, using '/'.
        patterns: Glob patterns.
    """
    parts = rel_path.split("/")
    prefixes = ["/".join(parts[: i + 1]) for i in range(len(parts))]
    for pattern in patterns:
        for prefix in prefixes:
            if fnmatch.fnmatchcase(prefix, pattern):
                return True
    return False


def validate_source_tree(source_dir: Path, pipeline: PipelineSchema) -> None:
    """Check the source tree can be handed to the builder stage.

    Args:
        source_dir: Source tree root.
        pipeline: Pipeline definition naming the required manifests.

    Raises:
        SourceTreeError: If the directory is missing or a required
            dependency manifest is absent.
    """
    if not source_dir.exists():
        raise SourceTreeError(
            f"Source tree not found: {source_dir}", code="source_not_found"
        )
    if not source_dir.is_dir():
        raise SourceTreeError(
            f"Source tree is not a directory: {source_dir}", code="source_not_dir"
        )

    missing = [
        name
        for name in pipeline.builder.required_files
        if not (source_dir / name).is_file()
    ]
    if missing:
        raise SourceTreeError(
            f"Source tree {source_dir} is missing dependency manifest(s): "
            + ", ".join(missing),
            code="missing_dependency_manifest",
        )


def stage_build_context(
    source_dir: Path,
    staging_dir: Path,
    excludes: list[str] | None = None,
) -> int:
    """Copy the source tree into a staging directory.

    Symlinks are copied as their target content and must stay inside the
    source tree.

    Args:
        source_dir: Source tree root.
        staging_dir: Destination build context directory.
        excludes: Glob patterns to leave out.

    Returns:
        Number of files staged.

    Raises:
        SourceTreeError: If staging fails or a symlink escapes the tree.
    """
    patterns = list(excludes or [])
    patterns.extend(load_ignore_patterns(source_dir))
    source_resolved = source_dir.resolve()
    staging_dir.mkdir(parents=True, exist_ok=True)

    count = 0
    try:
        for item in sorted(source_dir.rglob("*")):
            rel_path = item.relative_to(source_dir).as_posix()
            if is_excluded(rel_path, patterns):
                continue
            dest_path = staging_dir / rel_path

            if item.is_symlink():
                target = item.resolve()
                try:
                    target.relative_to(source_resolved)
                except ValueError:
                    raise SourceTreeError(
                        f"Symlink {item} points outside source tree: {target}",
                        code="symlink_escape",
                    ) from None

            if item.is_dir():
                if not item.is_symlink():
                    dest_path.mkdir(parents=True, exist_ok=True)
            elif item.is_file():
                dest_path.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(item.resolve() if item.is_symlink() else item, dest_path)
                count += 1

    except OSError as e:
        raise SourceTreeError(
            f"Failed to stage source tree {source_dir}: {e}",
            code="context_stage_error",
        ) from e

    logger.debug("Staged %d files from %s to %s", count, source_dir, staging_dir)
    return count


def compute_tree_hash(directory: Path) -> str:
    """Compute a deterministic hash of a directory tree.

    The hash is computed over:
    - Sorted file paths (relative to directory)
    - File contents
    - File modes (lower 9 bits: rwxrwxrwx)

    Args:
        directory: Directory to hash.

    Returns:
        SHA-256 hex digest of the tree.
    """
    hasher = hashlib.sha256()

    if not directory.exists():
        return hasher.hexdigest()

    for path in sorted(directory.rglob("*")):
        if not path.is_file():
            continue

        rel_path = path.relative_to(directory).as_posix()
        mode = stat.S_IMODE(path.stat().st_mode)

        # Hash: path\0mode\0content\0
        hasher.update(rel_path.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(f"{mode:o}".encode())
        hasher.update(b"\0")
        with path.open("rb") as f:
            while chunk := f.read(HASH_CHUNK_SIZE):
                hasher.update(chunk)
        hasher.update(b"\0")

    return hasher.hexdigest()


def stage_and_hash_context(
    source_dir: Path,
    staging_dir: Path,
    pipeline: PipelineSchema,
) -> tuple[Path, str]:
    """Validate, stage and hash a source tree in one step.

    Args:
        source_dir: Source tree root.
        staging_dir: Destination build context directory.
        pipeline: Pipeline definition.

    Returns:
        Tuple of (staging_dir, tree_hash).

    Raises:
        SourceTreeError: If validation or staging fails.
    """
    validate_source_tree(source_dir, pipeline)
    stage_build_context(source_dir, staging_dir, pipeline.context_excludes)
    return staging_dir, compute_tree_hash(staging_dir)


__all__ = [
    "DOCKERIGNORE_NAME",
    "SourceTreeError",
    "compute_tree_hash",
    "is_excluded",
    "load_ignore_patterns",
    "stage_and_hash_context",
    "stage_build_context",
    "validate_source_tree",
]
