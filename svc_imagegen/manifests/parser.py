"""Dockerfile parsing.

This module handles:
- Parser directives (``# syntax=``, ``# escape=``)
- Comments, blank lines and line continuations
- Splitting instructions into keyword, flags and arguments
- Exec form (JSON array) versus shell form detection
- Grouping instructions into build stages with ARG substitution in FROM

Only the subset of the Dockerfile grammar needed to analyze build
pipelines is implemented; heredocs are not supported.
"""

from __future__ import annotations

import json
import re
import shlex
from dataclasses import dataclass, field
from pathlib import Path

DIRECTIVE_PATTERN = re.compile(r"^#\s*([a-zA-Z][a-zA-Z0-9]*)\s*=\s*(.+?)\s*$")
VARIABLE_PATTERN = re.compile(
    r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::?-([^}]*))?\}|\$([A-Za-z_][A-Za-z0-9_]*)"
)
FLAG_INSTRUCTIONS = frozenset({"FROM", "COPY", "ADD", "RUN"})


class ManifestParseError(Exception):
    """Raised when a Dockerfile cannot be parsed."""

    def __init__(
        self,
        message: str,
        line: int | None = None,
        code: str = "manifest_parse_error",
    ) -> None:
        super().__init__(message if line is None else f"line {line}: {message}")
        self.line = line
        self.code = code


@dataclass
class ImageRef:
    """A parsed image reference such as ``rust:1.83``."""

    name: str
    tag: str | None = None
    digest: str | None = None

    @classmethod
    def parse(cls, ref: str) -> ImageRef:
        """Parse ``name[:tag][@digest]`` into its parts."""
        digest: str | None = None
        if "@" in ref:
            ref, digest = ref.split("@", 1)
        # A ':' before the last '/' belongs to a registry port
        head, _, last = ref.rpartition("/")
        tag: str | None = None
        if ":" in last:
            last, tag = last.split(":", 1)
        name = f"{head}/{last}" if head else last
        return cls(name=name, tag=tag, digest=digest)

    @property
    def is_pinned(self) -> bool:
        """Whether the reference names a fixed tag or digest."""
        return self.digest is not None or (
            self.tag is not None and self.tag != "latest"
        )

    def __str__(self) -> str:
        ref = self.name
        if self.tag:
            ref += f":{self.tag}"
        if self.digest:
            ref += f"@{self.digest}"
        return ref


@dataclass
class Instruction:
    """A single Dockerfile instruction.

    Attributes:
        keyword: Upper-cased instruction keyword.
        value: Raw argument text after flags, with continuations joined.
        line: 1-based line number where the instruction starts.
        flags: ``--name=value`` flags (FROM, COPY, ADD, RUN).
        args: Parsed arguments (JSON array items or shell-split words).
        exec_form: True if the arguments were given as a JSON array.
    """

    keyword: str
    value: str
    line: int
    flags: dict[str, str] = field(default_factory=dict)
    args: list[str] = field(default_factory=list)
    exec_form: bool = False


@dataclass
class Stage:
    """A build stage starting at a FROM instruction."""

    index: int
    base: ImageRef
    raw_base: str
    name: str | None
    line: int
    instructions: list[Instruction] = field(default_factory=list)

    def find(self, keyword: str) -> list[Instruction]:
        """Return the instructions in this stage with the given keyword."""
        return [i for i in self.instructions if i.keyword == keyword]


@dataclass
class Manifest:
    """A parsed Dockerfile."""

    source: str
    directives: dict[str, str] = field(default_factory=dict)
    global_args: dict[str, str | None] = field(default_factory=dict)
    instructions: list[Instruction] = field(default_factory=list)
    stages: list[Stage] = field(default_factory=list)

    def stage(self, ref: str) -> Stage | None:
        """Look up a stage by name or numeric index."""
        for stage in self.stages:
            if stage.name is not None and stage.name.lower() == ref.lower():
                return stage
        if ref.isdigit() and int(ref) < len(self.stages):
            return self.stages[int(ref)]
        return None

    @property
    def final_stage(self) -> Stage | None:
        """The last stage, which produces the output image."""
        return self.stages[-1] if self.stages else None


def substitute_args(text: str, values: dict[str, str | None]) -> str:
    """Expand ``$VAR``, ``${VAR}`` and ``${VAR:-default}`` references.

    Unknown variables without a default expand to an empty string, as the
    container build tool does.
    """

    def _replace(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(3)
        default = match.group(2)
        value = values.get(name)
        if value:
            return value
        return default if default is not None else ""

    return VARIABLE_PATTERN.sub(_replace, text)


def _read_directives(lines: list[str]) -> tuple[dict[str, str], int]:
    directives: dict[str, str] = {}
    consumed = 0
    for line in lines:
        match = DIRECTIVE_PATTERN.match(line.strip())
        if not match or match.group(1).lower() in directives:
            break
        directives[match.group(1).lower()] = match.group(2)
        consumed += 1
    return directives, consumed


def _logical_lines(
    lines: list[str], start: int, escape: str
) -> list[tuple[int, str]]:
    """Join continuation lines, dropping comments and blank lines."""
    logical: list[tuple[int, str]] = []
    buffer: list[str] = []
    buffer_line = 0

    for offset, raw in enumerate(lines[start:], start=start + 1):
        stripped = raw.strip()
        if stripped.startswith("#"):
            continue
        if not buffer:
            if not stripped:
                continue
            buffer_line = offset
        body = raw.rstrip()
        if body.endswith(escape):
            buffer.append(body[: -len(escape)].strip())
            continue
        buffer.append(body.strip())
        logical.append((buffer_line, " ".join(p for p in buffer if p)))
        buffer = []

    if buffer:
        logical.append((buffer_line, " ".join(p for p in buffer if p)))
    return logical


def _split_flags(rest: str) -> tuple[dict[str, str], str]:
    flags: dict[str, str] = {}
    while rest.startswith("--"):
        token, _, remainder = rest.partition(" ")
        name, _, value = token[2:].partition("=")
        flags[name.lower()] = value
        rest = remainder.lstrip()
    return flags, rest


def parse_instruction(line_no: int, text: str) -> Instruction:
    """Parse one logical line into an Instruction.

    Raises:
        ManifestParseError: If the line has no instruction keyword.
    """
    keyword, _, rest = text.partition(" ")
    if not keyword.isalpha():
        raise ManifestParseError(f"invalid instruction '{keyword}'", line=line_no)
    keyword = keyword.upper()
    rest = rest.strip()

    flags: dict[str, str] = {}
    if keyword in FLAG_INSTRUCTIONS:
        flags, rest = _split_flags(rest)

    args: list[str] = []
    exec_form = False
    if rest.startswith("["):
        try:
            parsed = json.loads(rest)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, list) and all(isinstance(a, str) for a in parsed):
            args = parsed
            exec_form = True
    if not exec_form:
        try:
            args = shlex.split(rest)
        except ValueError:
            args = rest.split()

    return Instruction(
        keyword=keyword,
        value=rest,
        line=line_no,
        flags=flags,
        args=args,
        exec_form=exec_form,
    )


def _parse_arg(instruction: Instruction) -> tuple[str, str | None]:
    name, sep, default = instruction.value.partition("=")
    name = name.strip()
    if not name:
        raise ManifestParseError("ARG without a name", line=instruction.line)
    return name, default.strip().strip("\"'") if sep else None


def stage_arg_values(manifest: Manifest, stage: Stage) -> dict[str, str | None]:
    """Values of the ARGs declared in a stage.

    An ARG without a default inside a stage takes the global default of the
    same name, as the container build tool does.
    """
    values: dict[str, str | None] = {}
    for instruction in stage.find("ARG"):
        name, default = _parse_arg(instruction)
        if default is None:
            default = manifest.global_args.get(name)
        values[name] = default
    return values


def parse_dockerfile(text: str, source: str = "<string>") -> Manifest:
    """Parse Dockerfile text into a Manifest.

    Args:
        text: Dockerfile content.
        source: Label used in findings (usually the file path).

    Returns:
        Parsed Manifest.

    Raises:
        ManifestParseError: If the content is malformed.
    """
    lines = text.splitlines()
    directives, consumed = _read_directives(lines)
    escape = directives.get("escape", "\\")
    if escape not in ("\\", "`"):
        raise ManifestParseError(f"invalid escape directive '{escape}'", line=1)

    manifest = Manifest(source=source, directives=directives)

    for line_no, text_line in _logical_lines(lines, consumed, escape):
        instruction = parse_instruction(line_no, text_line)
        manifest.instructions.append(instruction)

        if instruction.keyword == "FROM":
            if not instruction.args:
                raise ManifestParseError("FROM without an image", line=line_no)
            raw_base = instruction.args[0]
            name: str | None = None
            if len(instruction.args) >= 3 and instruction.args[1].upper() == "AS":
                name = instruction.args[2]
            resolved = substitute_args(raw_base, manifest.global_args)
            manifest.stages.append(
                Stage(
                    index=len(manifest.stages),
                    base=ImageRef.parse(resolved),
                    raw_base=raw_base,
                    name=name,
                    line=line_no,
                )
            )
            continue

        if not manifest.stages:
            if instruction.keyword != "ARG":
                raise ManifestParseError(
                    f"{instruction.keyword} before the first FROM", line=line_no
                )
            arg_name, default = _parse_arg(instruction)
            manifest.global_args[arg_name] = default
            continue

        manifest.stages[-1].instructions.append(instruction)

    if not manifest.stages:
        raise ManifestParseError("no FROM instruction found")
    return manifest


def load_manifest(path: Path) -> Manifest:
    """Read and parse a Dockerfile from disk.

    Raises:
        FileNotFoundError: If the file does not exist.
        ManifestParseError: If the content is malformed.
    """
    return parse_dockerfile(path.read_text(encoding="utf-8"), source=str(path))


__all__ = [
    "ImageRef",
    "Instruction",
    "Manifest",
    "ManifestParseError",
    "Stage",
    "load_manifest",
    "parse_dockerfile",
    "parse_instruction",
    "stage_arg_values",
    "substitute_args",
]
