"""Thin CLI wrapper for svc_imagegen.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
from pathlib import Path
from typing import TYPE_CHECKING, Annotated, Any

import typer
from rich.console import Console
from rich.logging import RichHandler

from svc_imagegen import __version__
from svc_imagegen.config import get_settings, print_settings_json

if TYPE_CHECKING:
    from sqlalchemy.orm import Session, sessionmaker

    from svc_imagegen.builds.models import BuildRecord
    from svc_imagegen.pipelines.schema import PipelineSchema
    from svc_imagegen.types import Finding

app = typer.Typer(
    name="imagegen",
    help="Service image pipeline - render, build and verify two-stage images",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)

STATUS_COLORS = {
    "succeeded": "green",
    "failed": "red",
    "running": "blue",
    "pending": "yellow",
}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"svc-imagegen version {__version__}")
        raise typer.Exit()


def configure_logging(level: str) -> None:
    """Route library logging through rich on stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Override the configured log level"),
    ] = None,
) -> None:
    """Service image pipeline - render, build and verify two-stage images."""
    configure_logging((log_level or get_settings().log_level).upper())


def _session_factory() -> "sessionmaker[Session]":
    from svc_imagegen.db import create_all_tables, get_engine, get_session_factory

    engine = get_engine()
    create_all_tables(engine)
    return get_session_factory(engine)


def _load_pipeline_or_exit(path: Path) -> "PipelineSchema":
    from pydantic import ValidationError

    from svc_imagegen.pipelines.io import load_pipeline

    if not path.exists():
        console.print(f"[red]File not found: {path}[/red]")
        raise typer.Exit(code=1)
    try:
        return load_pipeline(path)
    except ValidationError as e:
        console.print("[red]Validation failed:[/red]")
        console.print(str(e), markup=False)
        raise typer.Exit(code=1) from None
    except ValueError as e:
        console.print(f"[red]Validation failed: {e}[/red]")
        raise typer.Exit(code=1) from None


def _finding_to_dict(finding: "Finding") -> dict[str, Any]:
    return {
        "code": finding.code,
        "severity": finding.severity.value,
        "message": finding.message,
        "line": finding.line,
        "source": finding.source,
    }


def _print_findings(findings: "list[Finding]") -> None:
    if not findings:
        console.print("  [green]No findings[/green]")
        return
    for f in findings:
        color = "red" if f.severity.value == "error" else "yellow"
        location = f"{f.source}:{f.line}" if f.source and f.line else f.source or ""
        prefix = f"{location}: " if location else ""
        console.print(
            f"  [{color}]{f.severity.value}[/{color}] {prefix}{f.code}: ", end=""
        )
        console.print(f.message, markup=False)


def _print_log_tail(build: "BuildRecord") -> None:
    from svc_imagegen.builds.runner import tail_log

    log_path = build.runtime_log_path or build.builder_log_path
    if not log_path:
        return
    lines = tail_log(Path(log_path))
    if not lines:
        return
    console.print(f"[bold]Last {len(lines)} line(s) of {log_path}:[/bold]")
    for line in lines:
        console.print(f"  {line}", markup=False, highlight=False)


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        typer.echo(print_settings_json(settings))
    else:
        tmp_dir_display = (
            str(settings.tmp_dir) if settings.tmp_dir else "(system default)"
        )
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Cache directory:     {settings.cache_dir}")
        console.print(f"  Artifacts directory: {settings.artifacts_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print(f"  Temp directory:      {tmp_dir_display}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Build tool:          {settings.docker_bin}")
        console.print(f"  Keep build context:  {settings.keep_context}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Build stage timeout: {settings.build_timeout}")
        console.print(f"  Container run:       {settings.run_timeout}")


@app.command()
def doctor() -> None:
    """Check the container build tool is installed and its daemon reachable."""
    from svc_imagegen.builds.runner import BuildExecutionError, check_build_tool

    settings = get_settings()
    try:
        version = check_build_tool(settings.docker_bin, timeout=settings.run_timeout)
    except BuildExecutionError as e:
        console.print(f"[red]✗ {e}[/red]")
        raise typer.Exit(code=1) from None
    console.print(f"[green]✓ {settings.docker_bin} server {version}[/green]")


pipeline_app = typer.Typer(help="Validate and render pipeline definitions")
app.add_typer(pipeline_app, name="pipeline")


@pipeline_app.command("validate")
def pipeline_validate(
    path: Annotated[Path, typer.Argument(help="Pipeline definition file")],
) -> None:
    """Validate a pipeline definition file."""
    pipeline = _load_pipeline_or_exit(path)
    console.print(f"[green]✓ Valid pipeline: {pipeline.pipeline_id}[/green]")
    console.print(f"  Artifact: {pipeline.artifact_name}")
    console.print(f"  Builder:  {pipeline.builder_base()}")
    console.print(f"  Runtime:  {pipeline.runtime_base}")
    console.print(f"  Entry:    {json.dumps(pipeline.entry_command)}", markup=False)


@pipeline_app.command("show")
def pipeline_show(
    path: Annotated[Path, typer.Argument(help="Pipeline definition file")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a pipeline definition with defaults filled in."""
    from svc_imagegen.pipelines.io import pipeline_to_dict, pipeline_to_yaml_string

    pipeline = _load_pipeline_or_exit(path)
    if json_output:
        typer.echo(json.dumps(pipeline_to_dict(pipeline), indent=2))
    else:
        typer.echo(pipeline_to_yaml_string(pipeline), nl=False)


@pipeline_app.command("render")
def pipeline_render(
    path: Annotated[Path, typer.Argument(help="Pipeline definition file")],
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write the Dockerfile to this file"),
    ] = None,
    toolchain_version: Annotated[
        str | None,
        typer.Option("--toolchain-version", help="Override the pinned toolchain"),
    ] = None,
) -> None:
    """Render the two-stage Dockerfile for a pipeline."""
    from pydantic import ValidationError

    from svc_imagegen.builds.service import pin_toolchain
    from svc_imagegen.pipelines.dockerfile import render_dockerfile

    pipeline = _load_pipeline_or_exit(path)
    try:
        pipeline = pin_toolchain(pipeline, toolchain_version)
    except ValidationError as e:
        console.print("[red]Invalid toolchain version:[/red]")
        console.print(str(e), markup=False)
        raise typer.Exit(code=1) from None

    content = render_dockerfile(pipeline)
    if output is None:
        typer.echo(content, nl=False)
    else:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(content, encoding="utf-8")
        console.print(f"[green]Wrote {output}[/green]")


manifests_app = typer.Typer(help="Inspect existing Dockerfiles")
app.add_typer(manifests_app, name="manifests")


def _load_manifests_or_exit(paths: list[Path]) -> list[Any]:
    from svc_imagegen.manifests.parser import ManifestParseError, load_manifest

    manifests = []
    for path in paths:
        if not path.exists():
            console.print(f"[red]File not found: {path}[/red]")
            raise typer.Exit(code=1)
        try:
            manifests.append(load_manifest(path))
        except ManifestParseError as e:
            console.print(f"[red]Cannot parse {path}: {e}[/red]")
            raise typer.Exit(code=1) from None
    return manifests


@manifests_app.command("check")
def manifests_check(
    paths: Annotated[list[Path], typer.Argument(help="Dockerfile(s) to check")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Check Dockerfiles against the two-stage pipeline shape."""
    from svc_imagegen.manifests.analysis import check_manifest, has_errors

    manifests = _load_manifests_or_exit(paths)
    results = {m.source: check_manifest(m) for m in manifests}

    if json_output:
        output = {
            source: [_finding_to_dict(f) for f in findings]
            for source, findings in results.items()
        }
        typer.echo(json.dumps(output, indent=2))
    else:
        for source, findings in results.items():
            console.print(f"[bold]{source}[/bold]")
            _print_findings(findings)

    if any(has_errors(findings) for findings in results.values()):
        raise typer.Exit(code=1)


@manifests_app.command("drift")
def manifests_drift(
    paths: Annotated[list[Path], typer.Argument(help="Alternative Dockerfiles")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Report base image drift between alternative Dockerfiles."""
    from svc_imagegen.manifests.analysis import detect_drift

    report = detect_drift(_load_manifests_or_exit(paths))

    if json_output:
        typer.echo(json.dumps(report.to_dict(), indent=2))
    else:
        console.print("[bold]Builder images:[/bold]")
        for source, image in report.builder_images.items():
            console.print(f"  {source}: {image}")
        console.print("[bold]Runtime images:[/bold]")
        for source, image in report.runtime_images.items():
            console.print(f"  {source}: {image}")
        if report.has_drift:
            console.print(
                "[red]Drift detected: collapse these into one pipeline with a "
                "single TOOLCHAIN_VERSION[/red]"
            )
        else:
            console.print("[green]No drift[/green]")

    if report.has_drift:
        raise typer.Exit(code=1)


@manifests_app.command("import")
def manifests_import(
    path: Annotated[Path, typer.Argument(help="Two-stage Dockerfile to import")],
    pipeline_id: Annotated[
        str,
        typer.Option("--pipeline-id", "-p", help="Identifier for the new pipeline"),
    ],
    repository: Annotated[
        str,
        typer.Option("--repository", "-r", help="Image repository for tags"),
    ],
    toolchain_version: Annotated[
        str | None,
        typer.Option("--toolchain-version", help="Pin instead of the builder tag"),
    ] = None,
    output: Annotated[
        Path | None,
        typer.Option("--output", "-o", help="Write the pipeline to this file"),
    ] = None,
) -> None:
    """Convert an existing two-stage Dockerfile into a pipeline definition."""
    from pydantic import ValidationError

    from svc_imagegen.manifests.analysis import (
        ManifestImportError,
        manifest_to_pipeline,
    )
    from svc_imagegen.pipelines.io import pipeline_to_yaml_string, save_pipeline

    (manifest,) = _load_manifests_or_exit([path])
    try:
        pipeline = manifest_to_pipeline(
            manifest, pipeline_id, repository, toolchain_version
        )
    except ManifestImportError as e:
        console.print(f"[red]Cannot import {path}: {e}[/red]")
        raise typer.Exit(code=1) from None
    except ValidationError as e:
        console.print(f"[red]Imported definition is invalid ({path}):[/red]")
        console.print(str(e), markup=False)
        raise typer.Exit(code=1) from None

    if output is None:
        typer.echo(pipeline_to_yaml_string(pipeline), nl=False)
    else:
        save_pipeline(pipeline, output)
        console.print(f"[green]Imported {pipeline.pipeline_id} to {output}[/green]")


builds_app = typer.Typer(help="Build and verify images")
app.add_typer(builds_app, name="build")


def _print_build(b: "BuildRecord") -> None:
    status_color = STATUS_COLORS.get(b.status, "white")
    console.print(f"  [{status_color}]Build #{b.id}[/{status_color}]")
    console.print(f"    Pipeline: {b.pipeline_id}")
    console.print(f"    Toolchain: {b.toolchain_version}")
    console.print(f"    State: {b.state}")
    console.print(f"    Status: {b.status}")
    if b.image_tag:
        console.print(f"    Image: {b.image_tag}")
    requested = b.requested_at.isoformat() if b.requested_at else "N/A"
    console.print(f"    Requested: {requested}")
    console.print(f"    Artifacts: {len(b.artifacts)}")
    if b.error_message:
        console.print(f"    Error: {b.error_message}", markup=False)


@builds_app.command("run")
def build_run(
    pipeline_path: Annotated[Path, typer.Argument(help="Pipeline definition file")],
    source_dir: Annotated[Path, typer.Argument(help="Source tree root")],
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Force rebuild even if cached"),
    ] = False,
    toolchain_version: Annotated[
        str | None,
        typer.Option("--toolchain-version", help="Override the pinned toolchain"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Run the builder stage then the runtime stage for a source tree."""
    from pydantic import ValidationError

    from svc_imagegen.builds.context import SourceTreeError
    from svc_imagegen.builds.runner import BuildExecutionError
    from svc_imagegen.builds.service import build_or_reuse, build_to_dict

    pipeline = _load_pipeline_or_exit(pipeline_path)
    factory = _session_factory()

    with factory() as session:
        try:
            build, is_cache_hit = build_or_reuse(
                session,
                pipeline,
                source_dir,
                settings=get_settings(),
                force_rebuild=force,
                toolchain_version=toolchain_version,
            )
        except SourceTreeError as e:
            console.print(f"[red]Source tree rejected ({e.code}): {e}[/red]")
            raise typer.Exit(code=1) from None
        except ValidationError as e:
            console.print("[red]Invalid toolchain version:[/red]")
            console.print(str(e), markup=False)
            raise typer.Exit(code=1) from None
        except BuildExecutionError as e:
            session.commit()
            console.print(f"[red]Build aborted ({e.code}): {e}[/red]")
            raise typer.Exit(code=1) from None
        except TimeoutError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1) from None
        session.commit()

        if json_output:
            output = build_to_dict(build)
            output["is_cache_hit"] = is_cache_hit
            typer.echo(json.dumps(output, indent=2))
        elif build.is_succeeded():
            hit_marker = " (cache hit)" if is_cache_hit else ""
            console.print(
                f"[green]✓ Build #{build.id} ready{hit_marker}: "
                f"{build.image_tag}[/green]"
            )
        else:
            console.print(
                f"[red]✗ Build #{build.id} stopped in state {build.state}[/red]"
            )
            if build.error_message:
                console.print(f"  Error: {build.error_message}", markup=False)
            _print_log_tail(build)

        if not build.is_succeeded():
            raise typer.Exit(code=1)


@builds_app.command("list")
def builds_list(
    pipeline_id: Annotated[
        str | None,
        typer.Option("--pipeline", "-p", help="Filter by pipeline ID"),
    ] = None,
    status: Annotated[
        str | None,
        typer.Option(
            "--status", "-s", help="Filter by status (pending/running/succeeded/failed)"
        ),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List build records."""
    from svc_imagegen.builds.service import build_to_dict, list_builds
    from svc_imagegen.types import BuildStatus

    status_filter: BuildStatus | None = None
    if status:
        try:
            status_filter = BuildStatus(status)
        except ValueError:
            console.print(f"[red]Invalid status: {status}[/red]")
            console.print("Valid values: pending, running, succeeded, failed")
            raise typer.Exit(code=1) from None

    factory = _session_factory()
    with factory() as session:
        builds = list_builds(
            session, pipeline_id=pipeline_id, status=status_filter, limit=limit
        )

        if json_output:
            typer.echo(json.dumps([build_to_dict(b) for b in builds], indent=2))
            return
        if not builds:
            console.print("[yellow]No build records found[/yellow]")
            return

        console.print(f"[bold]Found {len(builds)} build(s):[/bold]")
        console.print()
        for b in builds:
            _print_build(b)
            console.print()


@builds_app.command("show")
def builds_show(
    build_id: Annotated[int, typer.Argument(help="Build ID to show")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show details of a specific build."""
    from svc_imagegen.builds.service import (
        BuildNotFoundError,
        artifact_to_dict,
        build_to_dict,
        get_build,
    )

    factory = _session_factory()
    with factory() as session:
        try:
            build = get_build(session, build_id)
        except BuildNotFoundError:
            console.print(f"[red]Build not found: {build_id}[/red]")
            raise typer.Exit(code=1) from None

        if json_output:
            output = build_to_dict(build)
            output["artifacts"] = [artifact_to_dict(a) for a in build.artifacts]
            typer.echo(json.dumps(output, indent=2))
            return

        _print_build(build)
        for a in build.artifacts:
            console.print(f"    Artifact: {a.path_in_image}")
            console.print(f"      Size:   {a.size_bytes:,} bytes")
            console.print(f"      SHA256: {a.sha256}")
        if build.builder_log_path:
            console.print(f"    Builder log: {build.builder_log_path}")
        if build.runtime_log_path:
            console.print(f"    Runtime log: {build.runtime_log_path}")


@builds_app.command("verify")
def builds_verify(
    build_id: Annotated[int, typer.Argument(help="Build ID to verify")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Check the entry command and layer contents of a built image."""
    from svc_imagegen.builds.service import (
        BuildNotFoundError,
        BuildServiceError,
        verify_build,
    )
    from svc_imagegen.builds.verify import ImageInspectionError

    factory = _session_factory()
    with factory() as session:
        try:
            report = verify_build(session, build_id, settings=get_settings())
        except BuildNotFoundError:
            console.print(f"[red]Build not found: {build_id}[/red]")
            raise typer.Exit(code=1) from None
        except (BuildServiceError, ImageInspectionError) as e:
            console.print(f"[red]Cannot verify build {build_id} ({e.code}): {e}[/red]")
            raise typer.Exit(code=1) from None
        session.commit()

        if json_output:
            artifact = report.artifact
            output = {
                "build_id": report.build_id,
                "image_tag": report.image_tag,
                "success": report.success,
                "artifact": {
                    "filename": artifact.filename,
                    "path_in_image": artifact.path_in_image,
                    "size_bytes": artifact.size_bytes,
                    "sha256": artifact.sha256,
                }
                if artifact
                else None,
                "findings": [_finding_to_dict(f) for f in report.findings],
            }
            typer.echo(json.dumps(output, indent=2))
        else:
            console.print(f"[bold]Build #{report.build_id}: {report.image_tag}[/bold]")
            if report.artifact:
                console.print(f"  Artifact: {report.artifact.path_in_image}")
                console.print(f"  SHA256:   {report.artifact.sha256}")
            _print_findings(report.findings)
            if report.success:
                console.print("[green]✓ Image verified[/green]")

        if not report.success:
            raise typer.Exit(code=1)


@builds_app.command("reproducible")
def builds_reproducible(
    pipeline_id: Annotated[str, typer.Argument(help="Pipeline ID")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Compare artifact digests of the two latest verified builds."""
    from svc_imagegen.builds.service import BuildServiceError, check_reproducibility

    factory = _session_factory()
    with factory() as session:
        try:
            report = check_reproducibility(session, pipeline_id)
        except BuildServiceError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(code=1) from None

    if json_output:
        typer.echo(json.dumps(report.to_dict(), indent=2))
    else:
        older, newer = report.build_ids
        console.print(f"[bold]{pipeline_id}: builds #{older} and #{newer}[/bold]")
        console.print(f"  #{older}: {report.digests[0]}")
        console.print(f"  #{newer}: {report.digests[1]}")
        console.print(f"  Same inputs: {report.same_inputs}")
        if report.reproducible:
            console.print("[green]✓ Artifacts are byte-identical[/green]")
        else:
            console.print("[red]✗ Artifacts differ[/red]")

    if not report.reproducible:
        raise typer.Exit(code=1)


@app.command()
def smoke(
    pipeline_path: Annotated[
        Path | None,
        typer.Option("--pipeline", "-p", help="Pipeline whose shape is exercised"),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Build and run a hello program through the pipeline."""
    from svc_imagegen.builds.context import SourceTreeError
    from svc_imagegen.builds.runner import BuildExecutionError
    from svc_imagegen.builds.service import run_smoke_test
    from svc_imagegen.builds.smoke import SmokeTestError, default_smoke_pipeline
    from svc_imagegen.builds.verify import ImageInspectionError

    pipeline = (
        _load_pipeline_or_exit(pipeline_path)
        if pipeline_path
        else default_smoke_pipeline()
    )

    factory = _session_factory()
    with factory() as session:
        try:
            report = run_smoke_test(session, pipeline, settings=get_settings())
        except (
            SmokeTestError,
            SourceTreeError,
            BuildExecutionError,
            ImageInspectionError,
        ) as e:
            session.commit()
            console.print(f"[red]Smoke test aborted ({e.code}): {e}[/red]")
            raise typer.Exit(code=1) from None
        session.commit()

    if json_output:
        output = {
            "build_id": report.build_id,
            "image_tag": report.image_tag,
            "state": report.state,
            "output": report.output,
            "success": report.success,
            "findings": [_finding_to_dict(f) for f in report.findings],
        }
        typer.echo(json.dumps(output, indent=2))
    else:
        console.print(f"[bold]Smoke build #{report.build_id}: {report.state}[/bold]")
        if report.output:
            console.print(f"  Output: {report.output.strip()}", markup=False)
        _print_findings(report.findings)
        if report.success:
            console.print("[green]✓ Pipeline shape verified[/green]")

    if not report.success:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
