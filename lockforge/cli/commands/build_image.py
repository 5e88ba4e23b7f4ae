"""``lockforge build-image``: build the package and assemble its container image.

Runs the full pipeline (resolve, compile, assemble) and exports the image as
a docker-archive tarball at ``<output>/<name>-<tag>.tar``.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel

from lockforge.cli.commands.common import (
    package_name_from_manifest,
    package_version_from_manifest,
    parse_pairs,
    report_failure,
    settings_for,
)
from lockforge.core.orchestrator import Orchestrator
from lockforge.errors import PipelineError
from lockforge.models.config import BuildConfig

console = Console()


def build_image_cmd(
    source: Path = typer.Argument(
        Path("."),
        help="Source tree containing Cargo.toml and Cargo.lock.",
    ),
    name: str = typer.Option(
        None, "--name", "-n", help="Package name (defaults to Cargo.toml [package].name)."
    ),
    image_name: str = typer.Option(
        None, "--image-name", help="Image name (defaults to the package name)."
    ),
    tag: str = typer.Option("latest", "--tag", "-t", help="Image tag."),
    base_package: list[Path] = typer.Option(
        None,
        "--base-package",
        help="Root of a base utility package whose /bin goes in the base layer. Repeatable.",
    ),
    trust_bundle: Path = typer.Option(
        Path("/etc/ssl/certs/ca-bundle.crt"),
        "--trust-bundle",
        help="CA certificate bundle installed in the image.",
    ),
    supervisor: Path = typer.Option(
        Path("/usr/bin/tini"), "--supervisor", help="Init supervisor binary (tini)."
    ),
    lock_file: Path = typer.Option(
        None, "--lock", "-l", help="Lock file (defaults to <source>/Cargo.lock)."
    ),
    output_hash: list[str] = typer.Option(
        None,
        "--output-hash",
        help="Pin a git dependency: IDENTIFIER=sha256-<base64>. Repeatable.",
    ),
    origin: list[str] = typer.Option(
        None, "--origin", help="Override an origin: IDENTIFIER=URL. Repeatable."
    ),
    target: str = typer.Option(None, "--target", help="Target triple."),
    run_tests: bool = typer.Option(
        None, "--test/--no-test", help="Run the test suite after building."
    ),
    cache_dir: Path = typer.Option(None, "--cache", help="Content-addressed cache directory."),
    output_dir: Path = typer.Option(None, "--out", "-o", help="Output directory."),
) -> None:
    """Build the package and assemble a layered container image."""
    config = BuildConfig(
        package_name=name or package_name_from_manifest(source),
        package_version=package_version_from_manifest(source),
        source_tree=source,
        lock_file=lock_file,
        output_hashes=parse_pairs(output_hash, "--output-hash"),
        origins=parse_pairs(origin, "--origin"),
        target=target,
        run_tests=bool(run_tests),
        image_name=image_name,
        image_tag=tag,
        base_packages=list(base_package or []),
        trust_bundle=trust_bundle,
        supervisor=supervisor,
    )
    orchestrator = Orchestrator(config, settings_for(cache_dir, output_dir, run_tests))

    try:
        image = orchestrator.build_image()
    except PipelineError as exc:
        report_failure(console, exc, orchestrator.build_log_path())
        return

    layer_lines = [
        f"  {layer.name:<5} {layer.digest}  ({layer.size_bytes} bytes)"
        for layer in image.layers
    ]
    console.print()
    console.print(
        Panel(
            "\n".join([
                "[bold green]Image assembled[/bold green]",
                "",
                f"[bold]Run ID:[/bold]      {orchestrator.run_id}",
                f"[bold]Reference:[/bold]   {image.reference}",
                f"[bold]Archive:[/bold]     {orchestrator.image_archive_path(image)}",
                f"[bold]Config:[/bold]      {image.config_digest}",
                f"[bold]Entrypoint:[/bold]  {list(image.entrypoint)}",
                f"[bold]Ports:[/bold]       {', '.join(image.exposed_ports)}",
                "[bold]Layers:[/bold]",
                *layer_lines,
            ]),
            title="[bold]lockforge[/bold]",
            border_style="green",
            padding=(1, 2),
        )
    )
