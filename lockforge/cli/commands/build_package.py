"""``lockforge build-package``: resolve, verify and compile a source tree.

Fetches every dependency pinned in the lock file, checks each against its
recorded digest, and compiles the tree with the network disabled. The
executable is written to ``<output>/bin/<name>``.
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


def build_package_cmd(
    source: Path = typer.Argument(
        Path("."),
        help="Source tree containing Cargo.toml and Cargo.lock.",
    ),
    name: str = typer.Option(
        None, "--name", "-n", help="Package name (defaults to Cargo.toml [package].name)."
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
    profile: str = typer.Option("release", "--profile", help="Cargo profile."),
    run_tests: bool = typer.Option(
        None, "--test/--no-test", help="Run the test suite after building."
    ),
    cache_dir: Path = typer.Option(None, "--cache", help="Content-addressed cache directory."),
    output_dir: Path = typer.Option(None, "--out", "-o", help="Output directory."),
) -> None:
    """Build the package executable hermetically."""
    config = BuildConfig(
        package_name=name or package_name_from_manifest(source),
        package_version=package_version_from_manifest(source),
        source_tree=source,
        lock_file=lock_file,
        output_hashes=parse_pairs(output_hash, "--output-hash"),
        origins=parse_pairs(origin, "--origin"),
        target=target,
        profile=profile,
        run_tests=bool(run_tests),
    )
    orchestrator = Orchestrator(config, settings_for(cache_dir, output_dir, run_tests))

    try:
        artifact = orchestrator.build_package()
    except PipelineError as exc:
        report_failure(console, exc, orchestrator.build_log_path())
        return

    console.print()
    console.print(
        Panel(
            "\n".join([
                "[bold green]Package built[/bold green]",
                "",
                f"[bold]Run ID:[/bold]       {orchestrator.run_id}",
                f"[bold]Executable:[/bold]   {orchestrator.output_dir / 'bin' / artifact.name}",
                f"[bold]Digest:[/bold]       {artifact.content_address}",
                f"[bold]Size:[/bold]         {artifact.size_bytes} bytes",
                f"[bold]Toolchain:[/bold]    {artifact.metadata.toolchain_version}",
                f"[bold]Target:[/bold]       {artifact.metadata.target_platform}",
                f"[bold]Dependencies:[/bold] {artifact.metadata.dependency_set_address}",
            ]),
            title="[bold]lockforge[/bold]",
            border_style="green",
            padding=(1, 2),
        )
    )
