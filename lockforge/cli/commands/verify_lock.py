"""``lockforge verify-lock``: fetch and verify every pinned dependency.

Runs only the resolution stage. Nothing is compiled; verified bytes land in
the cache, so a following build starts from cache hits.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from lockforge.cli.commands.common import parse_pairs, report_failure, settings_for
from lockforge.core.orchestrator import Orchestrator
from lockforge.errors import PipelineError
from lockforge.models.config import BuildConfig
from lockforge.models.lockfile import VerifiedDependencySet

console = Console()


def verify_lock_cmd(
    source: Path = typer.Argument(
        Path("."),
        help="Source tree containing Cargo.lock.",
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
    cache_dir: Path = typer.Option(None, "--cache", help="Content-addressed cache directory."),
    output_dir: Path = typer.Option(None, "--out", "-o", help="Output directory."),
) -> None:
    """Verify the lock file against its origins without building."""
    config = BuildConfig(
        package_name=source.resolve().name or "workspace",
        source_tree=source,
        lock_file=lock_file,
        output_hashes=parse_pairs(output_hash, "--output-hash"),
        origins=parse_pairs(origin, "--origin"),
    )
    orchestrator = Orchestrator(config, settings_for(cache_dir, output_dir))

    try:
        summary = orchestrator.verify_lock()
    except PipelineError as exc:
        report_failure(console, exc)
        return

    verified: VerifiedDependencySet = orchestrator.run_context["verified_dependencies"]
    table = Table(title=f"Verified dependencies ({summary['dependency_count']})")
    table.add_column("Package", style="cyan")
    table.add_column("Digest", style="green")
    table.add_column("Size", justify="right")
    table.add_column("Origin", style="dim")
    for dep in verified.dependencies:
        table.add_row(
            dep.entry.identifier,
            dep.entry.digest.sri,
            str(dep.size_bytes),
            dep.origin,
        )
    console.print(table)
    console.print(f"[bold]Set digest:[/bold] {summary['dependency_set_address']}")
