"""``lockforge inspect-image ARCHIVE``: show and check an exported image.

Reads a docker-archive tarball, prints its entrypoint, environment, exposed
ports and layers, and re-hashes each ``layer.tar`` against the config's
``rootfs.diff_ids``.
"""

from __future__ import annotations

import json
import tarfile
from pathlib import Path

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from lockforge.cli.exit_codes import ASSEMBLY_ERROR, FAILURE
from lockforge.core.hasher import digest_bytes

console = Console()


def read_docker_archive(path: Path) -> tuple[dict, dict, list[tuple[str, bytes]]]:
    """Return (manifest entry, config, [(layer name, layer bytes)])."""
    with tarfile.open(path, mode="r:*") as archive:

        def member(name: str) -> bytes:
            handle = archive.extractfile(name)
            if handle is None:
                raise KeyError(name)
            return handle.read()

        manifest = json.loads(member("manifest.json"))
        if not isinstance(manifest, list) or len(manifest) != 1:
            raise ValueError("manifest.json must describe exactly one image")
        entry = manifest[0]
        config = json.loads(member(entry["Config"]))
        layers = [(name, member(name)) for name in entry["Layers"]]
    return entry, config, layers


def inspect_image_cmd(
    archive: Path = typer.Argument(..., help="docker-archive tarball to inspect."),
) -> None:
    """Print an image's runtime surface and verify its layer digests."""
    try:
        entry, config, layers = read_docker_archive(archive)
    except (OSError, tarfile.TarError, KeyError, ValueError) as exc:
        console.print(f"[bold red]Cannot read image archive {archive}:[/bold red] {exc}")
        raise typer.Exit(code=FAILURE)

    runtime = config.get("config", {})
    diff_ids = config.get("rootfs", {}).get("diff_ids", [])

    console.print(
        Panel(
            "\n".join([
                f"[bold]Tags:[/bold]        {', '.join(entry.get('RepoTags') or [])}",
                f"[bold]Platform:[/bold]    {config.get('os')}/{config.get('architecture')}",
                f"[bold]Created:[/bold]     {config.get('created')}",
                f"[bold]Entrypoint:[/bold]  {runtime.get('Entrypoint')}",
                f"[bold]Ports:[/bold]       {', '.join(sorted(runtime.get('ExposedPorts', {})))}",
                "[bold]Env:[/bold]",
                *(f"  {line}" for line in runtime.get("Env", [])),
            ]),
            title=f"[bold]{archive.name}[/bold]",
            border_style="cyan",
            padding=(1, 2),
        )
    )

    table = Table(title="Layers")
    table.add_column("#", justify="right")
    table.add_column("Digest", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Verified", justify="center")

    mismatched = len(layers) != len(diff_ids)
    for index, (name, data) in enumerate(layers):
        expected = diff_ids[index] if index < len(diff_ids) else ""
        actual = digest_bytes(data).address
        ok = actual == expected
        mismatched = mismatched or not ok
        table.add_row(
            str(index),
            actual,
            str(len(data)),
            "[green]Yes[/green]" if ok else "[red]No[/red]",
        )
    console.print(table)

    if mismatched:
        console.print("[bold red]Layer digests do not match the image config.[/bold red]")
        raise typer.Exit(code=ASSEMBLY_ERROR)
