"""Main Typer application: imports and registers all CLI commands.

Entry point: ``lockforge`` (configured via pyproject.toml scripts).

Commands: build-package, build-image, verify-lock, inspect-image.
"""

from __future__ import annotations

import logging

import typer
from rich.logging import RichHandler

from lockforge.cli.commands.build_image import build_image_cmd
from lockforge.cli.commands.build_package import build_package_cmd
from lockforge.cli.commands.inspect_image import inspect_image_cmd
from lockforge.cli.commands.verify_lock import verify_lock_cmd
from lockforge.config import settings

app = typer.Typer(
    name="lockforge",
    help="lockforge: hermetic, lock-verified builds and layered container images.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="build-package", help="Resolve, verify and compile the package.")(build_package_cmd)
app.command(name="build-image", help="Build the package and assemble its image.")(build_image_cmd)
app.command(name="verify-lock", help="Fetch and verify every locked dependency.")(verify_lock_cmd)
app.command(name="inspect-image", help="Inspect an exported image archive.")(inspect_image_cmd)


@app.callback()
def configure(
    log_level: str = typer.Option(
        None, "--log-level", help="Logging level (defaults to LOCKFORGE_LOG_LEVEL)."
    ),
) -> None:
    """Install the Rich log handler before any command runs."""
    level = (log_level or settings.log_level).upper()
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=False, show_path=False)],
        force=True,
    )


def main() -> None:
    """CLI entry point."""
    app()


if __name__ == "__main__":
    main()
