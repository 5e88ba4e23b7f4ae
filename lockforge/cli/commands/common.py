"""Helpers shared by the build commands: option parsing and failure reporting."""

from __future__ import annotations

import tomllib
from pathlib import Path

import typer
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from lockforge.cli.exit_codes import exit_code_for
from lockforge.config import ForgeSettings
from lockforge.errors import CompileError, HashMismatch, PipelineError
from lockforge.models.stages import DEFAULT_STAGE_DEFINITIONS

_STAGE_NAMES = {sd.stage_id: sd.display_name for sd in DEFAULT_STAGE_DEFINITIONS}


def parse_pairs(values: list[str] | None, option: str) -> dict[str, str]:
    """Parse repeated ``KEY=VALUE`` options into a dict."""
    pairs: dict[str, str] = {}
    for value in values or []:
        key, sep, rest = value.partition("=")
        if not sep or not key or not rest:
            raise typer.BadParameter(f"expected KEY=VALUE, got {value!r}", param_hint=option)
        pairs[key] = rest
    return pairs


def package_name_from_manifest(source_tree: Path) -> str:
    """Read ``[package].name`` from the source tree's Cargo.toml."""
    manifest = source_tree / "Cargo.toml"
    try:
        data = tomllib.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        raise typer.BadParameter(
            f"cannot read package name from {manifest}: {exc}", param_hint="--name"
        ) from exc
    name = data.get("package", {}).get("name")
    if not isinstance(name, str) or not name:
        raise typer.BadParameter(f"{manifest} has no [package] name", param_hint="--name")
    return name


def package_version_from_manifest(source_tree: Path) -> str:
    manifest = source_tree / "Cargo.toml"
    try:
        data = tomllib.loads(manifest.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError):
        return "0.1.0"
    version = data.get("package", {}).get("version")
    return version if isinstance(version, str) and version else "0.1.0"


def settings_for(
    cache_dir: Path | None = None,
    output_dir: Path | None = None,
    run_tests: bool | None = None,
) -> ForgeSettings:
    """Environment settings with per-invocation CLI overrides applied."""
    update: dict[str, object] = {}
    if cache_dir is not None:
        update["cache_path"] = cache_dir
    if output_dir is not None:
        update["output_path"] = output_dir
    if run_tests is not None:
        update["run_tests"] = run_tests
    return ForgeSettings().model_copy(update=update)


def report_failure(console: Console, exc: PipelineError, log_path: Path | None = None) -> None:
    """Print a failure panel naming the stage, then exit with its code."""
    stage = _STAGE_NAMES.get(exc.stage, exc.stage)
    lines = [
        f"[bold red]{type(exc).__name__}[/bold red] in [bold]{stage}[/bold]",
        "",
        escape(str(exc)),
    ]
    if isinstance(exc, HashMismatch):
        lines += [
            "",
            f"[bold]Expected:[/bold] {exc.expected}",
            f"[bold]Actual:[/bold]   {exc.actual}",
        ]
    if isinstance(exc, CompileError) and log_path is not None:
        lines += ["", f"[dim]Build log: {log_path}[/dim]"]

    console.print(
        Panel(
            "\n".join(lines),
            title="[bold]lockforge: build failed[/bold]",
            border_style="red",
            padding=(1, 2),
        )
    )
    raise typer.Exit(code=exit_code_for(exc))
