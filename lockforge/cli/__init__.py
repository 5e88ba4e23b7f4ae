"""lockforge CLI: Typer-based command-line interface.

Provides the ``lockforge`` command with subcommands for building the
executable, assembling the container image, verifying a lock file against
its origins, and inspecting an exported image archive.

All output uses Rich for formatted terminal display.
"""
