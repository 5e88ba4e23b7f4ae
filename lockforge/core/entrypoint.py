"""Entrypoint wrapper: the supervisor always runs as process 1.

Container runtimes start the entrypoint as PID 1, which neither reaps
orphaned children nor forwards SIGTERM/SIGINT by default. The image
therefore never starts the artifact directly; it starts the supervisor
(tini), which execs the artifact as its child:

    [supervisor, "--", artifact]

If the supervisor cannot start, the container exits non-zero at once. To
keep that from being a runtime surprise, the supervisor binary is checked
before any layer is written.
"""

from __future__ import annotations

import os
from pathlib import Path

from lockforge.errors import AssemblyError
from lockforge.models.image import ENTRYPOINT_SEPARATOR


def wrap_entrypoint(supervisor_path: str, artifact_path: str) -> tuple[str, str, str]:
    """Return the entrypoint vector running *artifact_path* under the supervisor."""
    if not supervisor_path or not artifact_path:
        raise AssemblyError("supervisor and artifact paths must both be set")
    if supervisor_path == artifact_path:
        raise AssemblyError("the supervisor cannot wrap itself")
    return (supervisor_path, ENTRYPOINT_SEPARATOR, artifact_path)


def check_supervisor(source: Path) -> None:
    """Refuse a supervisor binary that is missing, empty or not executable."""
    source = Path(source)
    if not source.is_file():
        raise AssemblyError(f"supervisor binary {source} does not exist")
    if source.stat().st_size == 0:
        raise AssemblyError(f"supervisor binary {source} is empty")
    if not os.access(source, os.X_OK):
        raise AssemblyError(f"supervisor binary {source} is not executable")
