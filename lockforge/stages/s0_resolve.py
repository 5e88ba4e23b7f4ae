"""Stage 0: Dependency Resolution.

Fetches and verifies every lock entry through the ``LockResolver``. This
stage is the gate in front of compilation: it either publishes a complete
``VerifiedDependencySet`` on the run context or raises, leaving nothing
behind for Stage 1 to consume.
"""

from __future__ import annotations

import logging
from typing import Any

from lockforge.core.hasher import content_address
from lockforge.core.resolver import LockResolver
from lockforge.models.lockfile import LockFile
from lockforge.stages.base import BaseStage

logger = logging.getLogger(__name__)


class ResolveStage(BaseStage):
    """Stage 0: Dependency Resolution: the all-or-nothing integrity gate."""

    def __init__(self, resolver: LockResolver) -> None:
        self._resolver = resolver

    @property
    def stage_id(self) -> str:
        return "s0_resolve"

    @property
    def display_name(self) -> str:
        return "Dependency Resolution"

    def stage_inputs(self, run_context: dict[str, Any]) -> dict[str, Any]:
        lock_file: LockFile = run_context["lock_file"]
        return {
            "format_version": lock_file.format_version,
            "entries": {e.identifier: e.digest.address for e in lock_file.entries},
        }

    def execute(self, run_context: dict[str, Any]) -> dict[str, Any]:
        """Resolve ``run_context["lock_file"]``.

        Writes ``run_context["verified_dependencies"]`` on success only.
        """
        lock_file: LockFile = run_context["lock_file"]
        verified = self._resolver.resolve(lock_file)
        run_context["verified_dependencies"] = verified

        return {
            "dependency_count": len(verified),
            "dependency_set_address": content_address(verified.set_digest_input()),
            "identifiers": [d.entry.identifier for d in verified.dependencies],
        }
