"""lockforge: hermetic, lock-verified builds and layered container images.

A three-stage pipeline for a single Rust executable:
  - Dependency resolution: every crate pinned in the lock file is fetched
    and checked against its recorded digest, all-or-nothing
  - Hermetic compile: cargo runs offline against the vendored, verified set
  - Image assembly: base utilities and the application in two reproducible
    layers, with the artifact started under an init supervisor
"""

__version__ = "0.1.0"
__description__ = "Hermetic, lock-verified builds and layered container images"

from lockforge.core.orchestrator import Orchestrator
from lockforge.cli.app import app as cli

__all__ = ["Orchestrator", "cli", "__version__"]
