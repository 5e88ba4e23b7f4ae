"""Pipeline error taxonomy.

Every fatal condition raised by lockforge derives from ``PipelineError`` and
carries the ``stage`` it belongs to, so the CLI can report which stage
failed without importing the stage machinery.

Only ``FetchError`` is transient; the resolver retries it a bounded number
of times. Everything else aborts the run on first occurrence.
"""

from __future__ import annotations


class PipelineError(RuntimeError):
    """Base for all lockforge pipeline failures."""

    stage: str = "pipeline"


class MalformedLockEntry(PipelineError):
    """The lock file failed to parse or an entry is missing required fields."""

    stage = "s0_resolve"


class HashMismatch(PipelineError):
    """Fetched content disagrees with the pinned digest.

    This is a supply-chain integrity violation. It is never retried and no
    fallback origin is consulted.
    """

    stage = "s0_resolve"

    def __init__(self, identifier: str, expected: str, actual: str) -> None:
        self.identifier = identifier
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Hash mismatch for {identifier}: expected {expected}, got {actual}"
        )


class FetchError(PipelineError):
    """The origin could not be reached or returned an error response."""

    stage = "s0_resolve"

    def __init__(self, identifier: str, origin: str, reason: str) -> None:
        self.identifier = identifier
        self.origin = origin
        self.reason = reason
        super().__init__(f"Failed to fetch {identifier} from {origin}: {reason}")


class CacheIntegrityError(PipelineError):
    """A cached blob no longer hashes to the digest it is stored under."""

    stage = "s0_resolve"


class CompileError(PipelineError):
    """The toolchain reported failure. Always carries the captured build log."""

    stage = "s1_compile"

    def __init__(self, message: str, log: str) -> None:
        self.log = log
        super().__init__(message)


class NetworkAccessAttempt(CompileError):
    """The toolchain tried to reach the network during a hermetic build."""


class AssemblyError(PipelineError):
    """Image inputs are missing or the declared runtime surface is inconsistent."""

    stage = "s2_assemble"
