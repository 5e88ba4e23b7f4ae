"""CLI exit codes.

These are the only exit codes the ``lockforge`` command uses. Each pipeline
error class maps to exactly one code so scripts can tell a bad lock file
from an unreachable registry or a failed compile.
"""

from __future__ import annotations

from lockforge.errors import (
    AssemblyError,
    CacheIntegrityError,
    CompileError,
    FetchError,
    HashMismatch,
    MalformedLockEntry,
)

SUCCESS: int = 0
FAILURE: int = 1
LOCK_ERROR: int = 2
FETCH_ERROR: int = 3
COMPILE_ERROR: int = 4
ASSEMBLY_ERROR: int = 5

_CODES: tuple[tuple[type[BaseException], int], ...] = (
    (MalformedLockEntry, LOCK_ERROR),
    (HashMismatch, FETCH_ERROR),
    (FetchError, FETCH_ERROR),
    (CacheIntegrityError, FETCH_ERROR),
    (CompileError, COMPILE_ERROR),
    (AssemblyError, ASSEMBLY_ERROR),
)


def exit_code_for(exc: BaseException) -> int:
    """Return the exit code for a failure, ``FAILURE`` when unclassified."""
    for error_type, code in _CODES:
        if isinstance(exc, error_type):
            return code
    return FAILURE
