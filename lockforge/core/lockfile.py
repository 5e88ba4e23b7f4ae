"""Lock file parsing.

The lock file is TOML in the ``Cargo.lock`` shape::

    version = 3

    [[package]]
    name = "serde"
    version = "1.0.193"
    source = "registry+https://github.com/rust-lang/crates.io-index"
    checksum = "25dd9975e68d0cb5aa1120c288333fc98731bd1dd12f561e468ea4728c042b89"

    [[package]]
    name = "schedule-api"
    version = "0.0.1"
    source = "git+https://github.com/example/schedule-api?rev=abc#abc123"

    [output-hashes]
    "schedule-api-0.0.1" = "sha256-4J+7gwxQNydb9COOL58H+qO8iOTSsX8mW7lTdolH9d8="

    [origins]
    "schedule-api-0.0.1" = "https://mirror.example/schedule-api-0.0.1.tar.gz"

Packages with neither ``source`` nor ``checksum`` are members of the source
tree itself and are not dependencies. Git packages carry no checksum and
must be pinned through ``output-hashes``.
"""

from __future__ import annotations

import logging
import tomllib
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from lockforge.core.hasher import parse_digest
from lockforge.errors import MalformedLockEntry
from lockforge.models.lockfile import Digest, LockEntry, LockFile

logger = logging.getLogger(__name__)

SUPPORTED_FORMAT_VERSIONS = frozenset({2, 3, 4})


def load_lock_file(
    path: Path,
    *,
    output_hashes: Mapping[str, str] | None = None,
    origins: Mapping[str, str] | None = None,
) -> LockFile:
    """Read and parse a lock file from disk.

    *output_hashes* and *origins* are merged over the file's own
    ``[output-hashes]`` and ``[origins]`` tables.
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        raise MalformedLockEntry(f"Cannot read lock file {path}: {exc}") from exc
    lock = parse_lock_file(text, output_hashes=output_hashes, origins=origins)
    return lock.model_copy(update={"path": Path(path)})


def parse_lock_file(
    text: str,
    *,
    output_hashes: Mapping[str, str] | None = None,
    origins: Mapping[str, str] | None = None,
) -> LockFile:
    """Parse lock file text into a ``LockFile``."""
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise MalformedLockEntry(f"Lock file is not valid TOML: {exc}") from exc

    # Format version 2 lock files carry checksums inline but no version key.
    format_version = data.get("version", 2)
    if format_version not in SUPPORTED_FORMAT_VERSIONS:
        raise MalformedLockEntry(
            f"Unsupported lock file format version {format_version!r}"
        )

    hashes: dict[str, str] = {**_string_table(data, "output-hashes"), **(output_hashes or {})}
    origin_map: dict[str, str] = {**_string_table(data, "origins"), **(origins or {})}

    packages = data.get("package", [])
    if not isinstance(packages, list):
        raise MalformedLockEntry("[[package]] must be an array of tables")

    entries: list[LockEntry] = []
    for index, package in enumerate(packages):
        entry = _parse_package(index, package, hashes, origin_map)
        if entry is not None:
            entries.append(entry)

    unused = set(hashes) - {e.identifier for e in entries}
    if unused:
        logger.warning("output hashes for unknown packages: %s", sorted(unused))

    try:
        return LockFile(format_version=format_version, entries=tuple(entries))
    except ValidationError as exc:
        raise MalformedLockEntry(f"Invalid lock file: {exc}") from exc


def _string_table(data: dict[str, Any], key: str) -> dict[str, str]:
    table = data.get(key, {})
    if not isinstance(table, dict) or not all(
        isinstance(v, str) for v in table.values()
    ):
        raise MalformedLockEntry(f"[{key}] must map identifiers to strings")
    return dict(table)


def _parse_package(
    index: int,
    package: Any,
    hashes: Mapping[str, str],
    origins: Mapping[str, str],
) -> LockEntry | None:
    if not isinstance(package, dict):
        raise MalformedLockEntry(f"package #{index} is not a table")

    name = package.get("name")
    version = package.get("version")
    if not isinstance(name, str) or not name.strip():
        raise MalformedLockEntry(f"package #{index} is missing a name")
    if not isinstance(version, str) or not version.strip():
        raise MalformedLockEntry(f"package {name!r} is missing a version")

    identifier = f"{name}-{version}"
    source = package.get("source", "")
    checksum = package.get("checksum")
    if not isinstance(source, str):
        raise MalformedLockEntry(f"package {identifier} has a non-string source")
    if checksum is not None and not isinstance(checksum, str):
        raise MalformedLockEntry(f"package {identifier} has a non-string checksum")
    override = hashes.get(identifier)

    if not source and checksum is None and override is None:
        logger.debug("skipping workspace package %s", identifier)
        return None

    if checksum is None and override is None:
        if source.startswith("git+"):
            raise MalformedLockEntry(
                f"No output hash was recorded for git dependency {identifier}"
            )
        raise MalformedLockEntry(f"package {identifier} has no checksum")

    digest = _parse_recorded(identifier, checksum if checksum is not None else override)
    # The lock's own checksum is what cargo checks the vendored crate
    # against, so an override may only restate it.
    if checksum is not None and override is not None:
        if _parse_recorded(identifier, override) != digest:
            raise MalformedLockEntry(
                f"output hash for {identifier} disagrees with its lock checksum"
            )

    try:
        return LockEntry(
            identifier=identifier,
            name=name,
            version=version,
            source=source,
            digest=digest,
            origin=origins.get(identifier),
        )
    except ValidationError as exc:
        raise MalformedLockEntry(f"package {identifier} is invalid: {exc}") from exc


def _parse_recorded(identifier: str, recorded: str) -> Digest:
    try:
        return parse_digest(recorded)
    except ValueError as exc:
        raise MalformedLockEntry(
            f"package {identifier} has a malformed digest: {exc}"
        ) from exc
