"""Tests for the Pydantic data models: validation and immutability."""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from lockforge.core.hasher import digest_bytes
from lockforge.models.artifacts import BuildArtifact, BuildMetadata
from lockforge.models.lockfile import (
    Digest,
    LockEntry,
    LockFile,
    VerifiedDependency,
    VerifiedDependencySet,
)
from lockforge.models.stages import DEFAULT_STAGE_DEFINITIONS, StageState


def _entry(name: str, version: str = "1.0.0", data: bytes | None = None) -> LockEntry:
    return LockEntry(
        identifier=f"{name}-{version}",
        name=name,
        version=version,
        digest=digest_bytes(data if data is not None else name.encode()),
    )


class TestStageModels:
    def test_stage_state_values(self):
        assert StageState.NOT_STARTED == "not_started"
        assert StageState.BLOCKED == "blocked"
        assert StageState.PASSED == "passed"

    def test_default_stages_ordered(self):
        ordinals = [sd.ordinal for sd in DEFAULT_STAGE_DEFINITIONS]
        assert ordinals == sorted(ordinals)

    def test_each_stage_requires_the_previous(self):
        ids = [sd.stage_id for sd in DEFAULT_STAGE_DEFINITIONS]
        for previous, definition in zip(ids, DEFAULT_STAGE_DEFINITIONS[1:]):
            assert definition.prerequisites == [previous]


class TestLockModels:
    def test_digest_equality_is_bytewise(self):
        assert Digest(value=b"\x01" * 32) == Digest(value=b"\x01" * 32)
        assert Digest(value=b"\x01" * 32) != Digest(value=b"\x02" * 32)

    def test_entry_is_frozen(self):
        entry = _entry("itoa")
        with pytest.raises(ValidationError):
            entry.version = "2.0.0"

    @pytest.mark.parametrize("field", ["identifier", "name"])
    def test_entry_fields_non_empty(self, field: str):
        values = {"identifier": "a-1", "name": "a", "version": "1", "digest": digest_bytes(b"a")}
        values[field] = "  "
        with pytest.raises(ValidationError):
            LockEntry(**values)

    def test_git_detection(self):
        entry = _entry("lib").model_copy(update={"source": "git+https://github.com/o/lib#abc"})
        assert entry.is_git

    def test_lock_file_rejects_duplicates(self):
        with pytest.raises(ValidationError, match="duplicate"):
            LockFile(format_version=3, entries=(_entry("a"), _entry("a")))

    def test_lock_file_get(self):
        lock = LockFile(format_version=3, entries=(_entry("a"), _entry("b")))
        assert lock.get("b-1.0.0").name == "b"
        assert lock.get("c-1.0.0") is None

    def test_dependency_set_digest_input_sorted(self, tmp_dir: Path):
        deps = tuple(
            VerifiedDependency(entry=_entry(n), cache_path=tmp_dir / n, size_bytes=1, origin="x")
            for n in ("zeta", "alpha")
        )
        a = VerifiedDependencySet(format_version=3, dependencies=deps)
        b = VerifiedDependencySet(format_version=3, dependencies=tuple(reversed(deps)))
        assert a.set_digest_input() == b.set_digest_input()
        assert len(a) == 2


class TestArtifactModels:
    def test_reproducible_view_excludes_built_at(self):
        meta = BuildMetadata(toolchain_version="rustc 1.75.0", target_platform="x86_64-unknown-linux-gnu")
        view = meta.reproducible_view()
        assert "built_at" not in view
        assert view["toolchain_version"] == "rustc 1.75.0"

    def test_two_builds_differ_only_in_built_at(self):
        first = BuildMetadata(toolchain_version="rustc 1.75.0", target_platform="x")
        second = BuildMetadata(toolchain_version="rustc 1.75.0", target_platform="x")
        assert first.reproducible_view() == second.reproducible_view()

    def test_artifact_is_frozen(self):
        artifact = BuildArtifact(
            name="hello",
            content_address="sha256:" + "0" * 64,
            size_bytes=1,
            metadata=BuildMetadata(toolchain_version="rustc", target_platform="x"),
        )
        with pytest.raises(ValidationError):
            artifact.name = "other"
