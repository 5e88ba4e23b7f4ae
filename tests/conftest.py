"""Shared test fixtures for lockforge.

Nothing here touches the network or a real toolchain: fetches go through
``FakeFetcher`` and cargo/rustc invocations through ``FakeToolchain``.
"""

from __future__ import annotations

import gzip
import io
import os
import tarfile
import threading
import tomllib
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from lockforge.config import ForgeSettings
from lockforge.core.cache import ContentAddressedStore
from lockforge.core.compiler import ProcessResult
from lockforge.core.fetcher import OriginError
from lockforge.core.hasher import digest_bytes
from lockforge.core.prerequisite_graph import PrerequisiteGraph
from lockforge.models.artifacts import BuildArtifact, BuildMetadata
from lockforge.models.config import BuildConfig
from lockforge.models.stages import DEFAULT_STAGE_DEFINITIONS

REGISTRY = "https://static.crates.io/crates"
RUSTC_VERSION = "rustc 1.75.0 (82e1608df 2023-12-21)"
HOST = "x86_64-unknown-linux-gnu"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeFetcher:
    """In-memory fetch backend.

    ``responses`` maps a URL to a list of outcomes (bytes or an exception)
    consumed in order; the last outcome repeats once the list is exhausted.
    """

    def __init__(self, responses: dict[str, list[bytes | Exception]] | None = None) -> None:
        self.responses = {url: list(outcomes) for url, outcomes in (responses or {}).items()}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def add(self, url: str, *outcomes: bytes | Exception) -> None:
        self.responses[url] = list(outcomes)

    def fetch(self, url: str) -> bytes:
        with self._lock:
            self.calls.append(url)
            outcomes = self.responses.get(url)
            if not outcomes:
                raise OriginError(f"404 Not Found: {url}")
            outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@dataclass
class FakeToolchain:
    """Stands in for ``rustc`` and ``cargo``.

    ``cargo build`` writes a deterministic "binary" derived from the source
    tree and the vendored crates into ``CARGO_TARGET_DIR``.
    """

    build_returncode: int = 0
    build_output: str = "   Compiling hello v0.1.0 (/source)\n    Finished release\n"
    test_returncode: int = 0
    produce_binary: bool = True
    calls: list[list[str]] = field(default_factory=list)
    envs: list[dict[str, str]] = field(default_factory=list)
    cargo_config: str = ""
    vendored: list[str] = field(default_factory=list)

    @property
    def build_calls(self) -> int:
        return sum(1 for argv in self.calls if "build" in argv)

    def __call__(
        self, argv: Sequence[str], cwd: Path, env: Mapping[str, str]
    ) -> ProcessResult:
        argv = list(argv)
        self.calls.append(argv)
        self.envs.append(dict(env))

        if "--version" in argv:
            return ProcessResult(0, f"{RUSTC_VERSION}\nbinary: rustc\nhost: {HOST}\nrelease: 1.75.0\n")
        if "test" in argv:
            return ProcessResult(self.test_returncode, "running 1 test\ntest ok\n")
        if "build" not in argv:
            return ProcessResult(1, f"unexpected command {argv}\n")

        cargo_home = Path(env["CARGO_HOME"])
        config_path = cargo_home / "config.toml"
        self.cargo_config = config_path.read_text(encoding="utf-8") if config_path.exists() else ""
        vendor_dir = Path(env["HOME"]) / "vendor"
        self.vendored = sorted(p.name for p in vendor_dir.iterdir()) if vendor_dir.exists() else []

        if self.build_returncode != 0 or not self.produce_binary:
            return ProcessResult(self.build_returncode, self.build_output)

        manifest = tomllib.loads((cwd / "Cargo.toml").read_text(encoding="utf-8"))
        name = manifest["package"]["name"]
        target_dir = Path(env["CARGO_TARGET_DIR"])
        if "--target" in argv:
            target_dir = target_dir / argv[argv.index("--target") + 1]
        binary = target_dir / "release" / name
        binary.parent.mkdir(parents=True, exist_ok=True)
        sources = b"".join(p.read_bytes() for p in sorted((cwd / "src").rglob("*.rs")))
        binary.write_bytes(b"\x7fELF-fake\n" + sources + "\n".join(self.vendored).encode())
        return ProcessResult(0, self.build_output)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def _make_crate(name: str, version: str, files: dict[str, str] | None = None) -> bytes:
    """Build a ``.crate`` tarball (gzip'd tar with a ``<name>-<version>/`` root)."""
    files = files or {
        "Cargo.toml": f'[package]\nname = "{name}"\nversion = "{version}"\n',
        "src/lib.rs": f"pub fn {name.replace('-', '_')}() {{}}\n",
    }
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        root = tarfile.TarInfo(f"{name}-{version}")
        root.type = tarfile.DIRTYPE
        root.mode = 0o755
        tar.addfile(root)
        for rel, text in sorted(files.items()):
            data = text.encode("utf-8")
            info = tarfile.TarInfo(f"{name}-{version}/{rel}")
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return gzip.compress(buffer.getvalue(), mtime=0)


def _registry_url(name: str, version: str) -> str:
    return f"{REGISTRY}/{name}/{name}-{version}.crate"


def _lock_text(
    packages: list[dict[str, str]],
    *,
    version: int = 3,
    output_hashes: dict[str, str] | None = None,
    origins: dict[str, str] | None = None,
) -> str:
    """Render a Cargo.lock-shaped TOML document."""
    lines = [f"version = {version}", ""]
    for package in packages:
        lines.append("[[package]]")
        for key, value in package.items():
            lines.append(f'{key} = "{value}"')
        lines.append("")
    for table, values in (("output-hashes", output_hashes), ("origins", origins)):
        if values:
            lines.append(f"[{table}]")
            for key, value in values.items():
                lines.append(f'"{key}" = "{value}"')
            lines.append("")
    return "\n".join(lines)


def _registry_package(name: str, version: str, data: bytes) -> dict[str, str]:
    return {
        "name": name,
        "version": version,
        "source": "registry+https://github.com/rust-lang/crates.io-index",
        "checksum": digest_bytes(data).hex,
    }


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def tmp_dir(tmp_path: Path) -> Path:
    """Provide a temporary directory for test artifacts."""
    return tmp_path


@pytest.fixture
def cache(tmp_dir: Path) -> ContentAddressedStore:
    """Provide a fresh ContentAddressedStore in a temp directory."""
    return ContentAddressedStore(tmp_dir / "cache")


@pytest.fixture
def graph() -> PrerequisiteGraph:
    """Provide a PrerequisiteGraph with the default pipeline stages."""
    return PrerequisiteGraph(DEFAULT_STAGE_DEFINITIONS)


@pytest.fixture
def no_sleep() -> Callable[[float], None]:
    """A sleep that records requested delays instead of sleeping."""
    delays: list[float] = []

    def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays  # type: ignore[attr-defined]
    return _sleep


@pytest.fixture
def itoa_crate() -> bytes:
    return _make_crate("itoa", "1.0.9")


@pytest.fixture
def ryu_crate() -> bytes:
    return _make_crate("ryu", "1.0.15")


@pytest.fixture
def fetcher(itoa_crate: bytes, ryu_crate: bytes) -> FakeFetcher:
    """Fetcher serving the two registry crates the sample project locks."""
    return FakeFetcher({
        _registry_url("itoa", "1.0.9"): [itoa_crate],
        _registry_url("ryu", "1.0.15"): [ryu_crate],
    })


@pytest.fixture
def toolchain() -> FakeToolchain:
    return FakeToolchain()


@pytest.fixture
def source_tree(tmp_dir: Path, itoa_crate: bytes, ryu_crate: bytes) -> Path:
    """A tiny cargo project locking two registry crates."""
    root = tmp_dir / "hello"
    (root / "src").mkdir(parents=True)
    (root / "Cargo.toml").write_text(
        '[package]\nname = "hello"\nversion = "0.1.0"\n\n'
        '[dependencies]\nitoa = "1"\nryu = "1"\n',
        encoding="utf-8",
    )
    (root / "src" / "main.rs").write_text(
        'fn main() { println!("{}", itoa::Buffer::new().format(42)); }\n',
        encoding="utf-8",
    )
    (root / "Cargo.lock").write_text(
        _lock_text([
            {"name": "hello", "version": "0.1.0"},
            _registry_package("itoa", "1.0.9", itoa_crate),
            _registry_package("ryu", "1.0.15", ryu_crate),
        ]),
        encoding="utf-8",
    )
    return root


@pytest.fixture
def supervisor(tmp_dir: Path) -> Path:
    path = tmp_dir / "sys" / "tini"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"\x7fELF-tini\n")
    path.chmod(0o755)
    return path


@pytest.fixture
def trust_bundle(tmp_dir: Path) -> Path:
    path = tmp_dir / "sys" / "ca-bundle.crt"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----\n")
    return path


@pytest.fixture
def base_package(tmp_dir: Path) -> Path:
    """A base utility package root with ``bin/sh`` and a ``bin/ls`` symlink."""
    root = tmp_dir / "pkgs" / "busybox"
    (root / "bin").mkdir(parents=True)
    (root / "share").mkdir()
    sh = root / "bin" / "sh"
    sh.write_bytes(b"\x7fELF-busybox\n")
    sh.chmod(0o755)
    os.symlink("sh", root / "bin" / "ls")
    (root / "share" / "README").write_text("not linked\n")
    return root


@pytest.fixture
def build_config(
    source_tree: Path, supervisor: Path, trust_bundle: Path, base_package: Path
) -> BuildConfig:
    return BuildConfig(
        package_name="hello",
        source_tree=source_tree,
        base_packages=[base_package],
        trust_bundle=trust_bundle,
        supervisor=supervisor,
    )


@pytest.fixture
def settings(tmp_dir: Path, monkeypatch: pytest.MonkeyPatch) -> ForgeSettings:
    """Settings isolated from the caller's environment."""
    for key in list(os.environ):
        if key.startswith("LOCKFORGE_"):
            monkeypatch.delenv(key)
    return ForgeSettings(
        cache_path=tmp_dir / "cache",
        output_path=tmp_dir / "out",
        fetch_backoff_seconds=0.0,
        image_created="epoch",
        _env_file=None,
    )


@pytest.fixture
def make_artifact(cache: ContentAddressedStore) -> Callable[..., BuildArtifact]:
    """Factory fixture: store bytes in the cache and describe them as an artifact."""

    def _factory(name: str = "hello", data: bytes = b"\x7fELF-hello\n", **overrides: Any) -> BuildArtifact:
        blob = cache.store(data, name=name)
        metadata = BuildMetadata(
            toolchain_version=RUSTC_VERSION,
            target_platform=HOST,
            **overrides,
        )
        return BuildArtifact(
            name=name,
            content_address=blob.content_address,
            size_bytes=blob.size_bytes,
            metadata=metadata,
        )

    return _factory


# ---------------------------------------------------------------------------
# Builder fixtures: shared across test modules
# ---------------------------------------------------------------------------


@pytest.fixture
def make_crate() -> Callable[..., bytes]:
    """Factory fixture: ``make_crate(name, version, files=None) -> bytes``."""
    return _make_crate


@pytest.fixture
def make_lock() -> Callable[..., str]:
    """Factory fixture: render Cargo.lock-shaped TOML."""
    return _lock_text


@pytest.fixture
def registry_package() -> Callable[[str, str, bytes], dict[str, str]]:
    """Factory fixture: a registry ``[[package]]`` table pinned to *data*."""
    return _registry_package


@pytest.fixture
def registry_url() -> Callable[[str, str], str]:
    """Factory fixture: default registry download URL for a crate."""
    return _registry_url


@pytest.fixture
def make_fetcher() -> type[FakeFetcher]:
    return FakeFetcher


@pytest.fixture
def make_toolchain() -> type[FakeToolchain]:
    return FakeToolchain
