"""Hermetic Compiler Invocation.

``HermeticCompiler.build()`` turns a source tree plus a verified dependency
set into exactly one ``BuildArtifact``:

    vendor verified crates -> write source replacement config
        -> capture toolchain version -> cargo build (offline, frozen)
        -> [cargo test] -> store binary + log in the cache

The toolchain never sees the network: cargo runs ``--offline --frozen`` with
crates.io and every git source replaced by the vendor directory, proxies
point at a closed local port, and with ``network_isolation="unshare"`` the
process runs in an empty network namespace. Any sign in the log that the
toolchain tried to reach the network aborts the build.
"""

from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
import tarfile
import tempfile
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.parse import parse_qsl, urlsplit

from lockforge.core.cache import ContentAddressedStore
from lockforge.core.hasher import content_address
from lockforge.errors import CompileError, NetworkAccessAttempt
from lockforge.models.artifacts import BuildArtifact, BuildMetadata
from lockforge.models.lockfile import VerifiedDependency, VerifiedDependencySet

logger = logging.getLogger(__name__)

# Log fragments cargo/rustc emit when something reaches for the network.
NETWORK_MARKERS: tuple[str, ...] = (
    "attempting to make an HTTP request, but --offline was specified",
    "failed to download",
    "failed to fetch",
    "Could not resolve host",
    "Network is unreachable",
    "failed to connect to",
)

# Closed local port; anything honouring proxy variables fails immediately.
_BLACKHOLE_PROXY = "http://127.0.0.1:9"

# Separator cargo uses to split CARGO_ENCODED_RUSTFLAGS into arguments.
RUSTFLAGS_SEPARATOR = "\x1f"


@dataclass(frozen=True)
class ProcessResult:
    returncode: int
    output: str


ProcessRunner = Callable[[Sequence[str], Path, Mapping[str, str]], ProcessResult]


def subprocess_runner(
    argv: Sequence[str], cwd: Path, env: Mapping[str, str]
) -> ProcessResult:
    """Run *argv* to completion, merging stderr into stdout."""
    try:
        completed = subprocess.run(
            list(argv),
            cwd=cwd,
            env=dict(env),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            check=False,
        )
    except OSError as exc:
        return ProcessResult(returncode=127, output=f"{argv[0]}: {exc}\n")
    return ProcessResult(returncode=completed.returncode, output=completed.stdout)


class HermeticCompiler:
    """Builds a single executable with the network disabled.

    Parameters
    ----------
    cache:
        Where the produced binary and the build log are stored.
    runner:
        Process runner; defaults to ``subprocess_runner``.
    lint_flags:
        RUSTFLAGS that turn policy warnings into hard errors.
    run_tests:
        Run ``cargo test`` after the build.
    network_isolation:
        ``"offline"`` (cargo offline mode plus dead proxies) or ``"unshare"``
        (additionally run inside an empty network namespace).
    profile:
        Cargo profile name.
    target:
        Optional target triple; host platform when omitted.
    """

    def __init__(
        self,
        cache: ContentAddressedStore,
        runner: ProcessRunner = subprocess_runner,
        *,
        lint_flags: str = "-D unused-crate-dependencies",
        run_tests: bool = False,
        network_isolation: str = "offline",
        profile: str = "release",
        target: str | None = None,
        cargo: str = "cargo",
        rustc: str = "rustc",
    ) -> None:
        if network_isolation not in ("offline", "unshare"):
            raise ValueError(f"unknown network isolation {network_isolation!r}")
        self._cache = cache
        self._runner = runner
        self._lint_flags = lint_flags
        self._run_tests = run_tests
        self._isolation = network_isolation
        self._profile = profile
        self._target = target
        self._cargo = cargo
        self._rustc = rustc

    # ------------------------------------------------------------------
    # Build
    # ------------------------------------------------------------------

    def build(
        self,
        source_tree: Path,
        dependencies: VerifiedDependencySet,
        package_name: str,
    ) -> BuildArtifact:
        """Compile *source_tree* against *dependencies*.

        Raises ``CompileError`` (with the full log) on any failure.
        """
        source_tree = Path(source_tree).resolve()
        if not (source_tree / "Cargo.toml").is_file():
            message = f"{source_tree} has no Cargo.toml"
            raise CompileError(message, log=message + "\n")

        log: list[str] = []
        with tempfile.TemporaryDirectory(prefix="lockforge-build-") as tmp:
            work = Path(tmp)
            vendor_dir = work / "vendor"
            cargo_home = work / "cargo-home"
            target_dir = work / "target"

            for dep in dependencies.dependencies:
                _vendor_dependency(dep, vendor_dir)
            _write_cargo_config(cargo_home, vendor_dir, dependencies)

            env = self._environment(work, source_tree, cargo_home, target_dir)

            toolchain_version, host = self._toolchain_version(source_tree, env, log)

            self._run(self._cargo_argv("build"), source_tree, env, log)
            if self._run_tests:
                self._run(self._cargo_argv("test"), source_tree, env, log)

            binary_path = self._binary_path(target_dir, package_name)
            if not binary_path.is_file():
                log.append(f"expected executable at {binary_path} was not produced\n")
                raise CompileError(
                    f"toolchain produced no executable named {package_name!r}",
                    log="".join(log),
                )
            binary = binary_path.read_bytes()

        full_log = "".join(log)
        binary_blob = self._cache.store(binary, name=package_name)
        log_blob = self._cache.store(
            full_log.encode("utf-8"), name=f"{package_name}.log"
        )

        metadata = BuildMetadata(
            toolchain_version=toolchain_version,
            target_platform=self._target or host,
            profile=self._profile,
            dependency_set_address=content_address(dependencies.set_digest_input()),
            lint_flags=tuple(self._lint_flags.split()),
            tests_run=self._run_tests,
        )
        logger.info(
            "built %s (%d bytes) -> %s",
            package_name,
            binary_blob.size_bytes,
            binary_blob.content_address,
        )
        return BuildArtifact(
            name=package_name,
            content_address=binary_blob.content_address,
            size_bytes=binary_blob.size_bytes,
            metadata=metadata,
            log_address=log_blob.content_address,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _environment(
        self, work: Path, source_tree: Path, cargo_home: Path, target_dir: Path
    ) -> dict[str, str]:
        # Paths of the throwaway work dir and the source tree are remapped so
        # they never end up in the binary. The encoded form keeps paths with
        # spaces as single arguments.
        rustflags = [
            *self._lint_flags.split(),
            f"--remap-path-prefix={work}=/build",
            f"--remap-path-prefix={source_tree}=/source",
        ]
        env = {
            "PATH": os.environ.get("PATH", "/usr/bin:/bin"),
            "HOME": str(work),
            "CARGO_HOME": str(cargo_home),
            "CARGO_TARGET_DIR": str(target_dir),
            "CARGO_NET_OFFLINE": "true",
            "CARGO_ENCODED_RUSTFLAGS": RUSTFLAGS_SEPARATOR.join(rustflags),
            "SOURCE_DATE_EPOCH": "0",
            "LANG": "C.UTF-8",
        }
        for var in ("http_proxy", "https_proxy", "HTTP_PROXY", "HTTPS_PROXY", "ALL_PROXY"):
            env[var] = _BLACKHOLE_PROXY
        for var in ("RUSTUP_HOME", "RUSTUP_TOOLCHAIN"):
            if var in os.environ:
                env[var] = os.environ[var]
        return env

    def _cargo_argv(self, command: str) -> list[str]:
        argv = [self._cargo, command, "--offline", "--frozen"]
        if self._profile == "release":
            argv.append("--release")
        else:
            argv.extend(["--profile", self._profile])
        if self._target:
            argv.extend(["--target", self._target])
        return self._isolate(argv)

    def _isolate(self, argv: list[str]) -> list[str]:
        if self._isolation != "unshare":
            return argv
        if shutil.which("unshare") is None:
            message = "network_isolation=unshare requested but unshare is not installed"
            raise CompileError(message, log=message + "\n")
        return ["unshare", "--net", "--map-root-user", "--", *argv]

    def _toolchain_version(
        self, cwd: Path, env: Mapping[str, str], log: list[str]
    ) -> tuple[str, str]:
        """Return (``rustc --version`` line, host triple)."""
        result = self._run([self._rustc, "--version", "--verbose"], cwd, env, log)
        lines = result.output.strip().splitlines()
        version = lines[0] if lines else "unknown"
        return version, _host_triple(lines)

    def _run(
        self,
        argv: Sequence[str],
        cwd: Path,
        env: Mapping[str, str],
        log: list[str],
    ) -> ProcessResult:
        logger.info("running %s", " ".join(argv))
        result = self._runner(argv, cwd, env)
        log.append(f"$ {' '.join(argv)}\n{result.output}")
        if not result.output.endswith("\n"):
            log.append("\n")

        hit = next((m for m in NETWORK_MARKERS if m in result.output), None)
        if hit is not None:
            log.append(f"network access attempted: {hit!r}\n")
            raise NetworkAccessAttempt(
                f"{argv[0]} attempted network access during a hermetic build",
                log="".join(log),
            )
        if result.returncode != 0:
            log.append(f"exit status {result.returncode}\n")
            raise CompileError(
                f"{' '.join(argv[:2])} failed with exit status {result.returncode}",
                log="".join(log),
            )
        return result

    def _binary_path(self, target_dir: Path, package_name: str) -> Path:
        profile_dir = {"release": "release", "dev": "debug"}.get(
            self._profile, self._profile
        )
        base = target_dir / self._target if self._target else target_dir
        return base / profile_dir / package_name


# ---------------------------------------------------------------------------
# Vendoring
# ---------------------------------------------------------------------------


def _vendor_dependency(dep: VerifiedDependency, vendor_dir: Path) -> Path:
    """Unpack a verified ``.crate`` / source tarball into the vendor dir.

    The archive's single top-level directory is stripped and the crate is
    placed at ``<vendor>/<name>-<version>`` with the checksum file cargo
    expects for directory sources.
    """
    entry = dep.entry
    dest = vendor_dir / entry.identifier
    dest.mkdir(parents=True, exist_ok=True)

    try:
        with tarfile.open(dep.cache_path, mode="r:*") as archive:
            members: list[tarfile.TarInfo] = []
            for member in archive.getmembers():
                parts = PurePosixPath(member.name).parts
                if len(parts) < 2:
                    continue
                member.name = str(PurePosixPath(*parts[1:]))
                members.append(member)
            # The data filter rejects absolute paths, links and members
            # escaping the destination.
            archive.extractall(dest, members=members, filter="data")
    except tarfile.TarError as exc:
        message = f"cannot vendor {entry.identifier}: {exc}"
        raise CompileError(message, log=message + "\n") from exc

    checksum = {
        "files": {},
        "package": None if entry.is_git else entry.digest.hex,
    }
    (dest / ".cargo-checksum.json").write_text(json.dumps(checksum), encoding="utf-8")
    return dest


def _write_cargo_config(
    cargo_home: Path, vendor_dir: Path, dependencies: VerifiedDependencySet
) -> Path:
    """Replace crates.io and every git source with the vendor directory."""
    lines = [
        "[net]",
        "offline = true",
        "",
        "[source.crates-io]",
        'replace-with = "vendored-sources"',
        "",
    ]
    seen: set[str] = set()
    for dep in dependencies.dependencies:
        if not dep.entry.is_git:
            continue
        key, url, query = _git_source_parts(dep.entry.source)
        if key in seen:
            continue
        seen.add(key)
        lines.append(f"[source.{json.dumps(key)}]")
        lines.append(f"git = {json.dumps(url)}")
        for name in ("rev", "branch", "tag"):
            if name in query:
                lines.append(f"{name} = {json.dumps(query[name])}")
        lines.append('replace-with = "vendored-sources"')
        lines.append("")
    lines.extend([
        "[source.vendored-sources]",
        f"directory = {json.dumps(str(vendor_dir))}",
        "",
    ])

    cargo_home.mkdir(parents=True, exist_ok=True)
    config_path = cargo_home / "config.toml"
    config_path.write_text("\n".join(lines), encoding="utf-8")
    return config_path


def _git_source_parts(source: str) -> tuple[str, str, dict[str, str]]:
    """``git+URL?rev=x#commit`` -> (``git+URL?rev=x``, ``URL``, query)."""
    without_commit = source.split("#", 1)[0]
    parts = urlsplit(without_commit.removeprefix("git+"))
    url = parts._replace(query="", fragment="").geturl()
    return without_commit, url, dict(parse_qsl(parts.query))


def _host_triple(lines: list[str]) -> str:
    for line in lines:
        if line.startswith("host:"):
            return line.split(":", 1)[1].strip()
    return "unknown"
