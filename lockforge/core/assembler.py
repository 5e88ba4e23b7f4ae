"""Image Assembler: layered, content-addressed container images.

Layer order is fixed:

    1. base  : shell + core utilities, only their ``paths_to_link`` prefixes
    2. app   : trust bundle, supervisor, compiled artifact

Layers are written as deterministic tar archives (sorted entries, mtime 0,
root ownership, fixed modes), so identical inputs give identical layer
digests. The image config's ``created`` field is the single exception: it
follows the ``created`` policy, which defaults to build time.

Images are exported as ``docker-archive`` tarballs (``manifest.json`` plus
config and ``<digest>/layer.tar`` blobs), loadable with ``docker load`` or
``skopeo copy docker-archive:...``.
"""

from __future__ import annotations

import io
import json
import logging
import os
import stat
import tarfile
import tempfile
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath

from lockforge.core.cache import ContentAddressedStore
from lockforge.core.entrypoint import check_supervisor
from lockforge.core.hasher import canonical_json_bytes
from lockforge.errors import AssemblyError
from lockforge.models.artifacts import BuildArtifact
from lockforge.models.image import Image, ImageLayer, ImageSpec

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

# The base layer must provide a shell whenever /bin is linked.
REQUIRED_SHELL = "/bin/sh"

_ARCHITECTURES: dict[str, str] = {
    "x86_64": "amd64",
    "aarch64": "arm64",
    "armv7": "arm",
    "i686": "386",
    "riscv64gc": "riscv64",
    "powerpc64le": "ppc64le",
    "s390x": "s390x",
}


@dataclass(frozen=True)
class LayerFile:
    """One filesystem entry destined for a layer."""

    data: bytes = b""
    mode: int = 0o644
    symlink: str | None = None


def resolve_created(policy: str, clock: Callable[[], datetime]) -> datetime:
    """Turn the ``created`` policy into a timestamp.

    ``"now"`` uses the clock (non-reproducible by choice), ``"epoch"`` pins
    1970-01-01T00:00:00Z, anything else must be an ISO-8601 timestamp.
    """
    if policy == "now":
        return clock()
    if policy == "epoch":
        return _EPOCH
    try:
        value = datetime.fromisoformat(policy)
    except ValueError as exc:
        raise AssemblyError(f"invalid image creation timestamp {policy!r}") from exc
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class ImageAssembler:
    """Assembles an ``Image`` from an ``ImageSpec`` and a ``BuildArtifact``.

    Parameters
    ----------
    cache:
        Holds the artifact bytes; layers and the config blob are stored here.
    created:
        Creation timestamp policy (see ``resolve_created``).
    clock:
        Injectable clock for ``created="now"``.
    """

    def __init__(
        self,
        cache: ContentAddressedStore,
        *,
        created: str = "now",
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._cache = cache
        self._created = created
        self._clock = clock

    def assemble(self, spec: ImageSpec, artifact: BuildArtifact) -> Image:
        """Build both layers and the config; nothing is written on failure."""
        created = resolve_created(self._created, self._clock)
        artifact_bytes = self._load_artifact(artifact)
        check_supervisor(spec.supervisor_source)

        base_files = collect_base_files(spec.base_packages, spec.paths_to_link)
        app_files = self._app_files(spec, artifact_bytes)

        collisions = sorted(set(base_files) & set(app_files))
        if collisions:
            raise AssemblyError(
                f"app layer would shadow base layer paths: {collisions}"
            )

        layers = (
            self._store_layer("base", base_files),
            self._store_layer("app", app_files),
        )

        config = self._image_config(spec, artifact, layers, created)
        config_blob = self._cache.store(
            canonical_json_bytes(config), name=f"{spec.name}-config.json"
        )

        image = Image(
            name=spec.name,
            tag=spec.tag,
            layers=layers,
            config_digest=config_blob.content_address,
            entrypoint=spec.entrypoint,
            env=dict(spec.env),
            exposed_ports=tuple(spec.exposed_ports_config()),
            created=created,
        )
        logger.info(
            "assembled %s with layers %s",
            image.reference,
            ", ".join(layer.digest[:19] for layer in layers),
        )
        return image

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _load_artifact(self, artifact: BuildArtifact) -> bytes:
        if not self._cache.verify(artifact.content_address):
            raise AssemblyError(
                f"artifact {artifact.name} ({artifact.content_address}) is "
                "missing from the cache or corrupted"
            )
        return self._cache.retrieve(artifact.content_address)

    @staticmethod
    def _app_files(spec: ImageSpec, artifact_bytes: bytes) -> dict[str, LayerFile]:
        trust = Path(spec.trust_bundle_source)
        if not trust.is_file():
            raise AssemblyError(f"trust bundle {trust} does not exist")
        return {
            spec.trust_bundle_path: LayerFile(data=trust.read_bytes(), mode=0o444),
            spec.supervisor_path: LayerFile(
                data=Path(spec.supervisor_source).read_bytes(), mode=0o755
            ),
            spec.artifact_path: LayerFile(data=artifact_bytes, mode=0o755),
        }

    def _store_layer(self, name: str, files: dict[str, LayerFile]) -> ImageLayer:
        data = build_layer_tar(files)
        blob = self._cache.store(data, name=f"layer-{name}.tar")
        return ImageLayer(
            name=name,
            digest=blob.content_address,
            size_bytes=blob.size_bytes,
            paths=tuple(sorted(files)),
        )

    @staticmethod
    def _image_config(
        spec: ImageSpec,
        artifact: BuildArtifact,
        layers: tuple[ImageLayer, ...],
        created: datetime,
    ) -> dict:
        return {
            "architecture": _architecture(artifact.metadata.target_platform),
            "os": "linux",
            "created": created.isoformat().replace("+00:00", "Z"),
            "config": {
                "Entrypoint": list(spec.entrypoint),
                "Env": spec.env_list(),
                "ExposedPorts": spec.exposed_ports_config(),
            },
            "rootfs": {
                "type": "layers",
                "diff_ids": [layer.digest for layer in layers],
            },
            "history": [
                {"created": created.isoformat().replace("+00:00", "Z"),
                 "created_by": f"lockforge: {layer.name} layer"}
                for layer in layers
            ],
        }


# ---------------------------------------------------------------------------
# Layer construction
# ---------------------------------------------------------------------------


def collect_base_files(
    packages: tuple[Path, ...], paths_to_link: tuple[str, ...]
) -> dict[str, LayerFile]:
    """Gather files under each package's link prefixes.

    A package root ``/pkgs/coreutils`` with prefix ``/bin`` contributes
    ``/pkgs/coreutils/bin/*`` as ``/bin/*``. Relative symlinks that stay
    inside the prefix are kept as symlinks; any other symlink is
    dereferenced. Two packages providing different content at the same
    path is an error, as is a base layer without packages or without a
    shell.
    """
    if not packages:
        raise AssemblyError("no base packages given; the base layer needs a shell")
    files: dict[str, LayerFile] = {}
    for package in packages:
        root = Path(package)
        if not root.is_dir():
            raise AssemblyError(f"base package {root} does not exist")
        for prefix in paths_to_link:
            source_dir = root / prefix.lstrip("/")
            if not source_dir.is_dir():
                continue
            for path in sorted(source_dir.rglob("*")):
                if path.is_dir() and not path.is_symlink():
                    continue
                in_image = str(PurePosixPath(prefix) / path.relative_to(source_dir).as_posix())
                entry = _layer_file(path, source_dir)
                existing = files.get(in_image)
                if existing is not None and existing != entry:
                    raise AssemblyError(
                        f"base packages collide at {in_image} ({root})"
                    )
                files[in_image] = entry
    if not files:
        raise AssemblyError(
            f"base packages provide nothing under {list(paths_to_link)}"
        )
    if "/bin" in paths_to_link and REQUIRED_SHELL not in files:
        raise AssemblyError(f"base packages provide no {REQUIRED_SHELL}")
    return files


def _layer_file(path: Path, source_dir: Path) -> LayerFile:
    if path.is_symlink():
        target = os.readlink(path)
        resolved = (path.parent / target).resolve()
        if not os.path.isabs(target) and resolved.is_relative_to(source_dir.resolve()):
            return LayerFile(symlink=target, mode=0o777)
        if not resolved.is_file():
            raise AssemblyError(f"dangling symlink {path} -> {target}")
        path = resolved
    mode = 0o755 if path.stat().st_mode & stat.S_IXUSR else 0o644
    return LayerFile(data=path.read_bytes(), mode=mode)


def build_layer_tar(files: dict[str, LayerFile]) -> bytes:
    """Serialize *files* as a reproducible tar archive."""
    directories: set[str] = set()
    for in_image in files:
        for parent in PurePosixPath(in_image).parents:
            if str(parent) != "/":
                directories.add(str(parent))

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for directory in sorted(directories):
            info = _tar_info(directory)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tar.addfile(info)
        for in_image in sorted(files):
            entry = files[in_image]
            info = _tar_info(in_image)
            info.mode = entry.mode
            if entry.symlink is not None:
                info.type = tarfile.SYMTYPE
                info.linkname = entry.symlink
                tar.addfile(info)
            else:
                info.size = len(entry.data)
                tar.addfile(info, io.BytesIO(entry.data))
    return buffer.getvalue()


def _tar_info(in_image: str) -> tarfile.TarInfo:
    info = tarfile.TarInfo(in_image.lstrip("/"))
    info.mtime = 0
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def _architecture(target_platform: str) -> str:
    arch = target_platform.split("-", 1)[0]
    return _ARCHITECTURES.get(arch, arch)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def export_docker_archive(
    image: Image, cache: ContentAddressedStore, destination: Path
) -> Path:
    """Write *image* as a docker-archive tarball at *destination*.

    The archive is written to a temporary file next to *destination* and
    renamed into place only once complete.
    """
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)

    config_hex = image.config_digest.split(":", 1)[1]
    layer_names = [f"{layer.digest.split(':', 1)[1]}/layer.tar" for layer in image.layers]
    manifest = [{
        "Config": f"{config_hex}.json",
        "RepoTags": [image.reference],
        "Layers": layer_names,
    }]

    members: list[tuple[str, bytes]] = [
        ("manifest.json", json.dumps(manifest, indent=2).encode("utf-8")),
        (f"{config_hex}.json", cache.retrieve(image.config_digest)),
    ]
    for layer, name in zip(image.layers, layer_names):
        members.append((name, cache.retrieve(layer.digest)))

    fd, tmp_name = tempfile.mkstemp(dir=destination.parent, prefix=".tmp-image-")
    try:
        with os.fdopen(fd, "wb") as handle:
            with tarfile.open(fileobj=handle, mode="w", format=tarfile.PAX_FORMAT) as tar:
                for name, data in members:
                    info = _tar_info(name)
                    info.size = len(data)
                    tar.addfile(info, io.BytesIO(data))
        os.replace(tmp_name, destination)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise

    logger.info("exported %s to %s", image.reference, destination)
    return destination
