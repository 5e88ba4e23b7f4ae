"""Container image models.

``ImageSpec`` is the one validated structure describing everything baked into
the image. Its validators enforce, at construction time:

- environment keys are unique (the env is a mapping; ``env_from_list``
  rejects duplicate ``KEY=`` lines),
- the entrypoint is ``[supervisor, "--", artifact]``,
- the port in ``OBSERVABILITY_ADDRESS`` is declared in ``exposed_ports``.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import Path, PurePosixPath

from pydantic import BaseModel, ConfigDict, field_validator, model_validator

OBSERVABILITY_ENV = "OBSERVABILITY_ADDRESS"
TRUST_BUNDLE_ENV = "SSL_CERT_FILE"
ENTRYPOINT_SEPARATOR = "--"


class PortProtocol(str, Enum):
    TCP = "tcp"
    UDP = "udp"


class PortSpec(BaseModel):
    """An exposed port, rendered as ``<port>/<protocol>`` in image metadata."""

    model_config = ConfigDict(frozen=True)

    port: int
    protocol: PortProtocol = PortProtocol.TCP

    @field_validator("port")
    @classmethod
    def _valid_port(cls, value: int) -> int:
        if not 0 < value < 65536:
            raise ValueError(f"port {value} out of range")
        return value

    @classmethod
    def parse(cls, text: str) -> PortSpec:
        port, _, proto = text.partition("/")
        return cls(port=int(port), protocol=PortProtocol(proto or "tcp"))

    def __str__(self) -> str:
        return f"{self.port}/{self.protocol.value}"


def split_host_port(address: str) -> tuple[str, int]:
    """Split ``host:port`` (IPv6 hosts in brackets) into its parts."""
    host, sep, port = address.rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"address {address!r} is not host:port")
    return host.strip("[]"), int(port)


class ImageSpec(BaseModel):
    """Declarative description of the image to assemble."""

    model_config = ConfigDict(frozen=True)

    name: str
    tag: str = "latest"

    # Layer 1: base utilities
    base_packages: tuple[Path, ...] = ()
    paths_to_link: tuple[str, ...] = ("/bin",)

    # Layer 2: trust bundle, supervisor, artifact
    trust_bundle_source: Path
    trust_bundle_path: str = "/etc/ssl/certs/ca-bundle.crt"
    supervisor_source: Path
    supervisor_path: str = "/sbin/tini"
    artifact_path: str

    env: dict[str, str] = {}
    exposed_ports: frozenset[PortSpec] = frozenset()
    entrypoint: tuple[str, ...]

    @field_validator("trust_bundle_path", "supervisor_path", "artifact_path")
    @classmethod
    def _absolute_in_image(cls, value: str) -> str:
        if not PurePosixPath(value).is_absolute():
            raise ValueError(f"in-image path {value!r} must be absolute")
        return value

    @field_validator("paths_to_link")
    @classmethod
    def _absolute_links(cls, value: tuple[str, ...]) -> tuple[str, ...]:
        for path in value:
            if not path.startswith("/"):
                raise ValueError(f"path to link {path!r} must be absolute")
        return value

    @model_validator(mode="after")
    def _check_entrypoint(self) -> ImageSpec:
        expected = (self.supervisor_path, ENTRYPOINT_SEPARATOR, self.artifact_path)
        if self.entrypoint != expected:
            raise ValueError(
                f"entrypoint must be {list(expected)}, got {list(self.entrypoint)}"
            )
        return self

    @model_validator(mode="after")
    def _check_observability_port(self) -> ImageSpec:
        address = self.env.get(OBSERVABILITY_ENV)
        if address is None:
            raise ValueError(f"{OBSERVABILITY_ENV} must be declared")
        _, port = split_host_port(address)
        if PortSpec(port=port) not in self.exposed_ports:
            raise ValueError(
                f"{OBSERVABILITY_ENV}={address} binds port {port}/tcp, "
                f"which is not exposed (exposed: {sorted(map(str, self.exposed_ports))})"
            )
        return self

    @model_validator(mode="after")
    def _check_trust_env(self) -> ImageSpec:
        declared = self.env.get(TRUST_BUNDLE_ENV)
        if declared != self.trust_bundle_path:
            raise ValueError(
                f"{TRUST_BUNDLE_ENV} must point at {self.trust_bundle_path}, "
                f"got {declared!r}"
            )
        return self

    @staticmethod
    def env_from_list(lines: list[str]) -> dict[str, str]:
        """Parse ``KEY=value`` lines, rejecting duplicate keys."""
        env: dict[str, str] = {}
        for line in lines:
            key, sep, value = line.partition("=")
            if not sep or not key:
                raise ValueError(f"malformed env line {line!r}")
            if key in env:
                raise ValueError(f"duplicate env key {key!r}")
            env[key] = value
        return env

    def env_list(self) -> list[str]:
        return [f"{key}={value}" for key, value in sorted(self.env.items())]

    def exposed_ports_config(self) -> dict[str, dict]:
        return {str(p): {} for p in sorted(self.exposed_ports, key=str)}


class ImageLayer(BaseModel):
    """One content-addressed tar layer."""

    model_config = ConfigDict(frozen=True)

    name: str
    digest: str  # "sha256:<hex>" of the uncompressed tar
    size_bytes: int
    paths: tuple[str, ...]


class Image(BaseModel):
    """An assembled image: ordered layers plus its runtime config."""

    model_config = ConfigDict(frozen=True)

    name: str
    tag: str
    layers: tuple[ImageLayer, ...]
    config_digest: str
    entrypoint: tuple[str, ...]
    env: dict[str, str]
    exposed_ports: tuple[str, ...]
    created: datetime

    @property
    def reference(self) -> str:
        return f"{self.name}:{self.tag}"

    def filesystem_digests(self) -> tuple[str, ...]:
        """Layer digests in order: equal for equal filesystem content."""
        return tuple(layer.digest for layer in self.layers)
