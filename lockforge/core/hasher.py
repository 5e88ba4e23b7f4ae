"""Canonical hashing helpers for digests, stage hashes and content addressing.

Lock files record digests in two spellings: registry checksums as bare or
``sha256:``-prefixed hex, and explicit override hashes in SRI form
(``sha256-<base64>``). Both parse into the same ``Digest`` so comparison is
always on raw digest bytes.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
from typing import Any

from lockforge.models.lockfile import Digest

SUPPORTED_ALGORITHMS: dict[str, int] = {
    "sha256": 32,
    "sha512": 64,
}


def canonical_json_bytes(obj: Any) -> bytes:
    """Produce canonical JSON bytes: deterministic, sorted, compact."""
    return json.dumps(
        obj, sort_keys=True, separators=(",", ":"), ensure_ascii=True
    ).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    """Return the SHA-256 hex digest of raw bytes."""
    return hashlib.sha256(data).hexdigest()


def content_address(obj: Any) -> str:
    """Content-address a JSON-serializable object as ``sha256:<hex>``."""
    return f"sha256:{sha256_hex(canonical_json_bytes(obj))}"


def compute_input_hash(stage_id: str, inputs: dict[str, Any]) -> str:
    """SHA-256 of canonical(stage_id + sorted inputs)."""
    payload = {"stage_id": stage_id, "inputs": inputs}
    return sha256_hex(canonical_json_bytes(payload))


def compute_output_hash(stage_id: str, outputs: dict[str, Any]) -> str:
    """SHA-256 of canonical(stage_id + sorted outputs)."""
    payload = {"stage_id": stage_id, "outputs": outputs}
    return sha256_hex(canonical_json_bytes(payload))


# ---------------------------------------------------------------------------
# Digest parsing
# ---------------------------------------------------------------------------


def parse_digest(text: str) -> Digest:
    """Parse a recorded digest string.

    Accepted forms:
        ``<64 hex chars>``           : bare SHA-256 (Cargo.lock checksum)
        ``sha256:<hex>``             : prefixed hex
        ``sha256-<base64>``          : Subresource Integrity form

    Raises ``ValueError`` for anything else, including a digest whose
    length does not match its algorithm.
    """
    text = text.strip()
    if not text:
        raise ValueError("empty digest")

    if ":" in text:
        algorithm, _, encoded = text.partition(":")
        raw = _decode_hex(encoded)
    elif "-" in text:
        algorithm, _, encoded = text.partition("-")
        try:
            raw = base64.b64decode(encoded, validate=True)
        except binascii.Error as exc:
            raise ValueError(f"invalid base64 digest {text!r}") from exc
    else:
        algorithm = "sha256"
        raw = _decode_hex(text)

    algorithm = algorithm.lower()
    expected_len = SUPPORTED_ALGORITHMS.get(algorithm)
    if expected_len is None:
        raise ValueError(f"unsupported digest algorithm {algorithm!r}")
    if len(raw) != expected_len:
        raise ValueError(
            f"{algorithm} digest must be {expected_len} bytes, got {len(raw)}"
        )
    return Digest(algorithm=algorithm, value=raw)


def _decode_hex(encoded: str) -> bytes:
    try:
        return bytes.fromhex(encoded)
    except ValueError as exc:
        raise ValueError(f"invalid hex digest {encoded!r}") from exc


def digest_bytes(data: bytes, algorithm: str = "sha256") -> Digest:
    """Digest *data* with *algorithm*, returning a ``Digest``."""
    if algorithm not in SUPPORTED_ALGORITHMS:
        raise ValueError(f"unsupported digest algorithm {algorithm!r}")
    return Digest(algorithm=algorithm, value=hashlib.new(algorithm, data).digest())
