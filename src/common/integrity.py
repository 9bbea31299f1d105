"""Artifact digests: computing and verifying SRI strings and hex shasums."""

from __future__ import annotations

import base64
import hashlib
from pathlib import Path
from typing import Optional, Tuple

from common.errors import CorruptArtifact

_ALGORITHMS = ("sha512", "sha384", "sha256", "sha1")
_HEX_LENGTHS = {40: "sha1", 64: "sha256", 96: "sha384", 128: "sha512"}


def parse_integrity(value: str) -> Tuple[str, bytes]:
    """Split an integrity string into (algorithm, raw digest).

    Accepts SRI (``sha512-<base64>``), prefixed hex (``sha256:<hex>``) and a bare
    hex shasum whose algorithm is inferred from its length.
    """
    value = value.strip()
    for algo in _ALGORITHMS:
        if value.startswith(f"{algo}-"):
            try:
                return algo, base64.b64decode(value[len(algo) + 1:], validate=True)
            except ValueError as exc:
                raise CorruptArtifact(f"unreadable integrity value {value!r}", cause=exc) from exc
        if value.startswith(f"{algo}:"):
            try:
                return algo, bytes.fromhex(value[len(algo) + 1:])
            except ValueError as exc:
                raise CorruptArtifact(f"unreadable integrity value {value!r}", cause=exc) from exc
    algo = _HEX_LENGTHS.get(len(value))
    if algo is None:
        raise CorruptArtifact(f"unrecognized integrity value {value!r}")
    try:
        return algo, bytes.fromhex(value)
    except ValueError as exc:
        raise CorruptArtifact(f"unrecognized integrity value {value!r}", cause=exc) from exc


def file_digest(path: Path, algo: str = "sha512") -> bytes:
    """Hash a file in chunks."""
    h = hashlib.new(algo)
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(1024 * 1024), b""):
            h.update(chunk)
    return h.digest()


def compute_integrity(path: Path, algo: str = "sha512") -> str:
    """SRI string for ``path``."""
    return f"{algo}-{base64.b64encode(file_digest(path, algo)).decode('ascii')}"


def verify_artifact(
    path: Path,
    *,
    integrity: Optional[str] = None,
    size: Optional[int] = None,
    package: Optional[str] = None,
) -> str:
    """Check size and digest of a downloaded file.

    Returns:
        The SRI string of the file (computed when none was expected).

    Raises:
        CorruptArtifact: On any mismatch.
    """
    if size is not None:
        actual_size = path.stat().st_size
        if actual_size != size:
            raise CorruptArtifact(f"expected {size} bytes, got {actual_size}", package=package)
    if not integrity:
        return compute_integrity(path)
    algo, expected = parse_integrity(integrity)
    actual = file_digest(path, algo)
    if actual != expected:
        raise CorruptArtifact(f"{algo} digest mismatch", package=package)
    if algo == "sha512":
        return integrity if integrity.startswith("sha512-") else compute_integrity(path)
    return compute_integrity(path)
